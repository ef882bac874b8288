"""
Raw token amounts — integer math only, decimal strings at the edges.

Raw amounts are smallest-unit integers (18 decimals for tickets/LORDS,
6 for USDC). They routinely exceed 2**53, so nothing here touches float.
"""

ONE_TICKET = 10 ** 18           # one whole ticket in raw units
BPS_DENOMINATOR = 10_000


def ceil_div(numerator: int, denominator: int) -> int:
    if denominator == 0:
        raise ZeroDivisionError("division_by_zero")
    return (numerator + denominator - 1) // denominator


def apply_fee_bps(amount: int, fee_bps: int) -> int:
    """amount * (1 + fee), rounded up so the treasury is never undercharged."""
    if amount < 0:
        raise ValueError(f"amount must be >= 0, got {amount}")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValueError(f"fee_bps must be in [0, {BPS_DENOMINATOR}], got {fee_bps}")
    return ceil_div(amount * (BPS_DENOMINATOR + fee_bps), BPS_DENOMINATOR)


def format_units(raw: int, decimals: int) -> str:
    """Human decimal string: format_units(1030000, 6) == "1.03"."""
    base = 10 ** decimals
    integer_part, fraction_part = divmod(raw, base)
    if fraction_part == 0:
        return str(integer_part)
    fraction = str(fraction_part).rjust(decimals, "0").rstrip("0")
    return f"{integer_part}.{fraction}"


def whole_tickets(balance_raw: int) -> int:
    return balance_raw // ONE_TICKET


def parse_raw(value) -> int:
    """Parse a stored raw amount (decimal string, hex string or int)."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)
