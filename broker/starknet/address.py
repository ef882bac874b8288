"""
Starknet address helpers.

Addresses are felts; the same account can be written with or without
leading zeros and in any hex case. Canonical form here is lowercase
0x-prefixed hex with no leading zeros, so string equality == felt equality.
"""

import re
from typing import Optional, Union

_HEX_RE = re.compile(r"^0x[0-9a-fA-F]+$")

SHORT_STRING_MAX_LEN = 31


def normalize_address(value: Union[str, int, None]) -> Optional[str]:
    """Canonicalize an address, or None if it isn't a hex felt."""
    if value is None:
        return None
    if isinstance(value, int):
        return hex(value) if value >= 0 else None
    trimmed = str(value).strip()
    if not trimmed:
        return None
    normalized = trimmed if trimmed.lower().startswith("0x") else f"0x{trimmed}"
    normalized = "0x" + normalized[2:]
    if not _HEX_RE.match(normalized):
        return None
    return hex(int(normalized, 16))


def require_normalized_address(value: Union[str, int, None], label: str) -> str:
    normalized = normalize_address(value)
    if not normalized:
        raise ValueError(f"Invalid {label} address: {value}")
    return normalized


def is_short_string(value: str) -> bool:
    """True if value fits a Cairo short string (1-31 ASCII chars)."""
    if not value or len(value) > SHORT_STRING_MAX_LEN:
        return False
    return all(ord(ch) < 128 for ch in value)
