"""
Receipt adapter — decodes status fields from loosely-shaped receipts.

Receipts reach us as starknet-py dataclasses, raw JSON-RPC dicts, or the
camelCase shapes some providers return. Each field is read from the first
alias present, in priority order:

  finality_status : finality_status, finalityStatus, status
  execution_status: execution_status, executionStatus, statusReceipt
  revert_reason   : revert_reason, revertReason, execution_error

Enum values (TransactionExecutionStatus etc.) are reduced to their string
value. Missing fields decode to None.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from broker.starknet.address import normalize_address

SUCCEEDED = "SUCCEEDED"

FINALITY_ALIASES = ("finality_status", "finalityStatus", "status")
EXECUTION_ALIASES = ("execution_status", "executionStatus", "statusReceipt")
REVERT_ALIASES = ("revert_reason", "revertReason", "execution_error")

# The game-token metadata event is the only one with this many data felts
GAME_METADATA_EVENT_LEN = 14


@dataclass
class ReceiptStatus:
    finality_status: Optional[str] = None
    execution_status: Optional[str] = None
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.execution_status == SUCCEEDED


@dataclass
class ReceiptEvent:
    from_address: Optional[str]
    keys: List[int]
    data: List[int]


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    inner = getattr(value, "value", None)  # Enum
    if isinstance(inner, str):
        return inner
    return None


def _first_text(obj: Any, aliases: Sequence[str]) -> Optional[str]:
    for alias in aliases:
        val = _text(_field(obj, alias))
        if val is not None:
            return val
    return None


def receipt_statuses(receipt: Any) -> ReceiptStatus:
    """Decode finality/execution/revert fields from any receipt shape."""
    if receipt is None:
        return ReceiptStatus()
    return ReceiptStatus(
        finality_status=_first_text(receipt, FINALITY_ALIASES),
        execution_status=_first_text(receipt, EXECUTION_ALIASES),
        revert_reason=_first_text(receipt, REVERT_ALIASES),
    )


def felt(value: Any) -> int:
    """Felt from int or hex/decimal string."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)


def receipt_events(receipt: Any) -> List[ReceiptEvent]:
    """Normalize receipt events to (from_address, int keys, int data)."""

    raw_events = _field(receipt, "events") or []
    events = []
    for ev in raw_events:
        from_raw = _field(ev, "from_address")
        if from_raw is None:
            from_raw = _field(ev, "fromAddress")
        try:
            keys = [felt(k) for k in (_field(ev, "keys") or [])]
            data = [felt(d) for d in (_field(ev, "data") or [])]
        except (TypeError, ValueError):
            continue
        events.append(ReceiptEvent(normalize_address(from_raw), keys, data))
    return events


def parse_game_id(receipt: Any) -> Optional[int]:
    """Game id minted by buy_game: data[1] of the 14-felt metadata event."""
    for ev in receipt_events(receipt):
        if len(ev.data) == GAME_METADATA_EVENT_LEN:
            return ev.data[1]
    return None
