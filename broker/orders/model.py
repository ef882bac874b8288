"""
Order record, status graph, and the client-facing projection.

Timestamps are epoch milliseconds. Raw amounts are ints in memory and
decimal strings at rest (Supabase rows) and on the wire.
"""

import time
import uuid
from dataclasses import asdict, dataclass, fields
from typing import Dict, FrozenSet, Optional

from broker.amounts import format_units, parse_raw

AWAITING_PAYMENT = "awaiting_payment"
PAID = "paid"
FULFILLING = "fulfilling"
FULFILLED = "fulfilled"
FAILED = "failed"
EXPIRED = "expired"

TERMINAL_STATUSES: FrozenSet[str] = frozenset({FULFILLED, FAILED, EXPIRED})

# Legal forward edges; anything else is rejected by the store
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    AWAITING_PAYMENT: frozenset({PAID, EXPIRED, FAILED}),
    PAID: frozenset({FULFILLING}),
    FULFILLING: frozenset({FULFILLED, FAILED}),
    FULFILLED: frozenset(),
    FAILED: frozenset(),
    EXPIRED: frozenset(),
}


def sources_for(target: str) -> FrozenSet[str]:
    """Statuses from which target is reachable in one step."""
    return frozenset(s for s, nxt in TRANSITIONS.items() if target in nxt)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_order_id() -> str:
    return str(uuid.uuid4())


_RAW_FIELDS = ("required_amount_raw", "quote_sell_amount_raw", "paid_amount_raw")


@dataclass
class Order:
    id: str
    created_at: int
    updated_at: int
    expires_at: int
    status: str
    dungeon_id: str
    pay_token_symbol: str
    pay_token_address: str
    pay_token_decimals: int
    required_amount_raw: int
    quote_sell_amount_raw: int
    recipient_address: str
    player_name: str
    payment_tx_hash: Optional[str] = None
    paid_amount_raw: Optional[int] = None
    fulfill_tx_hash: Optional[str] = None
    game_id: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, at_ms: int) -> bool:
        return at_ms > self.expires_at

    def to_row(self) -> dict:
        """Storage row: raw amounts as decimal strings."""
        row = asdict(self)
        for key in _RAW_FIELDS:
            if row[key] is not None:
                row[key] = str(row[key])
        return row

    @classmethod
    def from_row(cls, row: dict) -> "Order":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        for key in _RAW_FIELDS:
            if data.get(key) is not None:
                data[key] = parse_raw(data[key])
        for key in ("created_at", "updated_at", "expires_at", "pay_token_decimals"):
            data[key] = int(data[key])
        if data.get("game_id") is not None:
            data["game_id"] = int(data["game_id"])
        return cls(**data)


def order_projection(order: Order, treasury_address: str) -> dict:
    """Client-facing camelCase view of an order."""
    return {
        "id": order.id,
        "status": order.status,
        "dungeonId": order.dungeon_id,
        "createdAt": order.created_at,
        "updatedAt": order.updated_at,
        "expiresAt": order.expires_at,
        "payToken": {
            "symbol": order.pay_token_symbol,
            "address": order.pay_token_address,
            "decimals": order.pay_token_decimals,
        },
        "requiredAmountRaw": str(order.required_amount_raw),
        "requiredAmount": format_units(order.required_amount_raw, order.pay_token_decimals),
        "quoteSellAmountRaw": str(order.quote_sell_amount_raw),
        "recipientAddress": order.recipient_address,
        "playerName": order.player_name,
        "treasuryAddress": treasury_address,
        "paymentTxHash": order.payment_tx_hash,
        "paidAmountRaw": str(order.paid_amount_raw) if order.paid_amount_raw is not None else None,
        "fulfillTxHash": order.fulfill_tx_hash,
        "gameId": order.game_id,
        "lastError": order.last_error,
    }
