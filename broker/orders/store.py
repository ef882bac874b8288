"""
Order repository — named, conditional partial updates keyed by order id.

Every write names the fields it touches and the statuses it may start
from. A write whose precondition no longer holds returns None instead of
clobbering the row, so the legal writes of the lifecycle are exactly the
methods below. Backends implement insert/get/next_needing_work and one
primitive, _conditional_update.
"""

import dataclasses
from typing import Dict, Iterable, Optional

from broker.orders.model import (
    AWAITING_PAYMENT,
    EXPIRED,
    FAILED,
    FULFILLED,
    FULFILLING,
    PAID,
    Order,
    sources_for,
)

# Statuses the worker must look at (awaiting_payment only with a tx hash)
WORK_STATUSES = (PAID, FULFILLING)
NON_TERMINAL = (AWAITING_PAYMENT, PAID, FULFILLING)


class OrderStore:
    """Repository contract shared by the in-memory and Supabase stores."""

    async def insert(self, order: Order) -> Order:
        raise NotImplementedError

    async def get(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    async def next_needing_work(self) -> Optional[Order]:
        """Oldest order that is paid, fulfilling, or awaiting payment with a hash."""
        raise NotImplementedError

    async def _conditional_update(
        self, order_id: str, from_statuses: Iterable[str], changes: dict,
        null_field: Optional[str] = None,
    ) -> Optional[Order]:
        """Apply changes iff status in from_statuses (and null_field is unset)."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Named writes
    # ------------------------------------------------------------------

    async def set_payment_tx_hash(self, order_id: str, tx_hash: str, now: int) -> Optional[Order]:
        return await self._conditional_update(
            order_id, (AWAITING_PAYMENT,),
            {"payment_tx_hash": tx_hash, "updated_at": now},
            null_field="payment_tx_hash",
        )

    async def mark_paid(self, order_id: str, paid_amount_raw: int, now: int) -> Optional[Order]:
        return await self._conditional_update(
            order_id, sources_for(PAID),
            {"status": PAID, "paid_amount_raw": paid_amount_raw, "last_error": None, "updated_at": now},
        )

    async def mark_expired(self, order_id: str, now: int) -> Optional[Order]:
        return await self._conditional_update(
            order_id, sources_for(EXPIRED),
            {"status": EXPIRED, "last_error": "quote_expired", "updated_at": now},
        )

    async def mark_failed(self, order_id: str, error: str, now: int) -> Optional[Order]:
        return await self._conditional_update(
            order_id, sources_for(FAILED),
            {"status": FAILED, "last_error": error, "updated_at": now},
        )

    async def mark_fulfilling(self, order_id: str, now: int) -> Optional[Order]:
        return await self._conditional_update(
            order_id, sources_for(FULFILLING),
            {"status": FULFILLING, "last_error": None, "updated_at": now},
        )

    async def set_fulfill_tx_hash(self, order_id: str, tx_hash: str, now: int) -> Optional[Order]:
        return await self._conditional_update(
            order_id, (FULFILLING,),
            {"fulfill_tx_hash": tx_hash, "last_error": None, "updated_at": now},
            null_field="fulfill_tx_hash",
        )

    async def mark_fulfilled(self, order_id: str, game_id: int, now: int) -> Optional[Order]:
        return await self._conditional_update(
            order_id, sources_for(FULFILLED),
            {"status": FULFILLED, "game_id": game_id, "last_error": None, "updated_at": now},
        )

    async def touch_error(self, order_id: str, error: str, now: int) -> Optional[Order]:
        """Record a non-terminal problem; status is left alone."""
        return await self._conditional_update(
            order_id, NON_TERMINAL, {"last_error": error, "updated_at": now},
        )


class InMemoryOrderStore(OrderStore):
    """Process-local store. Orders are lost on restart."""

    def __init__(self):
        self._orders: Dict[str, Order] = {}

    async def insert(self, order: Order) -> Order:
        if order.id in self._orders:
            raise ValueError(f"Duplicate order id: {order.id}")
        self._orders[order.id] = dataclasses.replace(order)
        return dataclasses.replace(order)

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return dataclasses.replace(order) if order else None

    async def next_needing_work(self) -> Optional[Order]:
        candidates = [
            o for o in self._orders.values()
            if o.status in WORK_STATUSES
            or (o.status == AWAITING_PAYMENT and o.payment_tx_hash is not None)
        ]
        if not candidates:
            return None
        oldest = min(candidates, key=lambda o: (o.created_at, o.id))
        return dataclasses.replace(oldest)

    async def _conditional_update(self, order_id, from_statuses, changes, null_field=None):
        current = self._orders.get(order_id)
        if current is None or current.status not in from_statuses:
            return None
        if null_field and getattr(current, null_field) is not None:
            return None
        updated = dataclasses.replace(current, **changes)
        self._orders[order_id] = updated
        return dataclasses.replace(updated)
