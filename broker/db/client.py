"""
Supabase order store — durable backend for the order repository.

Table layout (one row per order, never deleted):
  id                                 text primary key
  created_at/updated_at/expires_at   bigint (epoch ms)
  status                             text, indexed with created_at
  *_raw amounts                      text (decimal strings)
  game_id                            bigint null

Hardened with:
  - Per-operation timeout around the sync client (run in a thread)
  - Backoff retry on transient PostgREST/network errors and timeouts
  - Conditional writes as one filtered UPDATE (stale precondition = no row)
  - Latency / error / retry counters
"""

import asyncio
import time
from typing import Iterable, Optional

from supabase import Client, create_client

from broker.orders.model import AWAITING_PAYMENT, FULFILLING, PAID, Order
from broker.orders.store import OrderStore

DB_OPERATION_TIMEOUT = 10.0    # seconds per attempt
DB_RETRY_ATTEMPTS = 3          # total attempts per operation
DB_RETRY_BASE_DELAY = 0.5      # 0.5s, 1s

_TRANSIENT_MARKERS = (
    "timeout", "timed out", "connection", "unavailable", "502", "503", "504",
    "reset by peer", "broken pipe", "rate limit", "too many requests",
)

# Worker selection: paid/fulfilling, or awaiting_payment with a submitted hash
NEEDS_WORK_FILTER = (
    f"status.in.({PAID},{FULFILLING}),"
    f"and(status.eq.{AWAITING_PAYMENT},payment_tx_hash.not.is.null)"
)


def init_supabase(url: str, key: str) -> Client:
    return create_client(url, key)


async def health_check(client: Client, table: str = "orders") -> bool:
    """Cheap count query against the orders table."""
    if client is None:
        return False
    try:
        await asyncio.wait_for(
            asyncio.to_thread(lambda: client.table(table).select("id", count="exact").limit(0).execute()),
            timeout=DB_OPERATION_TIMEOUT,
        )
    except Exception as e:
        print(f"[DB] Health check failed: {e}")
        return False
    return True


def _is_transient(e: Exception) -> bool:
    if isinstance(e, asyncio.TimeoutError):
        return True
    msg = str(e).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


class SupabaseOrderStore(OrderStore):
    """Order repository over one Supabase table."""

    def __init__(self, client: Client, table: str = "orders"):
        self.client = client
        self.table = table
        self._ops = 0
        self._errors = 0
        self._retries = 0
        self._latency_ms = 0.0

    async def _exec(self, fn, label: str):
        """Run a blocking client call off-loop; retry transient failures."""
        attempt = 0
        while True:
            attempt += 1
            t0 = time.monotonic()
            try:
                result = await asyncio.wait_for(asyncio.to_thread(fn), timeout=DB_OPERATION_TIMEOUT)
            except Exception as e:
                self._errors += 1
                if attempt >= DB_RETRY_ATTEMPTS or not _is_transient(e):
                    if isinstance(e, asyncio.TimeoutError):
                        raise RuntimeError(f"DB {label} timed out after {DB_OPERATION_TIMEOUT}s") from e
                    raise
                delay = DB_RETRY_BASE_DELAY * 2 ** (attempt - 1)
                print(f"[DB] {label}: transient error ({attempt}/{DB_RETRY_ATTEMPTS}), "
                      f"retry in {delay:.1f}s: {e}")
                self._retries += 1
                await asyncio.sleep(delay)
                continue
            self._ops += 1
            self._latency_ms += (time.monotonic() - t0) * 1000
            return result

    # ------------------------------------------------------------------
    # Reads / insert
    # ------------------------------------------------------------------

    async def insert(self, order: Order) -> Order:
        row = order.to_row()
        result = await self._exec(
            lambda: self.client.table(self.table).insert(row).execute(),
            f"insert_order({order.id[:8]})",
        )
        return Order.from_row(result.data[0]) if result.data else order

    async def get(self, order_id: str) -> Optional[Order]:
        result = await self._exec(
            lambda: self.client.table(self.table).select("*").eq("id", order_id).limit(1).execute(),
            f"get_order({order_id[:8]})",
        )
        return Order.from_row(result.data[0]) if result.data else None

    async def next_needing_work(self) -> Optional[Order]:
        result = await self._exec(
            lambda: (
                self.client.table(self.table).select("*")
                .or_(NEEDS_WORK_FILTER)
                .order("created_at")
                .limit(1)
                .execute()
            ),
            "next_needing_work",
        )
        return Order.from_row(result.data[0]) if result.data else None

    # ------------------------------------------------------------------
    # Conditional update
    # ------------------------------------------------------------------

    async def _conditional_update(
        self, order_id: str, from_statuses: Iterable[str], changes: dict,
        null_field: Optional[str] = None,
    ) -> Optional[Order]:
        updates = dict(changes)
        for key in ("paid_amount_raw",):
            if updates.get(key) is not None:
                updates[key] = str(updates[key])
        statuses = sorted(from_statuses)

        def run():
            query = (
                self.client.table(self.table).update(updates)
                .eq("id", order_id)
                .in_("status", statuses)
            )
            if null_field:
                query = query.is_(null_field, "null")
            return query.execute()

        result = await self._exec(run, f"update_order({order_id[:8]})")
        return Order.from_row(result.data[0]) if result.data else None

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> dict:
        avg_lat = self._latency_ms / max(self._ops, 1)
        return {
            "operations": self._ops,
            "errors": self._errors,
            "retries": self._retries,
            "avg_latency_ms": round(avg_lat, 1),
        }
