"""
OrderWorker — timer-driven poller that reconciles one order per tick.

Hardened with:
  - Busy gate: a tick that finds the previous one still running is skipped
  - Restock check on its own interval, fired without awaiting
  - Eager first tick at startup
  - Tick-level guard so a store failure never stops the loop
  - Graceful stop: no new ticks, in-flight tick allowed to finish
"""

import asyncio
import time
from typing import Callable, Optional, Set

from broker.orders.model import now_ms

METRICS_LOG_INTERVAL = 120.0    # log aggregate metrics every 2 min


def _component_metrics(component) -> dict:
    if component is not None and hasattr(component, "metrics"):
        return component.metrics()
    return {}


class OrderWorker:
    """Single-threaded order scheduler. Only one reconcile runs at a time."""

    def __init__(
        self,
        store,
        lifecycle,
        reserve,
        poll_interval_ms: int = 2000,
        restock_check_interval_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.reserve = reserve
        self.poll_interval_ms = poll_interval_ms
        self.restock_check_interval_ms = restock_check_interval_ms
        self._clock = clock

        self._running = False
        self._busy = False
        self._stop_event: Optional[asyncio.Event] = None
        self._inflight: Set[asyncio.Task] = set()
        self._last_restock_check: Optional[int] = None
        self._last_metrics_log = 0.0

        # Tick metrics
        self._tick_count = 0
        self._ticks_skipped = 0
        self._tick_errors = 0
        self._orders_reconciled = 0
        self._restock_checks = 0
        self._total_tick_ms = 0.0
        self._max_tick_ms = 0.0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def busy(self) -> bool:
        return self._busy

    async def tick(self) -> bool:
        """One scheduling step. Returns True if an order was reconciled."""
        if self._busy:
            self._ticks_skipped += 1
            return False

        now = self._clock()
        if (self._last_restock_check is None
                or now - self._last_restock_check >= self.restock_check_interval_ms):
            self._last_restock_check = now
            self._restock_checks += 1
            self.reserve.schedule_restock()

        self._busy = True
        t0 = time.monotonic()
        try:
            order = await self.store.next_needing_work()
            if order is None:
                return False
            before = order.status
            after = await self.lifecycle.reconcile(order)
            self._orders_reconciled += 1
            if after is not None and after.status != before:
                print(f"[WORKER] {order.id[:8]}: {before} -> {after.status}")
            return True
        except Exception as e:
            self._tick_errors += 1
            print(f"[WORKER] Tick error: {e}")
            return False
        finally:
            self._busy = False
            duration_ms = (time.monotonic() - t0) * 1000
            self._tick_count += 1
            self._total_tick_ms += duration_ms
            if duration_ms > self._max_tick_ms:
                self._max_tick_ms = duration_ms

    def _launch_tick(self):
        task = asyncio.create_task(self.tick(), name="worker_tick")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def run(self):
        """Tick now, then every poll interval, until stop()."""
        self._running = True
        self._stop_event = asyncio.Event()
        interval = self.poll_interval_ms / 1000
        print(f"[WORKER] Started, polling every {interval:.1f}s, "
              f"restock check every {self.restock_check_interval_ms / 1000:.0f}s")

        while self._running:
            self._launch_tick()
            self._maybe_log_metrics()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        print("[WORKER] Stopped.")

    def stop(self):
        """Stop scheduling ticks. Safe to call from a signal handler."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _maybe_log_metrics(self):
        now = time.monotonic()
        if self._last_metrics_log == 0.0:
            self._last_metrics_log = now
            return
        if now - self._last_metrics_log < METRICS_LOG_INTERVAL:
            return
        self._last_metrics_log = now
        self._log_metrics()

    def _log_metrics(self):
        """Log worker counters plus the chain, quote, store and reserve components."""
        m = self.metrics()
        chain, quotes, db, reserve = m["chain_metrics"], m["quote_metrics"], m["store_metrics"], m["reserve_metrics"]
        print(f"[WORKER] Metrics: ticks={m['ticks']} skipped={m['ticks_skipped']} "
              f"errors={m['tick_errors']} reconciled={m['orders_reconciled']} "
              f"avg={m['avg_tick_ms']:.0f}ms max={m['max_tick_ms']:.0f}ms")
        print(f"[WORKER]   chain: rpc={chain.get('rpc_calls', 0)} rpc_errors={chain.get('rpc_errors', 0)} "
              f"tx={chain.get('tx_count', 0)} tx_failures={chain.get('tx_failures', 0)} | "
              f"avnu: quotes={quotes.get('quote_count', 0)} builds={quotes.get('build_count', 0)} "
              f"errors={quotes.get('errors', 0)}")
        print(f"[WORKER]   store: ops={db.get('operations', 0)} errors={db.get('errors', 0)} "
              f"retries={db.get('retries', 0)} | "
              f"restock: runs={reserve.get('runs', 0)} failures={reserve.get('failures', 0)} "
              f"active={reserve.get('isRestocking', False)}")

    def metrics(self) -> dict:
        avg_tick = (self._total_tick_ms / max(self._tick_count, 1))
        return {
            "running": self._running,
            "ticks": self._tick_count,
            "ticks_skipped": self._ticks_skipped,
            "tick_errors": self._tick_errors,
            "orders_reconciled": self._orders_reconciled,
            "restock_checks": self._restock_checks,
            "avg_tick_ms": round(avg_tick, 1),
            "max_tick_ms": round(self._max_tick_ms, 1),
            "chain_metrics": _component_metrics(getattr(self.lifecycle, "gateway", None)),
            "quote_metrics": _component_metrics(getattr(self.lifecycle, "quotes", None)),
            "store_metrics": _component_metrics(self.store),
            "reserve_metrics": _component_metrics(self.reserve),
        }
