"""
Survivor Ticket Broker — Entry point.
Wires all components and runs the HTTP API and the order worker as
concurrent asyncio tasks.

Usage:
    python3 main.py              # Full service (API + worker)
    python3 main.py --smoke      # Smoke test only (connect + exit)
"""

import argparse
import asyncio
import signal
import sys

from aiohttp import web

from broker import background
from broker.api.routes import build_app
from broker.avnu.client import AvnuClient
from broker.config import load_settings, print_config_summary
from broker.db.client import SupabaseOrderStore, health_check, init_supabase
from broker.orders.lifecycle import OrderLifecycle
from broker.orders.store import InMemoryOrderStore
from broker.starknet.gateway import ChainGateway
from broker.treasury.reserve import TreasuryReserve
from broker.worker.loop import OrderWorker

SHUTDOWN_DRAIN_TIMEOUT = 30.0   # seconds to let background restocks finish


def build_store(settings):
    if settings.uses_supabase:
        client = init_supabase(settings.supabase_url, settings.supabase_key)
        return SupabaseOrderStore(client, settings.orders_table), client
    return InMemoryOrderStore(), None


async def smoke_test():
    """Smoke test: connect to RPC + Supabase, print status, exit."""
    print("=" * 50)
    print("  Survivor Ticket Broker — Smoke Test")
    print("=" * 50)
    print()
    settings = load_settings()
    print_config_summary(settings)
    print()

    print("[RPC] Connecting to Starknet...")
    gateway = ChainGateway(settings.starknet_rpc_url, settings.treasury_address, settings.treasury_private_key)
    try:
        chain_id = await gateway.client.get_chain_id()
        block = await gateway.client.get_block_number()
        print(f"[RPC] ✅ chain_id={chain_id} block_number={block}")
    except Exception as e:
        print(f"[RPC] ❌ Failed to connect: {e}", file=sys.stderr)
        sys.exit(1)

    print()
    print("[TREASURY] Reading ticket reserve...")
    reserve = TreasuryReserve(gateway, None, settings)
    try:
        status = await reserve.status()
    except Exception as e:
        print(f"[TREASURY] ❌ Balance read failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"[TREASURY] ✅ {status['treasuryAddress']}: {status['ticketBalance']} ticket(s), "
          f"canFulfillOrders={status['canFulfillOrders']}")

    if settings.uses_supabase:
        print()
        print("[DB] Connecting to Supabase...")
        sb = init_supabase(settings.supabase_url, settings.supabase_key)
        ok = await health_check(sb, settings.orders_table)
        print(f"[DB] {'✅ supabase ok' if ok else '❌ health check failed'}")

    print()
    print("=" * 50)
    print("  ✅ SMOKE TEST PASSED")
    print(f"  Chain: {chain_id} | Block: {block}")
    print(f"  Treasury: {settings.treasury_address}")
    print("=" * 50)


async def run_service():
    """Full service: HTTP API + order worker."""
    print("=" * 50)
    print("  Survivor Ticket Broker — Starting")
    print("=" * 50)
    print()
    settings = load_settings()
    print_config_summary(settings)
    print()

    # 1. Order store
    store, sb_client = build_store(settings)
    if sb_client is not None:
        ok = await health_check(sb_client, settings.orders_table)
        print(f"[INIT] {'✅' if ok else '⚠️ '} Supabase store ({settings.orders_table})")
    else:
        print("[INIT] ⚠️  In-memory order store, orders are lost on restart")

    # 2. Chain + quotes
    avnu = AvnuClient(settings.avnu_api_url)
    gateway = ChainGateway(
        settings.starknet_rpc_url,
        settings.treasury_address,
        settings.treasury_private_key,
        avnu=avnu,
    )
    print(f"[INIT] ✅ Gateway: {gateway.treasury_address} "
          f"({'signer loaded' if gateway.has_signer else 'read-only'})")

    # 3. Core
    reserve = TreasuryReserve(gateway, avnu, settings)
    lifecycle = OrderLifecycle(store, gateway, avnu, reserve, settings)
    worker = OrderWorker(
        store, lifecycle, reserve,
        poll_interval_ms=settings.worker_poll_interval_ms,
        restock_check_interval_ms=settings.restock_check_interval_ms,
    )

    # 4. HTTP
    runner = web.AppRunner(build_app(lifecycle, reserve))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", settings.port)
    await site.start()
    print(f"[INIT] ✅ API listening on :{settings.port}")

    # 5. Signals stop the worker; in-flight reconcile finishes
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            pass  # Windows

    print()
    print("=" * 50)
    print("  Survivor Ticket Broker — Running")
    print("=" * 50)
    print("  Ctrl+C to stop")
    print()

    try:
        await worker.run()
    except asyncio.CancelledError:
        pass
    finally:
        print("\n[BROKER] Shutting down...")
        worker.stop()
        await runner.cleanup()
        if background.pending():
            print(f"[BROKER] Waiting on {background.pending()} background task(s)...")
        await background.drain(SHUTDOWN_DRAIN_TIMEOUT)
        await avnu.close()
        print("[BROKER] Stopped.")


def main():
    parser = argparse.ArgumentParser(description="Survivor Ticket Broker")
    parser.add_argument("--smoke", action="store_true", help="Smoke test only (connect + exit)")
    args = parser.parse_args()

    try:
        if args.smoke:
            asyncio.run(smoke_test())
        else:
            asyncio.run(run_service())
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == "__main__":
    main()
