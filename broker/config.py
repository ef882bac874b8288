"""
Broker configuration — loads env vars, validates, fails fast.

Hardened with:
  - Address normalization for the treasury (rejects non-hex felts)
  - Range validation for numeric params (clamped with a warning)
  - Private key format validation (hex felt)
  - URL validation
  - Startup warnings for degraded configs (no signer, in-memory store)
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv

from broker.starknet.address import normalize_address

_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_TREASURY_ADDRESS = "0x066bE88C48b0D71d1Bded275e211C2dDe1EF1c078Fd57ece1313f130Bbc5b859"
DEFAULT_AVNU_API_URL = "https://starknet.api.avnu.fi"


def load_env_files() -> None:
    """Load .env then .env.local from the project root; real env vars win."""
    for name in (".env", ".env.local"):
        path = _ROOT / name
        if path.exists():
            load_dotenv(path, override=False)


def _fatal(msg: str) -> None:
    print(f"FATAL: {msg}", file=sys.stderr)
    sys.exit(1)


def _require(env: Mapping[str, str], name: str) -> str:
    """Get a required env var or exit with a clear error."""
    val = (env.get(name) or "").strip()
    if not val:
        print(f"FATAL: missing required env var: {name}", file=sys.stderr)
        print(f"  Copy .env.example to .env and fill in the values.", file=sys.stderr)
        sys.exit(1)
    return val


def _optional(env: Mapping[str, str], name: str, default: str = "") -> str:
    return (env.get(name) or default).strip()


def _validate_url(url: str, label: str) -> str:
    """Validate a URL starts with http:// or https://."""
    if not url.startswith(("http://", "https://")):
        _fatal(f"{label} must start with http:// or https://: {url}")
    return url


def _validate_private_key(key: str, label: str) -> str:
    """Validate a Stark private key: non-empty hex, with or without 0x prefix."""
    raw = key[2:] if key.lower().startswith("0x") else key
    if not raw or len(raw) > 64:
        _fatal(f"{label} must be 1-64 hex chars (got {len(raw)})")
    try:
        int(raw, 16)
    except ValueError:
        _fatal(f"{label} contains invalid hex")
    return key


def _int_range(warnings: List[str], name: str, raw: str, low: int, high: int) -> int:
    """Parse an int and clamp to [low, high] with a warning."""
    try:
        val = int(raw)
    except ValueError:
        _fatal(f"{name} must be an integer, got: {raw}")
    if val < low or val > high:
        clamped = max(low, min(val, high))
        warnings.append(f"{name}={val} out of range [{low},{high}], clamped to {clamped}")
        return clamped
    return val


def _float_range(warnings: List[str], name: str, raw: str, low: float, high: float) -> float:
    try:
        val = float(raw)
    except ValueError:
        _fatal(f"{name} must be a number, got: {raw}")
    if val < low or val > high:
        clamped = max(low, min(val, high))
        warnings.append(f"{name}={val} out of range [{low},{high}], clamped to {clamped}")
        return clamped
    return val


@dataclass
class Settings:
    """Validated runtime settings. Tests build this directly."""
    starknet_rpc_url: str
    treasury_address: str
    treasury_private_key: Optional[str] = None
    port: int = 3000
    avnu_api_url: str = DEFAULT_AVNU_API_URL
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    orders_table: str = "orders"
    order_quote_ttl_seconds: int = 300
    order_fee_bps: int = 300
    worker_poll_interval_ms: int = 2000
    restock_check_interval_ms: int = 60_000
    fulfillment_wait_timeout_ms: int = 180_000
    ticket_reserve_target: int = 50
    ticket_reserve_minimum: int = 5
    restock_slippage: float = 0.05
    warnings: List[str] = field(default_factory=list)

    @property
    def has_signer(self) -> bool:
        return bool(self.treasury_private_key)

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read and validate settings from the environment (exits on fatal errors)."""
    if env is None:
        load_env_files()
        env = os.environ
    warnings: List[str] = []

    # === Starknet ===
    rpc_url = _validate_url(_require(env, "STARKNET_RPC_URL"), "STARKNET_RPC_URL")
    treasury_raw = _optional(env, "STARKNET_TREASURY_ADDRESS", DEFAULT_TREASURY_ADDRESS)
    treasury = normalize_address(treasury_raw)
    if not treasury:
        _fatal(f"STARKNET_TREASURY_ADDRESS is not a valid address: {treasury_raw}")

    private_key = _optional(env, "STARKNET_TREASURY_PRIVATE_KEY") or None
    if private_key:
        _validate_private_key(private_key, "STARKNET_TREASURY_PRIVATE_KEY")
    else:
        warnings.append("No STARKNET_TREASURY_PRIVATE_KEY: fulfillment and restock disabled")

    # === AVNU ===
    avnu_url = _optional(env, "AVNU_API_URL", DEFAULT_AVNU_API_URL).rstrip("/")
    _validate_url(avnu_url, "AVNU_API_URL")

    # === Supabase (optional) ===
    supabase_url = _optional(env, "SUPABASE_URL") or None
    supabase_key = _optional(env, "SUPABASE_KEY") or None
    if supabase_url:
        _validate_url(supabase_url, "SUPABASE_URL")
        if not supabase_key:
            _fatal("SUPABASE_URL is set but SUPABASE_KEY is missing")
    else:
        warnings.append("No SUPABASE_URL: orders kept in memory (lost on restart)")

    # === Tuning (with range validation) ===
    settings = Settings(
        starknet_rpc_url=rpc_url,
        treasury_address=treasury,
        treasury_private_key=private_key,
        port=_int_range(warnings, "PORT", _optional(env, "PORT", "3000"), 1, 65535),
        avnu_api_url=avnu_url,
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        orders_table=_optional(env, "ORDERS_TABLE", "orders"),
        order_quote_ttl_seconds=_int_range(
            warnings, "ORDER_QUOTE_TTL_SECONDS", _optional(env, "ORDER_QUOTE_TTL_SECONDS", "300"), 1, 86_400),
        order_fee_bps=_int_range(
            warnings, "ORDER_FEE_BPS", _optional(env, "ORDER_FEE_BPS", "300"), 0, 10_000),
        worker_poll_interval_ms=_int_range(
            warnings, "WORKER_POLL_INTERVAL_MS", _optional(env, "WORKER_POLL_INTERVAL_MS", "2000"), 250, 600_000),
        restock_check_interval_ms=_int_range(
            warnings, "RESTOCK_CHECK_INTERVAL_MS", _optional(env, "RESTOCK_CHECK_INTERVAL_MS", "60000"), 1000, 86_400_000),
        fulfillment_wait_timeout_ms=_int_range(
            warnings, "FULFILLMENT_WAIT_TIMEOUT_MS", _optional(env, "FULFILLMENT_WAIT_TIMEOUT_MS", "180000"), 10_000, 3_600_000),
        ticket_reserve_target=_int_range(
            warnings, "TICKET_RESERVE_TARGET", _optional(env, "TICKET_RESERVE_TARGET", "50"), 1, 100_000),
        ticket_reserve_minimum=_int_range(
            warnings, "TICKET_RESERVE_MINIMUM", _optional(env, "TICKET_RESERVE_MINIMUM", "5"), 0, 100_000),
        restock_slippage=_float_range(
            warnings, "RESTOCK_SLIPPAGE", _optional(env, "RESTOCK_SLIPPAGE", "0.05"), 0.0, 1.0),
        warnings=warnings,
    )

    if settings.ticket_reserve_minimum >= settings.ticket_reserve_target:
        warnings.append(
            f"TICKET_RESERVE_MINIMUM={settings.ticket_reserve_minimum} >= "
            f"TICKET_RESERVE_TARGET={settings.ticket_reserve_target}, restock never lifts the floor"
        )
    return settings


def print_config_summary(settings: Settings) -> None:
    """Print a non-sensitive config summary for startup verification."""
    print("--- Broker Config ---")
    print(f"  RPC:            {settings.starknet_rpc_url[:40]}...")
    print(f"  Treasury:       {settings.treasury_address}")
    if settings.treasury_private_key:
        # Show only first/last chars of the key for safety
        key = settings.treasury_private_key
        print(f"  Signer key:     {key[:6]}...{key[-4:]}")
    else:
        print(f"  Signer key:     (none)")
    print(f"  AVNU:           {settings.avnu_api_url}")
    print(f"  Store:          {'supabase:' + settings.orders_table if settings.uses_supabase else 'in-memory'}")
    print(f"  Port:           {settings.port}")
    print(f"  Quote TTL:      {settings.order_quote_ttl_seconds}s")
    print(f"  Fee:            {settings.order_fee_bps} bps")
    print(f"  Poll interval:  {settings.worker_poll_interval_ms}ms")
    print(f"  Restock check:  {settings.restock_check_interval_ms}ms")
    print(f"  Confirm wait:   {settings.fulfillment_wait_timeout_ms}ms")
    print(f"  Reserve:        target={settings.ticket_reserve_target} "
          f"minimum={settings.ticket_reserve_minimum} slippage={settings.restock_slippage}")
    if settings.warnings:
        print(f"  ⚠️  {len(settings.warnings)} config warning(s):")
        for w in settings.warnings:
            print(f"    - {w}")
    print("-" * 21)
