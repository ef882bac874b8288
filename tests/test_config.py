import pytest

from broker.config import DEFAULT_AVNU_API_URL, load_settings

from conftest import TREASURY

BASE = {"STARKNET_RPC_URL": "https://rpc.example/v0_8"}


def test_defaults():
    s = load_settings(dict(BASE))
    assert s.treasury_address == TREASURY
    assert s.port == 3000
    assert s.avnu_api_url == DEFAULT_AVNU_API_URL
    assert s.order_quote_ttl_seconds == 300
    assert s.order_fee_bps == 300
    assert s.fulfillment_wait_timeout_ms == 180_000
    assert not s.has_signer
    assert not s.uses_supabase
    assert any("PRIVATE_KEY" in w for w in s.warnings)


def test_missing_rpc_url_exits():
    with pytest.raises(SystemExit):
        load_settings({})


def test_bad_treasury_exits():
    with pytest.raises(SystemExit):
        load_settings({**BASE, "STARKNET_TREASURY_ADDRESS": "not-hex"})


def test_bad_private_key_exits():
    with pytest.raises(SystemExit):
        load_settings({**BASE, "STARKNET_TREASURY_PRIVATE_KEY": "0xzz"})


def test_supabase_url_without_key_exits():
    with pytest.raises(SystemExit):
        load_settings({**BASE, "SUPABASE_URL": "https://x.supabase.co"})


def test_out_of_range_values_are_clamped():
    s = load_settings({**BASE, "ORDER_FEE_BPS": "20000", "WORKER_POLL_INTERVAL_MS": "10"})
    assert s.order_fee_bps == 10_000
    assert s.worker_poll_interval_ms == 250
    assert any("ORDER_FEE_BPS" in w for w in s.warnings)


def test_full_config():
    s = load_settings({
        **BASE,
        "STARKNET_TREASURY_ADDRESS": "0x00ABC",
        "STARKNET_TREASURY_PRIVATE_KEY": "0x1234",
        "SUPABASE_URL": "https://x.supabase.co",
        "SUPABASE_KEY": "service-key",
        "AVNU_API_URL": "https://avnu.example/",
        "TICKET_RESERVE_MINIMUM": "60",
    })
    assert s.treasury_address == "0xabc"
    assert s.has_signer
    assert s.uses_supabase
    assert s.avnu_api_url == "https://avnu.example"
    assert any("restock never lifts the floor" in w for w in s.warnings)
