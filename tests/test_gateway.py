from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from starknet_py.cairo.felt import encode_shortstring
from starknet_py.hash.selector import get_selector_from_name

from broker.amounts import ONE_TICKET
from broker.starknet import gateway as gateway_mod
from broker.starknet.gateway import MISSING_KEY_ERROR, ChainGateway, buy_game_calls, to_call
from broker.starknet.payment import PENDING, VERIFIED
from broker.starknet.tokens import SURVIVOR_DUNGEON_ADDRESS, TICKET_TOKEN_ADDRESS

from conftest import PLAYER, TREASURY

TOKEN = "0x33068f6539f8e6e6b131e6b2b814e6c34a5224bc66947c47dab9dfee93b35fb"


def _gateway(private_key="0x1", avnu=None):
    return ChainGateway(
        "http://rpc.invalid", TREASURY, private_key,
        avnu=avnu, client=MagicMock(), post_submit_delay=0, poll_interval=0,
    )


def _with_account(gw, execute):
    gw._account = MagicMock()
    gw._account.execute_v3 = execute
    return gw


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(gateway_mod, "BALANCE_BACKOFF_SEC", 0)
    monkeypatch.setattr(gateway_mod, "NONCE_BACKOFF_SEC", 0)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_balance_combines_uint256_halves():
    gw = _gateway()
    gw.client.call_contract = AsyncMock(return_value=[5, 1])
    assert await gw.get_token_balance(TOKEN) == 5 + 2 ** 128

    call = gw.client.call_contract.call_args.args[0]
    assert call.selector == get_selector_from_name("balanceOf")
    assert call.calldata == [int(TREASURY, 16)]


@pytest.mark.asyncio
async def test_balance_retries_transient_errors():
    gw = _gateway()
    gw.client.call_contract = AsyncMock(side_effect=[
        RuntimeError("<html>502 Bad Gateway</html>"),
        [7, 0],
    ])
    assert await gw.get_token_balance(TOKEN) == 7
    assert gw.client.call_contract.await_count == 2
    assert gw.metrics()["rpc_errors"] == 1


@pytest.mark.asyncio
async def test_balance_does_not_retry_contract_errors():
    gw = _gateway()
    gw.client.call_contract = AsyncMock(side_effect=RuntimeError("Contract not found"))
    with pytest.raises(RuntimeError):
        await gw.get_token_balance(TOKEN)
    assert gw.client.call_contract.await_count == 1


@pytest.mark.asyncio
async def test_verify_payment_lookup_error_is_pending():
    gw = _gateway()
    gw.client.get_transaction_receipt = AsyncMock(side_effect=RuntimeError("Transaction hash not found"))
    result = await gw.verify_payment("0xabc", TOKEN, PLAYER, 100)
    assert result.status == PENDING
    assert result.reason.startswith("receipt_unavailable")


@pytest.mark.asyncio
async def test_verify_payment_matches_transfer():
    gw = _gateway()
    gw.client.get_transaction_receipt = AsyncMock(return_value={
        "execution_status": "SUCCEEDED",
        "finality_status": "ACCEPTED_ON_L2",
        "events": [{
            "from_address": TOKEN,
            "keys": [get_selector_from_name("Transfer"), int(PLAYER, 16), int(TREASURY, 16)],
            "data": [150, 0],
        }],
    })
    result = await gw.verify_payment("0xabc", TOKEN, PLAYER, 100)
    assert result.status == VERIFIED
    assert result.amount == 150


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

def test_buy_game_calls_shape():
    approve, buy = buy_game_calls(PLAYER, "alice")
    dungeon = int(SURVIVOR_DUNGEON_ADDRESS, 16)
    assert approve.to_addr == int(TICKET_TOKEN_ADDRESS, 16)
    assert approve.calldata == [dungeon, ONE_TICKET, 0]
    assert buy.to_addr == dungeon
    assert buy.selector == get_selector_from_name("buy_game")
    assert buy.calldata == [0, 0, encode_shortstring("alice"), int(PLAYER, 16), 0]


def test_to_call_from_avnu_dict():
    call = to_call({"contractAddress": "0x10", "entrypoint": "swap", "calldata": ["0x1", "2"]})
    assert call.to_addr == 16
    assert call.selector == get_selector_from_name("swap")
    assert call.calldata == [1, 2]


@pytest.mark.asyncio
async def test_submit_buy_game_returns_hex_hash():
    gw = _with_account(_gateway(), AsyncMock(return_value=SimpleNamespace(transaction_hash=0xabc)))
    tx_hash = await gw.submit_buy_game(PLAYER, "alice")
    assert tx_hash == "0xabc"
    calls = gw._account.execute_v3.call_args.kwargs["calls"]
    assert len(calls) == 2
    assert gw.metrics()["tx_count"] == 1


@pytest.mark.asyncio
async def test_submit_retries_nonce_errors():
    execute = AsyncMock(side_effect=[
        RuntimeError("Invalid transaction nonce"),
        SimpleNamespace(transaction_hash=0xdef),
    ])
    gw = _with_account(_gateway(), execute)
    assert await gw.submit_buy_game(PLAYER, "alice") == "0xdef"
    assert execute.await_count == 2


@pytest.mark.asyncio
async def test_submit_gives_up_after_max_retries():
    execute = AsyncMock(side_effect=RuntimeError("nonce too low"))
    gw = _with_account(_gateway(), execute)
    with pytest.raises(RuntimeError):
        await gw.submit_buy_game(PLAYER, "alice", max_retries=3)
    assert execute.await_count == 4  # first try + 3 retries
    assert gw.metrics()["tx_failures"] == 1


@pytest.mark.asyncio
async def test_submit_other_errors_not_retried():
    execute = AsyncMock(side_effect=RuntimeError("insufficient fee"))
    gw = _with_account(_gateway(), execute)
    with pytest.raises(RuntimeError):
        await gw.submit_buy_game(PLAYER, "alice")
    assert execute.await_count == 1


@pytest.mark.asyncio
async def test_submit_without_key_raises():
    gw = _gateway(private_key=None)
    assert not gw.has_signer
    with pytest.raises(RuntimeError, match=MISSING_KEY_ERROR):
        await gw.submit_buy_game(PLAYER, "alice")


@pytest.mark.asyncio
async def test_execute_swap_builds_via_avnu():
    avnu = MagicMock()
    avnu.build_swap_calls = AsyncMock(return_value=[
        {"contractAddress": "0x10", "entrypoint": "approve", "calldata": ["0x1", "0x0", "0x0"]},
        {"contractAddress": "0x20", "entrypoint": "multi_route_swap", "calldata": []},
    ])
    gw = _with_account(_gateway(avnu=avnu), AsyncMock(return_value=SimpleNamespace(transaction_hash=0x5)))
    quote = SimpleNamespace(quote_id="quote-123456789")

    assert await gw.execute_swap(quote, 0.05) == "0x5"
    avnu.build_swap_calls.assert_awaited_once_with("quote-123456789", TREASURY, 0.05)
    assert len(gw._account.execute_v3.call_args.kwargs["calls"]) == 2


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_wait_for_tx_times_out_with_none():
    gw = _gateway()
    gw.client.get_transaction_receipt = AsyncMock(side_effect=RuntimeError("not found"))
    assert await gw.wait_for_tx("0xabc", 0) is None


@pytest.mark.asyncio
async def test_wait_for_tx_polls_until_execution_status():
    gw = _gateway()
    gw.client.get_transaction_receipt = AsyncMock(side_effect=[
        RuntimeError("not found"),
        {"finality_status": "RECEIVED"},
        {"execution_status": "SUCCEEDED", "finality_status": "ACCEPTED_ON_L2"},
    ])
    receipt = await gw.wait_for_tx("0xabc", 60)
    assert receipt["execution_status"] == "SUCCEEDED"
    assert gw.client.get_transaction_receipt.await_count == 3


@pytest.mark.asyncio
async def test_wait_for_fulfillment_extracts_game_id():
    gw = _gateway()
    gw.client.get_transaction_receipt = AsyncMock(return_value={
        "execution_status": "SUCCEEDED",
        "finality_status": "ACCEPTED_ON_L2",
        "events": [
            {"from_address": "0x1", "keys": [], "data": [1, 2]},
            {"from_address": "0x2", "keys": [], "data": [0, 77] + [0] * 12},
        ],
    })
    result = await gw.wait_for_fulfillment("0xabc", 5)
    assert result.receipt_found
    assert result.succeeded
    assert result.game_id == 77


@pytest.mark.asyncio
async def test_wait_for_fulfillment_reverted_has_no_game_id():
    gw = _gateway()
    gw.client.get_transaction_receipt = AsyncMock(return_value={
        "execution_status": "REVERTED",
        "revert_reason": "u256_sub Overflow",
        "events": [{"from_address": "0x2", "keys": [], "data": [0, 77] + [0] * 12}],
    })
    result = await gw.wait_for_fulfillment("0xabc", 5)
    assert not result.succeeded
    assert result.game_id is None
    assert result.revert_reason == "u256_sub Overflow"
