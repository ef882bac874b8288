"""
Shared fakes: chain gateway, quote source, reserve, clock, settings.
No network; every external fact is set by the test.
"""

from typing import Dict, List, Optional

import pytest

from broker.amounts import ONE_TICKET
from broker.avnu.client import Quote
from broker.config import Settings
from broker.orders.model import AWAITING_PAYMENT, Order
from broker.starknet.gateway import FulfillmentResult
from broker.starknet.payment import PaymentVerification, pending
from broker.treasury.reserve import can_fulfill

TREASURY = "0x66be88c48b0d71d1bded275e211c2dde1ef1c078fd57ece1313f130bbc5b859"
PLAYER = "0x1234abcd"
START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeGateway:
    """Stands in for ChainGateway. Facts are dicts keyed by token / tx hash."""

    def __init__(self, treasury_address: str = TREASURY, has_signer: bool = True):
        self.treasury_address = treasury_address
        self.has_signer = has_signer
        self.balances: Dict[str, object] = {}
        self.verifications: Dict[str, PaymentVerification] = {}
        self.fulfillments: Dict[str, FulfillmentResult] = {}
        self.receipts: Dict[str, object] = {}
        self.submit_error: Optional[Exception] = None
        self.next_fulfill_hash = "0xf00d"

        self.verify_calls: List[tuple] = []
        self.submit_calls: List[tuple] = []
        self.swap_calls: List[tuple] = []
        self.wait_calls: List[str] = []

    async def get_token_balance(self, token_address, account=None, retries=2):
        value = self.balances.get(token_address, 0)
        if isinstance(value, Exception):
            raise value
        return value

    async def verify_payment(self, tx_hash, token_address, expected_sender, minimum_amount_raw):
        self.verify_calls.append((tx_hash, token_address, expected_sender, minimum_amount_raw))
        return self.verifications.get(tx_hash, pending("receipt_unavailable"))

    async def submit_buy_game(self, player_address, player_name, ticket_amount_raw=ONE_TICKET, max_retries=3):
        self.submit_calls.append((player_address, player_name))
        if self.submit_error is not None:
            raise self.submit_error
        return self.next_fulfill_hash

    async def wait_for_fulfillment(self, tx_hash, timeout_s):
        return self.fulfillments.get(tx_hash, FulfillmentResult(tx_hash=tx_hash, receipt_found=False))

    async def execute_swap(self, quote, slippage):
        self.swap_calls.append((quote, slippage))
        return f"0x5a{len(self.swap_calls)}"

    async def wait_for_tx(self, tx_hash, timeout_s):
        self.wait_calls.append(tx_hash)
        return self.receipts.get(tx_hash, {"execution_status": "SUCCEEDED", "finality_status": "ACCEPTED_ON_L2"})


class FakeQuotes:
    """best_quote() answers from a (sell, buy, side) table; side is 'buy' or 'sell'.

    A table value may be a Quote, an Exception, or a callable(amount) -> Quote.
    """

    def __init__(self):
        self.table: Dict[tuple, object] = {}
        self.calls: List[tuple] = []

    def set(self, sell, buy, side, value):
        self.table[(sell, buy, side)] = value

    async def best_quote(self, sell_token, buy_token, *, buy_amount=None, sell_amount=None, taker_address=None):
        side = "buy" if buy_amount is not None else "sell"
        amount = buy_amount if buy_amount is not None else sell_amount
        self.calls.append((sell_token, buy_token, side, amount))
        value = self.table.get((sell_token, buy_token, side))
        if value is None:
            raise RuntimeError(f"no quotes for {sell_token[:10]} -> {buy_token[:10]}")
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(amount)
        return value


class FakeReserve:
    """Reserve gate with a fixed ticket balance; counts restock triggers."""

    def __init__(self, tickets: int = 10, minimum: int = 5):
        self.balance = tickets * ONE_TICKET
        self.minimum = minimum
        self.restocks_scheduled = 0
        self.balance_checks = 0

    async def check_can_fulfill(self):
        self.balance_checks += 1
        return can_fulfill(self.balance, self.minimum), self.balance

    def schedule_restock(self):
        self.restocks_scheduled += 1
        return None


def make_quote(sell_amount: int, buy_amount: int = ONE_TICKET, sell_usd: Optional[float] = None,
               quote_id: str = "q-1") -> Quote:
    return Quote(
        quote_id=quote_id,
        sell_token_address="0xsell",
        buy_token_address="0xbuy",
        sell_amount=sell_amount,
        buy_amount=buy_amount,
        sell_amount_in_usd=sell_usd,
    )


@pytest.fixture
def settings():
    return Settings(
        starknet_rpc_url="http://localhost:5050",
        treasury_address=TREASURY,
        treasury_private_key="0x1",
        order_quote_ttl_seconds=300,
        order_fee_bps=300,
        fulfillment_wait_timeout_ms=10_000,
        ticket_reserve_target=50,
        ticket_reserve_minimum=5,
        restock_slippage=0.05,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def quotes():
    return FakeQuotes()


def make_order(order_id="o-1", created_at=START_MS, **overrides):
    fields = dict(
        id=order_id,
        created_at=created_at,
        updated_at=created_at,
        expires_at=created_at + 300_000,
        status=AWAITING_PAYMENT,
        dungeon_id="survivor",
        pay_token_symbol="USDC",
        pay_token_address="0x33068f6539f8e6e6b131e6b2b814e6c34a5224bc66947c47dab9dfee93b35fb",
        pay_token_decimals=6,
        required_amount_raw=1_030_000,
        quote_sell_amount_raw=1_000_000,
        recipient_address=PLAYER,
        player_name="alice",
    )
    fields.update(overrides)
    return Order(**fields)
