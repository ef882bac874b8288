"""
Chain gateway — treasury reads, payment verification, and signed
transactions on Starknet.

Everything the broker does on-chain goes through this class: ERC20
balance reads, receipt lookups, the approve+buy_game multicall that
mints a game, and AVNU swap execution during restock.

Hardened with:
  - Per-call RPC timeout (asyncio.wait_for)
  - Transient-error retry on balance reads (HTML / malformed JSON bodies)
  - Nonce-error retry with exponential backoff on submit
  - Bounded receipt polling (returns None on timeout, never raises)
  - Receipt lookup failures reported as pending, not failed
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, List, Optional

from starknet_py.cairo.felt import encode_shortstring
from starknet_py.hash.selector import get_selector_from_name
from starknet_py.net.account.account import Account
from starknet_py.net.client_models import Call
from starknet_py.net.full_node_client import FullNodeClient
from starknet_py.net.models import StarknetChainId
from starknet_py.net.signer.stark_curve_signer import KeyPair

from broker.amounts import ONE_TICKET
from broker.starknet.address import require_normalized_address
from broker.starknet.payment import PaymentVerification, evaluate_payment_receipt, pending
from broker.starknet.receipts import felt, parse_game_id, receipt_statuses
from broker.starknet.tokens import SURVIVOR_DUNGEON_ADDRESS, TICKET_TOKEN_ADDRESS

RPC_TIMEOUT_SEC = 30.0
RECEIPT_POLL_SEC = 2.0
POST_SUBMIT_DELAY_SEC = 2.0         # let the node see the new nonce
SUBMIT_MAX_RETRIES = 3
NONCE_BACKOFF_SEC = 1.0             # doubled per retry: 2s, 4s, 8s
BALANCE_RETRIES = 2                 # extra attempts
BALANCE_BACKOFF_SEC = 1.0           # times attempt number: 1s, 2s

MISSING_KEY_ERROR = "Missing STARKNET_TREASURY_PRIVATE_KEY"


@dataclass
class FulfillmentResult:
    tx_hash: str
    receipt_found: bool
    game_id: Optional[int] = None
    execution_status: Optional[str] = None
    finality_status: Optional[str] = None
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.execution_status == "SUCCEEDED"


def to_hex(value: Any) -> str:
    if isinstance(value, int):
        return hex(value)
    return str(value)


def _is_transient(err: Exception) -> bool:
    """Provider hiccups: HTML error pages, truncated JSON, timeouts, 5xx."""
    if isinstance(err, asyncio.TimeoutError):
        return True
    msg = str(err).lower()
    if "<html" in msg or "<!doctype" in msg or "json" in msg:
        return True
    return any(code in msg for code in ("502", "503", "504"))


def _is_nonce_error(err: Exception) -> bool:
    return "nonce" in str(err).lower()


def to_call(raw: dict) -> Call:
    """AVNU build call dict -> starknet-py Call."""
    return Call(
        to_addr=felt(raw["contractAddress"]),
        selector=get_selector_from_name(raw["entrypoint"]),
        calldata=[felt(x) for x in raw.get("calldata", [])],
    )


def buy_game_calls(player_address: str, player_name: str, ticket_amount_raw: int = ONE_TICKET) -> List[Call]:
    """approve(dungeon, amount) on the ticket token, then buy_game on the dungeon."""
    dungeon = felt(SURVIVOR_DUNGEON_ADDRESS)
    low = ticket_amount_raw & ((1 << 128) - 1)
    high = ticket_amount_raw >> 128
    approve = Call(
        to_addr=felt(TICKET_TOKEN_ADDRESS),
        selector=get_selector_from_name("approve"),
        calldata=[dungeon, low, high],
    )
    buy = Call(
        to_addr=dungeon,
        selector=get_selector_from_name("buy_game"),
        calldata=[
            0,                                  # payment type: ticket
            0,                                  # Option::Some
            encode_shortstring(player_name),
            felt(player_address),               # mint to
            0,                                  # soulbound: false
        ],
    )
    return [approve, buy]


class ChainGateway:
    """Starknet access for the treasury account."""

    def __init__(
        self,
        rpc_url: str,
        treasury_address: str,
        private_key: Optional[str] = None,
        avnu=None,
        client=None,
        chain=StarknetChainId.MAINNET,
        post_submit_delay: float = POST_SUBMIT_DELAY_SEC,
        poll_interval: float = RECEIPT_POLL_SEC,
    ):
        self.treasury_address = require_normalized_address(treasury_address, "treasury_address")
        self.client = client or FullNodeClient(node_url=rpc_url)
        self.avnu = avnu
        self._private_key = private_key
        self._chain = chain
        self._account: Optional[Account] = None
        self._post_submit_delay = post_submit_delay
        self._poll_interval = poll_interval

        # Metrics
        self._rpc_calls = 0
        self._rpc_errors = 0
        self._tx_count = 0
        self._tx_failures = 0

    @property
    def has_signer(self) -> bool:
        return bool(self._private_key)

    def _get_account(self) -> Account:
        if not self._private_key:
            raise RuntimeError(MISSING_KEY_ERROR)
        if self._account is None:
            self._account = Account(
                address=felt(self.treasury_address),
                client=self.client,
                key_pair=KeyPair.from_private_key(felt(self._private_key)),
                chain=self._chain,
            )
        return self._account

    async def _rpc(self, coro):
        self._rpc_calls += 1
        try:
            return await asyncio.wait_for(coro, timeout=RPC_TIMEOUT_SEC)
        except Exception:
            self._rpc_errors += 1
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_token_balance(
        self, token_address: str, account: Optional[str] = None, retries: int = BALANCE_RETRIES,
    ) -> int:
        """ERC20 balanceOf (uint256) for account, default the treasury."""
        owner = felt(account or self.treasury_address)
        call = Call(
            to_addr=felt(token_address),
            selector=get_selector_from_name("balanceOf"),
            calldata=[owner],
        )
        attempt = 0
        while True:
            try:
                result = await self._rpc(self.client.call_contract(call, block_number="latest"))
                low = result[0] if len(result) > 0 else 0
                high = result[1] if len(result) > 1 else 0
                return low + (high << 128)
            except Exception as e:
                if attempt >= retries or not _is_transient(e):
                    raise
                attempt += 1
                print(f"[CHAIN] Balance read hiccup for {token_address[:10]}... "
                      f"(attempt {attempt}/{retries}): {e}")
                await asyncio.sleep(BALANCE_BACKOFF_SEC * attempt)

    async def get_receipt(self, tx_hash: str):
        return await self._rpc(self.client.get_transaction_receipt(tx_hash))

    async def verify_payment(
        self,
        tx_hash: str,
        token_address: str,
        expected_sender: Optional[str],
        minimum_amount_raw: int,
    ) -> PaymentVerification:
        """Fetch the payment receipt and judge it. Lookup errors -> pending."""
        try:
            receipt = await self.get_receipt(tx_hash)
        except Exception as e:
            return pending(f"receipt_unavailable: {e}")
        return evaluate_payment_receipt(
            receipt, token_address, self.treasury_address, expected_sender, minimum_amount_raw,
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _execute(self, calls: List[Call], label: str, max_retries: int = SUBMIT_MAX_RETRIES) -> str:
        """Sign and send a multicall; retries nonce errors with 2^n backoff."""
        account = self._get_account()
        attempt = 0
        while True:
            try:
                resp = await self._rpc(account.execute_v3(calls=calls, auto_estimate=True))
                break
            except Exception as e:
                attempt += 1
                if not _is_nonce_error(e) or attempt > max_retries:
                    self._tx_failures += 1
                    raise
                backoff = NONCE_BACKOFF_SEC * 2 ** attempt
                print(f"[CHAIN] ⚠️  {label}: nonce error, retry {attempt}/{max_retries} in {backoff}s: {e}")
                await asyncio.sleep(backoff)

        self._tx_count += 1
        tx_hash = to_hex(resp.transaction_hash)
        print(f"[CHAIN] {label} submitted: {tx_hash}")
        if self._post_submit_delay > 0:
            await asyncio.sleep(self._post_submit_delay)
        return tx_hash

    async def submit_buy_game(
        self, player_address: str, player_name: str,
        ticket_amount_raw: int = ONE_TICKET, max_retries: int = SUBMIT_MAX_RETRIES,
    ) -> str:
        """Spend one ticket to mint a game for player_address. Returns tx hash."""
        player = require_normalized_address(player_address, "player_address")
        calls = buy_game_calls(player, player_name, ticket_amount_raw)
        return await self._execute(calls, f"buy_game({player[:10]}...)", max_retries)

    async def execute_swap(self, quote, slippage: float) -> str:
        """Build the AVNU multicall for quote and send it from the treasury."""
        if self.avnu is None:
            raise RuntimeError("execute_swap: no AVNU client configured")
        raw_calls = await self.avnu.build_swap_calls(quote.quote_id, self.treasury_address, slippage)
        calls = [to_call(c) for c in raw_calls]
        return await self._execute(calls, f"swap(quote {quote.quote_id[:8]})")

    async def wait_for_tx(self, tx_hash: str, timeout_s: float) -> Optional[Any]:
        """Poll until the receipt carries an execution status, or timeout (None)."""
        deadline = time.monotonic() + timeout_s
        while True:
            try:
                receipt = await self.get_receipt(tx_hash)
                if receipt_statuses(receipt).execution_status is not None:
                    return receipt
            except Exception:
                pass  # not accepted yet

            if time.monotonic() >= deadline:
                print(f"[CHAIN] ⚠️  No receipt for {tx_hash} after {timeout_s:.0f}s")
                return None
            await asyncio.sleep(self._poll_interval)

    async def wait_for_fulfillment(self, tx_hash: str, timeout_s: float) -> FulfillmentResult:
        receipt = await self.wait_for_tx(tx_hash, timeout_s)
        if receipt is None:
            return FulfillmentResult(tx_hash=tx_hash, receipt_found=False)
        status = receipt_statuses(receipt)
        return FulfillmentResult(
            tx_hash=tx_hash,
            receipt_found=True,
            game_id=parse_game_id(receipt) if status.succeeded else None,
            execution_status=status.execution_status,
            finality_status=status.finality_status,
            revert_reason=status.revert_reason,
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> dict:
        return {
            "treasury": self.treasury_address,
            "has_signer": self.has_signer,
            "rpc_calls": self._rpc_calls,
            "rpc_errors": self._rpc_errors,
            "tx_count": self._tx_count,
            "tx_failures": self._tx_failures,
        }

    def __repr__(self):
        return f"ChainGateway({self.treasury_address})"
