"""
Order lifecycle — createOrder, payment ingestion, and the per-tick
reconcile step that moves one order one step forward.

  awaiting_payment -> paid | expired | failed
  paid             -> fulfilling
  fulfilling       -> fulfilled | failed

Business-rule failures are written to the order (status=failed,
last_error). Only validation, lookup and conflict problems raise.
reconcile() never raises: unexpected errors stamp last_error and leave
status alone so the next tick retries from the same state.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from broker.amounts import ONE_TICKET, apply_fee_bps
from broker.errors import (
    InvalidAddress,
    InvalidRequest,
    OrderNotFound,
    PaymentConflict,
    QuoteUnavailable,
)
from broker.orders.model import (
    AWAITING_PAYMENT,
    FULFILLING,
    PAID,
    Order,
    new_order_id,
    now_ms,
)
from broker.orders.validators import validate_create_order, validate_submit_payment
from broker.starknet.address import normalize_address
from broker.starknet.gateway import MISSING_KEY_ERROR
from broker.starknet.payment import FAILED as VERIFY_FAILED
from broker.starknet.payment import PENDING as VERIFY_PENDING
from broker.starknet.payment import PaymentVerification
from broker.starknet.tokens import DEFAULT_DUNGEON_ID, PAY_TOKENS, TICKET_TOKEN_ADDRESS

# A fulfilling order with no tx hash this long after its last write is abandoned
FULFILLMENT_RETRY_WINDOW_MS = 10 * 60 * 1000

# Outcomes of record_payment_submission
OUTCOME_VERIFIED = "verified"
OUTCOME_FAILED = "failed"
OUTCOME_PENDING = "pending"
OUTCOME_EXPIRED = "expired"
OUTCOME_UNCHANGED = "unchanged"


@dataclass
class PaymentSubmission:
    order: Order
    outcome: str
    verification: Optional[PaymentVerification] = None


class OrderLifecycle:
    """Decision logic for orders. One instance per process."""

    def __init__(self, store, gateway, quotes, reserve, settings, clock: Callable[[], int] = now_ms):
        self.store = store
        self.gateway = gateway
        self.quotes = quotes
        self.reserve = reserve
        self.treasury_address = gateway.treasury_address
        self.quote_ttl_ms = settings.order_quote_ttl_seconds * 1000
        self.fee_bps = settings.order_fee_bps
        self.fulfillment_timeout_s = settings.fulfillment_wait_timeout_ms / 1000
        self._clock = clock

    def _now(self, order: Optional[Order] = None) -> int:
        """Wall clock, never behind the order's last write."""
        now = self._clock()
        if order is not None and order.updated_at > now:
            return order.updated_at
        return now

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_order(self, req: dict) -> Order:
        """Quote one ticket in the pay token, add the fee, persist awaiting_payment."""
        valid, reason = validate_create_order(req)
        if not valid:
            raise InvalidRequest(reason)

        recipient = normalize_address(req["recipientAddress"])
        if not recipient:
            raise InvalidAddress(f"Invalid recipientAddress: {req['recipientAddress']}")

        token = PAY_TOKENS[req["payToken"]]
        try:
            quote = await self.quotes.best_quote(
                token.address, TICKET_TOKEN_ADDRESS, buy_amount=ONE_TICKET,
            )
        except Exception as e:
            print(f"[ORDERS] Quote failed for {token.symbol}: {e}")
            raise QuoteUnavailable(f"No quote for {token.symbol}") from e

        now = self._clock()
        order = Order(
            id=new_order_id(),
            created_at=now,
            updated_at=now,
            expires_at=now + self.quote_ttl_ms,
            status=AWAITING_PAYMENT,
            dungeon_id=req.get("dungeonId", DEFAULT_DUNGEON_ID),
            pay_token_symbol=token.symbol,
            pay_token_address=token.address,
            pay_token_decimals=token.decimals,
            required_amount_raw=apply_fee_bps(quote.sell_amount, self.fee_bps),
            quote_sell_amount_raw=quote.sell_amount,
            recipient_address=recipient,
            player_name=req["playerName"],
        )
        order = await self.store.insert(order)
        print(f"[ORDERS] Created {order.id[:8]}: {order.required_amount_raw} raw "
              f"{token.symbol} for {recipient[:10]}...")
        return order

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    # ------------------------------------------------------------------
    # Payment submission
    # ------------------------------------------------------------------

    async def record_payment_submission(self, order_id: str, tx_hash: str) -> PaymentSubmission:
        """Idempotently attach a payment tx hash and try to verify it."""
        valid, reason = validate_submit_payment({"txHash": tx_hash})
        if not valid:
            raise InvalidRequest(reason)
        tx_hash = tx_hash.strip()

        order = await self.get_order(order_id)
        now = self._now(order)

        if order.status == AWAITING_PAYMENT and order.is_expired(now):
            order = await self._expire(order, now)
            return PaymentSubmission(order, OUTCOME_EXPIRED)

        if order.status != AWAITING_PAYMENT:
            return PaymentSubmission(order, OUTCOME_UNCHANGED)

        if order.payment_tx_hash and order.payment_tx_hash != tx_hash:
            raise PaymentConflict(
                "payment_tx_hash_mismatch",
                details={"existing": order.payment_tx_hash, "submitted": tx_hash},
            )

        if not order.payment_tx_hash:
            updated = await self.store.set_payment_tx_hash(order.id, tx_hash, now)
            if updated is None:
                # Raced with another write; re-read and judge again
                current = await self.get_order(order.id)
                if current.payment_tx_hash and current.payment_tx_hash != tx_hash:
                    raise PaymentConflict(
                        "payment_tx_hash_mismatch",
                        details={"existing": current.payment_tx_hash, "submitted": tx_hash},
                    )
                return PaymentSubmission(current, OUTCOME_UNCHANGED)
            order = updated

        order, verification = await self._verify_and_apply(order)
        if verification.status == VERIFY_PENDING:
            outcome = OUTCOME_PENDING
        elif verification.status == VERIFY_FAILED:
            outcome = OUTCOME_FAILED
        else:
            outcome = OUTCOME_VERIFIED
        return PaymentSubmission(order, outcome, verification)

    async def _expire(self, order: Order, now: int) -> Order:
        updated = await self.store.mark_expired(order.id, now)
        if updated is None:
            return await self.get_order(order.id)
        print(f"[ORDERS] {order.id[:8]} expired")
        return updated

    async def _verify_and_apply(self, order: Order):
        verification = await self.gateway.verify_payment(
            order.payment_tx_hash,
            order.pay_token_address,
            order.recipient_address,
            order.required_amount_raw,
        )
        if verification.status == VERIFY_PENDING:
            return order, verification

        now = self._now(order)
        if verification.status == VERIFY_FAILED:
            updated = await self.store.mark_failed(order.id, verification.error, now)
            print(f"[ORDERS] {order.id[:8]} payment rejected: {verification.error}")
        else:
            updated = await self.store.mark_paid(order.id, verification.amount, now)
            if updated is not None:
                print(f"[ORDERS] {order.id[:8]} paid ({verification.amount} raw {order.pay_token_symbol})")
                self.reserve.schedule_restock()

        if updated is None:
            updated = await self.get_order(order.id)
        return updated, verification

    # ------------------------------------------------------------------
    # Reconcile (one step per worker tick)
    # ------------------------------------------------------------------

    async def reconcile(self, order: Order) -> Order:
        """Advance order by one step. Never raises."""
        try:
            return await self._step(order)
        except Exception as e:
            message = str(e) or type(e).__name__
            print(f"[ORDERS] ⚠️  Reconcile error on {order.id[:8]}: {message}")
            try:
                touched = await self.store.touch_error(order.id, message, self._now(order))
            except Exception as store_err:
                print(f"[ORDERS] Could not record error on {order.id[:8]}: {store_err}")
                return order
            return touched or order

    async def _step(self, order: Order) -> Order:
        if order.is_terminal:
            return order

        if order.status == AWAITING_PAYMENT:
            if order.is_expired(self._now(order)):
                return await self._expire(order, self._now(order))
            if not order.payment_tx_hash:
                return order
            order, _ = await self._verify_and_apply(order)
            return order

        if order.status == PAID or (order.status == FULFILLING and not order.fulfill_tx_hash):
            return await self._submit_fulfillment(order)

        if order.status == FULFILLING and order.game_id is None:
            return await self._confirm_fulfillment(order)

        return order

    async def _submit_fulfillment(self, order: Order) -> Order:
        if not self.gateway.has_signer:
            touched = await self.store.touch_error(order.id, MISSING_KEY_ERROR, self._now(order))
            return touched or order

        now = self._now(order)
        if order.status == FULFILLING:
            if now - order.updated_at > FULFILLMENT_RETRY_WINDOW_MS:
                print(f"[ORDERS] ⚠️  {order.id[:8]} stuck in fulfilling, giving up")
                failed = await self.store.mark_failed(
                    order.id, "fulfillment_timeout_max_retries_exceeded", now,
                )
                return failed or await self.get_order(order.id)
            # No recorded tx hash: a previous submission may still have landed
            print(f"[ORDERS] ⚠️  {order.id[:8]} resubmitting buy_game (no fulfill tx recorded)")
        else:
            marked = await self.store.mark_fulfilling(order.id, now)
            if marked is None:
                return await self.get_order(order.id)
            order = marked

        allowed, balance = await self.reserve.check_can_fulfill()
        if not allowed:
            print(f"[ORDERS] {order.id[:8]} blocked: reserve at {balance // ONE_TICKET} ticket(s)")
            failed = await self.store.mark_failed(order.id, "insufficient_ticket_balance", self._now(order))
            return failed or await self.get_order(order.id)

        self.reserve.schedule_restock()

        tx_hash = await self.gateway.submit_buy_game(order.recipient_address, order.player_name)
        updated = await self.store.set_fulfill_tx_hash(order.id, tx_hash, self._now(order))
        print(f"[ORDERS] {order.id[:8]} buy_game submitted: {tx_hash}")
        return updated or await self.get_order(order.id)

    async def _confirm_fulfillment(self, order: Order) -> Order:
        result = await self.gateway.wait_for_fulfillment(order.fulfill_tx_hash, self.fulfillment_timeout_s)
        if not result.receipt_found:
            return order

        now = self._now(order)
        if result.succeeded and result.game_id is not None:
            updated = await self.store.mark_fulfilled(order.id, result.game_id, now)
            print(f"[ORDERS] ✅ {order.id[:8]} fulfilled: game {result.game_id}")
            return updated or await self.get_order(order.id)

        if result.succeeded:
            error = "game_id_not_found"
        else:
            error = (
                result.revert_reason
                or (f"execution_{result.execution_status}" if result.execution_status else None)
                or "unknown_fulfillment_error"
            )
        updated = await self.store.mark_failed(order.id, error, now)
        print(f"[ORDERS] {order.id[:8]} fulfillment failed: {error}")
        return updated or await self.get_order(order.id)
