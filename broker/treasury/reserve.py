"""
Treasury ticket reserve — fulfillment gate and single-flight restocking.

Restock path: (optional) sell the most valuable held token for LORDS,
then buy TICKET with LORDS, both through AVNU. Each swap is confirmed
before the next step starts.

Hardened with:
  - Single-flight guard claimed before the first await, released in finally
  - Re-quote of LORDS -> TICKET after the sell leg (prices move)
  - Bounded confirmation waits; unconfirmed or reverted swaps abort the run
  - Every outcome recorded in last_restock_result, never raised to callers
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from broker import background
from broker.amounts import ONE_TICKET, whole_tickets
from broker.orders.model import now_ms
from broker.starknet.receipts import receipt_statuses
from broker.starknet.tokens import LORDS, SELLABLE_TOKENS, TICKET_TOKEN_ADDRESS, PayToken

NO_SELLABLE_TOKEN_ERROR = "No token with sufficient balance to acquire LORDS"


def can_fulfill(balance_raw: int, minimum_reserve: int) -> bool:
    """True iff whole tickets held is strictly above the reserve floor."""
    return whole_tickets(balance_raw) > minimum_reserve


@dataclass
class RestockResult:
    success: bool = False
    tickets_bought: int = 0
    tx_hashes: List[str] = field(default_factory=list)
    token_used: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "ticketsBought": self.tickets_bought,
            "txHashes": list(self.tx_hashes),
            "tokenUsed": self.token_used,
            "error": self.error,
        }


class RestockError(RuntimeError):
    pass


class TreasuryReserve:
    """Process-wide reserve state. One instance per process, reset on start."""

    def __init__(self, gateway, quotes, settings, clock: Callable[[], int] = now_ms):
        self.gateway = gateway
        self.quotes = quotes
        self.target = settings.ticket_reserve_target
        self.minimum = settings.ticket_reserve_minimum
        self.slippage = settings.restock_slippage
        self.confirm_timeout_s = settings.fulfillment_wait_timeout_ms / 1000
        self._clock = clock

        self.is_restocking = False
        self.last_restock_attempt: Optional[int] = None
        self.last_restock_result: Optional[RestockResult] = None
        self._runs = 0
        self._failures = 0

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    async def ticket_balance(self) -> int:
        return await self.gateway.get_token_balance(TICKET_TOKEN_ADDRESS)

    async def check_can_fulfill(self) -> Tuple[bool, int]:
        balance = await self.ticket_balance()
        return can_fulfill(balance, self.minimum), balance

    # ------------------------------------------------------------------
    # Restock
    # ------------------------------------------------------------------

    def schedule_restock(self) -> Optional[asyncio.Task]:
        """Fire-and-forget restock_if_needed; failures go to the error sink."""
        if self.is_restocking or not self.gateway.has_signer:
            return None
        return background.spawn(self.restock_if_needed(), "restock")

    async def restock_if_needed(self) -> Optional[RestockResult]:
        """Top the reserve up to target. None means nothing was attempted."""
        if self.is_restocking or not self.gateway.has_signer:
            return None
        self.is_restocking = True
        result = RestockResult()
        try:
            attempted = await self._restock(result)
            if not attempted:
                return None
        except Exception as e:
            result.success = False
            result.error = str(e) or type(e).__name__
        finally:
            self.is_restocking = False

        self._runs += 1
        if result.success:
            print(f"[RESTOCK] ✅ Bought {result.tickets_bought} ticket(s) "
                  f"via {result.token_used or 'LORDS'}: {', '.join(result.tx_hashes)}")
        else:
            self._failures += 1
            print(f"[RESTOCK] ⚠️  Restock failed: {result.error}")
        self.last_restock_result = result
        return result

    async def _restock(self, result: RestockResult) -> bool:
        treasury = self.gateway.treasury_address

        current = whole_tickets(await self.ticket_balance())
        if current >= self.target:
            return False

        self.last_restock_attempt = self._clock()
        needed = self.target - current
        ticket_raw = needed * ONE_TICKET
        print(f"[RESTOCK] Reserve {current}/{self.target}, buying {needed} ticket(s)")

        lords_quote = await self.quotes.best_quote(
            LORDS.address, TICKET_TOKEN_ADDRESS, buy_amount=ticket_raw, taker_address=treasury,
        )
        lords_needed = lords_quote.sell_amount
        lords_balance = await self.gateway.get_token_balance(LORDS.address)

        if lords_balance < lords_needed:
            deficit = lords_needed - lords_balance
            choice = await self._find_best_token_to_sell(deficit)
            if choice is None:
                raise RestockError(NO_SELLABLE_TOKEN_ERROR)
            token, sell_quote = choice
            print(f"[RESTOCK] Selling {sell_quote.sell_amount} raw {token.symbol} "
                  f"for {deficit} raw LORDS")
            tx_hash = await self.gateway.execute_swap(sell_quote, self.slippage)
            result.tx_hashes.append(tx_hash)
            result.token_used = token.symbol
            await self._confirm(tx_hash, f"{token.symbol}->LORDS")

        ticket_quote = await self.quotes.best_quote(
            LORDS.address, TICKET_TOKEN_ADDRESS, buy_amount=ticket_raw, taker_address=treasury,
        )
        tx_hash = await self.gateway.execute_swap(ticket_quote, self.slippage)
        result.tx_hashes.append(tx_hash)
        await self._confirm(tx_hash, "LORDS->TICKET")

        result.success = True
        result.tickets_bought = needed
        return True

    async def _confirm(self, tx_hash: str, label: str):
        receipt = await self.gateway.wait_for_tx(tx_hash, self.confirm_timeout_s)
        if receipt is None:
            raise RestockError(f"{label} swap {tx_hash} not confirmed within {self.confirm_timeout_s:.0f}s")
        status = receipt_statuses(receipt)
        if not status.succeeded:
            raise RestockError(
                f"{label} swap {tx_hash} failed: "
                f"{status.revert_reason or status.execution_status or 'unknown'}"
            )

    async def _usd_value(self, token: PayToken, balance: int) -> Optional[float]:
        """USD estimate for selling the entire balance into LORDS (None if unpriced)."""
        try:
            quote = await self.quotes.best_quote(
                token.address, LORDS.address, sell_amount=balance,
                taker_address=self.gateway.treasury_address,
            )
        except Exception as e:
            print(f"[RESTOCK] No valuation quote for {token.symbol}, skipping: {e}")
            return None
        return quote.sell_amount_in_usd or 0.0

    async def _find_best_token_to_sell(self, lords_deficit: int):
        """Highest-USD held token whose balance covers a quote for lords_deficit."""
        balances = await asyncio.gather(
            *(self.gateway.get_token_balance(t.address) for t in SELLABLE_TOKENS),
            return_exceptions=True,
        )
        held = []
        for token, bal in zip(SELLABLE_TOKENS, balances):
            if isinstance(bal, Exception):
                print(f"[RESTOCK] Balance read failed for {token.symbol}: {bal}")
                continue
            if bal > 0:
                held.append((token, bal))
        if not held:
            return None

        values = await asyncio.gather(*(self._usd_value(t, b) for t, b in held))
        priced = [(h, usd) for h, usd in zip(held, values) if usd is not None]
        ranked = sorted(priced, key=lambda item: item[1], reverse=True)

        for (token, balance), usd in ranked:
            try:
                quote = await self.quotes.best_quote(
                    token.address, LORDS.address, buy_amount=lords_deficit,
                    taker_address=self.gateway.treasury_address,
                )
            except Exception as e:
                print(f"[RESTOCK] No LORDS quote for {token.symbol}: {e}")
                continue
            if balance >= quote.sell_amount:
                return token, quote
            print(f"[RESTOCK] {token.symbol} (${usd:.2f}) can't cover "
                  f"{quote.sell_amount} raw needed, trying next")
        return None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def state(self) -> dict:
        return {
            "isRestocking": self.is_restocking,
            "lastRestockAttempt": self.last_restock_attempt,
            "lastRestockResult": self.last_restock_result.to_dict() if self.last_restock_result else None,
        }

    async def status(self) -> dict:
        """Treasury status view. Balance read errors propagate to the caller."""
        balance = await self.ticket_balance()
        tickets = whole_tickets(balance)
        state = self.state()
        return {
            "canFulfillOrders": can_fulfill(balance, self.minimum),
            "ticketBalance": tickets,
            "treasuryAddress": self.gateway.treasury_address,
            "reserve": {
                "target": self.target,
                "minimum": self.minimum,
                "needsRestock": tickets < self.target,
                "isRestocking": state["isRestocking"],
                "lastRestockAttempt": state["lastRestockAttempt"],
                "lastRestockResult": state["lastRestockResult"],
            },
        }

    def metrics(self) -> dict:
        return {"runs": self._runs, "failures": self._failures, **self.state()}
