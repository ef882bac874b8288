"""
AVNU swap API client — quotes and multicall builds for Starknet swaps.

API (https://starknet.api.avnu.fi):
  GET  /swap/v2/quotes  sellTokenAddress, buyTokenAddress,
                        sellAmount | buyAmount (hex), takerAddress
       -> list of quotes, best first
  POST /swap/v2/build   {quoteId, takerAddress, slippage, includeApprove}
       -> {"calls": [{contractAddress, entrypoint, calldata}]}

Quote schema fields we rely on:
  quoteId:          string
  sellTokenAddress: hex
  buyTokenAddress:  hex
  sellAmount:       hex string (raw units)
  buyAmount:        hex string (raw units)
  sellAmountInUsd:  float or None
  buyAmountInUsd:   float or None
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

import aiohttp

from broker.starknet.receipts import felt

DEFAULT_BASE_URL = "https://starknet.api.avnu.fi"
QUOTES_PATH = "/swap/v2/quotes"
BUILD_PATH = "/swap/v2/build"

HTTP_TIMEOUT_SEC = 15


class AvnuError(RuntimeError):
    """Quote or build request failed, or returned nothing usable."""


@dataclass
class Quote:
    quote_id: str
    sell_token_address: str
    buy_token_address: str
    sell_amount: int
    buy_amount: int
    sell_amount_in_usd: Optional[float] = None
    buy_amount_in_usd: Optional[float] = None

    @classmethod
    def from_api(cls, raw: dict) -> "Quote":
        return cls(
            quote_id=str(raw["quoteId"]),
            sell_token_address=raw.get("sellTokenAddress", ""),
            buy_token_address=raw.get("buyTokenAddress", ""),
            sell_amount=felt(raw["sellAmount"]),
            buy_amount=felt(raw["buyAmount"]),
            sell_amount_in_usd=_usd(raw.get("sellAmountInUsd")),
            buy_amount_in_usd=_usd(raw.get("buyAmountInUsd")),
        )


def _usd(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class AvnuClient:
    """Async client for the AVNU swap aggregator."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._quote_count = 0
        self._build_count = 0
        self._errors = 0

    async def _ensure_session(self):
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SEC)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def fetch_quotes(
        self,
        sell_token: str,
        buy_token: str,
        *,
        buy_amount: Optional[int] = None,
        sell_amount: Optional[int] = None,
        taker_address: Optional[str] = None,
    ) -> List[Quote]:
        """Fetch quotes for an exact-in (sell_amount) or exact-out (buy_amount) swap."""
        if (buy_amount is None) == (sell_amount is None):
            raise ValueError("fetch_quotes: pass exactly one of buy_amount / sell_amount")

        params = {"sellTokenAddress": sell_token, "buyTokenAddress": buy_token}
        if buy_amount is not None:
            params["buyAmount"] = hex(buy_amount)
        else:
            params["sellAmount"] = hex(sell_amount)
        if taker_address:
            params["takerAddress"] = taker_address

        await self._ensure_session()
        try:
            async with self._session.get(self.base_url + QUOTES_PATH, params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    self._errors += 1
                    raise AvnuError(f"quotes HTTP {resp.status}: {body[:200]}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            self._errors += 1
            raise AvnuError(f"quotes timeout ({HTTP_TIMEOUT_SEC}s)")
        except aiohttp.ClientError as e:
            self._errors += 1
            raise AvnuError(f"quotes request failed: {e}") from e

        self._quote_count += 1
        if not isinstance(data, list):
            return []
        quotes = []
        for raw in data:
            try:
                quotes.append(Quote.from_api(raw))
            except (KeyError, TypeError, ValueError):
                continue
        return quotes

    async def best_quote(self, sell_token: str, buy_token: str, **kwargs) -> Quote:
        """First quote returned, or AvnuError when the list is empty."""
        quotes = await self.fetch_quotes(sell_token, buy_token, **kwargs)
        if not quotes:
            raise AvnuError(f"no quotes for {sell_token[:10]}... -> {buy_token[:10]}...")
        return quotes[0]

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build_swap_calls(
        self, quote_id: str, taker_address: str, slippage: float, include_approve: bool = True,
    ) -> List[dict]:
        """Multicall (approve + swap) for a quote, as raw call dicts."""
        payload = {
            "quoteId": quote_id,
            "takerAddress": taker_address,
            "slippage": slippage,
            "includeApprove": include_approve,
        }
        await self._ensure_session()
        try:
            async with self._session.post(self.base_url + BUILD_PATH, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    self._errors += 1
                    raise AvnuError(f"build HTTP {resp.status}: {body[:200]}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            self._errors += 1
            raise AvnuError(f"build timeout ({HTTP_TIMEOUT_SEC}s)")
        except aiohttp.ClientError as e:
            self._errors += 1
            raise AvnuError(f"build request failed: {e}") from e

        calls = data.get("calls") if isinstance(data, dict) else None
        if not calls:
            raise AvnuError(f"build returned no calls for quote {quote_id}")
        self._build_count += 1
        return calls

    def metrics(self) -> dict:
        return {
            "quote_count": self._quote_count,
            "build_count": self._build_count,
            "errors": self._errors,
        }
