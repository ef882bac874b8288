"""
HTTP routes — thin aiohttp.web layer over the lifecycle and reserve.

  GET  /healthz
  GET  /api/v1/tokens
  POST /api/v1/orders
  GET  /api/v1/orders/{id}
  POST /api/v1/orders/{id}/payment
  GET  /api/v1/treasury/status

Broker errors map to 4xx here and only here. Anything unexpected is a
500 with a fixed body; details stay in the server log.
"""

import json

from aiohttp import web

from broker.errors import (
    BrokerError,
    InvalidAddress,
    InvalidRequest,
    OrderNotFound,
    PaymentConflict,
    QuoteUnavailable,
)
from broker.orders.lifecycle import OUTCOME_EXPIRED, OUTCOME_FAILED, OUTCOME_PENDING
from broker.orders.model import order_projection
from broker.starknet.tokens import PAY_TOKENS

API_PREFIX = "/api/v1"

_STATUS_BY_ERROR = {
    InvalidRequest: 400,
    InvalidAddress: 400,
    QuoteUnavailable: 400,
    OrderNotFound: 404,
    PaymentConflict: 409,
}


def _error_status(err: BrokerError) -> int:
    for cls, status in _STATUS_BY_ERROR.items():
        if isinstance(err, cls):
            return status
    return 400


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BrokerError as e:
        body = {"error": e.code}
        if str(e) and str(e) != e.code:
            body["message"] = str(e)
        if e.details is not None:
            body["details"] = e.details
        return web.json_response(body, status=_error_status(e))
    except Exception as e:
        print(f"[API] ⚠️  {request.method} {request.path} failed: {e!r}")
        return web.json_response({"error": "internal_error"}, status=500)


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("Body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Body must be a JSON object")
    return body


class OrderRoutes:
    """Handlers bound to one lifecycle + reserve pair."""

    def __init__(self, lifecycle, reserve):
        self.lifecycle = lifecycle
        self.reserve = reserve

    def _project(self, order) -> dict:
        return order_projection(order, self.lifecycle.treasury_address)

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True})

    async def tokens(self, request: web.Request) -> web.Response:
        return web.json_response({"payTokens": [t.to_dict() for t in PAY_TOKENS.values()]})

    async def create_order(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        order = await self.lifecycle.create_order(body)
        return web.json_response(self._project(order), status=201)

    async def get_order(self, request: web.Request) -> web.Response:
        order = await self.lifecycle.get_order(request.match_info["order_id"])
        return web.json_response(self._project(order))

    async def submit_payment(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        tx_hash = body.get("txHash")
        if not isinstance(tx_hash, str):
            raise InvalidRequest("Missing 'txHash'")

        result = await self.lifecycle.record_payment_submission(request.match_info["order_id"], tx_hash)
        if result.outcome == OUTCOME_EXPIRED:
            return web.json_response({"error": "quote_expired"}, status=400)
        if result.outcome == OUTCOME_FAILED:
            return web.json_response(
                {"error": "payment_verification_failed", "details": result.verification.to_dict()},
                status=400,
            )
        if result.outcome == OUTCOME_PENDING:
            return web.json_response(self._project(result.order), status=202)
        return web.json_response(self._project(result.order))

    async def treasury_status(self, request: web.Request) -> web.Response:
        try:
            status = await self.reserve.status()
        except Exception as e:
            print(f"[API] Treasury status failed: {e}")
            return web.json_response(
                {"canFulfillOrders": False, "ticketBalance": 0, "error": "Failed to fetch treasury status"},
                status=500,
            )
        return web.json_response(status)


def build_app(lifecycle, reserve) -> web.Application:
    """Root app with /healthz and the versioned API mounted under /api/v1."""
    routes = OrderRoutes(lifecycle, reserve)

    api = web.Application()
    api.router.add_get("/tokens", routes.tokens)
    api.router.add_post("/orders", routes.create_order)
    api.router.add_get("/orders/{order_id}", routes.get_order)
    api.router.add_post("/orders/{order_id}/payment", routes.submit_payment)
    api.router.add_get("/treasury/status", routes.treasury_status)

    app = web.Application(middlewares=[error_middleware])
    app.router.add_get("/healthz", routes.health)
    app.add_subapp(API_PREFIX, api)
    return app
