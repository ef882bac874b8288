"""
Error taxonomy surfaced to callers of the order operations.

Only validation / lookup / conflict failures are raised. Business-rule
failures (bad payment, empty reserve, timeouts) are recorded on the order
itself as status=failed + last_error, never raised.
"""

from typing import Optional


class BrokerError(Exception):
    """Base error with a short machine-readable code."""
    code = "broker_error"

    def __init__(self, message: str = "", details: Optional[dict] = None):
        super().__init__(message or self.code)
        self.details = details


class InvalidRequest(BrokerError):
    code = "invalid_request"


class InvalidAddress(BrokerError):
    code = "invalid_address"


class QuoteUnavailable(BrokerError):
    code = "quote_unavailable"


class OrderNotFound(BrokerError):
    code = "not_found"


class PaymentConflict(BrokerError):
    code = "payment_tx_hash_mismatch"
