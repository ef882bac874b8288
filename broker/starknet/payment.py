"""
Payment verification — three-way verdict over a payment receipt.

  pending  : receipt unavailable or not yet executed (retry later)
  failed   : reverted, no matching transfer, wrong sender, or short amount
  verified : transfer of >= minimum from the payer into the treasury
"""

from dataclasses import dataclass
from typing import Any, Optional

from broker.starknet.address import normalize_address
from broker.starknet.erc20 import find_erc20_transfer
from broker.starknet.receipts import receipt_events, receipt_statuses

PENDING = "pending"
FAILED = "failed"
VERIFIED = "verified"


@dataclass
class PaymentVerification:
    status: str
    error: Optional[str] = None
    reason: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    amount: Optional[int] = None
    execution_status: Optional[str] = None
    finality_status: Optional[str] = None
    revert_reason: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"status": self.status}
        for key, val in (
            ("error", self.error),
            ("reason", self.reason),
            ("from", self.sender),
            ("to", self.recipient),
            ("amount", str(self.amount) if self.amount is not None else None),
            ("executionStatus", self.execution_status),
            ("finalityStatus", self.finality_status),
            ("revertReason", self.revert_reason),
        ):
            if val is not None:
                out[key] = val
        return out


def pending(reason: str) -> PaymentVerification:
    return PaymentVerification(status=PENDING, reason=reason)


def evaluate_payment_receipt(
    receipt: Any,
    token_address: str,
    treasury_address: str,
    expected_sender: Optional[str],
    minimum_amount_raw: int,
) -> PaymentVerification:
    """Judge a fetched receipt against the order's payment terms."""
    status = receipt_statuses(receipt)
    if status.execution_status is None:
        return pending("receipt_not_executed")

    if not status.succeeded:
        return PaymentVerification(
            status=FAILED,
            error="payment_tx_failed",
            execution_status=status.execution_status,
            finality_status=status.finality_status,
            revert_reason=status.revert_reason,
        )

    match = find_erc20_transfer(receipt_events(receipt), token_address, treasury_address)
    if match is None:
        return PaymentVerification(status=FAILED, error="transfer_not_found")

    sender = normalize_address(expected_sender)
    if sender and match.sender != sender:
        return PaymentVerification(status=FAILED, error=f"unexpected_sender:{match.sender}")

    if match.amount < minimum_amount_raw:
        return PaymentVerification(status=FAILED, error=f"insufficient_amount:{match.amount}")

    return PaymentVerification(
        status=VERIFIED,
        sender=match.sender,
        recipient=match.recipient,
        amount=match.amount,
        execution_status=status.execution_status,
        finality_status=status.finality_status,
    )
