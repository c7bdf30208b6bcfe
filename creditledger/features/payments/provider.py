"""
Payment provider protocol.

Order creation and signature verification live with the payment gateway
integration; the ledger only needs to know whether a provider transaction
was captured, and for how much, before it issues credits.
"""
from typing import Protocol, Optional
from dataclasses import dataclass
from enum import Enum


class CaptureStatus(str, Enum):
    CAPTURED = "captured"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class PaymentCapture:
    """Capture state of a provider transaction."""
    provider_transaction_id: str
    status: CaptureStatus
    amount: Optional[int] = None  # minor currency units
    currency: Optional[str] = None


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must be safe to call repeatedly for the same
    transaction id.
    """

    def get_capture_status(self, provider_transaction_id: str) -> PaymentCapture:
        """
        Look up whether a payment has been captured.

        Args:
            provider_transaction_id: Gateway payment/transaction id

        Returns:
            Current capture state

        Raises:
            PaymentProviderError: If the provider cannot be reached
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentNotCapturedError(PaymentProviderError):
    """The payment failed, or was still not captured when retries ran out."""

    def __init__(self, provider_transaction_id: str, status: CaptureStatus):
        super().__init__(f"Payment {provider_transaction_id} not captured (status={status.value})")
        self.provider_transaction_id = provider_transaction_id
        self.status = status
