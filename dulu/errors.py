"""Error taxonomy of the payment reconciler."""
from __future__ import annotations


class PaymentError(Exception):
    """Base class for payment flow failures."""

    retryable = False

    def __init__(self, message: str, *, deposit_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.deposit_id = deposit_id


class ValidationError(PaymentError):
    """Malformed input: bad phone, non-positive amount, unknown operator."""


class ProviderError(PaymentError):
    """Payment provider unreachable or refused the deposit."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        deposit_id: str | None = None,
        status_code: int | None = None,
        provider_status: str | None = None,
    ) -> None:
        super().__init__(message, deposit_id=deposit_id)
        self.status_code = status_code
        self.provider_status = provider_status


class ReconciliationError(PaymentError):
    """Database write failed while applying a provider status."""


__all__ = [
    "PaymentError",
    "ValidationError",
    "ProviderError",
    "ReconciliationError",
]
