from .base import Base
from .payment import Payment
from .payment_webhook import PaymentWebhook
from .transaction import Transaction
from .event import Event
from .user import User
from .error_code import ErrorCode

__all__ = [
    "Base",
    "Payment",
    "PaymentWebhook",
    "Transaction",
    "Event",
    "User",
    "ErrorCode",
]
