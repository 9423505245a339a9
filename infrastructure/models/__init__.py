"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import (
    PaymentIntentModel,
    PaymentMethodModel,
    RefundModel,
    TransactionModel,
    WebhookEventModel,
)

__all__ = [
    "Base",
    "metadata",
    "PaymentIntentModel",
    "PaymentMethodModel",
    "RefundModel",
    "TransactionModel",
    "WebhookEventModel",
]
