"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import OutboxEventModel, PaymentModel, RefundModel, WebhookEventModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "RefundModel",
    "WebhookEventModel",
    "OutboxEventModel",
]
