"""
Payment domain events.

Dataclass events record payment and refund lifecycle facts for downstream
collaborators (notifications, analytics). Services persist them as
``OutboxMessage`` rows in the same transaction as the state change; the
outbox relay publishes them afterwards. Domain remains free of
infrastructure imports.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Optional


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass
class PaymentEvent:
    topic: ClassVar[str] = "payment.event"

    payment_id: int
    order_id: str
    provider: str
    amount: Decimal
    currency: str
    provider_intent_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        """Partition key; keeps all events of one payment ordered."""
        return str(self.payment_id)

    def to_payload(self) -> dict[str, Any]:
        data = {k: _jsonable(v) for k, v in asdict(self).items()}
        data["event_type"] = self.topic
        return data


@dataclass
class PaymentSucceeded(PaymentEvent):
    topic: ClassVar[str] = "payment.succeeded"

    transaction_id: Optional[str] = None


@dataclass
class PaymentFailed(PaymentEvent):
    topic: ClassVar[str] = "payment.failed"

    reason: Optional[str] = None


@dataclass
class PaymentCanceled(PaymentEvent):
    topic: ClassVar[str] = "payment.canceled"


@dataclass
class RefundEvent(PaymentEvent):
    refund_id: int = 0
    booking_id: Optional[str] = None


@dataclass
class RefundRequested(RefundEvent):
    topic: ClassVar[str] = "refund.requested"

    reason: Optional[str] = None
    requested_by: Optional[str] = None


@dataclass
class RefundCompleted(RefundEvent):
    topic: ClassVar[str] = "refund.completed"

    provider_refund_id: Optional[str] = None


@dataclass
class RefundFailed(RefundEvent):
    topic: ClassVar[str] = "refund.failed"

    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None


@dataclass
class OutboxMessage:
    """A domain event waiting in the transactional outbox."""

    id: Optional[int]
    event_id: str
    topic: str
    key: Optional[str]
    payload: dict
    created_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None

    @classmethod
    def from_event(cls, event: PaymentEvent) -> "OutboxMessage":
        return cls(
            id=None,
            event_id=event.event_id,
            topic=event.topic,
            key=event.key,
            payload=event.to_payload(),
            created_at=event.occurred_at,
        )

    def mark_published(self) -> None:
        self.attempts += 1
        self.published_at = datetime.now(timezone.utc)
        self.last_error = None

    def mark_attempt_failed(self, error: str) -> None:
        self.attempts += 1
        self.last_error = error[:1000]
