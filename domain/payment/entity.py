"""
支付领域实体 - Payment / Refund / WebhookEvent
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from .exceptions import (
    IllegalPaymentTransitionException,
    RefundNotPendingException,
    RefundNotRetryableException,
)


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Payment:
    """
    支付聚合根 - one payment attempt against an order.

    Rules:
    1. amount > 0, currency is a 3-letter ISO code; both immutable after creation
    2. status only moves PENDING -> SUCCEEDED | FAILED | CANCELLED
    3. a terminal payment accepts the same terminal status again as a no-op
    4. refunded_amount never exceeds amount
    """

    id: Optional[int]
    order_id: str
    provider: str
    amount: Decimal
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    user_id: Optional[str] = None
    booking_id: Optional[str] = None
    provider_intent_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    client_secret: Optional[str] = None
    refunded_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    failure_reason: Optional[str] = None
    idempotency_key: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = Decimal(self.amount)
        self.refunded_amount = Decimal(self.refunded_amount or 0)
        if self.amount <= 0:
            raise DomainValidationException(f"Payment amount must be positive: {self.amount}", field="amount")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"Invalid currency code: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        self.status = PaymentStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.canceled_at = _ensure_utc(self.canceled_at)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(
        self,
        new_status: PaymentStatus,
        *,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """Apply a monotonic status change. Returns False when nothing changed."""
        new_status = PaymentStatus(new_status)
        if new_status == self.status:
            return False
        if self.is_terminal or new_status is PaymentStatus.PENDING:
            raise IllegalPaymentTransitionException(self.id, self.status.value, new_status.value)

        now = _now()
        self.status = new_status
        self.updated_at = now
        if new_status is PaymentStatus.SUCCEEDED:
            self.paid_at = now
            self.failure_reason = None
            if transaction_id:
                self.provider_transaction_id = transaction_id
        elif new_status is PaymentStatus.FAILED:
            self.failure_reason = failure_reason
        elif new_status is PaymentStatus.CANCELLED:
            self.canceled_at = now
            self.failure_reason = failure_reason
        return True

    def refundable_amount(self) -> Decimal:
        return self.amount - self.refunded_amount

    def apply_refund(self, amount: Decimal) -> None:
        """Record a completed refund against this payment."""
        if self.status is not PaymentStatus.SUCCEEDED:
            raise IllegalPaymentTransitionException(self.id, self.status.value, "refund")
        if amount <= 0 or amount > self.refundable_amount():
            raise DomainValidationException(
                f"Refund amount {amount} outside refundable range {self.refundable_amount()}",
                field="amount",
            )
        self.refunded_amount += amount
        self.updated_at = _now()

    @property
    def refund_reference(self) -> Optional[str]:
        """Identifier the provider expects when refunding."""
        return self.provider_transaction_id or self.provider_intent_id


@dataclass
class Refund:
    """
    退款实体

    PENDING -> COMPLETED | FAILED; FAILED -> PENDING only through retry().
    Every retry bumps ``attempt`` so the provider idempotency key changes.
    """

    id: Optional[int]
    payment_id: int
    amount: Decimal
    currency: str
    provider: str
    status: RefundStatus = RefundStatus.PENDING
    reason: Optional[str] = None
    booking_id: Optional[str] = None
    requested_by: Optional[str] = None
    provider_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    attempt: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = Decimal(self.amount)
        if self.amount <= 0:
            raise DomainValidationException(f"Refund amount must be positive: {self.amount}", field="amount")
        self.status = RefundStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.completed_at = _ensure_utc(self.completed_at)
        self.failed_at = _ensure_utc(self.failed_at)

    @property
    def idempotency_key(self) -> str:
        return f"refund:{self.id}:{self.attempt}"

    def _require_pending(self) -> None:
        if self.status is not RefundStatus.PENDING:
            raise RefundNotPendingException(self.id, self.status.value)

    def mark_completed(self, provider_refund_id: Optional[str]) -> None:
        self._require_pending()
        self.status = RefundStatus.COMPLETED
        self.provider_refund_id = provider_refund_id
        self.failure_reason = None
        self.failure_code = None
        self.completed_at = _now()
        self.updated_at = self.completed_at

    def mark_failed(self, reason: Optional[str], code: Optional[str] = None) -> None:
        self._require_pending()
        self.status = RefundStatus.FAILED
        self.failure_reason = reason
        self.failure_code = code
        self.failed_at = _now()
        self.updated_at = self.failed_at

    def retry(self) -> None:
        if self.status is not RefundStatus.FAILED:
            raise RefundNotRetryableException(self.id, self.status.value)
        self.status = RefundStatus.PENDING
        self.attempt += 1
        self.failure_reason = None
        self.failure_code = None
        self.failed_at = None
        self.updated_at = _now()


@dataclass
class WebhookEvent:
    """Audit and idempotency record for one inbound provider callback."""

    id: Optional[int]
    provider: str
    webhook_id: str
    event_type: str
    status: WebhookStatus = WebhookStatus.RECEIVED
    payload: Optional[str] = None
    signature: Optional[str] = None
    payment_id: Optional[int] = None
    error_message: Optional[str] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.webhook_id:
            raise DomainValidationException("Webhook id is required", field="webhook_id")
        self.status = WebhookStatus(self.status)
        self.received_at = _ensure_utc(self.received_at) or _now()
        self.processed_at = _ensure_utc(self.processed_at)

    @property
    def is_terminal(self) -> bool:
        return self.status in (WebhookStatus.PROCESSED, WebhookStatus.FAILED)

    def mark_processing(self) -> None:
        if self.status is not WebhookStatus.RECEIVED:
            raise DomainValidationException(f"Cannot move webhook from {self.status.value} to processing", field="status")
        self.status = WebhookStatus.PROCESSING

    def mark_processed(self) -> None:
        if self.status is not WebhookStatus.PROCESSING:
            raise DomainValidationException(f"Cannot move webhook from {self.status.value} to processed", field="status")
        self.status = WebhookStatus.PROCESSED
        self.processed_at = _now()

    def mark_failed(self, error: str) -> None:
        if self.status is not WebhookStatus.PROCESSING:
            raise DomainValidationException(f"Cannot move webhook from {self.status.value} to failed", field="status")
        self.status = WebhookStatus.FAILED
        self.error_message = error
        self.processed_at = _now()
