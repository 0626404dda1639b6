"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.types import condecimal


def _upper_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    u = v.strip().upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


# --- order snapshot (owned by the order service) ----------------------------

class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class Order(BaseModel):
    id: str
    total_amount: Decimal
    currency: str
    status: OrderStatus
    user_id: Optional[str] = None
    booking_id: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return _upper_currency(v)


# --- provider port payloads -------------------------------------------------

class PaymentIntentResult(BaseModel):
    provider_intent_id: str
    client_secret: Optional[str] = None
    status: str
    redirect_url: Optional[str] = None


class RefundResult(BaseModel):
    """Outcome of a refund call. A decline is a normal result, not an exception."""

    success: bool
    provider_refund_id: Optional[str] = None
    failure_code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def succeeded(cls, provider_refund_id: str, message: Optional[str] = None) -> "RefundResult":
        return cls(success=True, provider_refund_id=provider_refund_id, message=message)

    @classmethod
    def declined(cls, failure_code: Optional[str], message: Optional[str]) -> "RefundResult":
        return cls(success=False, failure_code=failure_code, message=message)


class WebhookEventType(str, Enum):
    SUCCEEDED = "succeeded"
    PAYMENT_FAILED = "payment_failed"
    CANCELED = "canceled"
    UNRECOGNIZED = "unrecognized"


class ParsedWebhook(BaseModel):
    event_id: str
    event_type: str
    canonical_type: WebhookEventType
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


class WebhookRequest(BaseModel):
    """Raw inbound callback as seen by the HTTP layer; body is never re-serialised."""

    body: bytes
    headers: dict[str, str] = Field(default_factory=dict)
    client_ip: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @classmethod
    def build(cls, body: bytes, headers: Mapping[str, str], client_ip: Optional[str] = None) -> "WebhookRequest":
        return cls(body=body, headers={k.lower(): v for k, v in headers.items()}, client_ip=client_ip)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


# --- API / use-case payloads ------------------------------------------------

class CreatePaymentIntentRequest(BaseModel):
    order_id: str
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    currency: Optional[str] = None
    provider: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: Optional[str]) -> Optional[str]:
        return _upper_currency(v)


class BookingRefundRequested(BaseModel):
    """Upstream "refund requested" trigger (booking cancellation)."""

    booking_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    reason: Optional[str] = None
    user_id: Optional[str] = None


class PaymentOut(BaseModel):
    id: int
    order_id: str
    provider: str
    provider_intent_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    client_secret: Optional[str] = None
    refunded_amount: Decimal
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Any) -> "PaymentOut":
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            provider=payment.provider,
            provider_intent_id=payment.provider_intent_id,
            provider_transaction_id=payment.provider_transaction_id,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status.value,
            client_secret=payment.client_secret,
            refunded_amount=payment.refunded_amount,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class RefundOut(BaseModel):
    id: int
    payment_id: int
    amount: Decimal
    currency: str
    status: str
    reason: Optional[str] = None
    provider: str
    provider_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    attempt: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, refund: Any) -> "RefundOut":
        return cls(
            id=refund.id,
            payment_id=refund.payment_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status.value,
            reason=refund.reason,
            provider=refund.provider,
            provider_refund_id=refund.provider_refund_id,
            failure_reason=refund.failure_reason,
            failure_code=refund.failure_code,
            attempt=refund.attempt,
            created_at=refund.created_at,
            updated_at=refund.updated_at,
        )


class WebhookOutcome(BaseModel):
    processed: bool
    duplicate: bool = False
    status: str
    webhook_id: str
    event_type: str
    payment_id: Optional[int] = None
    message: Optional[str] = None


class WebhookStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_provider: dict[str, dict[str, int]]


class CancelPaymentRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentStats(BaseModel):
    total: int
    by_status: dict[str, int]
    # Sums are kept per currency; amounts in different currencies are never added together
    succeeded_amount: dict[str, Decimal]
