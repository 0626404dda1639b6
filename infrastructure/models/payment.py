"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_PENDING = text("status = 'pending'")


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)

    order_id = Column(String(100), nullable=False, index=True, comment="订单ID")
    user_id = Column(String(100), nullable=True, index=True, comment="订单所属用户")
    booking_id = Column(String(100), nullable=True, index=True, comment="预订ID")

    provider = Column(String(50), nullable=False, comment="MOCK/STRIPE/BKASH/NAGAD")
    provider_intent_id = Column(String(200), nullable=True, unique=True, comment="渠道支付意图ID")
    provider_transaction_id = Column(String(200), nullable=True, comment="渠道交易ID")
    client_secret = Column(String(500), nullable=True, comment="前端确认凭证")
    idempotency_key = Column(String(100), nullable=True)

    amount = Column(Numeric(precision=15, scale=2), nullable=False)
    currency = Column(String(3), nullable=False)
    refunded_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)

    status = Column(String(20), nullable=False, default="pending", index=True, comment="pending/succeeded/failed/cancelled")
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    refunds = relationship("RefundModel", back_populates="payment", lazy="raise")

    __table_args__ = (
        # At most one non-terminal payment per order
        Index(
            "ux_payments_order_pending",
            "order_id",
            unique=True,
            sqlite_where=_PENDING,
            postgresql_where=_PENDING,
        ),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, order_id='{self.order_id}', "
            f"provider='{self.provider}', amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """退款数据库模型"""
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    booking_id = Column(String(100), nullable=True)
    requested_by = Column(String(100), nullable=True)

    provider = Column(String(50), nullable=False)
    provider_refund_id = Column(String(200), nullable=True)

    amount = Column(Numeric(precision=15, scale=2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True, comment="pending/completed/failed")
    reason = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    failure_code = Column(String(100), nullable=True)
    attempt = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    payment = relationship("PaymentModel", back_populates="refunds")

    __table_args__ = (
        # Exactly one pending refund per payment
        Index(
            "ux_refunds_payment_pending",
            "payment_id",
            unique=True,
            sqlite_where=_PENDING,
            postgresql_where=_PENDING,
        ),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, status='{self.status}')>"
        )


class WebhookEventModel(Base):
    """Provider callback audit log; (provider, webhook_id) is the idempotency key."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True)
    provider = Column(String(50), nullable=False)
    webhook_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="received", index=True)
    payload = Column(Text, nullable=True)
    signature = Column(String(1000), nullable=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "webhook_id", name="uq_webhook_events_provider_webhook_id"),
    )


class OutboxEventModel(Base):
    """Transactional outbox; rows are written with the state change they describe."""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True)
    event_id = Column(String(64), nullable=False, unique=True)
    topic = Column(String(100), nullable=False)
    key = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_outbox_events_unpublished", "published_at", "id"),
    )
