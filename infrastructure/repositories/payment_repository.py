"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, List, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import (
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    WebhookEvent,
    WebhookStatus,
)
from domain.payment.events import OutboxMessage
from domain.payment.exceptions import (
    DuplicateWebhookException,
    IllegalPaymentTransitionException,
    PaymentAlreadyPendingException,
    RefundAlreadyPendingException,
    RefundNotPendingException,
    RefundNotRetryableException,
)
from domain.payment.repository import (
    OutboxRepository,
    PaymentRepository,
    RefundRepository,
    WebhookEventRepository,
)
from infrastructure.models.payment import (
    OutboxEventModel,
    PaymentModel,
    RefundModel,
    WebhookEventModel,
)


logger = get_logger(__name__)

T = TypeVar("T")

# 每个目标退款状态允许的唯一来源状态
_REFUND_SOURCE_STATUS = {
    RefundStatus.COMPLETED: RefundStatus.PENDING,
    RefundStatus.FAILED: RefundStatus.PENDING,
    RefundStatus.PENDING: RefundStatus.FAILED,
}


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        return Payment(
            id=model.id,
            order_id=model.order_id,
            user_id=model.user_id,
            booking_id=model.booking_id,
            provider=model.provider,
            provider_intent_id=model.provider_intent_id,
            provider_transaction_id=model.provider_transaction_id,
            client_secret=model.client_secret,
            idempotency_key=model.idempotency_key,
            amount=_dec(model.amount),
            currency=model.currency,
            refunded_amount=_dec(model.refunded_amount),
            status=PaymentStatus(model.status),
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
            paid_at=model.paid_at,
            canceled_at=model.canceled_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        return PaymentModel(
            id=entity.id,
            order_id=entity.order_id,
            user_id=entity.user_id,
            booking_id=entity.booking_id,
            provider=entity.provider,
            provider_intent_id=entity.provider_intent_id,
            provider_transaction_id=entity.provider_transaction_id,
            client_secret=entity.client_secret,
            idempotency_key=entity.idempotency_key,
            amount=entity.amount,
            currency=entity.currency,
            refunded_amount=entity.refunded_amount,
            status=entity.status.value,
            failure_reason=entity.failure_reason,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            paid_at=entity.paid_at,
            canceled_at=entity.canceled_at,
        )

    async def _get_model(self, payment_id: int, *, fresh: bool = False) -> Optional[PaymentModel]:
        stmt = select(PaymentModel).where(PaymentModel.id == payment_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        try:
            db_payment = self._to_model(payment)
            self.session.add(db_payment)
            await self.session.flush()
            await self.session.refresh(db_payment)
        except IntegrityError as e:
            await self.session.rollback()
            msg = str(e).lower()
            if "ux_payments_order_pending" in msg or "payments.order_id" in msg:
                logger.warning("payment_create_conflict", order_id=payment.order_id, provider=payment.provider)
                raise PaymentAlreadyPendingException(payment.order_id, payment.provider)
            raise
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            order_id=db_payment.order_id,
            provider=db_payment.provider,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        db_payment = await self._get_model(payment_id)
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_provider_intent_id(self, provider_intent_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.provider_intent_id == provider_intent_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_booking_id(self, booking_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.booking_id == booking_id)
            .order_by(
                (PaymentModel.status == PaymentStatus.SUCCEEDED.value).desc(),
                PaymentModel.id.desc(),
            )
            .limit(1)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def list_by_order(self, order_id: str) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.order_id == order_id).order_by(PaymentModel.id)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_pending_older_than(self, cutoff: datetime, limit: int = 100) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.PENDING.value,
                PaymentModel.created_at < cutoff,
            )
            .order_by(PaymentModel.created_at)
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_by_status(self) -> dict[PaymentStatus, int]:
        result = await self.session.execute(
            select(PaymentModel.status, func.count(PaymentModel.id)).group_by(PaymentModel.status)
        )
        return {PaymentStatus(status): count for status, count in result.all()}

    async def succeeded_amount_by_currency(self) -> dict[str, Decimal]:
        result = await self.session.execute(
            select(PaymentModel.currency, func.sum(PaymentModel.amount))
            .where(PaymentModel.status == PaymentStatus.SUCCEEDED.value)
            .group_by(PaymentModel.currency)
        )
        return {currency: _dec(total).quantize(Decimal("0.01")) for currency, total in result.all()}

    async def update(self, payment: Payment) -> Payment:
        """
        写入一次状态流转（金额、币种与已退款金额不在此回写）

        条件更新：只有库中仍为 PENDING 的行会被写入；终态行不被覆盖，
        落空时抛出 IllegalPaymentTransitionException，携带库中的当前状态。
        """
        stmt = (
            update(PaymentModel)
            .where(PaymentModel.id == payment.id, PaymentModel.status == PaymentStatus.PENDING.value)
            .values(
                status=payment.status.value,
                provider_transaction_id=payment.provider_transaction_id,
                failure_reason=payment.failure_reason,
                updated_at=payment.updated_at or datetime.now(timezone.utc),
                paid_at=payment.paid_at,
                canceled_at=payment.canceled_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        db_payment = await self._get_model(payment.id, fresh=True)
        if not db_payment:
            raise ValueError(f"Payment with id {payment.id} not found")
        if result.rowcount == 0:
            logger.warning(
                "payment_update_conflict",
                payment_id=payment.id,
                actual=db_payment.status,
                target=payment.status.value,
            )
            raise IllegalPaymentTransitionException(payment.id, db_payment.status, payment.status.value)
        logger.info("payment_updated", payment_id=db_payment.id, status=db_payment.status)
        return self._to_entity(db_payment)

    async def add_refunded_amount(self, payment_id: int, amount: Decimal) -> Payment:
        """在库内原子累加已退款金额；仅对 SUCCEEDED 支付生效"""
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.status == PaymentStatus.SUCCEEDED.value,
            )
            .values(
                refunded_amount=PaymentModel.refunded_amount + amount,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        db_payment = await self._get_model(payment_id, fresh=True)
        if not db_payment:
            raise ValueError(f"Payment with id {payment_id} not found")
        if result.rowcount == 0:
            raise IllegalPaymentTransitionException(payment_id, db_payment.status, "refund")
        logger.info("payment_refunded_amount_added", payment_id=payment_id, amount=str(amount))
        return self._to_entity(db_payment)


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            payment_id=model.payment_id,
            booking_id=model.booking_id,
            requested_by=model.requested_by,
            provider=model.provider,
            provider_refund_id=model.provider_refund_id,
            amount=_dec(model.amount),
            currency=model.currency,
            status=RefundStatus(model.status),
            reason=model.reason,
            failure_reason=model.failure_reason,
            failure_code=model.failure_code,
            attempt=model.attempt,
            created_at=model.created_at,
            updated_at=model.updated_at,
            completed_at=model.completed_at,
            failed_at=model.failed_at,
        )

    def _to_model(self, entity: Refund) -> RefundModel:
        return RefundModel(
            id=entity.id,
            payment_id=entity.payment_id,
            booking_id=entity.booking_id,
            requested_by=entity.requested_by,
            provider=entity.provider,
            provider_refund_id=entity.provider_refund_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            reason=entity.reason,
            failure_reason=entity.failure_reason,
            failure_code=entity.failure_code,
            attempt=entity.attempt,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            completed_at=entity.completed_at,
            failed_at=entity.failed_at,
        )

    async def _guard_pending(self, payment_id: int, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except IntegrityError as e:
            await self.session.rollback()
            msg = str(e).lower()
            if "ux_refunds_payment_pending" in msg or "refunds.payment_id" in msg:
                logger.warning("refund_pending_conflict", payment_id=payment_id)
                raise RefundAlreadyPendingException(payment_id)
            raise

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        db_refund = self._to_model(refund)
        self.session.add(db_refund)
        await self._guard_pending(refund.payment_id, self.session.flush())
        await self.session.refresh(db_refund)
        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            amount=str(db_refund.amount),
        )
        return self._to_entity(db_refund)

    async def _get_model(self, refund_id: int, *, fresh: bool = False) -> Optional[RefundModel]:
        stmt = select(RefundModel).where(RefundModel.id == refund_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        db_refund = await self._get_model(refund_id)
        return self._to_entity(db_refund) if db_refund else None

    async def get_pending_for_payment(self, payment_id: int) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel).where(
                RefundModel.payment_id == payment_id,
                RefundModel.status == RefundStatus.PENDING.value,
            )
        )
        db_refund = result.scalars().first()
        return self._to_entity(db_refund) if db_refund else None

    async def list_by_payment(self, payment_id: int) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.payment_id == payment_id).order_by(RefundModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def list_by_user(self, user_id: str) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .join(PaymentModel, RefundModel.payment_id == PaymentModel.id)
            .where(PaymentModel.user_id == user_id)
            .order_by(RefundModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def list_by_status_older_than(
        self, status: RefundStatus, cutoff: datetime, limit: int = 100
    ) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.status == status.value, RefundModel.updated_at < cutoff)
            .order_by(RefundModel.updated_at)
            .limit(limit)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def update(self, refund: Refund) -> Refund:
        """
        写入一次退款状态流转

        条件更新：COMPLETED/FAILED 只能由 PENDING 写入，PENDING 只能由 FAILED 写入。
        落空时分别抛出 RefundNotPendingException 与 RefundNotRetryableException。
        """
        expected = _REFUND_SOURCE_STATUS[refund.status]
        stmt = (
            update(RefundModel)
            .where(RefundModel.id == refund.id, RefundModel.status == expected.value)
            .values(
                status=refund.status.value,
                provider_refund_id=refund.provider_refund_id,
                failure_reason=refund.failure_reason,
                failure_code=refund.failure_code,
                attempt=refund.attempt,
                updated_at=refund.updated_at or datetime.now(timezone.utc),
                completed_at=refund.completed_at,
                failed_at=refund.failed_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._guard_pending(refund.payment_id, self.session.execute(stmt))

        db_refund = await self._get_model(refund.id, fresh=True)
        if not db_refund:
            raise ValueError(f"Refund with id {refund.id} not found")
        if result.rowcount == 0:
            logger.warning(
                "refund_update_conflict",
                refund_id=refund.id,
                expected=expected.value,
                actual=db_refund.status,
            )
            if expected is RefundStatus.PENDING:
                raise RefundNotPendingException(refund.id, db_refund.status)
            raise RefundNotRetryableException(refund.id, db_refund.status)
        logger.info("refund_updated", refund_id=db_refund.id, status=db_refund.status, attempt=db_refund.attempt)
        return self._to_entity(db_refund)


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: WebhookEventModel) -> WebhookEvent:
        return WebhookEvent(
            id=model.id,
            provider=model.provider,
            webhook_id=model.webhook_id,
            event_type=model.event_type,
            status=WebhookStatus(model.status),
            payload=model.payload,
            signature=model.signature,
            payment_id=model.payment_id,
            error_message=model.error_message,
            received_at=model.received_at,
            processed_at=model.processed_at,
        )

    async def create(self, event: WebhookEvent) -> WebhookEvent:
        db_event = WebhookEventModel(
            provider=event.provider,
            webhook_id=event.webhook_id,
            event_type=event.event_type,
            status=event.status.value,
            payload=event.payload,
            signature=event.signature,
            payment_id=event.payment_id,
            received_at=event.received_at,
        )
        try:
            self.session.add(db_event)
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            if "webhook_id" in str(e).lower():
                raise DuplicateWebhookException(event.provider, event.webhook_id)
            raise
        await self.session.refresh(db_event)
        return self._to_entity(db_event)

    async def get_by_provider_and_webhook_id(self, provider: str, webhook_id: str) -> Optional[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEventModel).where(
                WebhookEventModel.provider == provider,
                WebhookEventModel.webhook_id == webhook_id,
            )
        )
        db_event = result.scalar_one_or_none()
        return self._to_entity(db_event) if db_event else None

    async def update(self, event: WebhookEvent) -> WebhookEvent:
        result = await self.session.execute(select(WebhookEventModel).where(WebhookEventModel.id == event.id))
        db_event = result.scalar_one_or_none()
        if not db_event:
            raise ValueError(f"Webhook event with id {event.id} not found")
        db_event.status = event.status.value
        db_event.payment_id = event.payment_id
        db_event.error_message = event.error_message
        db_event.processed_at = event.processed_at
        await self.session.flush()
        return self._to_entity(db_event)

    async def count_by_status(self) -> dict[WebhookStatus, int]:
        result = await self.session.execute(
            select(WebhookEventModel.status, func.count(WebhookEventModel.id)).group_by(WebhookEventModel.status)
        )
        return {WebhookStatus(status): count for status, count in result.all()}

    async def count_by_provider_and_status(self) -> dict[str, dict[WebhookStatus, int]]:
        result = await self.session.execute(
            select(WebhookEventModel.provider, WebhookEventModel.status, func.count(WebhookEventModel.id))
            .group_by(WebhookEventModel.provider, WebhookEventModel.status)
        )
        counts: dict[str, dict[WebhookStatus, int]] = {}
        for provider, status, count in result.all():
            counts.setdefault(provider, {})[WebhookStatus(status)] = count
        return counts


class SQLAlchemyOutboxRepository(OutboxRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OutboxEventModel) -> OutboxMessage:
        return OutboxMessage(
            id=model.id,
            event_id=model.event_id,
            topic=model.topic,
            key=model.key,
            payload=model.payload,
            created_at=model.created_at,
            published_at=model.published_at,
            attempts=model.attempts,
            last_error=model.last_error,
        )

    async def add(self, message: OutboxMessage) -> OutboxMessage:
        db_message = OutboxEventModel(
            event_id=message.event_id,
            topic=message.topic,
            key=message.key,
            payload=message.payload,
            created_at=message.created_at,
        )
        self.session.add(db_message)
        await self.session.flush()
        logger.debug("outbox_event_added", event_id=message.event_id, topic=message.topic)
        return self._to_entity(db_message)

    async def list_unpublished(self, limit: int = 100) -> List[OutboxMessage]:
        result = await self.session.execute(
            select(OutboxEventModel)
            .where(OutboxEventModel.published_at.is_(None))
            .order_by(OutboxEventModel.id)
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, message: OutboxMessage) -> OutboxMessage:
        result = await self.session.execute(select(OutboxEventModel).where(OutboxEventModel.id == message.id))
        db_message = result.scalar_one()
        db_message.published_at = message.published_at
        db_message.attempts = message.attempts
        db_message.last_error = message.last_error
        await self.session.flush()
        return self._to_entity(db_message)
