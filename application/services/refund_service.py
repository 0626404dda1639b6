"""
Refund orchestrator.

PENDING -> COMPLETED | FAILED, FAILED -(operator retry)-> PENDING. The
provider call always runs outside a database transaction; the outcome is
then applied in a fresh one together with its outbox event.
"""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from application.dtos.payments import BookingRefundRequested, RefundResult
from application.services.provider_registry import ProviderRegistry
from application.utils.provider_calls import UnitOfWorkFactory, call_provider, uow_scope
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus, Refund, RefundStatus
from domain.payment.events import OutboxMessage, RefundCompleted, RefundFailed, RefundRequested
from domain.payment.exceptions import (
    PaymentNotFoundException,
    PaymentNotRefundableException,
    PaymentRecoverableError,
    RefundAlreadyPendingException,
    RefundExceedsPaymentException,
    RefundNotFoundException,
    RefundNotPendingException,
)


logger = get_logger(__name__)


def _event_fields(refund: Refund, payment: Payment) -> dict:
    return dict(
        payment_id=payment.id,
        order_id=payment.order_id,
        provider=payment.provider,
        amount=refund.amount,
        currency=refund.currency,
        provider_intent_id=payment.provider_intent_id,
        refund_id=refund.id,
        booking_id=refund.booking_id or payment.booking_id,
    )


class RefundService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        providers: ProviderRegistry,
        *,
        call_timeout: float,
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._call_timeout = call_timeout

    async def process_booking_refund(self, request: BookingRefundRequested) -> Refund:
        """Create a PENDING refund from an upstream "refund requested" trigger."""
        amount = Decimal(request.amount)
        async with self._uow_factory() as uow:
            payment = await self._resolve_payment(uow, request.booking_id, request.payment_id)
            if payment.status is not PaymentStatus.SUCCEEDED:
                raise PaymentNotRefundableException(payment.id, payment.status.value)
            if amount > payment.refundable_amount():
                raise RefundExceedsPaymentException(amount, payment.refundable_amount())
            if await uow.refund_repository.get_pending_for_payment(payment.id) is not None:
                raise RefundAlreadyPendingException(payment.id)

            refund = await uow.refund_repository.create(
                Refund(
                    id=None,
                    payment_id=payment.id,
                    amount=amount,
                    currency=payment.currency,
                    provider=payment.provider,
                    status=RefundStatus.PENDING,
                    reason=request.reason,
                    booking_id=request.booking_id or payment.booking_id,
                    requested_by=request.user_id,
                )
            )
            await uow.outbox_repository.add(
                OutboxMessage.from_event(
                    RefundRequested(
                        **_event_fields(refund, payment),
                        reason=refund.reason,
                        requested_by=refund.requested_by,
                    )
                )
            )
        logger.info(
            "refund_requested",
            refund_id=refund.id,
            payment_id=payment.id,
            booking_id=refund.booking_id,
            amount=str(amount),
        )
        return refund

    async def process_refund(self, refund_id: int) -> Refund:
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            refund = await self._get_refund(uow, refund_id)
            if refund.status is not RefundStatus.PENDING:
                raise RefundNotPendingException(refund.id, refund.status.value)
            payment = await self._get_payment(uow, refund.payment_id)
        return await self._execute(refund, payment)

    async def retry_failed_refund(self, refund_id: int) -> Refund:
        async with self._uow_factory() as uow:
            refund = await self._get_refund(uow, refund_id)
            # Raises RefundNotRetryableException before anything is written
            refund.retry()
            payment = await self._get_payment(uow, refund.payment_id)
            if await uow.refund_repository.get_pending_for_payment(payment.id) is not None:
                raise RefundAlreadyPendingException(payment.id)
            if refund.amount > payment.refundable_amount():
                raise RefundExceedsPaymentException(refund.amount, payment.refundable_amount())
            refund = await uow.refund_repository.update(refund)
        logger.info("refund_retry_scheduled", refund_id=refund.id, attempt=refund.attempt)
        return await self._execute(refund, payment)

    async def _execute(self, refund: Refund, payment: Payment) -> Refund:
        provider = self._providers.resolve(payment.provider)
        log = logger.bind(refund_id=refund.id, payment_id=payment.id, provider=provider.name, attempt=refund.attempt)
        metadata = {
            "refund_id": refund.id,
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "provider_intent_id": payment.provider_intent_id,
            "currency": refund.currency,
            "reason": refund.reason,
            "idempotency_key": refund.idempotency_key,
        }
        try:
            result: RefundResult = await call_provider(
                provider.name,
                "refund_payment",
                provider.refund_payment(payment.refund_reference or "", refund.amount, metadata),
                self._call_timeout,
            )
        except PaymentRecoverableError as exc:
            # Left PENDING; the same idempotency key is reused on the next attempt
            log.warning("refund_transient_failure", error=exc.message)
            raise

        try:
            async with self._uow_factory() as uow:
                current = await self._settle(uow, refund.id, payment.id, result)
        except RefundNotPendingException:
            # Settled by a concurrent execution of the same attempt
            current = await self.get_refund(refund.id)
            log.info("refund_already_settled", status=current.status.value)
            return current

        if current.status is RefundStatus.COMPLETED:
            log.info("refund_completed", provider_refund_id=current.provider_refund_id)
        else:
            log.warning("refund_declined", failure_code=current.failure_code, failure_reason=current.failure_reason)
        return current

    async def _settle(
        self, uow: AbstractUnitOfWork, refund_id: int, payment_id: int, result: RefundResult
    ) -> Refund:
        """Apply the provider outcome. The refund row is claimed before the payment is touched."""
        current = await self._get_refund(uow, refund_id)
        if current.status is not RefundStatus.PENDING:
            raise RefundNotPendingException(current.id, current.status.value)
        payment = await self._get_payment(uow, payment_id)

        if result.success:
            current.mark_completed(result.provider_refund_id)
            payment.apply_refund(current.amount)
            current = await uow.refund_repository.update(current)
            payment = await uow.payment_repository.add_refunded_amount(payment.id, current.amount)
            event = RefundCompleted(**_event_fields(current, payment), provider_refund_id=current.provider_refund_id)
        else:
            current.mark_failed(result.message, result.failure_code)
            current = await uow.refund_repository.update(current)
            event = RefundFailed(
                **_event_fields(current, payment),
                failure_reason=current.failure_reason,
                failure_code=current.failure_code,
            )
        await uow.outbox_repository.add(OutboxMessage.from_event(event))
        return current

    async def _resolve_payment(
        self, uow: AbstractUnitOfWork, booking_id: Optional[str], payment_ref: Optional[str]
    ) -> Payment:
        payment = None
        if booking_id:
            payment = await uow.payment_repository.get_by_booking_id(booking_id)
        if payment is None and payment_ref:
            if payment_ref.isdigit():
                payment = await uow.payment_repository.get_by_id(int(payment_ref))
            if payment is None:
                payment = await uow.payment_repository.get_by_provider_intent_id(payment_ref)
        if payment is None:
            raise PaymentNotFoundException(str(payment_ref or booking_id))
        return payment

    @staticmethod
    async def _get_refund(uow: AbstractUnitOfWork, refund_id: int) -> Refund:
        refund = await uow.refund_repository.get_by_id(refund_id)
        if refund is None:
            raise RefundNotFoundException(refund_id)
        return refund

    @staticmethod
    async def _get_payment(uow: AbstractUnitOfWork, payment_id: int) -> Payment:
        payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(str(payment_id))
        return payment

    async def get_refund(self, refund_id: int) -> Refund:
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            return await self._get_refund(uow, refund_id)

    async def get_refunds_by_payment(self, payment_id: int) -> List[Refund]:
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            await self._get_payment(uow, payment_id)
            return await uow.refund_repository.list_by_payment(payment_id)

    async def get_refunds_by_user(self, user_id: str) -> List[Refund]:
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            return await uow.refund_repository.list_by_user(user_id)
