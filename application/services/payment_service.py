"""
Payment ledger: owns the Payment lifecycle tied to an Order.

Depends only on application ports, the provider registry and the unit of
work abstraction. Concrete adapters are injected from the composition root
(API dependencies / Celery tasks).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from application.dtos.payments import Order, OrderStatus, PaymentStats
from application.ports.payment_gateway import PaymentProvider
from application.services.provider_registry import ProviderRegistry
from application.utils.provider_calls import UnitOfWorkFactory, call_provider, stable_key, uow_scope
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus
from domain.payment.events import (
    OutboxMessage,
    PaymentCanceled,
    PaymentEvent,
    PaymentFailed,
    PaymentSucceeded,
)
from domain.payment.exceptions import (
    AmountMismatchException,
    CurrencyMismatchException,
    IllegalPaymentTransitionException,
    OrderAlreadyPaidException,
    PaymentAlreadyPendingException,
    PaymentNotFoundException,
)


logger = get_logger(__name__)


def status_event(payment: Payment) -> Optional[PaymentEvent]:
    """Domain event describing the payment's current terminal status."""
    common = dict(
        payment_id=payment.id,
        order_id=payment.order_id,
        provider=payment.provider,
        amount=payment.amount,
        currency=payment.currency,
        provider_intent_id=payment.provider_intent_id,
    )
    if payment.status is PaymentStatus.SUCCEEDED:
        return PaymentSucceeded(**common, transaction_id=payment.provider_transaction_id)
    if payment.status is PaymentStatus.FAILED:
        return PaymentFailed(**common, reason=payment.failure_reason)
    if payment.status is PaymentStatus.CANCELLED:
        return PaymentCanceled(**common)
    return None


class PaymentLedgerService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        providers: ProviderRegistry,
        *,
        default_provider: str,
        call_timeout: float,
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._default_provider = default_provider
        self._call_timeout = call_timeout

    async def create_payment_intent(
        self,
        order: Order,
        *,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Payment:
        if order.status is OrderStatus.PAID:
            raise OrderAlreadyPaidException(order.id)

        amount = Decimal(order.total_amount if amount is None else amount)
        if amount != Decimal(order.total_amount):
            raise AmountMismatchException(amount, order.total_amount)
        currency = (currency or order.currency).upper()
        if currency != order.currency:
            raise CurrencyMismatchException(currency, order.currency)

        adapter = self._providers.resolve(provider or self._default_provider)

        async with uow_scope(self._uow_factory, readonly=True) as uow:
            existing = await uow.payment_repository.list_by_order(order.id)
        for payment in existing:
            if payment.status is PaymentStatus.SUCCEEDED:
                raise OrderAlreadyPaidException(order.id)
        pending = next((p for p in existing if p.status is PaymentStatus.PENDING), None)
        if pending is not None:
            if pending.provider != adapter.name:
                raise PaymentAlreadyPendingException(order.id, pending.provider)
            logger.info("payment_intent_reused", payment_id=pending.id, order_id=order.id, provider=adapter.name)
            return pending

        idempotency_key = stable_key("create", order.id, amount, currency, adapter.name)
        logger.info("payment_intent_request", order_id=order.id, provider=adapter.name, amount=str(amount))
        # No row is written when the provider call fails
        intent = await call_provider(
            adapter.name,
            "create_payment_intent",
            adapter.create_payment_intent(order, amount=amount, currency=currency, idempotency_key=idempotency_key),
            self._call_timeout,
        )

        async with uow_scope(self._uow_factory) as uow:
            payment = await uow.payment_repository.create(
                Payment(
                    id=None,
                    order_id=order.id,
                    user_id=order.user_id,
                    booking_id=order.booking_id,
                    provider=adapter.name,
                    amount=amount,
                    currency=currency,
                    status=PaymentStatus.PENDING,
                    provider_intent_id=intent.provider_intent_id,
                    client_secret=intent.client_secret,
                    idempotency_key=idempotency_key,
                )
            )
        logger.info(
            "payment_intent_created",
            payment_id=payment.id,
            order_id=order.id,
            provider=adapter.name,
            provider_intent_id=intent.provider_intent_id,
        )
        return payment

    async def find_by_payment_intent_id(
        self, provider_intent_id: str, *, uow: Optional[AbstractUnitOfWork] = None
    ) -> Optional[Payment]:
        async with uow_scope(self._uow_factory, uow, readonly=True) as scope:
            return await scope.payment_repository.get_by_provider_intent_id(provider_intent_id)

    async def update_payment_status(
        self,
        payment_id: int,
        new_status: PaymentStatus,
        *,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        uow: Optional[AbstractUnitOfWork] = None,
    ) -> tuple[Payment, bool]:
        """Monotonic transition; writes the matching domain event to the outbox.

        Terminal -> same terminal returns ``changed=False``; terminal -> other
        raises IllegalPaymentTransitionException.
        """
        async with uow_scope(self._uow_factory, uow) as scope:
            payment = await scope.payment_repository.get_by_id(payment_id)
            if payment is None:
                raise PaymentNotFoundException(str(payment_id))
            previous = payment.status
            changed = payment.transition_to(
                new_status, transaction_id=transaction_id, failure_reason=failure_reason
            )
            if not changed:
                logger.info("payment_status_unchanged", payment_id=payment_id, status=previous.value)
                return payment, False
            try:
                payment = await scope.payment_repository.update(payment)
            except IllegalPaymentTransitionException:
                # Another handler settled the row after we read it
                current = await scope.payment_repository.get_by_id(payment_id)
                if current is not None and current.status == new_status:
                    logger.info("payment_status_settled_concurrently", payment_id=payment_id, status=current.status.value)
                    return current, False
                raise
            event = status_event(payment)
            if event is not None:
                await scope.outbox_repository.add(OutboxMessage.from_event(event))
        logger.info(
            "payment_status_changed",
            payment_id=payment_id,
            from_status=previous.value,
            to_status=payment.status.value,
        )
        return payment, True

    def get_provider_by_name(self, name: Optional[str]) -> Optional[PaymentProvider]:
        return self._providers.get(name)

    async def get_payment(self, payment_id: int) -> Payment:
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(str(payment_id))
        return payment

    async def get_payment_by_order(self, order_id: str) -> Payment:
        """The order's settled payment, else its pending one, else the latest attempt."""
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            payments = await uow.payment_repository.list_by_order(order_id)
        if not payments:
            raise PaymentNotFoundException(f"order:{order_id}")
        for wanted in (PaymentStatus.SUCCEEDED, PaymentStatus.PENDING):
            match = next((p for p in payments if p.status is wanted), None)
            if match is not None:
                return match
        return payments[-1]

    async def cancel_payment(self, payment_id: int, reason: Optional[str] = None) -> Payment:
        """Operator cancel of a PENDING payment; records ``payment.canceled`` like any other transition."""
        payment, changed = await self.update_payment_status(
            payment_id,
            PaymentStatus.CANCELLED,
            failure_reason=reason or "Payment cancelled by operator",
        )
        if changed:
            logger.info("payment_cancelled", payment_id=payment_id, reason=payment.failure_reason)
        return payment

    async def get_payment_stats(self) -> PaymentStats:
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            by_status = await uow.payment_repository.count_by_status()
            succeeded = await uow.payment_repository.succeeded_amount_by_currency()
        counts = {s.value: by_status.get(s, 0) for s in PaymentStatus}
        return PaymentStats(total=sum(counts.values()), by_status=counts, succeeded_amount=dict(sorted(succeeded.items())))
