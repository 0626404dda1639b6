from decimal import Decimal

import pytest
from sqlalchemy import func, select

from application.dtos.payments import OrderStatus
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import (
    AmountMismatchException,
    CurrencyMismatchException,
    IllegalPaymentTransitionException,
    OrderAlreadyPaidException,
    PaymentAlreadyPendingException,
    PaymentNotFoundException,
    PaymentProviderError,
    PaymentRecoverableError,
    ProviderNotSupportedException,
)
from infrastructure.models import OutboxEventModel, PaymentModel


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def test_create_intent_for_mock_order(container, orders, session_factory):
    order = orders.add("ord-100", total="100.00")
    payment = await container.ledger.create_payment_intent(order)

    assert payment.id is not None
    assert payment.status is PaymentStatus.PENDING
    assert payment.provider == "MOCK"
    assert payment.amount == Decimal("100.00")
    assert payment.client_secret.endswith("_secret")
    assert payment.user_id == "user-1"
    assert payment.booking_id == "bk-ord-100"

    stored = await container.ledger.get_payment(payment.id)
    assert stored.amount == Decimal("100.00")
    assert stored.provider_intent_id == payment.provider_intent_id


async def test_paid_order_is_rejected_without_rows(container, orders, session_factory, mock_provider):
    order = orders.add("ord-paid", status=OrderStatus.PAID)
    with pytest.raises(OrderAlreadyPaidException):
        await container.ledger.create_payment_intent(order)
    assert mock_provider.create_keys == []
    assert await _count(session_factory, PaymentModel) == 0


@pytest.mark.parametrize("amount", ["99.99", "100.01", "1.00", "1000.00"])
async def test_amount_must_equal_order_total(container, orders, session_factory, amount):
    order = orders.add("ord-amt", total="100.00")
    with pytest.raises(AmountMismatchException):
        await container.ledger.create_payment_intent(order, amount=Decimal(amount))
    assert await _count(session_factory, PaymentModel) == 0


async def test_currency_must_match_order(container, orders):
    order = orders.add("ord-cur", currency="BDT")
    with pytest.raises(CurrencyMismatchException):
        await container.ledger.create_payment_intent(order, currency="usd")


async def test_unknown_provider_is_a_typed_error(container, orders):
    order = orders.add("ord-x")
    with pytest.raises(ProviderNotSupportedException):
        await container.ledger.create_payment_intent(order, provider="PAYPAL")
    # Names are exact
    with pytest.raises(ProviderNotSupportedException):
        await container.ledger.create_payment_intent(order, provider="mock")


async def test_pending_intent_is_reused_for_same_provider(container, orders, mock_provider):
    order = orders.add("ord-reuse")
    first = await container.ledger.create_payment_intent(order)
    second = await container.ledger.create_payment_intent(order)
    assert first.id == second.id
    assert len(mock_provider.create_keys) == 1


async def test_pending_intent_blocks_other_provider(container, orders):
    order = orders.add("ord-two")
    await container.ledger.create_payment_intent(order, provider="MOCK")
    with pytest.raises(PaymentAlreadyPendingException):
        await container.ledger.create_payment_intent(order, provider="STRIPE")


async def test_idempotency_key_is_stable_per_order(container, orders, mock_provider):
    order = orders.add("ord-key")
    mock_provider.create_error = PaymentRecoverableError("timeout", provider="MOCK")
    with pytest.raises(PaymentRecoverableError):
        await container.ledger.create_payment_intent(order)
    mock_provider.create_error = None
    await container.ledger.create_payment_intent(order)

    first, second = mock_provider.create_keys
    assert first == second
    assert len(first) == 64


async def test_provider_failure_writes_nothing(container, orders, session_factory, mock_provider):
    order = orders.add("ord-fail")
    mock_provider.create_error = PaymentProviderError("bad credentials", provider="MOCK")
    with pytest.raises(PaymentProviderError):
        await container.ledger.create_payment_intent(order)
    assert await _count(session_factory, PaymentModel) == 0


async def test_update_status_writes_outbox_event_once(container, orders, session_factory):
    order = orders.add("ord-evt")
    payment = await container.ledger.create_payment_intent(order)

    updated, changed = await container.ledger.update_payment_status(
        payment.id, PaymentStatus.SUCCEEDED, transaction_id="txn_1"
    )
    assert changed is True
    assert updated.provider_transaction_id == "txn_1"

    _, changed = await container.ledger.update_payment_status(payment.id, PaymentStatus.SUCCEEDED)
    assert changed is False
    assert await _count(session_factory, OutboxEventModel) == 1

    with pytest.raises(IllegalPaymentTransitionException):
        await container.ledger.update_payment_status(payment.id, PaymentStatus.FAILED)


async def test_succeeded_payment_blocks_new_intent(container, paid_payment, orders):
    payment = await paid_payment("ord-done")
    with pytest.raises(OrderAlreadyPaidException):
        await container.ledger.create_payment_intent(orders.orders[payment.order_id])


async def test_lookup_helpers(container, orders):
    order = orders.add("ord-look")
    payment = await container.ledger.create_payment_intent(order)

    found = await container.ledger.find_by_payment_intent_id(payment.provider_intent_id)
    assert found.id == payment.id
    assert await container.ledger.find_by_payment_intent_id("pi_missing") is None
    assert container.ledger.get_provider_by_name("MOCK").name == "MOCK"
    assert container.ledger.get_provider_by_name("NOPE") is None
    with pytest.raises(PaymentNotFoundException):
        await container.ledger.get_payment(999)


async def test_cancel_pending_payment_writes_event(container, orders, session_factory):
    payment = await container.ledger.create_payment_intent(orders.add("ord-cancel"))

    cancelled = await container.ledger.cancel_payment(payment.id, "customer changed their mind")
    assert cancelled.status is PaymentStatus.CANCELLED
    assert cancelled.failure_reason == "customer changed their mind"
    assert cancelled.canceled_at is not None

    async with session_factory() as session:
        topics = (await session.execute(select(OutboxEventModel.topic))).scalars().all()
    assert topics == ["payment.canceled"]

    again = await container.ledger.cancel_payment(payment.id)
    assert again.status is PaymentStatus.CANCELLED
    assert await _count(session_factory, OutboxEventModel) == 1


async def test_cancel_defaults_reason_and_rejects_settled(container, orders, paid_payment):
    payment = await container.ledger.create_payment_intent(orders.add("ord-cancel-default"))
    cancelled = await container.ledger.cancel_payment(payment.id)
    assert cancelled.failure_reason == "Payment cancelled by operator"

    paid = await paid_payment("ord-cancel-paid")
    with pytest.raises(IllegalPaymentTransitionException):
        await container.ledger.cancel_payment(paid.id)
    assert (await container.ledger.get_payment(paid.id)).status is PaymentStatus.SUCCEEDED

    with pytest.raises(PaymentNotFoundException):
        await container.ledger.cancel_payment(999)


async def test_payment_by_order_prefers_settled_attempt(container, orders, paid_payment):
    order = orders.add("ord-by-order")
    first = await container.ledger.create_payment_intent(order)
    await container.ledger.update_payment_status(first.id, PaymentStatus.FAILED, failure_reason="declined")
    assert (await container.ledger.get_payment_by_order("ord-by-order")).id == first.id

    second = await container.ledger.create_payment_intent(order)
    assert (await container.ledger.get_payment_by_order("ord-by-order")).id == second.id

    paid = await paid_payment("ord-by-order-paid")
    found = await container.ledger.get_payment_by_order("ord-by-order-paid")
    assert found.id == paid.id
    assert found.status is PaymentStatus.SUCCEEDED

    with pytest.raises(PaymentNotFoundException):
        await container.ledger.get_payment_by_order("ord-none")


async def test_payment_stats_per_status_and_currency(container, orders, paid_payment):
    empty = await container.ledger.get_payment_stats()
    assert empty.total == 0
    assert empty.by_status == {"pending": 0, "succeeded": 0, "failed": 0, "cancelled": 0}
    assert empty.succeeded_amount == {}

    await paid_payment("ord-st-1", total="100.00")
    await paid_payment("ord-st-2", total="50.50")
    await paid_payment("ord-st-3", total="1200.00", currency="BDT")
    await container.ledger.create_payment_intent(orders.add("ord-st-4"))

    stats = await container.ledger.get_payment_stats()
    assert stats.total == 4
    assert stats.by_status["succeeded"] == 3
    assert stats.by_status["pending"] == 1
    assert stats.succeeded_amount == {"BDT": Decimal("1200.00"), "USD": Decimal("150.50")}
