"""Writers racing on the same payment, refund or webhook row."""
from dataclasses import replace
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from application.dtos.payments import BookingRefundRequested
from domain.payment.entity import PaymentStatus, RefundStatus
from domain.payment.exceptions import (
    IllegalPaymentTransitionException,
    RefundAlreadyPendingException,
    RefundNotPendingException,
)
from infrastructure.models import OutboxEventModel, PaymentModel, RefundModel, WebhookEventModel
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentRepository,
    SQLAlchemyRefundRepository,
    SQLAlchemyWebhookEventRepository,
)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _topics(session_factory) -> list[str]:
    async with session_factory() as session:
        rows = await session.execute(select(OutboxEventModel.topic).order_by(OutboxEventModel.id))
        return list(rows.scalars())


async def _stored_status(session_factory, payment_id) -> str:
    async with session_factory() as session:
        row = await session.execute(select(PaymentModel.status).where(PaymentModel.id == payment_id))
        return row.scalar_one()


def _serve_snapshot_once(monkeypatch, snapshot):
    """The next get_by_id returns ``snapshot``, as if read before another writer committed."""
    original = SQLAlchemyPaymentRepository.get_by_id
    served = []

    async def get_by_id(self, payment_id):
        if not served:
            served.append(payment_id)
            return replace(snapshot)
        return await original(self, payment_id)

    monkeypatch.setattr(SQLAlchemyPaymentRepository, "get_by_id", get_by_id)


async def test_stale_payment_cannot_overwrite_terminal_row(container, orders, session_factory):
    payment = await container.ledger.create_payment_intent(orders.add("ord-stale"))
    stale = await container.ledger.get_payment(payment.id)
    await container.ledger.update_payment_status(payment.id, PaymentStatus.SUCCEEDED, transaction_id="txn_1")

    stale.transition_to(PaymentStatus.FAILED, failure_reason="card declined")
    with pytest.raises(IllegalPaymentTransitionException):
        async with container.uow_factory() as uow:
            await uow.payment_repository.update(stale)

    assert await _stored_status(session_factory, payment.id) == "succeeded"
    settled = await container.ledger.get_payment(payment.id)
    assert settled.provider_transaction_id == "txn_1"
    assert settled.failure_reason is None
    assert await _topics(session_factory) == ["payment.succeeded"]


async def test_ledger_rejects_conflicting_status_read_before_commit(
    container, orders, session_factory, monkeypatch
):
    payment = await container.ledger.create_payment_intent(orders.add("ord-race-fail"))
    snapshot = await container.ledger.get_payment(payment.id)
    await container.ledger.update_payment_status(payment.id, PaymentStatus.SUCCEEDED)

    _serve_snapshot_once(monkeypatch, snapshot)
    with pytest.raises(IllegalPaymentTransitionException):
        await container.ledger.update_payment_status(payment.id, PaymentStatus.FAILED, failure_reason="late")

    assert await _stored_status(session_factory, payment.id) == "succeeded"
    assert await _topics(session_factory) == ["payment.succeeded"]


async def test_ledger_same_status_race_is_a_noop(container, orders, session_factory, monkeypatch):
    payment = await container.ledger.create_payment_intent(orders.add("ord-race-same"))
    snapshot = await container.ledger.get_payment(payment.id)
    await container.ledger.update_payment_status(payment.id, PaymentStatus.SUCCEEDED, transaction_id="txn_a")

    _serve_snapshot_once(monkeypatch, snapshot)
    current, changed = await container.ledger.update_payment_status(
        payment.id, PaymentStatus.SUCCEEDED, transaction_id="txn_b"
    )

    assert changed is False
    assert current.status is PaymentStatus.SUCCEEDED
    assert current.provider_transaction_id == "txn_a"
    assert await _topics(session_factory) == ["payment.succeeded"]


async def test_refund_settled_during_provider_call_is_counted_once(
    container, paid_payment, session_factory, mock_provider, monkeypatch
):
    payment = await paid_payment("ord-rf-race")
    refund = await container.refunds.process_booking_refund(
        BookingRefundRequested(payment_id=str(payment.id), amount=Decimal("40.00"), user_id="user-1")
    )

    original = mock_provider.refund_payment
    entered = []
    nested = []

    async def refund_payment(transaction_id, amount, metadata):
        if not entered:
            entered.append(transaction_id)
            # A second executor completes the same attempt while this call is in flight
            nested.append(await container.refunds.process_refund(refund.id))
        return await original(transaction_id, amount, metadata)

    monkeypatch.setattr(mock_provider, "refund_payment", refund_payment)
    outcome = await container.refunds.process_refund(refund.id)

    assert nested[0].status is RefundStatus.COMPLETED
    assert outcome.status is RefundStatus.COMPLETED
    assert outcome.provider_refund_id == nested[0].provider_refund_id
    assert len(mock_provider.refund_calls) == 2

    refreshed = await container.ledger.get_payment(payment.id)
    assert refreshed.refunded_amount == Decimal("40.00")
    assert (await _topics(session_factory)).count("refund.completed") == 1


async def test_stale_refund_cannot_overwrite_settled_row(container, paid_payment, session_factory):
    payment = await paid_payment("ord-rf-stale")
    refund = await container.refunds.process_booking_refund(
        BookingRefundRequested(payment_id=str(payment.id), amount=Decimal("25.00"), user_id="user-1")
    )
    stale = await container.refunds.get_refund(refund.id)
    await container.refunds.process_refund(refund.id)

    stale.mark_failed("declined", "card_declined")
    with pytest.raises(RefundNotPendingException):
        async with container.uow_factory() as uow:
            await uow.refund_repository.update(stale)

    async with session_factory() as session:
        row = await session.execute(select(RefundModel.status).where(RefundModel.id == refund.id))
        assert row.scalar_one() == "completed"


async def test_pending_refund_index_catches_missed_check(container, paid_payment, session_factory, monkeypatch):
    payment = await paid_payment("ord-rf-index")
    request = BookingRefundRequested(payment_id=str(payment.id), amount=Decimal("10.00"), user_id="user-1")
    await container.refunds.process_booking_refund(request)

    async def no_pending(self, payment_id):
        return None

    monkeypatch.setattr(SQLAlchemyRefundRepository, "get_pending_for_payment", no_pending)
    with pytest.raises(RefundAlreadyPendingException):
        await container.refunds.process_booking_refund(request)

    assert await _count(session_factory, RefundModel) == 1
    assert (await _topics(session_factory)).count("refund.requested") == 1


async def test_webhook_insert_race_returns_stored_outcome(
    container, orders, session_factory, webhook_body, monkeypatch
):
    payment = await container.ledger.create_payment_intent(orders.add("ord-wh-race"))
    body = webhook_body("evt_race", "succeeded", payment.provider_intent_id)
    first = await container.webhooks.process_webhook("MOCK", body, {})
    assert first.processed is True

    original = SQLAlchemyWebhookEventRepository.get_by_provider_and_webhook_id
    lookups = []

    async def lookup(self, provider, webhook_id):
        lookups.append(webhook_id)
        if len(lookups) == 1:
            # The concurrent delivery has not committed yet when this one checks
            return None
        return await original(self, provider, webhook_id)

    monkeypatch.setattr(SQLAlchemyWebhookEventRepository, "get_by_provider_and_webhook_id", lookup)
    replay = await container.webhooks.process_webhook("MOCK", body, {})

    assert len(lookups) == 2
    assert replay.duplicate is True
    assert replay.processed is True
    assert replay.status == "processed"
    assert await _count(session_factory, WebhookEventModel) == 1
    assert await _count(session_factory, OutboxEventModel) == 1
