from decimal import Decimal

import pytest
from sqlalchemy import func, select

from application.dtos.payments import BookingRefundRequested, RefundResult
from domain.payment.entity import PaymentStatus, RefundStatus
from domain.payment.exceptions import (
    PaymentNotFoundException,
    PaymentNotRefundableException,
    PaymentRecoverableError,
    RefundAlreadyPendingException,
    RefundExceedsPaymentException,
    RefundNotFoundException,
    RefundNotPendingException,
    RefundNotRetryableException,
)
from infrastructure.models import OutboxEventModel, RefundModel


async def _topics(session_factory) -> list[str]:
    async with session_factory() as session:
        rows = await session.execute(select(OutboxEventModel.topic).order_by(OutboxEventModel.id))
        return list(rows.scalars())


async def _refund_rows(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(RefundModel))).scalar_one()


def _request(payment, amount="50.00", **kwargs) -> BookingRefundRequested:
    data = dict(payment_id=str(payment.id), amount=Decimal(amount), reason="booking cancelled", user_id="user-1")
    data.update(kwargs)
    return BookingRefundRequested(**data)


async def test_refund_request_creates_pending_and_event(container, paid_payment, session_factory):
    payment = await paid_payment("ord-r1")
    refund = await container.refunds.process_booking_refund(_request(payment))

    assert refund.status is RefundStatus.PENDING
    assert refund.amount == Decimal("50.00")
    assert refund.currency == "USD"
    assert refund.provider == "MOCK"
    assert refund.booking_id == "bk-ord-r1"
    assert (await _topics(session_factory))[-1] == "refund.requested"


async def test_payment_is_resolved_by_booking_or_intent(container, paid_payment):
    payment = await paid_payment("ord-r2")
    by_booking = await container.refunds.process_booking_refund(
        BookingRefundRequested(booking_id="bk-ord-r2", amount=Decimal("10.00"))
    )
    assert by_booking.payment_id == payment.id

    await container.refunds.process_refund(by_booking.id)
    by_intent = await container.refunds.process_booking_refund(
        BookingRefundRequested(payment_id=payment.provider_intent_id, amount=Decimal("10.00"))
    )
    assert by_intent.payment_id == payment.id

    with pytest.raises(PaymentNotFoundException):
        await container.refunds.process_booking_refund(
            BookingRefundRequested(booking_id="bk-none", payment_id="pi_none", amount=Decimal("1.00"))
        )


async def test_second_pending_refund_is_rejected(container, paid_payment, session_factory):
    payment = await paid_payment("ord-r3")
    await container.refunds.process_booking_refund(_request(payment, "10.00"))
    with pytest.raises(RefundAlreadyPendingException):
        await container.refunds.process_booking_refund(_request(payment, "10.00"))
    assert await _refund_rows(session_factory) == 1


async def test_refund_requires_succeeded_payment(container, orders):
    payment = await container.ledger.create_payment_intent(orders.add("ord-r4"))
    with pytest.raises(PaymentNotRefundableException):
        await container.refunds.process_booking_refund(_request(payment))


async def test_refund_cannot_exceed_payment(container, paid_payment):
    payment = await paid_payment("ord-r5")
    with pytest.raises(RefundExceedsPaymentException):
        await container.refunds.process_booking_refund(_request(payment, "100.01"))


async def test_successful_refund_completes_and_reduces_refundable(container, paid_payment, mock_provider, session_factory):
    payment = await paid_payment("ord-r6")
    refund = await container.refunds.process_booking_refund(_request(payment, "40.00"))

    done = await container.refunds.process_refund(refund.id)
    assert done.status is RefundStatus.COMPLETED
    assert done.provider_refund_id == "re_1"
    call = mock_provider.refund_calls[0]
    assert call["transaction_id"] == "txn_ord-r6"
    assert call["idempotency_key"] == f"refund:{refund.id}:1"
    assert call["provider_intent_id"] == payment.provider_intent_id

    refreshed = await container.ledger.get_payment(payment.id)
    assert refreshed.refunded_amount == Decimal("40.00")
    assert (await _topics(session_factory))[-1] == "refund.completed"

    with pytest.raises(RefundNotPendingException):
        await container.refunds.process_refund(refund.id)
    with pytest.raises(RefundExceedsPaymentException):
        await container.refunds.process_booking_refund(_request(payment, "60.01"))


async def test_decline_then_retry_to_completion(container, paid_payment, mock_provider, session_factory):
    payment = await paid_payment("ord-r7")
    refund = await container.refunds.process_booking_refund(_request(payment, "50.00"))

    mock_provider.refund_outcomes.append(RefundResult.declined("insufficient_funds", "Merchant balance too low"))
    failed = await container.refunds.process_refund(refund.id)
    assert failed.status is RefundStatus.FAILED
    assert failed.failure_reason == "Merchant balance too low"
    assert failed.failure_code == "insufficient_funds"
    assert (await _topics(session_factory))[-1] == "refund.failed"

    retried = await container.refunds.retry_failed_refund(refund.id)
    assert retried.status is RefundStatus.COMPLETED
    assert retried.attempt == 2
    assert mock_provider.refund_calls[-1]["idempotency_key"] == f"refund:{refund.id}:2"
    assert (await container.ledger.get_payment(payment.id)).status is PaymentStatus.SUCCEEDED


async def test_failed_refund_allows_new_request(container, paid_payment, mock_provider):
    payment = await paid_payment("ord-r8")
    refund = await container.refunds.process_booking_refund(_request(payment, "20.00"))
    mock_provider.refund_outcomes.append(RefundResult.declined("declined", "nope"))
    await container.refunds.process_refund(refund.id)

    second = await container.refunds.process_booking_refund(_request(payment, "20.00"))
    assert second.status is RefundStatus.PENDING

    # The failed one cannot be retried while another refund is pending
    with pytest.raises(RefundAlreadyPendingException):
        await container.refunds.retry_failed_refund(refund.id)
    assert (await container.refunds.get_refund(refund.id)).status is RefundStatus.FAILED


@pytest.mark.parametrize("settle", [False, True])
async def test_retry_only_from_failed(container, paid_payment, settle):
    payment = await paid_payment("ord-r9")
    refund = await container.refunds.process_booking_refund(_request(payment, "5.00"))
    if settle:
        await container.refunds.process_refund(refund.id)

    before = await container.refunds.get_refund(refund.id)
    with pytest.raises(RefundNotRetryableException):
        await container.refunds.retry_failed_refund(refund.id)
    after = await container.refunds.get_refund(refund.id)
    assert after.status is before.status
    assert after.attempt == before.attempt


async def test_transient_error_leaves_refund_pending(container, paid_payment, mock_provider):
    payment = await paid_payment("ord-r10")
    refund = await container.refunds.process_booking_refund(_request(payment, "5.00"))
    mock_provider.refund_outcomes.append(PaymentRecoverableError("HTTP 503", provider="MOCK"))

    with pytest.raises(PaymentRecoverableError):
        await container.refunds.process_refund(refund.id)
    pending = await container.refunds.get_refund(refund.id)
    assert pending.status is RefundStatus.PENDING

    done = await container.refunds.process_refund(refund.id)
    assert done.status is RefundStatus.COMPLETED
    first, second = mock_provider.refund_calls
    assert first["idempotency_key"] == second["idempotency_key"]


async def test_queries(container, paid_payment):
    payment = await paid_payment("ord-r11", user_id="user-42")
    refund = await container.refunds.process_booking_refund(_request(payment, "1.00"))

    assert [r.id for r in await container.refunds.get_refunds_by_payment(payment.id)] == [refund.id]
    assert [r.id for r in await container.refunds.get_refunds_by_user("user-42")] == [refund.id]
    assert await container.refunds.get_refunds_by_user("someone-else") == []
    with pytest.raises(RefundNotFoundException):
        await container.refunds.get_refund(12345)
    with pytest.raises(PaymentNotFoundException):
        await container.refunds.get_refunds_by_payment(12345)
