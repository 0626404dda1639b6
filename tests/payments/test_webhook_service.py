import pytest
from sqlalchemy import func, select

from application.dtos.payments import WebhookRequest
from application.services.provider_registry import ProviderRegistry
from application.services.webhook_service import WebhookService
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import (
    PaymentSignatureError,
    ProviderNotSupportedException,
    WebhookPayloadInvalidException,
    WebhookSignatureException,
)
from infrastructure.models import OutboxEventModel, WebhookEventModel


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _pending(container, orders, order_id="ord-wh"):
    return await container.ledger.create_payment_intent(orders.add(order_id))


async def test_success_webhook_settles_payment_once(container, orders, session_factory, webhook_body):
    payment = await _pending(container, orders)
    body = webhook_body("evt_test_123", "succeeded", payment.provider_intent_id, transaction_id="txn_9")

    outcome = await container.webhooks.process_webhook("MOCK", body, {})
    assert outcome.processed is True
    assert outcome.duplicate is False
    assert outcome.status == "processed"
    assert outcome.payment_id == payment.id

    settled = await container.ledger.get_payment(payment.id)
    assert settled.status is PaymentStatus.SUCCEEDED
    assert settled.provider_transaction_id == "txn_9"
    assert await _count(session_factory, OutboxEventModel) == 1

    replay = await container.webhooks.process_webhook("MOCK", body, {})
    assert replay.processed is True
    assert replay.duplicate is True
    assert replay.status == "processed"
    assert await _count(session_factory, WebhookEventModel) == 1
    assert await _count(session_factory, OutboxEventModel) == 1


async def test_failed_after_succeeded_is_rejected(container, orders, webhook_body):
    payment = await _pending(container, orders)
    await container.webhooks.process_webhook(
        "MOCK", webhook_body("evt_ok", "payment_intent.succeeded", payment.provider_intent_id), {}
    )

    late = await container.webhooks.process_webhook(
        "MOCK", webhook_body("evt_late", "payment_intent.payment_failed", payment.provider_intent_id), {}
    )
    assert late.processed is False
    assert late.status == "failed"
    assert (await container.ledger.get_payment(payment.id)).status is PaymentStatus.SUCCEEDED


async def test_cancel_webhook_sets_default_reason(container, orders, webhook_body):
    payment = await _pending(container, orders)
    outcome = await container.webhooks.process_webhook(
        "MOCK", webhook_body("evt_c", "payment_intent.canceled", payment.provider_intent_id), {}
    )
    assert outcome.processed is True
    cancelled = await container.ledger.get_payment(payment.id)
    assert cancelled.status is PaymentStatus.CANCELLED
    assert cancelled.failure_reason == "Payment canceled via webhook"


async def test_failure_reason_is_kept_verbatim(container, orders, webhook_body):
    payment = await _pending(container, orders)
    await container.webhooks.process_webhook(
        "MOCK",
        webhook_body("evt_f", "payment.failed", payment.provider_intent_id, failure_reason="Insufficient funds"),
        {},
    )
    failed = await container.ledger.get_payment(payment.id)
    assert failed.status is PaymentStatus.FAILED
    assert failed.failure_reason == "Insufficient funds"


async def test_unrecognized_type_is_acknowledged(container, orders, webhook_body):
    payment = await _pending(container, orders)
    outcome = await container.webhooks.process_webhook(
        "MOCK", webhook_body("evt_u", "customer.created", payment.provider_intent_id), {}
    )
    assert outcome.processed is True
    assert outcome.status == "processed"
    assert (await container.ledger.get_payment(payment.id)).status is PaymentStatus.PENDING


async def test_unknown_intent_is_recorded_as_failed(container, webhook_body):
    outcome = await container.webhooks.process_webhook("MOCK", webhook_body("evt_n", "succeeded", "pi_nobody"), {})
    assert outcome.processed is False
    assert outcome.status == "failed"
    assert "pi_nobody" in outcome.message


async def test_intent_of_other_provider_is_not_matched(container, orders, webhook_body):
    payment = await _pending(container, orders)
    outcome = await container.webhooks.process_webhook(
        "STRIPE", webhook_body("evt_s", "succeeded", payment.provider_intent_id), {}
    )
    assert outcome.processed is False
    assert (await container.ledger.get_payment(payment.id)).status is PaymentStatus.PENDING


async def test_bad_signature_leaves_no_record(container, orders, session_factory, mock_provider, webhook_body):
    payment = await _pending(container, orders)
    mock_provider.signature_ok = False
    with pytest.raises(WebhookSignatureException):
        await container.webhooks.process_webhook("MOCK", webhook_body("evt_sig", "succeeded", payment.provider_intent_id), {})
    assert await _count(session_factory, WebhookEventModel) == 0
    assert (await container.ledger.get_payment(payment.id)).status is PaymentStatus.PENDING


async def test_verification_error_fails_closed(container, mock_provider, webhook_body):
    async def _boom(request):
        raise RuntimeError("key server down")

    mock_provider.verify_webhook = _boom
    with pytest.raises(WebhookSignatureException):
        await container.webhooks.process_webhook("MOCK", webhook_body("evt_boom", "succeeded", "pi_1"), {})


async def test_malformed_payloads(container):
    with pytest.raises(WebhookPayloadInvalidException):
        await container.webhooks.process_webhook("MOCK", b"not json", {})
    with pytest.raises(WebhookPayloadInvalidException):
        await container.webhooks.process_webhook("MOCK", b'{"type": "succeeded"}', {})
    with pytest.raises(ProviderNotSupportedException):
        await container.webhooks.process_webhook("PAYPAL", b"{}", {})


async def test_ip_allowlist_uses_client_ip(container, mock_provider, webhook_body):
    service = WebhookService(
        container.uow_factory,
        ProviderRegistry([mock_provider]),
        container.ledger,
        ip_allowlist=["10.0.0.0/8"],
    )
    body = webhook_body("evt_ip", "customer.created")
    with pytest.raises(PaymentSignatureError):
        await service.process_webhook("MOCK", body, {}, WebhookRequest.build(body, {}, client_ip="192.168.1.5"))

    outcome = await service.process_webhook("MOCK", body, {}, WebhookRequest.build(body, {}, client_ip="10.1.2.3"))
    assert outcome.processed is True


async def test_signature_header_is_stored(container, session_factory, webhook_body):
    await container.webhooks.process_webhook("MOCK", webhook_body("evt_h", "noop"), {"X-Test-Signature": "sig-abc"})
    async with session_factory() as session:
        row = (await session.execute(select(WebhookEventModel))).scalar_one()
    assert row.signature == "sig-abc"
    assert row.payload is not None


async def test_stats_by_status_and_provider(container, orders, webhook_body):
    payment = await _pending(container, orders)
    await container.webhooks.process_webhook("MOCK", webhook_body("e1", "succeeded", payment.provider_intent_id), {})
    await container.webhooks.process_webhook("MOCK", webhook_body("e2", "succeeded", "pi_unknown"), {})
    await container.webhooks.process_webhook("STRIPE", webhook_body("e3", "charge.refunded"), {})

    stats = await container.webhooks.get_webhook_stats()
    assert stats.total == 3
    assert stats.by_status["processed"] == 2
    assert stats.by_status["failed"] == 1
    assert stats.by_status["received"] == 0
    assert stats.by_provider["MOCK"] == {"received": 0, "processing": 0, "processed": 1, "failed": 1}
    assert stats.by_provider["STRIPE"]["processed"] == 1


async def test_replay_of_failed_webhook_echoes_failure(container, session_factory, webhook_body):
    body = webhook_body("evt_lost", "succeeded", "pi_lost")
    first = await container.webhooks.process_webhook("MOCK", body, {})
    assert first.processed is False

    replay = await container.webhooks.process_webhook("MOCK", body, {})
    assert replay.duplicate is True
    assert replay.processed is False
    assert replay.status == "failed"
    assert await _count(session_factory, WebhookEventModel) == 1
    assert await _count(session_factory, OutboxEventModel) == 0
