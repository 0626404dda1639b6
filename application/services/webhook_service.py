"""
Webhook ingestion and dispatch.

Flow per delivery: resolve adapter -> parse event id -> idempotency lookup
-> verify signature -> record RECEIVED/PROCESSING -> dispatch to the ledger
-> record PROCESSED/FAILED. The webhook record, the payment transition and
the outbox rows commit in one transaction.
"""
from __future__ import annotations

import asyncio
import ipaddress
from typing import Mapping, Optional, Sequence

from application.dtos.payments import (
    ParsedWebhook,
    WebhookEventType,
    WebhookOutcome,
    WebhookRequest,
    WebhookStats,
)
from application.ports.payment_gateway import PaymentProvider
from application.services.payment_service import PaymentLedgerService
from application.services.provider_registry import ProviderRegistry
from application.utils.provider_calls import UnitOfWorkFactory, uow_scope
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PaymentStatus, WebhookEvent, WebhookStatus
from domain.payment.exceptions import (
    DuplicateWebhookException,
    IllegalPaymentTransitionException,
    PaymentSignatureError,
    WebhookSignatureException,
)


logger = get_logger(__name__)

_TARGET_STATUS = {
    WebhookEventType.SUCCEEDED: PaymentStatus.SUCCEEDED,
    WebhookEventType.PAYMENT_FAILED: PaymentStatus.FAILED,
    WebhookEventType.CANCELED: PaymentStatus.CANCELLED,
}


class WebhookService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        providers: ProviderRegistry,
        ledger: PaymentLedgerService,
        *,
        verify_timeout: float = 5.0,
        ip_allowlist: Optional[Sequence[str]] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._ledger = ledger
        self._verify_timeout = verify_timeout
        self._allowed_networks = [ipaddress.ip_network(cidr, strict=False) for cidr in (ip_allowlist or [])]

    async def process_webhook(
        self,
        provider_name: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        request: Optional[WebhookRequest] = None,
    ) -> WebhookOutcome:
        provider = self._providers.resolve(provider_name)
        parsed = provider.parse_webhook(raw_body)
        log = logger.bind(provider=provider.name, webhook_id=parsed.event_id, event_type=parsed.event_type)

        async with uow_scope(self._uow_factory, readonly=True) as uow:
            existing = await uow.webhook_repository.get_by_provider_and_webhook_id(provider.name, parsed.event_id)
        if existing is not None:
            log.info("webhook_duplicate_ignored", original_status=existing.status.value)
            return self._duplicate_outcome(existing)

        request = request or WebhookRequest.build(raw_body, headers)
        self._check_source(provider, request)
        if not await self._verify(provider, request):
            log.warning("webhook_signature_invalid", alert=True, client_ip=request.client_ip)
            raise WebhookSignatureException(provider.name)

        try:
            async with self._uow_factory() as uow:
                outcome = await self._record_and_dispatch(uow, provider, parsed, raw_body, request)
        except DuplicateWebhookException:
            # Lost the insert race to a concurrent delivery of the same event
            async with uow_scope(self._uow_factory, readonly=True) as uow:
                existing = await uow.webhook_repository.get_by_provider_and_webhook_id(provider.name, parsed.event_id)
            log.info("webhook_duplicate_concurrent")
            if existing is None:
                raise
            return self._duplicate_outcome(existing)

        log.info("webhook_processed", status=outcome.status, processed=outcome.processed, payment_id=outcome.payment_id)
        return outcome

    async def _record_and_dispatch(
        self,
        uow: AbstractUnitOfWork,
        provider: PaymentProvider,
        parsed: ParsedWebhook,
        raw_body: bytes,
        request: WebhookRequest,
    ) -> WebhookOutcome:
        record = await uow.webhook_repository.create(
            WebhookEvent(
                id=None,
                provider=provider.name,
                webhook_id=parsed.event_id,
                event_type=parsed.event_type,
                status=WebhookStatus.RECEIVED,
                payload=raw_body.decode("utf-8", errors="replace"),
                signature=self._signature_of(provider, request),
            )
        )
        record.mark_processing()
        record = await uow.webhook_repository.update(record)

        processed, message = await self._dispatch(uow, provider, parsed, record)
        if processed:
            record.mark_processed()
        else:
            record.mark_failed(message or "webhook dispatch failed")
        record = await uow.webhook_repository.update(record)
        return WebhookOutcome(
            processed=processed,
            duplicate=False,
            status=record.status.value,
            webhook_id=record.webhook_id,
            event_type=record.event_type,
            payment_id=record.payment_id,
            message=message,
        )

    async def _dispatch(
        self,
        uow: AbstractUnitOfWork,
        provider: PaymentProvider,
        parsed: ParsedWebhook,
        record: WebhookEvent,
    ) -> tuple[bool, Optional[str]]:
        target = _TARGET_STATUS.get(parsed.canonical_type)
        if target is None:
            logger.info("webhook_unhandled_type", provider=provider.name, event_type=parsed.event_type)
            return True, "unhandled event type"

        if not parsed.payment_intent_id:
            return False, "payment intent id missing from payload"

        payment = await self._ledger.find_by_payment_intent_id(parsed.payment_intent_id, uow=uow)
        if payment is None or payment.provider != provider.name:
            # A success signal for an unknown intent must stay visible to operators
            logger.error(
                "webhook_payment_not_found",
                provider=provider.name,
                webhook_id=parsed.event_id,
                payment_intent_id=parsed.payment_intent_id,
            )
            return False, f"payment not found for intent {parsed.payment_intent_id}"

        record.payment_id = payment.id
        failure_reason = parsed.failure_reason
        if target is PaymentStatus.CANCELLED and not failure_reason:
            failure_reason = "Payment canceled via webhook"
        try:
            _, changed = await self._ledger.update_payment_status(
                payment.id,
                target,
                transaction_id=parsed.transaction_id,
                failure_reason=failure_reason,
                uow=uow,
            )
        except IllegalPaymentTransitionException as exc:
            logger.warning(
                "webhook_transition_rejected",
                provider=provider.name,
                payment_id=payment.id,
                current=payment.status.value,
                target=target.value,
            )
            return False, exc.message
        return True, None if changed else "payment already in target status"

    async def _verify(self, provider: PaymentProvider, request: WebhookRequest) -> bool:
        try:
            return bool(await asyncio.wait_for(provider.verify_webhook(request), timeout=self._verify_timeout))
        except Exception as exc:  # fail closed
            logger.warning("webhook_verification_error", provider=provider.name, error=str(exc))
            return False

    def _check_source(self, provider: PaymentProvider, request: WebhookRequest) -> None:
        if not self._allowed_networks:
            return
        try:
            ip = ipaddress.ip_address(request.client_ip or "")
        except ValueError:
            ip = None
        if ip is None or not any(ip in net for net in self._allowed_networks):
            logger.warning("webhook_source_rejected", alert=True, provider=provider.name, client_ip=request.client_ip)
            raise PaymentSignatureError("Webhook source not allowed", provider=provider.name)

    @staticmethod
    def _signature_of(provider: PaymentProvider, request: WebhookRequest) -> Optional[str]:
        for name in provider.signature_headers:
            value = request.header(name)
            if value:
                return value[:1000]
        return None

    @staticmethod
    def _duplicate_outcome(existing: WebhookEvent) -> WebhookOutcome:
        """Echo the stored outcome; a replay never re-runs dispatch."""
        return WebhookOutcome(
            processed=existing.status is WebhookStatus.PROCESSED,
            duplicate=True,
            status=existing.status.value,
            webhook_id=existing.webhook_id,
            event_type=existing.event_type,
            payment_id=existing.payment_id,
            message="already handled",
        )

    async def get_webhook_stats(self) -> WebhookStats:
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            by_status = await uow.webhook_repository.count_by_status()
            by_provider = await uow.webhook_repository.count_by_provider_and_status()
        statuses = {s.value: by_status.get(s, 0) for s in WebhookStatus}
        providers = {
            name: {s.value: counts.get(s, 0) for s in WebhookStatus}
            for name, counts in sorted(by_provider.items())
        }
        return WebhookStats(total=sum(statuses.values()), by_status=statuses, by_provider=providers)
