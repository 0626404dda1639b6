"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement provider-specific logic.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import (
    Order,
    ParsedWebhook,
    PaymentIntentResult,
    RefundResult,
    WebhookEventType,
    WebhookRequest,
)
from core.logging_config import get_logger
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import PaymentRecoverableError, WebhookPayloadInvalidException
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL, WEBHOOK_EVENT_TYPES


logger = get_logger(__name__)

_RECOVERABLE_HTTP = {408, 425, 429}


def _dig(data: Any, *path: str) -> Optional[str]:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    if data is None or data == "":
        return None
    return str(data)


class BasePaymentClient:
    name: str = "BASE"
    signature_headers: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._timeouts_cfg["total"],
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
        )

    @asynccontextmanager
    async def client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        # Kept open for reuse; aclose() releases it
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """HTTP call with transport retries; 429/5xx and exhausted retries are recoverable."""

        async def _send() -> httpx.Response:
            async with self.client() as client:
                return await client.request(method, url, **kwargs)

        try:
            response = await self._retry(_send)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self._log("provider_transport_error", url=url, error=str(exc))
            raise PaymentRecoverableError(
                f"{self.name} unreachable: {exc.__class__.__name__}", provider=self.name, provider_code="transport"
            ) from exc
        if response.status_code in _RECOVERABLE_HTTP or response.status_code >= 500:
            self._log("provider_http_recoverable", url=url, status_code=response.status_code)
            raise PaymentRecoverableError(
                f"{self.name} returned HTTP {response.status_code}",
                provider=self.name,
                provider_code=str(response.status_code),
            )
        return response

    async def create_payment_intent(
        self, order: Order, *, amount: Decimal, currency: str, idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        raise NotImplementedError

    async def verify_webhook(self, request: WebhookRequest) -> bool:
        raise NotImplementedError

    async def refund_payment(self, transaction_id: str, amount: Decimal, metadata: dict[str, Any]) -> RefundResult:
        raise NotImplementedError

    async def query_payment_status(self, provider_intent_id: str) -> Optional[PaymentStatus]:
        return None

    def parse_webhook(self, body: bytes) -> ParsedWebhook:
        try:
            data = json.loads(body or b"")
        except ValueError as exc:
            raise WebhookPayloadInvalidException(self.name, "malformed JSON") from exc
        if not isinstance(data, dict):
            raise WebhookPayloadInvalidException(self.name, "payload must be a JSON object")
        fields = self._extract_fields(data)
        if not fields.get("event_id"):
            raise WebhookPayloadInvalidException(self.name, "missing event id")
        event_type = fields.get("event_type") or ""
        return ParsedWebhook(
            event_id=fields["event_id"],
            event_type=event_type,
            canonical_type=self._canonical_type(event_type),
            payment_intent_id=fields.get("payment_intent_id"),
            transaction_id=fields.get("transaction_id"),
            failure_reason=fields.get("failure_reason"),
        )

    def _extract_fields(self, data: dict) -> dict[str, Optional[str]]:
        return {
            "event_id": _dig(data, "webhook_id") or _dig(data, "id"),
            "event_type": _dig(data, "event_type") or _dig(data, "type"),
            "payment_intent_id": _dig(data, "payment_intent_id"),
            "transaction_id": _dig(data, "transaction_id"),
            "failure_reason": _dig(data, "failure_reason"),
        }

    @staticmethod
    def _canonical_type(event_type: str) -> WebhookEventType:
        mapped = WEBHOOK_EVENT_TYPES.get(event_type.lower())
        return WebhookEventType(mapped) if mapped else WebhookEventType.UNRECOGNIZED

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> Optional[PaymentStatus]:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.name, {})
        internal = mapping.get(provider_status or "")
        return PaymentStatus(internal) if internal else None

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, provider=self.name, **kwargs)
