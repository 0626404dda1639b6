"""
Payment provider port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements one adapter
per provider (MOCK, STRIPE, BKASH, NAGAD).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    Order,
    ParsedWebhook,
    PaymentIntentResult,
    RefundResult,
    WebhookRequest,
)
from domain.payment.entity import PaymentStatus


@runtime_checkable
class PaymentProvider(Protocol):
    """Provider capability set.

    Transient failures (timeouts, connection errors, HTTP 429/5xx) raise
    PaymentRecoverableError; refund declines come back as RefundResult.
    """

    name: str
    # Headers carrying the signature, in lookup order
    signature_headers: tuple[str, ...]

    async def create_payment_intent(
        self, order: Order, *, amount: Decimal, currency: str, idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        """Pure call-out; must not touch local storage."""
        ...

    async def verify_webhook(self, request: WebhookRequest) -> bool:
        """Fails closed: any error or missing signature material returns False."""
        ...

    def parse_webhook(self, body: bytes) -> ParsedWebhook: ...

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        metadata: dict[str, Any],
    ) -> RefundResult: ...

    async def query_payment_status(self, provider_intent_id: str) -> Optional[PaymentStatus]: ...

    async def aclose(self) -> None: ...
