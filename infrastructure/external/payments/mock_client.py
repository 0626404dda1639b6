"""
Mock provider for development and tests: no network, deterministic shapes.
"""
from __future__ import annotations

import hmac
import uuid
from decimal import Decimal
from typing import Any, Optional

from application.dtos.payments import Order, PaymentIntentResult, RefundResult, WebhookRequest
from core.settings import MockSettings
from infrastructure.external.payments.base import BasePaymentClient


class MockPaymentClient(BasePaymentClient):
    name = "MOCK"
    signature_headers = ("X-Mock-Signature", "Mock-Signature")

    def __init__(self, settings: MockSettings) -> None:
        super().__init__()
        self._settings = settings

    async def create_payment_intent(
        self, order: Order, *, amount: Decimal, currency: str, idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        intent_id = f"pi_mock_{uuid.uuid4().hex[:12]}"
        self._log("payment_intent_created", order_id=order.id, provider_intent_id=intent_id)
        return PaymentIntentResult(
            provider_intent_id=intent_id,
            client_secret=f"{intent_id}_secret_test",
            status="requires_payment_method",
        )

    async def verify_webhook(self, request: WebhookRequest) -> bool:
        expected = self._settings.webhook_token
        if not expected:
            return False
        for header in self.signature_headers:
            value = request.header(header)
            if value:
                return hmac.compare_digest(value.encode(), expected.encode())
        return False

    async def refund_payment(self, transaction_id: str, amount: Decimal, metadata: dict[str, Any]) -> RefundResult:
        if self._settings.decline_refunds:
            self._log("refund_declined", transaction_id=transaction_id)
            return RefundResult.declined("mock_declined", "Mock provider declined the refund")
        refund_id = f"re_mock_{uuid.uuid4().hex[:12]}"
        self._log("refund_succeeded", transaction_id=transaction_id, provider_refund_id=refund_id)
        return RefundResult.succeeded(refund_id, "Mock refund processed")
