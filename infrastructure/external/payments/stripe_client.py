"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

The SDK is synchronous; calls run in a worker thread. Idempotency keys are
passed through the ``idempotency_key`` request option and webhooks are
verified against the ``Stripe-Signature`` header with
``stripe.WebhookSignature.verify_header``.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Callable, Optional

import stripe

from application.dtos.payments import Order, PaymentIntentResult, RefundResult, WebhookRequest
from core.logging_config import get_logger
from core.settings import StripeSettings
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import PaymentProviderError, PaymentRecoverableError
from infrastructure.external.payments.base import BasePaymentClient, _dig


logger = get_logger(__name__)

_ZERO_DECIMAL = {"JPY", "KRW", "VND", "CLP", "XOF", "XAF"}


class StripeClient(BasePaymentClient):
    name = "STRIPE"
    signature_headers = ("Stripe-Signature",)

    def __init__(self, settings: StripeSettings, *, tolerance_seconds: int = 300) -> None:
        super().__init__()
        self._settings = settings
        self._tolerance = tolerance_seconds

    @staticmethod
    def _to_minor(amount: Decimal, currency: str) -> int:
        # Stripe expects amounts in the smallest currency unit
        exponent = 0 if currency.upper() in _ZERO_DECIMAL else 2
        return int((amount * (Decimal(10) ** exponent)).to_integral_value())

    def _require_key(self) -> str:
        if not self._settings.secret_key:
            raise PaymentProviderError("STRIPE secret key not configured", provider=self.name, provider_code="config")
        return self._settings.secret_key

    async def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, api_key=self._require_key(), **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise PaymentRecoverableError(
                str(exc.user_message or exc), provider=self.name, provider_code=exc.code or exc.__class__.__name__
            ) from exc
        except stripe.APIError as exc:
            if exc.http_status is None or exc.http_status >= 500:
                raise PaymentRecoverableError(
                    str(exc.user_message or exc), provider=self.name, provider_code=exc.code or "api_error"
                ) from exc
            raise

    async def create_payment_intent(
        self, order: Order, *, amount: Decimal, currency: str, idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        try:
            pi = await self._call(
                stripe.PaymentIntent.create,
                amount=self._to_minor(amount, currency),
                currency=currency.lower(),
                metadata={"order_id": order.id, "booking_id": order.booking_id or ""},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                str(exc.user_message or exc), provider=self.name, provider_code=exc.code
            ) from exc
        self._log("payment_intent_created", order_id=order.id, provider_intent_id=pi["id"])
        return PaymentIntentResult(
            provider_intent_id=str(pi["id"]),
            client_secret=pi.get("client_secret"),
            status=str(pi["status"]),
        )

    async def verify_webhook(self, request: WebhookRequest) -> bool:
        secret = self._settings.webhook_secret
        header = request.header("Stripe-Signature")
        if not secret or not header:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                request.body.decode("utf-8"), header, secret, tolerance=self._tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError) as exc:
            logger.warning("stripe_signature_mismatch", error=str(exc))
            return False
        return True

    def _extract_fields(self, data: dict) -> dict[str, Optional[str]]:
        obj = (data.get("data") or {}).get("object") or {}
        if obj.get("object") == "charge":
            intent_id = _dig(obj, "payment_intent")
            transaction_id = _dig(obj, "id")
            failure = _dig(obj, "failure_message")
        else:
            intent_id = _dig(obj, "id")
            transaction_id = _dig(obj, "latest_charge")
            failure = _dig(obj, "last_payment_error", "message")
        return {
            "event_id": _dig(data, "id"),
            "event_type": _dig(data, "type"),
            "payment_intent_id": intent_id,
            "transaction_id": transaction_id,
            "failure_reason": failure,
        }

    async def refund_payment(self, transaction_id: str, amount: Decimal, metadata: dict[str, Any]) -> RefundResult:
        target = {"charge": transaction_id} if transaction_id.startswith("ch_") else {"payment_intent": transaction_id}
        currency = str(metadata.get("currency") or "usd")
        try:
            refund = await self._call(
                stripe.Refund.create,
                amount=self._to_minor(amount, currency),
                metadata={k: str(v) for k, v in metadata.items() if v is not None and k != "idempotency_key"},
                idempotency_key=metadata.get("idempotency_key"),
                **target,
            )
        except stripe.StripeError as exc:
            # Card/invalid-request and other non-transient errors are declines
            self._log("refund_declined", transaction_id=transaction_id, code=exc.code)
            return RefundResult.declined(exc.code or exc.__class__.__name__, str(exc.user_message or exc))

        status = str(refund.get("status") or "")
        if status in {"failed", "canceled"}:
            return RefundResult.declined(refund.get("failure_reason") or status, f"Stripe refund {status}")
        return RefundResult.succeeded(str(refund["id"]), f"Stripe refund {status}")

    async def query_payment_status(self, provider_intent_id: str) -> Optional[PaymentStatus]:
        try:
            pi = await self._call(stripe.PaymentIntent.retrieve, id=provider_intent_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(str(exc), provider=self.name, provider_code=exc.code) from exc
        return self._map_status(str(pi.get("status") or ""))
