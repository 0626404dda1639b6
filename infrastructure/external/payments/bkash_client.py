"""
bKash tokenized checkout adapter (httpx).

Auth is a token grant cached for ``token_ttl_seconds``; every API answer
carries ``statusCode`` where "0000" means success. Webhooks are signed with
base64(HMAC-SHA256(webhook secret, raw body)) in ``X-Bkash-Signature``.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import time
from decimal import Decimal
from typing import Any, Optional

import httpx

from application.dtos.payments import Order, PaymentIntentResult, RefundResult, WebhookRequest
from core.settings import BkashSettings
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import PaymentProviderError
from infrastructure.external.payments.base import BasePaymentClient, _dig

_OK = "0000"


class BkashClient(BasePaymentClient):
    name = "BKASH"
    signature_headers = ("X-Bkash-Signature",)

    def __init__(
        self,
        settings: BkashSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        self._settings = settings
        self._token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()

    def _url(self, path: str) -> str:
        return f"{self._settings.base_url.rstrip('/')}{path}"

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expiry:
                return self._token
            response = await self._request(
                "POST",
                self._url("/tokenized/checkout/token/grant"),
                json={"app_key": self._settings.app_key, "app_secret": self._settings.app_secret},
                headers={"username": self._settings.username or "", "password": self._settings.password or ""},
            )
            data = self._json(response)
            if data.get("statusCode") != _OK or not data.get("id_token"):
                raise PaymentProviderError(
                    f"bKash token grant failed: {data.get('statusMessage')}",
                    provider=self.name,
                    provider_code=data.get("statusCode"),
                )
            self._token = str(data["id_token"])
            self._token_expiry = time.monotonic() + self._settings.token_ttl_seconds
            self._log("bkash_token_refreshed")
            return self._token

    async def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {await self._access_token()}",
            "X-APP-Key": self._settings.app_key or "",
        }

    def _json(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentProviderError(
                f"bKash returned non-JSON (HTTP {response.status_code})", provider=self.name
            ) from exc
        return data if isinstance(data, dict) else {}

    async def create_payment_intent(
        self, order: Order, *, amount: Decimal, currency: str, idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        payload = {
            "mode": "0011",
            "payerReference": order.id,
            "callbackURL": self._settings.callback_url,
            "amount": str(amount),
            "currency": currency or self._settings.currency,
            "intent": "sale",
            "merchantInvoiceNumber": f"INV-{order.id}",
        }
        response = await self._request(
            "POST", self._url("/tokenized/checkout/create"), json=payload, headers=await self._auth_headers()
        )
        data = self._json(response)
        if data.get("statusCode") != _OK or not data.get("paymentID"):
            raise PaymentProviderError(
                f"bKash payment creation failed: {data.get('statusMessage')}",
                provider=self.name,
                provider_code=data.get("statusCode"),
            )
        payment_id = str(data["paymentID"])
        self._log("payment_intent_created", order_id=order.id, provider_intent_id=payment_id)
        return PaymentIntentResult(
            provider_intent_id=payment_id,
            client_secret=payment_id,
            status="requires_action",
            redirect_url=data.get("bkashURL"),
        )

    async def verify_webhook(self, request: WebhookRequest) -> bool:
        secret = self._settings.webhook_secret
        signature = request.header("X-Bkash-Signature")
        if not secret or not signature:
            return False
        digest = hmac.new(secret.encode("utf-8"), request.body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("ascii")
        return hmac.compare_digest(expected, signature.strip())

    def _extract_fields(self, data: dict) -> dict[str, Optional[str]]:
        fields = super()._extract_fields(data)
        fields["payment_intent_id"] = fields["payment_intent_id"] or _dig(data, "paymentID")
        fields["transaction_id"] = fields["transaction_id"] or _dig(data, "trxID")
        fields["failure_reason"] = fields["failure_reason"] or _dig(data, "statusMessage")
        return fields

    async def refund_payment(self, transaction_id: str, amount: Decimal, metadata: dict[str, Any]) -> RefundResult:
        payload = {
            "paymentID": str(metadata.get("provider_intent_id") or transaction_id),
            "amount": str(amount),
            "trxID": transaction_id,
            "sku": "refund",
            "reason": str(metadata.get("reason") or "refund"),
        }
        headers = await self._auth_headers()
        if metadata.get("idempotency_key"):
            headers["Idempotency-Key"] = str(metadata["idempotency_key"])
        response = await self._request(
            "POST", self._url("/tokenized/checkout/payment/refund"), json=payload, headers=headers
        )
        data = self._json(response)
        if data.get("statusCode") == _OK:
            refund_id = str(data.get("refundTrxID") or data.get("refundTrxId") or "")
            self._log("refund_succeeded", transaction_id=transaction_id, provider_refund_id=refund_id)
            return RefundResult.succeeded(refund_id, data.get("statusMessage"))
        self._log("refund_declined", transaction_id=transaction_id, code=data.get("statusCode"))
        return RefundResult.declined(data.get("statusCode"), data.get("statusMessage") or "bKash refund failed")

    async def query_payment_status(self, provider_intent_id: str) -> Optional[PaymentStatus]:
        response = await self._request(
            "POST",
            self._url("/tokenized/checkout/payment/status"),
            json={"paymentID": provider_intent_id},
            headers=await self._auth_headers(),
        )
        data = self._json(response)
        if data.get("statusCode") != _OK:
            return None
        return self._map_status(data.get("transactionStatus"))
