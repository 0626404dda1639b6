"""
Nagad remote payment gateway adapter.

Checkout is two calls: ``initialize`` returns a payment reference, ``complete``
returns the customer callback URL. Requests are signed with the merchant RSA
key (SHA256withRSA, PKCS#1 v1.5, base64); webhooks carry the same kind of
signature made with Nagad's key in ``X-Nagad-Signature``.
"""
from __future__ import annotations

import base64
import binascii
import textwrap
import time
import uuid
from decimal import Decimal
from typing import Any, Optional

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from application.dtos.payments import Order, PaymentIntentResult, RefundResult, WebhookRequest
from core.logging_config import get_logger
from core.settings import NagadSettings
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import PaymentProviderError
from infrastructure.external.payments.base import BasePaymentClient, _dig


logger = get_logger(__name__)

_API_ROOT = "/remote-payment-gateway-1.0/api/dfs"
_SUCCESS = "Success"


def _load_pem(value: str, *, private: bool):
    """Accept a full PEM or the bare base64 body that Nagad hands out."""
    text = value.strip()
    if "-----BEGIN" not in text:
        label = "PRIVATE KEY" if private else "PUBLIC KEY"
        body = "\n".join(textwrap.wrap("".join(text.split()), 64))
        text = f"-----BEGIN {label}-----\n{body}\n-----END {label}-----"
    data = text.encode("ascii")
    if private:
        return serialization.load_pem_private_key(data, password=None)
    return serialization.load_pem_public_key(data)


class NagadClient(BasePaymentClient):
    name = "NAGAD"
    signature_headers = ("X-Nagad-Signature",)

    def __init__(
        self,
        settings: NagadSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        self._settings = settings
        self._private_key = None
        self._public_key = None

    # --- signing -------------------------------------------------------------

    def _sign(self, data: str) -> str:
        if not self._settings.merchant_private_key:
            raise PaymentProviderError("NAGAD merchant key not configured", provider=self.name, provider_code="config")
        if self._private_key is None:
            self._private_key = _load_pem(self._settings.merchant_private_key, private=True)
        signature = self._private_key.sign(data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-KM-Api-Version": "v-0.2.0",
            "X-KM-IP-V4": "127.0.0.1",
            "X-KM-Client-Type": "PC_WEB",
        }

    def _url(self, path: str) -> str:
        return f"{self._settings.base_url.rstrip('/')}{_API_ROOT}{path}"

    async def _post(self, path: str, payload: dict[str, Any]) -> dict:
        response = await self._request("POST", self._url(path), json=payload, headers=self._headers())
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentProviderError(
                f"NAGAD returned non-JSON (HTTP {response.status_code})", provider=self.name
            ) from exc
        return data if isinstance(data, dict) else {}

    # --- provider operations ------------------------------------------------

    async def create_payment_intent(
        self, order: Order, *, amount: Decimal, currency: str, idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        merchant_id = self._settings.merchant_id or ""
        nagad_order_id = f"ORD-{order.id}"
        currency = currency or self._settings.currency
        timestamp = str(int(time.time()))

        init = await self._post(
            f"/check-out/initialize/{merchant_id}/{nagad_order_id}",
            {
                "merchantId": merchant_id,
                "orderId": nagad_order_id,
                "amount": str(amount),
                "currency": currency,
                "dateTime": timestamp,
                "signature": self._sign(f"{merchant_id}{nagad_order_id}{amount}{currency}{timestamp}"),
            },
        )
        if init.get("status") != _SUCCESS or not init.get("paymentReferenceId"):
            raise PaymentProviderError(
                f"NAGAD initialize failed: {init.get('message')}", provider=self.name, provider_code=init.get("reason")
            )
        reference = str(init["paymentReferenceId"])

        complete = await self._post(
            f"/check-out/complete/{reference}",
            {
                "merchantId": merchant_id,
                "orderId": nagad_order_id,
                "paymentReferenceId": reference,
                "amount": str(amount),
                "currency": currency,
                "challenge": uuid.uuid4().hex,
                "dateTime": timestamp,
                "merchantCallbackURL": self._settings.callback_url,
                "signature": self._sign(f"{merchant_id}{nagad_order_id}{reference}{amount}{currency}{timestamp}"),
            },
        )
        if complete.get("status") != _SUCCESS:
            raise PaymentProviderError(
                f"NAGAD complete failed: {complete.get('message')}",
                provider=self.name,
                provider_code=complete.get("reason"),
            )
        self._log("payment_intent_created", order_id=order.id, provider_intent_id=reference)
        return PaymentIntentResult(
            provider_intent_id=reference,
            client_secret=reference,
            status="requires_action",
            redirect_url=complete.get("callBackUrl"),
        )

    async def verify_webhook(self, request: WebhookRequest) -> bool:
        signature = request.header("X-Nagad-Signature")
        if not signature or not self._settings.nagad_public_key:
            return False
        try:
            if self._public_key is None:
                self._public_key = _load_pem(self._settings.nagad_public_key, private=False)
            self._public_key.verify(
                base64.b64decode(signature.strip(), validate=True),
                request.body,
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (InvalidSignature, binascii.Error, ValueError, TypeError) as exc:
            logger.warning("nagad_signature_mismatch", error=exc.__class__.__name__)
            return False
        return True

    def _extract_fields(self, data: dict) -> dict[str, Optional[str]]:
        fields = super()._extract_fields(data)
        fields["payment_intent_id"] = fields["payment_intent_id"] or _dig(data, "paymentReferenceId")
        fields["transaction_id"] = fields["transaction_id"] or _dig(data, "issuerPaymentRefNo")
        fields["failure_reason"] = fields["failure_reason"] or _dig(data, "message")
        return fields

    async def refund_payment(self, transaction_id: str, amount: Decimal, metadata: dict[str, Any]) -> RefundResult:
        merchant_id = self._settings.merchant_id or ""
        timestamp = str(int(time.time()))
        reference = str(metadata.get("provider_intent_id") or transaction_id)
        data = await self._post(
            "/purchase/cancel",
            {
                "merchantId": merchant_id,
                "paymentReferenceId": reference,
                "originalRequestDate": timestamp,
                "cancelAmount": str(amount),
                "referenceNo": str(metadata.get("idempotency_key") or ""),
                "referenceMessage": str(metadata.get("reason") or "refund"),
                "signature": self._sign(f"{merchant_id}{reference}{amount}{timestamp}"),
            },
        )
        if data.get("status") == _SUCCESS:
            refund_id = str(data.get("cancelIssuerRefNo") or data.get("cancelTrxId") or reference)
            self._log("refund_succeeded", transaction_id=transaction_id, provider_refund_id=refund_id)
            return RefundResult.succeeded(refund_id, data.get("message"))
        self._log("refund_declined", transaction_id=transaction_id, code=data.get("reason"))
        return RefundResult.declined(data.get("reason") or data.get("status"), data.get("message") or "NAGAD refund failed")

    async def query_payment_status(self, provider_intent_id: str) -> Optional[PaymentStatus]:
        merchant_id = self._settings.merchant_id or ""
        timestamp = str(int(time.time()))
        data = await self._post(
            f"/verify/payment/{provider_intent_id}",
            {
                "merchantId": merchant_id,
                "paymentReferenceId": provider_intent_id,
                "dateTime": timestamp,
                "signature": self._sign(f"{merchant_id}{provider_intent_id}{timestamp}"),
            },
        )
        return self._map_status(data.get("status"))
