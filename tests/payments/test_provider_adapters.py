import base64
import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

stripe = pytest.importorskip("stripe")

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from application.dtos.payments import Order, OrderStatus, WebhookEventType, WebhookRequest
from core.settings import BkashSettings, MockSettings, NagadSettings, PaymentSettings, StripeSettings
from domain.payment.entity import PaymentStatus
from domain.payment.exceptions import PaymentProviderError, PaymentRecoverableError
from infrastructure.external.payments import build_provider, build_provider_registry
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.bkash_client import BkashClient
from infrastructure.external.payments.mock_client import MockPaymentClient
from infrastructure.external.payments.nagad_client import NagadClient
from infrastructure.external.payments.stripe_client import StripeClient


NO_RETRY = {"max": 0, "base": 0.01}


def _order(order_id="o1", amount="100.00", currency="BDT") -> Order:
    return Order(id=order_id, total_amount=Decimal(amount), currency=currency, status=OrderStatus.PENDING_PAYMENT)


# --- mapping helpers ---------------------------------------------------------

class _MapClient(BasePaymentClient):
    name = "STRIPE"


def test_provider_status_mapping():
    c = _MapClient()
    assert c._map_status("succeeded") is PaymentStatus.SUCCEEDED
    assert c._map_status("processing") is PaymentStatus.PENDING
    assert c._map_status("requires_action") is PaymentStatus.PENDING
    assert c._map_status("canceled") is PaymentStatus.CANCELLED
    assert c._map_status("something-new") is None


def test_canonical_event_types():
    c = _MapClient()
    assert c._canonical_type("payment_intent.succeeded") is WebhookEventType.SUCCEEDED
    assert c._canonical_type("SUCCEEDED") is WebhookEventType.SUCCEEDED
    assert c._canonical_type("charge.failed") is WebhookEventType.PAYMENT_FAILED
    assert c._canonical_type("cancelled") is WebhookEventType.CANCELED
    assert c._canonical_type("customer.created") is WebhookEventType.UNRECOGNIZED


async def test_http_5xx_is_recoverable():
    client = BkashClient(
        BkashSettings(app_key="k", app_secret="s"),
        retry=NO_RETRY,
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(PaymentRecoverableError):
        await client.query_payment_status("p1")
    await client.aclose()


async def test_transport_error_is_recoverable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = BkashClient(BkashSettings(), retry=NO_RETRY, transport=httpx.MockTransport(handler))
    with pytest.raises(PaymentRecoverableError):
        await client.query_payment_status("p1")


# --- factory -----------------------------------------------------------------

def test_build_provider_registry_from_settings():
    registry = build_provider_registry(PaymentSettings(_env_file=None))
    assert registry.names == ["MOCK", "STRIPE", "BKASH", "NAGAD"]
    assert isinstance(registry.resolve("NAGAD"), NagadClient)
    with pytest.raises(ValueError):
        build_provider("PAYPAL", PaymentSettings(_env_file=None))


# --- MOCK --------------------------------------------------------------------

async def test_mock_client_roundtrip():
    client = MockPaymentClient(MockSettings(webhook_token="tok"))
    intent = await client.create_payment_intent(_order(), amount=Decimal("100.00"), currency="BDT")
    assert intent.provider_intent_id.startswith("pi_mock_")
    assert intent.client_secret

    good = WebhookRequest.build(b"{}", {"X-Mock-Signature": "tok"})
    bad = WebhookRequest.build(b"{}", {"X-Mock-Signature": "nope"})
    assert await client.verify_webhook(good) is True
    assert await client.verify_webhook(bad) is False
    assert await client.verify_webhook(WebhookRequest.build(b"{}", {})) is False

    result = await client.refund_payment("txn", Decimal("1"), {})
    assert result.success and result.provider_refund_id.startswith("re_mock_")
    assert await client.query_payment_status(intent.provider_intent_id) is None


async def test_mock_client_can_decline_refunds():
    client = MockPaymentClient(MockSettings(decline_refunds=True))
    result = await client.refund_payment("txn", Decimal("1"), {})
    assert result.success is False
    assert result.failure_code == "mock_declined"


# --- STRIPE ------------------------------------------------------------------

def _stripe_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={sig}"


async def test_stripe_verify_webhook_signature():
    client = StripeClient(StripeSettings(secret_key="sk_test_1", webhook_secret="whsec_test"))
    body = b'{"id": "evt_1", "type": "payment_intent.succeeded"}'

    ok = WebhookRequest.build(body, {"Stripe-Signature": _stripe_header(body, "whsec_test")})
    tampered = WebhookRequest.build(body + b" ", {"Stripe-Signature": _stripe_header(body, "whsec_test")})
    stale = WebhookRequest.build(body, {"Stripe-Signature": _stripe_header(body, "whsec_test", timestamp=1)})
    assert await client.verify_webhook(ok) is True
    assert await client.verify_webhook(tampered) is False
    assert await client.verify_webhook(stale) is False
    assert await client.verify_webhook(WebhookRequest.build(body, {})) is False


def test_stripe_parse_intent_and_charge_events():
    client = StripeClient(StripeSettings())
    pi_event = {
        "id": "evt_1",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_1", "object": "payment_intent",
                            "last_payment_error": {"message": "Your card was declined."}}},
    }
    parsed = client.parse_webhook(json.dumps(pi_event).encode())
    assert parsed.event_id == "evt_1"
    assert parsed.canonical_type is WebhookEventType.PAYMENT_FAILED
    assert parsed.payment_intent_id == "pi_1"
    assert parsed.failure_reason == "Your card was declined."

    charge_event = {
        "id": "evt_2",
        "type": "charge.succeeded",
        "data": {"object": {"id": "ch_1", "object": "charge", "payment_intent": "pi_1"}},
    }
    parsed = client.parse_webhook(json.dumps(charge_event).encode())
    assert parsed.payment_intent_id == "pi_1"
    assert parsed.transaction_id == "ch_1"


async def test_stripe_refund_success_and_decline(monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        if kwargs.get("charge") == "ch_bad":
            raise stripe.InvalidRequestError("Charge already refunded", "charge", code="charge_already_refunded")
        return {"id": "re_123", "status": "succeeded"}

    monkeypatch.setattr(stripe.Refund, "create", fake_create)
    client = StripeClient(StripeSettings(secret_key="sk_test_1"))

    ok = await client.refund_payment("ch_1", Decimal("12.34"), {"currency": "USD", "idempotency_key": "refund:1:1"})
    assert ok.success and ok.provider_refund_id == "re_123"
    assert calls[0]["amount"] == 1234
    assert calls[0]["charge"] == "ch_1"
    assert calls[0]["idempotency_key"] == "refund:1:1"
    assert "idempotency_key" not in calls[0]["metadata"]

    declined = await client.refund_payment("ch_bad", Decimal("1"), {"currency": "USD"})
    assert declined.success is False
    assert declined.failure_code == "charge_already_refunded"


async def test_stripe_connection_error_is_recoverable(monkeypatch):
    def fake_create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Refund, "create", fake_create)
    client = StripeClient(StripeSettings(secret_key="sk_test_1"))
    with pytest.raises(PaymentRecoverableError):
        await client.refund_payment("pi_1", Decimal("1"), {"currency": "USD"})


async def test_stripe_requires_secret_key():
    client = StripeClient(StripeSettings())
    with pytest.raises(PaymentProviderError):
        await client.create_payment_intent(_order(currency="USD"), amount=Decimal("1"), currency="USD")


def test_stripe_minor_units():
    assert StripeClient._to_minor(Decimal("10.50"), "usd") == 1050
    assert StripeClient._to_minor(Decimal("500"), "JPY") == 500


# --- BKASH -------------------------------------------------------------------

def _bkash_transport(seen: list):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content or b"{}")
        path = request.url.path
        if path.endswith("/token/grant"):
            return httpx.Response(200, json={"statusCode": "0000", "id_token": "tok-1"})
        if path.endswith("/checkout/create"):
            return httpx.Response(200, json={
                "statusCode": "0000", "paymentID": "TR0011", "bkashURL": "https://pay.bka.sh/TR0011",
            })
        if path.endswith("/payment/refund"):
            if body["trxID"] == "BAD":
                return httpx.Response(200, json={"statusCode": "2071", "statusMessage": "Duplicate for Refund"})
            return httpx.Response(200, json={"statusCode": "0000", "refundTrxID": "RF1"})
        if path.endswith("/payment/status"):
            return httpx.Response(200, json={"statusCode": "0000", "transactionStatus": "Completed"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


async def test_bkash_checkout_refund_and_status():
    seen: list[httpx.Request] = []
    settings = PaymentSettings(_env_file=None, bkash=BkashSettings(app_key="key", app_secret="sec", username="u", password="p"))
    client = build_provider("BKASH", settings, transport=_bkash_transport(seen))

    intent = await client.create_payment_intent(_order(), amount=Decimal("100.00"), currency="BDT")
    assert intent.provider_intent_id == "TR0011"
    assert intent.redirect_url == "https://pay.bka.sh/TR0011"
    assert seen[1].headers["Authorization"] == "Bearer tok-1"

    refund = await client.refund_payment(
        "TRX9", Decimal("40.00"), {"provider_intent_id": "TR0011", "idempotency_key": "refund:3:1"}
    )
    assert refund.success and refund.provider_refund_id == "RF1"
    refund_request = seen[-1]
    assert refund_request.headers["Idempotency-Key"] == "refund:3:1"
    assert json.loads(refund_request.content)["paymentID"] == "TR0011"

    declined = await client.refund_payment("BAD", Decimal("1"), {})
    assert declined.success is False
    assert declined.failure_code == "2071"
    assert declined.message == "Duplicate for Refund"

    assert await client.query_payment_status("TR0011") is PaymentStatus.SUCCEEDED
    # Token grant happens once
    assert sum(1 for r in seen if r.url.path.endswith("/token/grant")) == 1
    await client.aclose()


async def test_bkash_token_failure_is_provider_error():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"statusCode": "2001", "statusMessage": "Invalid App Key"})
    )
    client = BkashClient(BkashSettings(), retry=NO_RETRY, transport=transport)
    with pytest.raises(PaymentProviderError):
        await client.create_payment_intent(_order(), amount=Decimal("1"), currency="BDT")


async def test_bkash_webhook_hmac():
    client = BkashClient(BkashSettings(webhook_secret="shh"))
    body = b'{"paymentID": "TR0011", "trxID": "TRX9", "type": "payment.succeeded", "id": "evt_b"}'
    sig = base64.b64encode(hmac.new(b"shh", body, hashlib.sha256).digest()).decode()

    assert await client.verify_webhook(WebhookRequest.build(body, {"X-Bkash-Signature": sig})) is True
    assert await client.verify_webhook(WebhookRequest.build(body + b"x", {"X-Bkash-Signature": sig})) is False
    assert await client.verify_webhook(WebhookRequest.build(body, {})) is False

    parsed = client.parse_webhook(body)
    assert parsed.payment_intent_id == "TR0011"
    assert parsed.transaction_id == "TRX9"
    assert parsed.canonical_type is WebhookEventType.SUCCEEDED


# --- NAGAD -------------------------------------------------------------------

def _keypair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return key, private_pem, public_pem


def _bare(pem: str) -> str:
    return "".join(line for line in pem.strip().splitlines() if "-----" not in line)


async def test_nagad_checkout_is_signed_with_merchant_key():
    merchant_key, merchant_private, _ = _keypair()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "/check-out/initialize/" in request.url.path:
            return httpx.Response(200, json={"status": "Success", "paymentReferenceId": "REF-1"})
        if request.url.path.endswith("/check-out/complete/REF-1"):
            return httpx.Response(200, json={"status": "Success", "callBackUrl": "https://nagad.example/pay"})
        if "/verify/payment/" in request.url.path:
            return httpx.Response(200, json={"status": "Success"})
        if request.url.path.endswith("/purchase/cancel"):
            return httpx.Response(200, json={"status": "Success", "cancelIssuerRefNo": "CXL-1"})
        return httpx.Response(404)

    client = NagadClient(
        NagadSettings(merchant_id="683002007104225", merchant_private_key=_bare(merchant_private)),
        retry=NO_RETRY,
        transport=httpx.MockTransport(handler),
    )
    intent = await client.create_payment_intent(_order("o9"), amount=Decimal("100.00"), currency="BDT")
    assert intent.provider_intent_id == "REF-1"
    assert intent.redirect_url == "https://nagad.example/pay"
    assert seen[0].url.path.endswith("/check-out/initialize/683002007104225/ORD-o9")
    assert seen[0].headers["X-KM-Api-Version"] == "v-0.2.0"

    init = json.loads(seen[0].content)
    signed = f"{init['merchantId']}{init['orderId']}{init['amount']}{init['currency']}{init['dateTime']}"
    merchant_key.public_key().verify(
        base64.b64decode(init["signature"]), signed.encode(), padding.PKCS1v15(), hashes.SHA256()
    )

    assert await client.query_payment_status("REF-1") is PaymentStatus.SUCCEEDED
    refund = await client.refund_payment("ISS-1", Decimal("10.00"), {"provider_intent_id": "REF-1"})
    assert refund.success and refund.provider_refund_id == "CXL-1"


async def test_nagad_without_key_is_provider_error():
    client = NagadClient(NagadSettings(), retry=NO_RETRY, transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(PaymentProviderError):
        await client.create_payment_intent(_order(), amount=Decimal("1"), currency="BDT")


async def test_nagad_webhook_signature():
    nagad_key, _, nagad_public = _keypair()
    client = NagadClient(NagadSettings(nagad_public_key=nagad_public))
    body = b'{"id": "evt_n", "type": "succeeded", "paymentReferenceId": "REF-1", "issuerPaymentRefNo": "ISS-1"}'
    sig = base64.b64encode(nagad_key.sign(body, padding.PKCS1v15(), hashes.SHA256())).decode()

    assert await client.verify_webhook(WebhookRequest.build(body, {"X-Nagad-Signature": sig})) is True
    assert await client.verify_webhook(WebhookRequest.build(body + b" ", {"X-Nagad-Signature": sig})) is False
    assert await client.verify_webhook(WebhookRequest.build(body, {"X-Nagad-Signature": "%%%"})) is False

    parsed = client.parse_webhook(body)
    assert parsed.payment_intent_id == "REF-1"
    assert parsed.transaction_id == "ISS-1"
