"""
Payments API routes.

Thin HTTP adapters over the ledger, webhook and refund services. Static
paths are declared before ``/{payment_id}`` so they are matched first.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.dependencies import (
    get_ledger_service,
    get_order_gateway,
    get_refund_service,
    get_webhook_service,
)
from api.middleware import peer_ip
from application.dtos.payments import (
    BookingRefundRequested,
    CancelPaymentRequest,
    CreatePaymentIntentRequest,
    PaymentOut,
    RefundOut,
    WebhookRequest,
)
from application.ports.order_gateway import OrderGateway
from application.services.payment_service import PaymentLedgerService
from application.services.refund_service import RefundService
from application.services.webhook_service import WebhookService
from core.logging_config import get_logger
from core.response import success_response
from domain.payment.exceptions import OrderNotFoundException


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("/webhooks/{provider}", summary="Provider webhook callback")
async def payments_webhook(
    provider: str,
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    # Signatures cover the exact bytes; never re-serialise the body
    raw_body = await request.body()
    webhook_request = WebhookRequest.build(raw_body, request.headers, client_ip=peer_ip(request))
    outcome = await service.process_webhook(provider, raw_body, webhook_request.headers, webhook_request)
    message = "Duplicate webhook ignored" if outcome.duplicate else "Webhook received"
    return success_response(data=outcome.model_dump(mode="json"), message=message)


@router.get("/webhooks/stats", summary="Webhook statistics")
async def webhook_stats(service: WebhookService = Depends(get_webhook_service)):
    stats = await service.get_webhook_stats()
    return success_response(data=stats.model_dump(mode="json"))


@router.post("/intents", summary="Create payment intent")
async def create_payment_intent(
    payload: CreatePaymentIntentRequest,
    ledger: PaymentLedgerService = Depends(get_ledger_service),
    orders: OrderGateway = Depends(get_order_gateway),
):
    order = await orders.get_order(payload.order_id)
    if order is None:
        raise OrderNotFoundException(payload.order_id)
    payment = await ledger.create_payment_intent(
        order,
        amount=payload.amount,
        currency=payload.currency,
        provider=payload.provider,
    )
    return success_response(data=PaymentOut.from_entity(payment).model_dump(mode="json"), message="Payment intent created")


@router.post("/refunds", summary="Request a refund (booking cancellation)")
async def request_refund(
    payload: BookingRefundRequested,
    refunds: RefundService = Depends(get_refund_service),
):
    refund = await refunds.process_booking_refund(payload)
    return success_response(data=RefundOut.from_entity(refund).model_dump(mode="json"), message="Refund requested")


@router.get("/refunds/{refund_id}", summary="Get refund")
async def get_refund(refund_id: int, refunds: RefundService = Depends(get_refund_service)):
    refund = await refunds.get_refund(refund_id)
    return success_response(data=RefundOut.from_entity(refund).model_dump(mode="json"))


@router.post("/refunds/{refund_id}/process", summary="Execute a pending refund")
async def process_refund(refund_id: int, refunds: RefundService = Depends(get_refund_service)):
    refund = await refunds.process_refund(refund_id)
    return success_response(data=RefundOut.from_entity(refund).model_dump(mode="json"), message="Refund processed")


@router.post("/refunds/{refund_id}/retry", summary="Retry a failed refund")
async def retry_refund(refund_id: int, refunds: RefundService = Depends(get_refund_service)):
    refund = await refunds.retry_failed_refund(refund_id)
    return success_response(data=RefundOut.from_entity(refund).model_dump(mode="json"), message="Refund retried")


@router.get("/users/{user_id}/refunds", summary="Refunds of a user")
async def user_refunds(user_id: str, refunds: RefundService = Depends(get_refund_service)):
    items = await refunds.get_refunds_by_user(user_id)
    return success_response(data=[RefundOut.from_entity(r).model_dump(mode="json") for r in items])


@router.get("/stats", summary="Payment statistics")
async def payment_stats(ledger: PaymentLedgerService = Depends(get_ledger_service)):
    stats = await ledger.get_payment_stats()
    return success_response(data=stats.model_dump(mode="json"))


@router.get("/orders/{order_id}", summary="Payment of an order")
async def order_payment(order_id: str, ledger: PaymentLedgerService = Depends(get_ledger_service)):
    payment = await ledger.get_payment_by_order(order_id)
    return success_response(data=PaymentOut.from_entity(payment).model_dump(mode="json"))


@router.get("/{payment_id}", summary="Get payment")
async def get_payment(payment_id: int, ledger: PaymentLedgerService = Depends(get_ledger_service)):
    payment = await ledger.get_payment(payment_id)
    return success_response(data=PaymentOut.from_entity(payment).model_dump(mode="json"))


@router.post("/{payment_id}/cancel", summary="Cancel a pending payment")
async def cancel_payment(
    payment_id: int,
    payload: Optional[CancelPaymentRequest] = None,
    ledger: PaymentLedgerService = Depends(get_ledger_service),
):
    payment = await ledger.cancel_payment(payment_id, payload.reason if payload else None)
    return success_response(data=PaymentOut.from_entity(payment).model_dump(mode="json"), message="Payment cancelled")


@router.get("/{payment_id}/refunds", summary="Refunds of a payment")
async def payment_refunds(payment_id: int, refunds: RefundService = Depends(get_refund_service)):
    items = await refunds.get_refunds_by_payment(payment_id)
    return success_response(data=[RefundOut.from_entity(r).model_dump(mode="json") for r in items])
