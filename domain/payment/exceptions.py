"""
Payment domain exceptions.

Grouped by how callers should react: validation (fix the input), state
(inspect current state first), not found, security, and provider errors.
Provider declines are not exceptions; adapters return a declined RefundResult.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


# --- validation -----------------------------------------------------------

class AmountMismatchException(BusinessException):
    def __init__(self, requested: Decimal, expected: Decimal):
        super().__init__(
            code=PaymentCode.AMOUNT_MISMATCH,
            message=f"Amount mismatch: requested {requested}, order total {expected}",
            error_type="AmountMismatch",
            details={"requested": str(requested), "expected": str(expected)},
            field="amount",
        )


class CurrencyMismatchException(BusinessException):
    def __init__(self, requested: str, expected: str):
        super().__init__(
            code=PaymentCode.CURRENCY_MISMATCH,
            message=f"Currency mismatch: requested {requested}, order currency {expected}",
            error_type="CurrencyMismatch",
            details={"requested": requested, "expected": expected},
            field="currency",
        )


class ProviderNotSupportedException(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=PaymentCode.PROVIDER_NOT_SUPPORTED,
            message=f"Payment provider not supported: {provider}",
            error_type="ProviderNotSupported",
            details={"provider": provider},
            field="provider",
        )


class WebhookPayloadInvalidException(BusinessException):
    def __init__(self, provider: str, reason: str):
        super().__init__(
            code=PaymentCode.WEBHOOK_PAYLOAD_INVALID,
            message=f"Invalid webhook payload: {reason}",
            error_type="WebhookPayloadInvalid",
            details={"provider": provider, "reason": reason},
        )


class RefundExceedsPaymentException(BusinessException):
    def __init__(self, refund_amount: Decimal, available: Decimal):
        super().__init__(
            code=PaymentCode.REFUND_EXCEEDS_PAYMENT,
            message=f"Refund amount {refund_amount} exceeds refundable amount {available}",
            error_type="RefundExceedsPayment",
            details={"amount": str(refund_amount), "refundable": str(available)},
            field="amount",
        )


# --- state ----------------------------------------------------------------

class OrderAlreadyPaidException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=PaymentCode.ORDER_ALREADY_PAID,
            message="Order already paid",
            error_type="OrderAlreadyPaid",
            details={"order_id": order_id},
        )


class PaymentAlreadyPendingException(BusinessException):
    def __init__(self, order_id: str, provider: Optional[str] = None):
        super().__init__(
            code=PaymentCode.PAYMENT_ALREADY_PENDING,
            message=f"A pending payment already exists for order {order_id}",
            error_type="PaymentAlreadyPending",
            details={"order_id": order_id, "provider": provider},
        )


class IllegalPaymentTransitionException(BusinessException):
    def __init__(self, payment_id: Optional[int], current: str, target: str):
        super().__init__(
            code=PaymentCode.ILLEGAL_TRANSITION,
            message=f"Illegal payment transition {current} -> {target}",
            error_type="IllegalPaymentTransition",
            details={"payment_id": payment_id, "current": current, "target": target},
            field="status",
        )


class PaymentNotRefundableException(BusinessException):
    def __init__(self, payment_id: Optional[int], status: str):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_REFUNDABLE,
            message=f"Payment in status {status} is not refundable",
            error_type="PaymentNotRefundable",
            details={"payment_id": payment_id, "status": status},
        )


class RefundAlreadyPendingException(BusinessException):
    def __init__(self, payment_id: Optional[int]):
        super().__init__(
            code=PaymentCode.REFUND_ALREADY_PENDING,
            message="A pending refund already exists for this payment",
            error_type="RefundAlreadyPending",
            details={"payment_id": payment_id},
        )


class DuplicateWebhookException(BusinessException):
    """Raised by storage when (provider, webhook_id) already exists."""

    def __init__(self, provider: str, webhook_id: str):
        super().__init__(
            code=PaymentCode.DUPLICATE_WEBHOOK,
            message="Webhook already received",
            error_type="DuplicateWebhook",
            details={"provider": provider, "webhook_id": webhook_id},
        )


class RefundNotRetryableException(BusinessException):
    def __init__(self, refund_id: Optional[int], status: str):
        super().__init__(
            code=PaymentCode.REFUND_NOT_RETRYABLE,
            message=f"Only failed refunds can be retried (current status {status})",
            error_type="RefundNotRetryable",
            details={"refund_id": refund_id, "status": status},
        )


class RefundNotPendingException(BusinessException):
    def __init__(self, refund_id: Optional[int], status: str):
        super().__init__(
            code=PaymentCode.REFUND_NOT_PENDING,
            message=f"Refund is not pending (current status {status})",
            error_type="RefundNotPending",
            details={"refund_id": refund_id, "status": status},
        )


# --- not found ------------------------------------------------------------

class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_FOUND,
            message=f"Order not found: {order_id}",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class PaymentNotFoundException(BusinessException):
    def __init__(self, identifier: str):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {identifier}",
            error_type="PaymentNotFound",
            details={"identifier": identifier},
        )


class RefundNotFoundException(BusinessException):
    def __init__(self, refund_id: int):
        super().__init__(
            code=PaymentCode.REFUND_NOT_FOUND,
            message=f"Refund not found: {refund_id}",
            error_type="RefundNotFound",
            details={"refund_id": refund_id},
        )


# --- provider / security --------------------------------------------------

class PaymentProviderError(BusinessException):
    """Non-transient provider failure (bad credentials, rejected request)."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=full_details,
        )


class PaymentRecoverableError(BusinessException):
    """Timeout, connection failure or 429/5xx. Never recorded as a terminal state."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_RECOVERABLE,
            message=message,
            error_type="PaymentRecoverableError",
            details=full_details,
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )


class WebhookSignatureException(PaymentSignatureError):
    def __init__(self, provider: str):
        super().__init__("Invalid webhook signature", provider=provider)
        self.error_type = "WebhookSignatureInvalid"
