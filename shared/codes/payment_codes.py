"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Validation (2011x)
    AMOUNT_MISMATCH = 20110
    CURRENCY_MISMATCH = 20111
    PROVIDER_NOT_SUPPORTED = 20112
    WEBHOOK_PAYLOAD_INVALID = 20113
    REFUND_EXCEEDS_PAYMENT = 20114

    # State (2012x)
    ORDER_ALREADY_PAID = 20120
    PAYMENT_ALREADY_PENDING = 20121
    ILLEGAL_TRANSITION = 20122
    PAYMENT_NOT_REFUNDABLE = 20123
    REFUND_ALREADY_PENDING = 20124
    REFUND_NOT_RETRYABLE = 20125
    REFUND_NOT_PENDING = 20126
    DUPLICATE_WEBHOOK = 20127

    # Not found (2013x)
    ORDER_NOT_FOUND = 20130
    PAYMENT_NOT_FOUND = 20131
    REFUND_NOT_FOUND = 20132

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004


# Provider→internal payment status mapping, used when polling providers
PROVIDER_STATUS_TO_INTERNAL = {
    "MOCK": {
        "requires_payment_method": "pending",
        "pending": "pending",
        "succeeded": "succeeded",
        "failed": "failed",
        "canceled": "cancelled",
    },
    "STRIPE": {
        "requires_payment_method": "pending",
        "requires_confirmation": "pending",
        "requires_action": "pending",
        "processing": "pending",
        "requires_capture": "pending",
        "succeeded": "succeeded",
        "canceled": "cancelled",
    },
    "BKASH": {
        # Per transactionStatus
        "Initiated": "pending",
        "Authorized": "pending",
        "Completed": "succeeded",
        "Failed": "failed",
        "Cancelled": "cancelled",
        "Expired": "cancelled",
    },
    "NAGAD": {
        # Per status
        "Initiated": "pending",
        "Ready": "pending",
        "Success": "succeeded",
        "Failed": "failed",
        "Aborted": "cancelled",
        "Cancelled": "cancelled",
    },
}


# Provider event type → canonical webhook event type
WEBHOOK_EVENT_TYPES = {
    "payment_intent.succeeded": "succeeded",
    "payment.succeeded": "succeeded",
    "charge.succeeded": "succeeded",
    "succeeded": "succeeded",
    "payment_intent.payment_failed": "payment_failed",
    "payment.failed": "payment_failed",
    "charge.failed": "payment_failed",
    "payment_failed": "payment_failed",
    "payment_intent.canceled": "canceled",
    "payment.canceled": "canceled",
    "canceled": "canceled",
    "cancelled": "canceled",
}
