"""
Payment error kinds and processor status mapping.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from shared.codes import BusinessCode


class PaymentErrorKind(str, Enum):
    """Stable machine-readable error codes for payment callers.

    The value is what callers match on; `http_status` and `business_code`
    drive the HTTP envelope.
    """

    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"
    DUPLICATE_PAYMENT_METHOD = "DUPLICATE_PAYMENT_METHOD"
    PAYMENT_INTENT_NOT_FOUND = "PAYMENT_INTENT_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    PAYMENT_METHOD_NOT_FOUND = "PAYMENT_METHOD_NOT_FOUND"
    REFUND_NOT_FOUND = "REFUND_NOT_FOUND"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    REFUND_EXCEEDS_TRANSACTION = "REFUND_EXCEEDS_TRANSACTION"
    INVALID_STATE = "INVALID_STATE"
    PROCESSOR_UNAVAILABLE = "PROCESSOR_UNAVAILABLE"
    PROCESSOR_ERROR = "PROCESSOR_ERROR"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def business_code(self) -> int:
        return _BUSINESS_CODE[self]

    @property
    def is_decline(self) -> bool:
        """Money problem, as opposed to an infrastructure problem."""
        return self in (PaymentErrorKind.INSUFFICIENT_FUNDS, PaymentErrorKind.PAYMENT_DECLINED)


_HTTP_STATUS = {
    PaymentErrorKind.VALIDATION_ERROR: 400,
    PaymentErrorKind.DUPLICATE_TRANSACTION: 409,
    PaymentErrorKind.DUPLICATE_PAYMENT_METHOD: 409,
    PaymentErrorKind.PAYMENT_INTENT_NOT_FOUND: 404,
    PaymentErrorKind.TRANSACTION_NOT_FOUND: 404,
    PaymentErrorKind.PAYMENT_METHOD_NOT_FOUND: 404,
    PaymentErrorKind.REFUND_NOT_FOUND: 404,
    PaymentErrorKind.INSUFFICIENT_FUNDS: 402,
    PaymentErrorKind.PAYMENT_DECLINED: 402,
    PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION: 400,
    PaymentErrorKind.INVALID_STATE: 400,
    PaymentErrorKind.PROCESSOR_UNAVAILABLE: 503,
    PaymentErrorKind.PROCESSOR_ERROR: 502,
    PaymentErrorKind.INVALID_SIGNATURE: 401,
}

# Payment business codes live in the 6xxxx range
_BUSINESS_CODE = {
    PaymentErrorKind.VALIDATION_ERROR: BusinessCode.PARAM_VALIDATION_ERROR,
    PaymentErrorKind.DUPLICATE_TRANSACTION: 60001,
    PaymentErrorKind.DUPLICATE_PAYMENT_METHOD: 60002,
    PaymentErrorKind.PAYMENT_INTENT_NOT_FOUND: 60101,
    PaymentErrorKind.TRANSACTION_NOT_FOUND: 60102,
    PaymentErrorKind.PAYMENT_METHOD_NOT_FOUND: 60103,
    PaymentErrorKind.REFUND_NOT_FOUND: 60104,
    PaymentErrorKind.INSUFFICIENT_FUNDS: 60201,
    PaymentErrorKind.PAYMENT_DECLINED: 60202,
    PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION: 60301,
    PaymentErrorKind.INVALID_STATE: 60302,
    PaymentErrorKind.PROCESSOR_UNAVAILABLE: 60401,
    PaymentErrorKind.PROCESSOR_ERROR: 60402,
    PaymentErrorKind.INVALID_SIGNATURE: 60403,
}


# Processor status -> internal status, per entity. Values are plain strings so
# this module stays free of domain imports.
INTENT_STATUS_MAP = {
    "stripe": {
        "requires_payment_method": "requires_payment_method",
        "requires_confirmation": "requires_confirmation",
        "requires_action": "requires_action",
        "processing": "processing",
        "requires_capture": "processing",
        "succeeded": "succeeded",
        "canceled": "cancelled",
    },
}

TRANSACTION_STATUS_MAP = {
    "stripe": {
        "requires_payment_method": "pending",
        "requires_confirmation": "pending",
        "requires_action": "pending",
        "requires_capture": "processing",
        "processing": "processing",
        "succeeded": "succeeded",
        "canceled": "cancelled",
    },
}

REFUND_STATUS_MAP = {
    "stripe": {
        "pending": "pending",
        "requires_action": "pending",
        "processing": "processing",
        "succeeded": "succeeded",
        "failed": "failed",
        "canceled": "cancelled",
    },
}


def _lookup(table: dict, provider: str, status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    return table.get(provider, {}).get(status)


def map_intent_status(provider: str, status: Optional[str]) -> Optional[str]:
    return _lookup(INTENT_STATUS_MAP, provider, status)


def map_transaction_status(provider: str, status: Optional[str]) -> Optional[str]:
    return _lookup(TRANSACTION_STATUS_MAP, provider, status)


def map_refund_status(provider: str, status: Optional[str]) -> Optional[str]:
    return _lookup(REFUND_STATUS_MAP, provider, status)


# Processor event type -> normalized event type. Refund events are normalized
# by the refund object's status instead (refund.<status>).
EVENT_TYPE_MAP = {
    "stripe": {
        "payment_intent.succeeded": "paymentIntent.succeeded",
        "payment_intent.payment_failed": "paymentIntent.failed",
        "payment_intent.canceled": "paymentIntent.cancelled",
        "payment_intent.processing": "paymentIntent.processing",
        "payment_intent.requires_action": "paymentIntent.requiresAction",
    },
}

REFUND_EVENT_TYPES = {
    "stripe": frozenset({"refund.created", "refund.updated", "refund.failed", "charge.refund.updated"}),
}


def normalize_event_type(provider: str, raw_type: str) -> str:
    return EVENT_TYPE_MAP.get(provider, {}).get(raw_type, raw_type)


def is_refund_event(provider: str, raw_type: str) -> bool:
    return raw_type in REFUND_EVENT_TYPES.get(provider, frozenset())
