"""
Processor failures mapped onto PaymentError kinds.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import PaymentError
from shared.codes.payment_codes import PaymentErrorKind


def _details(provider: str, provider_code: Optional[str], extra: Optional[dict]) -> dict:
    details = {"provider": provider}
    if provider_code:
        details["provider_code"] = provider_code
    if extra:
        details.update(extra)
    return details


def processor_unavailable(message: str, *, provider: str, details: Optional[dict] = None) -> PaymentError:
    return PaymentError(
        PaymentErrorKind.PROCESSOR_UNAVAILABLE,
        message,
        details=_details(provider, None, details),
    )


def processor_error(
    message: str, *, provider: str, provider_code: Optional[str] = None, details: Optional[dict] = None
) -> PaymentError:
    return PaymentError(
        PaymentErrorKind.PROCESSOR_ERROR,
        message,
        details=_details(provider, provider_code, details),
    )


def payment_declined(
    message: str, *, provider: str, provider_code: Optional[str] = None, insufficient_funds: bool = False
) -> PaymentError:
    kind = PaymentErrorKind.INSUFFICIENT_FUNDS if insufficient_funds else PaymentErrorKind.PAYMENT_DECLINED
    return PaymentError(kind, message, details=_details(provider, provider_code, None))


def invalid_signature(message: str, *, provider: str) -> PaymentError:
    return PaymentError(PaymentErrorKind.INVALID_SIGNATURE, message, details={"provider": provider})
