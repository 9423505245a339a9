"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- Module-level helpers (`stripe.PaymentIntent.create`, ...) accept an
  `idempotency_key` kwarg; Stripe replays the original response for a
  repeated key, so creation and refunds are safe to retry.
- Webhook authenticity is checked with `stripe.WebhookSignature.verify_header`
  against the raw body and the `Stripe-Signature` header; the payload is then
  parsed as plain JSON so stored events can be re-driven without the SDK.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import stripe

from application.dtos.payments import ExternalIntent, ExternalRefund, ProcessorEvent
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import PaymentError
from infrastructure.external.payments.base import BaseProcessorClient
from infrastructure.external.payments.exceptions import (
    invalid_signature,
    payment_declined,
    processor_error,
    processor_unavailable,
)
from shared.codes.payment_codes import (
    PaymentErrorKind,
    is_refund_event,
    map_refund_status,
    normalize_event_type,
)
from shared.money import from_minor, to_minor


logger = get_logger(__name__)

# Refund reasons Stripe accepts; anything else is kept in metadata only
STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}

INSUFFICIENT_FUNDS_CODE = "insufficient_funds"


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Field access that works for both StripeObject and plain dict payloads."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


class StripeClient(BaseProcessorClient):
    provider = "stripe"

    def __init__(self, settings: Optional[PaymentSettings] = None):
        cfg = settings or payment_settings
        super().__init__(
            timeouts=cfg.timeouts.model_dump(),
            retry={"max": cfg.retry.max, "base": cfg.retry.base_backoff},
        )
        if not cfg.stripe.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._webhook_secret = cfg.stripe.webhook_secret
        self._webhook_tolerance = cfg.webhook.tolerance_seconds
        self._return_url = cfg.stripe.return_url
        # Configure module-level key for compatibility across SDK variants
        stripe.api_key = cfg.stripe.secret_key
        if cfg.stripe.api_version:
            stripe.api_version = cfg.stripe.api_version

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    def _translate_error(self, exc: Exception, operation: str) -> Optional[PaymentError]:
        if isinstance(exc, stripe.CardError):
            error = getattr(exc, "error", None)
            decline_code = _get(error, "decline_code")
            code = getattr(exc, "code", None)
            message = getattr(exc, "user_message", None) or str(exc)
            self._log("processor_declined", operation=operation, code=code, decline_code=decline_code)
            return payment_declined(
                message,
                provider=self.provider,
                provider_code=decline_code or code,
                insufficient_funds=INSUFFICIENT_FUNDS_CODE in (code, decline_code),
            )
        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
            logger.warning("processor_unavailable", provider=self.provider, operation=operation, error=str(exc))
            return processor_unavailable(str(exc) or "Stripe unavailable", provider=self.provider)
        if isinstance(exc, stripe.StripeError):
            http_status = getattr(exc, "http_status", None)
            logger.error(
                "processor_error",
                provider=self.provider,
                operation=operation,
                http_status=http_status,
                error=str(exc),
            )
            if http_status and http_status >= 500:
                return processor_unavailable(str(exc), provider=self.provider)
            return processor_error(str(exc), provider=self.provider, provider_code=getattr(exc, "code", None))
        return None

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def _to_external_intent(self, pi: Any) -> ExternalIntent:
        processor_status = str(_get(pi, "status", ""))
        currency = str(_get(pi, "currency", "")).upper() or None
        minor = _get(pi, "amount")
        return ExternalIntent(
            id=str(_get(pi, "id")),
            provider=self.provider,
            processor_status=processor_status,
            status=self._intent_status(processor_status),
            transaction_status=self._transaction_status(processor_status),
            amount=from_minor(minor, currency) if minor is not None and currency else None,
            currency=currency,
            client_secret=_get(pi, "client_secret"),
            failure_reason=_get(_get(pi, "last_payment_error"), "message"),
        )

    def _to_external_refund(self, refund: Any) -> ExternalRefund:
        processor_status = str(_get(refund, "status", ""))
        currency = str(_get(refund, "currency", "")).upper() or None
        minor = _get(refund, "amount")
        return ExternalRefund(
            id=str(_get(refund, "id")),
            provider=self.provider,
            processor_status=processor_status,
            status=self._refund_status(processor_status),
            amount=from_minor(minor, currency) if minor is not None and currency else None,
            currency=currency,
            failure_reason=_get(refund, "failure_reason"),
        )

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> ExternalIntent:
        params = {
            "amount": to_minor(amount, currency),
            "currency": currency.lower(),
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        async def _create():
            return await self._call(
                "create_intent", stripe.PaymentIntent.create, timeout=self.intent_timeout, **params
            )

        # Only retried when a processor idempotency key protects the call
        pi = await (self._retry("create_intent", _create) if idempotency_key else _create())
        result = self._to_external_intent(pi)
        self._log("processor_intent_created", provider_intent_id=result.id, status=result.processor_status)
        return result

    async def confirm_intent(
        self,
        external_id: str,
        payment_method_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ExternalIntent:
        params: dict[str, Any] = {}
        if payment_method_ref:
            params["payment_method"] = payment_method_ref
        if self._return_url:
            params["return_url"] = self._return_url
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        # Never retried: callers must check ledger state before confirming again
        pi = await self._call(
            "confirm_intent", stripe.PaymentIntent.confirm, external_id, timeout=self.intent_timeout, **params
        )
        result = self._to_external_intent(pi)
        self._log("processor_intent_confirmed", provider_intent_id=result.id, status=result.processor_status)
        return result

    async def cancel_intent(self, external_id: str) -> ExternalIntent:
        async def _cancel():
            return await self._call(
                "cancel_intent", stripe.PaymentIntent.cancel, external_id, timeout=self.intent_timeout
            )

        pi = await self._retry("cancel_intent", _cancel)
        result = self._to_external_intent(pi)
        self._log("processor_intent_cancelled", provider_intent_id=result.id, status=result.processor_status)
        return result

    async def create_refund(
        self,
        external_transaction_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ExternalRefund:
        params: dict[str, Any] = {"payment_intent": external_transaction_id}
        refund_metadata = {k: str(v) for k, v in (metadata or {}).items()}
        if amount is not None:
            if not currency:
                raise PaymentError(PaymentErrorKind.VALIDATION_ERROR, "currency is required with amount")
            params["amount"] = to_minor(amount, currency)
        if reason:
            refund_metadata["reason"] = reason
            if reason in STRIPE_REFUND_REASONS:
                params["reason"] = reason
        if refund_metadata:
            params["metadata"] = refund_metadata
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        async def _refund():
            return await self._call("create_refund", stripe.Refund.create, timeout=self.intent_timeout, **params)

        refund = await (self._retry("create_refund", _refund) if idempotency_key else _refund())
        result = self._to_external_refund(refund)
        self._log("processor_refund_created", provider_refund_id=result.id, status=result.processor_status)
        return result

    async def detach_payment_method(self, provider_payment_method_id: str) -> None:
        async def _detach():
            return await self._call(
                "detach_payment_method",
                stripe.PaymentMethod.detach,
                provider_payment_method_id,
                timeout=self.read_timeout,
            )

        # A repeated detach is rejected, never applied twice
        await self._retry("detach_payment_method", _detach)
        self._log("processor_payment_method_detached", provider_payment_method_id=provider_payment_method_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_event(self, raw_payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        if not self._webhook_secret:
            logger.error("webhook_secret_missing", provider=self.provider)
            raise invalid_signature("Webhook secret not configured", provider=self.provider)
        if not signature:
            raise invalid_signature("Missing Stripe-Signature header", provider=self.provider)
        try:
            payload_text = raw_payload.decode("utf-8") if isinstance(raw_payload, (bytes, bytearray)) else raw_payload
        except UnicodeDecodeError as exc:
            raise invalid_signature("Webhook payload is not UTF-8", provider=self.provider) from exc
        try:
            stripe.WebhookSignature.verify_header(
                payload_text,
                signature,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise invalid_signature(str(exc) or "Invalid signature", provider=self.provider) from exc
        try:
            payload = json.loads(payload_text)
        except ValueError as exc:
            raise PaymentError(PaymentErrorKind.VALIDATION_ERROR, "Webhook payload is not valid JSON") from exc
        return self.parse_event(payload)

    def parse_event(self, payload: dict[str, Any]) -> ProcessorEvent:
        raw_type = str(_get(payload, "type", ""))
        event_id = _get(payload, "id")
        if not event_id:
            raise PaymentError(
                PaymentErrorKind.VALIDATION_ERROR,
                "Webhook event id missing",
                details={"provider": self.provider, "type": raw_type},
            )
        obj = _get(_get(payload, "data", {}), "object", {}) or {}
        created = _get(payload, "created")
        occurred_at = datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None
        currency = str(_get(obj, "currency", "")).upper() or None
        minor = _get(obj, "amount")
        amount = from_minor(minor, currency) if minor is not None and currency else None

        event = ProcessorEvent(
            id=str(event_id),
            type=normalize_event_type(self.provider, raw_type),
            raw_type=raw_type,
            provider=self.provider,
            object_id=_get(obj, "id"),
            processor_status=_get(obj, "status"),
            amount=amount,
            currency=currency,
            metadata=dict(_get(obj, "metadata", {}) or {}),
            occurred_at=occurred_at,
            payload=payload,
        )

        if raw_type.startswith("payment_intent."):
            event.failure_reason = _get(_get(obj, "last_payment_error"), "message")
        elif is_refund_event(self.provider, raw_type):
            mapped = map_refund_status(self.provider, event.processor_status)
            if mapped:
                event.type = f"refund.{mapped}"
            else:
                self._log_unknown_status("refund", event.processor_status)
            event.related_id = _get(obj, "payment_intent")
            event.failure_reason = _get(obj, "failure_reason")
        elif raw_type.startswith("charge.dispute."):
            event.related_id = _get(obj, "payment_intent")
            event.failure_reason = _get(obj, "reason")
        return event
