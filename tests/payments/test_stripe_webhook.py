import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

stripe = pytest.importorskip("stripe")

from core.settings import PaymentRetry, PaymentSettings, StripeSettings  # noqa: E402
from domain.common.exceptions import PaymentError  # noqa: E402
from domain.payment.entity import IntentStatus, TransactionStatus  # noqa: E402
from infrastructure.external.payments.stripe_client import StripeClient  # noqa: E402
from shared.codes.payment_codes import PaymentErrorKind  # noqa: E402


SECRET = "whsec_test"


def _client() -> StripeClient:
    return StripeClient(
        PaymentSettings(
            stripe=StripeSettings(secret_key="sk_test_123", webhook_secret=SECRET),
            retry=PaymentRetry(max=0, base_backoff=0.0),
        )
    )


def _signature(payload: str, secret: str = SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def test_client_requires_secret_key():
    with pytest.raises(RuntimeError):
        StripeClient(PaymentSettings(stripe=StripeSettings()))


def test_verify_event_parses_intent_event():
    payload = json.dumps(
        {
            "id": "evt_1",
            "type": "payment_intent.payment_failed",
            "created": 1735689600,
            "data": {
                "object": {
                    "id": "pi_1",
                    "status": "requires_payment_method",
                    "amount": 4999,
                    "currency": "usd",
                    "metadata": {"userId": "user-1"},
                    "last_payment_error": {"message": "Your card has insufficient funds."},
                }
            },
        }
    )

    event = _client().verify_event(payload.encode(), _signature(payload))

    assert event.id == "evt_1"
    assert event.provider == "stripe"
    assert event.type == "paymentIntent.failed"
    assert event.raw_type == "payment_intent.payment_failed"
    assert event.object_id == "pi_1"
    assert event.amount == Decimal("49.99")
    assert event.currency == "USD"
    assert event.failure_reason == "Your card has insufficient funds."
    assert event.metadata == {"userId": "user-1"}
    assert event.occurred_at is not None


def test_refund_events_are_normalized_by_refund_status():
    client = _client()
    event = client.parse_event(
        {
            "id": "evt_2",
            "type": "refund.updated",
            "data": {
                "object": {
                    "id": "re_1",
                    "status": "succeeded",
                    "amount": 1000,
                    "currency": "usd",
                    "payment_intent": "pi_1",
                    "metadata": {"refundId": "rf-local"},
                }
            },
        }
    )
    assert event.type == "refund.succeeded"
    assert event.related_id == "pi_1"
    assert event.metadata["refundId"] == "rf-local"


@pytest.mark.parametrize(
    "signature",
    [None, "t=1,v1=deadbeef"],
)
def test_invalid_signature_is_rejected(signature):
    payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}})
    with pytest.raises(PaymentError) as exc_info:
        _client().verify_event(payload.encode(), signature)
    assert exc_info.value.kind is PaymentErrorKind.INVALID_SIGNATURE


def test_signature_from_another_secret_is_rejected():
    payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}})
    with pytest.raises(PaymentError) as exc_info:
        _client().verify_event(payload.encode(), _signature(payload, secret="whsec_other"))
    assert exc_info.value.kind is PaymentErrorKind.INVALID_SIGNATURE


def test_non_utf8_body_is_an_invalid_signature():
    with pytest.raises(PaymentError) as exc_info:
        _client().verify_event(b"\xff\xfe{}", "t=1,v1=abc")
    assert exc_info.value.kind is PaymentErrorKind.INVALID_SIGNATURE
    assert exc_info.value.http_status == 401


def test_signed_event_without_id_is_rejected():
    payload = json.dumps({"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}})
    with pytest.raises(PaymentError) as exc_info:
        _client().verify_event(payload.encode(), _signature(payload))
    assert exc_info.value.kind is PaymentErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_create_intent_sends_minor_units_and_idempotency_key(monkeypatch):
    calls = []

    def fake_create(**params):
        calls.append(params)
        return {
            "id": "pi_123",
            "status": "requires_payment_method",
            "amount": params["amount"],
            "currency": params["currency"],
            "client_secret": "pi_123_secret",
        }

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    result = await _client().create_intent(
        Decimal("49.99"), "USD", {"userId": "user-1", "attempt": 2}, idempotency_key="key-1"
    )

    assert calls[0]["amount"] == 4999
    assert calls[0]["currency"] == "usd"
    assert calls[0]["idempotency_key"] == "key-1"
    assert calls[0]["metadata"] == {"userId": "user-1", "attempt": "2"}
    assert result.id == "pi_123"
    assert result.status is IntentStatus.REQUIRES_PAYMENT_METHOD
    assert result.transaction_status is TransactionStatus.PENDING
    assert result.amount == Decimal("49.99")
    assert result.client_secret == "pi_123_secret"


@pytest.mark.asyncio
async def test_card_errors_become_declines(monkeypatch):
    def fake_confirm(intent_id, **params):
        raise stripe.CardError("Your card has insufficient funds.", None, "insufficient_funds")

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", fake_confirm)

    with pytest.raises(PaymentError) as exc_info:
        await _client().confirm_intent("pi_123", "pm_card_visa")
    assert exc_info.value.kind is PaymentErrorKind.INSUFFICIENT_FUNDS
    assert exc_info.value.http_status == 402


@pytest.mark.asyncio
async def test_connection_errors_become_processor_unavailable(monkeypatch):
    def fake_refund(**params):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.Refund, "create", fake_refund)

    with pytest.raises(PaymentError) as exc_info:
        await _client().create_refund("pi_123", Decimal("5.00"), "USD", idempotency_key="rf-1")
    assert exc_info.value.kind is PaymentErrorKind.PROCESSOR_UNAVAILABLE


@pytest.mark.asyncio
async def test_confirm_without_key_sends_only_the_payment_method(monkeypatch):
    calls = []

    def fake_confirm(intent_id, **params):
        calls.append((intent_id, params))
        return {"id": intent_id, "status": "succeeded", "amount": 4999, "currency": "usd"}

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", fake_confirm)

    result = await _client().confirm_intent("pi_123", "pm_card_visa")

    assert calls == [("pi_123", {"payment_method": "pm_card_visa"})]
    assert result.transaction_status is TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_detach_payment_method(monkeypatch):
    detached = []

    def fake_detach(method_id, **params):
        detached.append(method_id)
        return {"id": method_id, "customer": None}

    monkeypatch.setattr(stripe.PaymentMethod, "detach", fake_detach)

    await _client().detach_payment_method("pm_card_visa")
    assert detached == ["pm_card_visa"]
