"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported:
settings objects are built at import time.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///./payments-test.db")
os.environ.setdefault("CELERY__BROKER_URL", "memory://")
os.environ.setdefault("LOG_REQUEST_BODY_ENABLE_BY_DEFAULT", "false")

import asyncio
import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal
from functools import partial
from types import SimpleNamespace
from typing import Any, Optional

import pytest
import pytest_asyncio

from application.dtos.payments import (
    CreatePaymentIntentRequest,
    ExternalIntent,
    ExternalRefund,
    ProcessorEvent,
)
from application.services.payment_intent_service import PaymentIntentManager
from application.services.payment_method_service import PaymentMethodRegistry
from application.services.refund_service import RefundProcessor
from application.services.transaction_service import TransactionRecorder
from application.services.webhook_service import WebhookIngester
from domain.common.exceptions import PaymentError
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.events.inmemory import InMemoryEventPublisher
from infrastructure.external.payments.base import BaseProcessorClient
from infrastructure.external.payments.exceptions import invalid_signature, payment_declined
from infrastructure.external.payments.stripe_client import StripeClient
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


WEBHOOK_SECRET = "whsec_test"


class StubGateway(BaseProcessorClient):
    """In-memory processor speaking Stripe's status vocabulary.

    Webhook payloads are Stripe-shaped and parsed by the real Stripe parser;
    signatures are a plain HMAC-SHA256 of the raw body.
    """

    provider = "stripe"

    # Stripe-shaped payload parsing is shared with the real adapter
    parse_event = StripeClient.parse_event

    def __init__(self) -> None:
        super().__init__(retry={"max": 0, "base": 0.0})
        self._intent_ids = itertools.count(1)
        self._refund_ids = itertools.count(1)
        self.confirm_status = "succeeded"
        self.confirm_error: Optional[PaymentError] = None
        self.refund_status = "succeeded"
        self.refund_error: Optional[PaymentError] = None
        self.created: list[dict[str, Any]] = []
        self.confirmed: list[str] = []
        self.cancelled: list[str] = []
        self.refunds: list[dict[str, Any]] = []
        self.detach_error: Optional[PaymentError] = None
        self.detached: list[str] = []
        # first outcome per idempotency key, replayed like Stripe does
        self._replies: dict[str, Any] = {}
        self.closed = False

    def decline(self, *, insufficient_funds: bool = False) -> None:
        self.confirm_error = payment_declined(
            "Your card was declined.",
            provider=self.provider,
            provider_code="insufficient_funds" if insufficient_funds else "card_declined",
            insufficient_funds=insufficient_funds,
        )

    def _intent(self, external_id: str, processor_status: str, **extra) -> ExternalIntent:
        return ExternalIntent(
            id=external_id,
            provider=self.provider,
            processor_status=processor_status,
            status=self._intent_status(processor_status),
            transaction_status=self._transaction_status(processor_status),
            **extra,
        )

    def _once(self, idempotency_key: Optional[str], call):
        if idempotency_key is not None and idempotency_key in self._replies:
            outcome = self._replies[idempotency_key]
            if isinstance(outcome, PaymentError):
                raise outcome
            return outcome
        try:
            outcome = call()
        except PaymentError as exc:
            if idempotency_key is not None:
                self._replies[idempotency_key] = exc
            raise
        if idempotency_key is not None:
            self._replies[idempotency_key] = outcome
        return outcome

    async def create_intent(self, amount, currency, metadata, idempotency_key=None) -> ExternalIntent:
        await asyncio.sleep(0)

        def _create() -> ExternalIntent:
            external_id = f"pi_{next(self._intent_ids)}"
            self.created.append(
                {"id": external_id, "amount": amount, "currency": currency, "metadata": dict(metadata),
                 "idempotency_key": idempotency_key}
            )
            return self._intent(
                external_id,
                "requires_payment_method",
                amount=amount,
                currency=currency,
                client_secret=f"{external_id}_secret",
            )

        return self._once(idempotency_key, _create)

    async def confirm_intent(self, external_id, payment_method_ref=None, idempotency_key=None) -> ExternalIntent:
        await asyncio.sleep(0)
        self.confirmed.append(external_id)

        def _confirm() -> ExternalIntent:
            if self.confirm_error is not None:
                raise self.confirm_error
            return self._intent(external_id, self.confirm_status)

        return self._once(idempotency_key, _confirm)

    async def cancel_intent(self, external_id) -> ExternalIntent:
        self.cancelled.append(external_id)
        return self._intent(external_id, "canceled")

    async def create_refund(
        self,
        external_transaction_id,
        amount=None,
        currency=None,
        reason=None,
        metadata=None,
        idempotency_key=None,
    ) -> ExternalRefund:
        await asyncio.sleep(0)
        self.refunds.append(
            {"payment_intent": external_transaction_id, "amount": amount, "metadata": dict(metadata or {}),
             "idempotency_key": idempotency_key}
        )

        def _refund() -> ExternalRefund:
            if self.refund_error is not None:
                raise self.refund_error
            return ExternalRefund(
                id=f"re_{next(self._refund_ids)}",
                provider=self.provider,
                processor_status=self.refund_status,
                status=self._refund_status(self.refund_status),
                amount=amount,
                currency=currency,
            )

        return self._once(idempotency_key, _refund)

    async def detach_payment_method(self, provider_payment_method_id: str) -> None:
        await asyncio.sleep(0)
        self.detached.append(provider_payment_method_id)
        if self.detach_error is not None:
            raise self.detach_error

    def verify_event(self, raw_payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        if not signature or not hmac.compare_digest(signature, sign(raw_payload)):
            raise invalid_signature("Invalid signature", provider=self.provider)
        return self.parse_event(json.loads(raw_payload))

    async def aclose(self) -> None:
        self.closed = True


def sign(raw_payload: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), raw_payload, hashlib.sha256).hexdigest()


def _stripe_event(event_id: str, event_type: str, obj: dict[str, Any]) -> bytes:
    payload = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }
    return json.dumps(payload).encode("utf-8")


def _intent_object(
    provider_intent_id: str,
    status: str,
    *,
    amount: int = 4999,
    currency: str = "usd",
    metadata: Optional[dict] = None,
    failure: Optional[str] = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": provider_intent_id,
        "object": "payment_intent",
        "status": status,
        "amount": amount,
        "currency": currency,
        "metadata": metadata or {},
    }
    if failure:
        obj["last_payment_error"] = {"message": failure}
    return obj


def _refund_object(provider_refund_id: str, status: str, *, payment_intent: str, amount: int,
                   refund_id: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": provider_refund_id,
        "object": "refund",
        "status": status,
        "amount": amount,
        "currency": "usd",
        "payment_intent": payment_intent,
        "metadata": {"refundId": refund_id} if refund_id else {},
    }


@pytest.fixture
def events() -> SimpleNamespace:
    """Builders for signed Stripe-shaped webhook deliveries."""
    return SimpleNamespace(
        build=_stripe_event,
        sign=sign,
        intent=_intent_object,
        refund=_refund_object,
    )


@pytest.fixture
def intent_request():
    def _build(service_transaction_id: str = "order-1", amount: str = "49.99", **extra) -> CreatePaymentIntentRequest:
        return CreatePaymentIntentRequest(
            amount=Decimal(amount),
            currency=extra.pop("currency", "USD"),
            owner_service_name=extra.pop("owner_service_name", "orders"),
            owner_transaction_id=service_transaction_id,
            **extra,
        )

    return _build


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}"


@pytest_asyncio.fixture
async def engine(database_url):
    engine = build_engine(database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def uow_factory(session_factory):
    return partial(SQLAlchemyUnitOfWork, session_factory)


@pytest.fixture
def services(uow_factory, gateway, publisher) -> SimpleNamespace:
    intents = PaymentIntentManager(uow_factory, gateway, publisher)
    transactions = TransactionRecorder(uow_factory, gateway, intents, publisher)
    refunds = RefundProcessor(uow_factory, gateway, transactions, publisher)
    webhooks = WebhookIngester(uow_factory, {"stripe": gateway}, intents, transactions, refunds, publisher)
    return SimpleNamespace(
        intents=intents,
        transactions=transactions,
        refunds=refunds,
        webhooks=webhooks,
        methods=PaymentMethodRegistry(uow_factory, {"stripe": gateway}),
        gateway=gateway,
        publisher=publisher,
        uow_factory=uow_factory,
    )


@pytest.fixture
def deliver(services, events):
    """Sign and ingest one webhook delivery."""

    async def _deliver(event_id: str, event_type: str, obj: dict[str, Any]):
        raw = events.build(event_id, event_type, obj)
        return await services.webhooks.ingest("stripe", raw, sign(raw))

    return _deliver


@pytest.fixture
def published(publisher):
    """Published domain events as dicts, optionally filtered by event name."""

    def _collect(name: Optional[str] = None) -> list[dict[str, Any]]:
        return [e.to_dict() for e in publisher.published if name is None or e.name == name]

    return _collect


@pytest.fixture
def succeeded_payment(services, intent_request):
    """Create and confirm an intent; the stub processor settles it immediately."""

    async def _pay(service_transaction_id: str = "order-1", amount: str = "100.00", user_id: str = "user-1"):
        intent = await services.intents.create(user_id, intent_request(service_transaction_id, amount))
        transaction = await services.transactions.confirm(user_id, intent.id)
        return intent, transaction

    return _pay
