from decimal import Decimal

import pytest

from domain.common.exceptions import PaymentError
from domain.payment.entity import IntentStatus, RefundStatus, TransactionStatus, owner_metadata
from shared.codes.payment_codes import PaymentErrorKind


@pytest.mark.asyncio
async def test_replayed_event_is_applied_once(services, intent_request, deliver, events, published):
    services.gateway.confirm_status = "processing"
    intent = await services.intents.create("user-1", intent_request())
    transaction = await services.transactions.confirm("user-1", intent.id)
    assert transaction.status == TransactionStatus.PROCESSING

    first = await deliver("evt_1", "payment_intent.succeeded", events.intent("pi_1", "succeeded"))
    second = await deliver("evt_1", "payment_intent.succeeded", events.intent("pi_1", "succeeded"))

    assert first.processed and not first.duplicate
    assert second.duplicate and not second.processed

    current = await services.transactions.get_transaction("user-1", transaction.id)
    assert current.status == TransactionStatus.SUCCEEDED
    assert current.processed_at is not None
    succeeded = [e for e in published("TransactionStatusChanged") if e["status"] == "succeeded"]
    assert len(succeeded) == 1
    assert (await services.intents.get("user-1", intent.id)).status == IntentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_webhook_before_confirmation_records_the_transaction(services, intent_request, deliver, events):
    intent = await services.intents.create("user-1", intent_request())

    result = await deliver("evt_1", "payment_intent.succeeded", events.intent("pi_1", "succeeded"))
    assert result.processed

    # the synchronous confirmation finds the webhook's transaction
    transaction = await services.transactions.confirm("user-1", intent.id)
    assert transaction.status == TransactionStatus.SUCCEEDED
    assert transaction.amount == Decimal("49.99")
    assert transaction.provider_transaction_id == "pi_1"
    assert services.gateway.confirmed == []

    _, total = await services.transactions.list_transactions("user-1")
    assert total == 1


@pytest.mark.asyncio
async def test_stale_failure_after_success_is_ignored(services, succeeded_payment, deliver, events):
    _, transaction = await succeeded_payment()

    result = await deliver(
        "evt_late",
        "payment_intent.payment_failed",
        events.intent("pi_1", "requires_payment_method", failure="Your card was declined."),
    )

    assert result.processed
    current = await services.transactions.get_transaction("user-1", transaction.id)
    assert current.status == TransactionStatus.SUCCEEDED
    assert current.failure_reason is None


@pytest.mark.asyncio
async def test_failure_webhook_records_reason(services, intent_request, deliver, events):
    services.gateway.confirm_status = "processing"
    intent = await services.intents.create("user-1", intent_request())
    transaction = await services.transactions.confirm("user-1", intent.id)

    await deliver(
        "evt_2",
        "payment_intent.payment_failed",
        events.intent("pi_1", "requires_payment_method", failure="Your card has insufficient funds."),
    )

    failed = await services.transactions.get_transaction("user-1", transaction.id)
    assert failed.status == TransactionStatus.FAILED
    assert failed.failure_reason == "Your card has insufficient funds."


@pytest.mark.asyncio
async def test_refund_webhook_settles_refund_and_transaction(services, succeeded_payment, deliver, events, published):
    _, transaction = await succeeded_payment(amount="100.00")
    services.gateway.refund_status = "pending"
    refund = await services.refunds.create_refund("user-1", transaction.id)
    assert refund.status == RefundStatus.PENDING

    result = await deliver(
        "evt_r1",
        "refund.updated",
        events.refund("re_1", "succeeded", payment_intent="pi_1", amount=10000, refund_id=refund.id),
    )

    assert result.processed
    [settled] = await services.refunds.list_refunds("user-1", transaction.id)
    assert settled.status == RefundStatus.SUCCEEDED
    assert settled.processed_at is not None
    assert (await services.transactions.get_transaction("user-1", transaction.id)).status == TransactionStatus.REFUNDED
    assert [e["status"] for e in published("RefundStatusChanged")] == ["pending", "succeeded"]


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(services, events):
    raw = events.build("evt_1", "payment_intent.succeeded", events.intent("pi_1", "succeeded"))

    with pytest.raises(PaymentError) as exc_info:
        await services.webhooks.ingest("stripe", raw, "not-a-signature")
    assert exc_info.value.kind is PaymentErrorKind.INVALID_SIGNATURE

    with pytest.raises(PaymentError) as exc_info:
        await services.webhooks.ingest("paypal", raw, events.sign(raw))
    assert exc_info.value.kind is PaymentErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_unmatched_event_is_redriven_later(services, intent_request, deliver, events):
    # nothing local references pi_1 yet and the payload carries no owner keys
    result = await deliver("evt_early", "payment_intent.succeeded", events.intent("pi_1", "succeeded"))
    assert not result.processed and not result.duplicate

    intent = await services.intents.create("user-1", intent_request())
    assert intent.provider_intent_id == "pi_1"

    summary = await services.webhooks.redrive_pending()
    assert summary == {"total": 1, "processed": 1, "failed": 0}

    items, total = await services.transactions.list_transactions("user-1")
    assert total == 1
    assert items[0].status == TransactionStatus.SUCCEEDED

    # processed events are not picked up again
    assert await services.webhooks.redrive_pending() == {"total": 0, "processed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_owner_metadata_materializes_unknown_payment(services, deliver, events):
    metadata = owner_metadata("user-9", "billing", "inv-7")

    result = await deliver(
        "evt_3",
        "payment_intent.succeeded",
        events.intent("pi_remote", "succeeded", amount=1250, currency="eur", metadata=metadata),
    )

    assert result.processed
    [transaction], total = await services.transactions.list_transactions("user-9")
    assert total == 1
    assert transaction.owner_key == ("billing", "inv-7")
    assert transaction.amount == Decimal("12.50")
    assert transaction.currency == "EUR"
    assert transaction.status == TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_dispute_is_published(services, succeeded_payment, deliver, published):
    await succeeded_payment()

    result = await deliver(
        "evt_d1",
        "charge.dispute.created",
        {
            "id": "dp_1",
            "object": "dispute",
            "amount": 10000,
            "currency": "usd",
            "payment_intent": "pi_1",
            "reason": "fraudulent",
            "status": "needs_response",
        },
    )

    assert result.processed
    [dispute] = published("PaymentDisputed")
    assert dispute["dispute_id"] == "dp_1"
    assert dispute["provider_transaction_id"] == "pi_1"
    assert dispute["amount"] == "100.00"
    assert dispute["reason"] == "fraudulent"
