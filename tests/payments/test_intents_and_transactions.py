from decimal import Decimal

import pytest

from application.dtos.payments import AddPaymentMethodRequest
from domain.common.exceptions import PaymentError
from domain.payment.entity import IntentStatus, TransactionStatus
from domain.payment.repository import TransactionFilter
from infrastructure.external.payments.exceptions import processor_unavailable
from shared.codes.payment_codes import PaymentErrorKind


@pytest.mark.asyncio
async def test_create_intent_persists_processor_reference(services, intent_request):
    intent = await services.intents.create("user-1", intent_request("order-1", "49.99", metadata={"orderRef": "A-1"}))

    assert intent.status == IntentStatus.CREATED
    assert intent.provider_intent_id == "pi_1"
    assert intent.client_secret == "pi_1_secret"
    assert intent.amount == Decimal("49.99")
    assert intent.expires_at is not None and intent.expires_at > intent.created_at

    sent = services.gateway.created[0]
    # owner keys ride along so a webhook can rebuild the transaction
    assert sent["metadata"] == {
        "orderRef": "A-1",
        "userId": "user-1",
        "serviceName": "orders",
        "serviceTransactionId": "order-1",
    }
    assert isinstance(sent["idempotency_key"], str) and len(sent["idempotency_key"]) == 64


@pytest.mark.asyncio
async def test_duplicate_owner_key_is_rejected_without_calling_processor(services, intent_request):
    await services.intents.create("user-1", intent_request("order-1"))

    with pytest.raises(PaymentError) as exc_info:
        await services.intents.create("user-1", intent_request("order-1", "10.00"))

    assert exc_info.value.kind is PaymentErrorKind.DUPLICATE_TRANSACTION
    assert exc_info.value.http_status == 409
    assert len(services.gateway.created) == 1


@pytest.mark.asyncio
async def test_foreign_intent_looks_missing(services, intent_request):
    intent = await services.intents.create("user-1", intent_request())

    with pytest.raises(PaymentError) as exc_info:
        await services.intents.get("user-2", intent.id)
    assert exc_info.value.kind is PaymentErrorKind.PAYMENT_INTENT_NOT_FOUND


@pytest.mark.asyncio
async def test_cancel_intent(services, intent_request, published):
    intent = await services.intents.create("user-1", intent_request())

    cancelled = await services.intents.cancel("user-1", intent.id)
    assert cancelled.status == IntentStatus.CANCELLED
    assert services.gateway.cancelled == ["pi_1"]

    # cancelling again is a no-op
    again = await services.intents.cancel("user-1", intent.id)
    assert again.status == IntentStatus.CANCELLED
    assert services.gateway.cancelled == ["pi_1"]
    assert [e["status"] for e in published("PaymentIntentStatusChanged")] == ["cancelled"]

    with pytest.raises(PaymentError) as exc_info:
        await services.transactions.confirm("user-1", intent.id)
    assert exc_info.value.kind is PaymentErrorKind.INVALID_STATE


@pytest.mark.asyncio
async def test_update_status_refuses_to_move_backwards(services, intent_request):
    intent = await services.intents.create("user-1", intent_request())
    await services.intents.update_status(intent.id, IntentStatus.PROCESSING)

    with pytest.raises(PaymentError) as exc_info:
        await services.intents.update_status(intent.id, IntentStatus.REQUIRES_CONFIRMATION)
    assert exc_info.value.kind is PaymentErrorKind.INVALID_STATE

    current = await services.intents.get("user-1", intent.id)
    assert current.status == IntentStatus.PROCESSING


@pytest.mark.asyncio
async def test_apply_processor_status_ignores_stale_statuses(services, intent_request):
    intent = await services.intents.create("user-1", intent_request())
    await services.intents.apply_processor_status("stripe", "pi_1", "succeeded")

    stale = await services.intents.apply_processor_status("stripe", "pi_1", "requires_action")
    assert stale.status == IntentStatus.SUCCEEDED
    assert await services.intents.apply_processor_status("stripe", "pi_1", "mystery") is None
    assert (await services.intents.get("user-1", intent.id)).status == IntentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_confirm_is_idempotent(services, intent_request, published):
    intent = await services.intents.create("user-1", intent_request())

    first = await services.transactions.confirm("user-1", intent.id)
    second = await services.transactions.confirm("user-1", intent.id)

    assert first.id == second.id
    assert first.status == TransactionStatus.SUCCEEDED
    assert first.provider_transaction_id == "pi_1"
    assert first.processed_at is not None
    assert services.gateway.confirmed == ["pi_1"]
    assert len(published("TransactionStatusChanged")) == 1
    assert (await services.intents.get("user-1", intent.id)).status == IntentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_declined_confirmation_leaves_no_transaction(services, intent_request):
    intent = await services.intents.create("user-1", intent_request())
    services.gateway.decline(insufficient_funds=True)

    with pytest.raises(PaymentError) as exc_info:
        await services.transactions.confirm("user-1", intent.id)
    assert exc_info.value.kind is PaymentErrorKind.INSUFFICIENT_FUNDS

    items, total = await services.transactions.list_transactions("user-1")
    assert total == 0 and items == []

    # a later attempt with a working card goes through
    services.gateway.confirm_error = None
    transaction = await services.transactions.confirm("user-1", intent.id)
    assert transaction.status == TransactionStatus.SUCCEEDED
    # both attempts reached the processor
    assert services.gateway.confirmed == ["pi_1", "pi_1"]


@pytest.mark.asyncio
async def test_confirm_with_saved_payment_method(services, intent_request):
    method = await services.methods.add(
        "user-1",
        AddPaymentMethodRequest(type="card", provider_payment_method_id="pm_card_visa", is_default=True),
    )
    intent = await services.intents.create("user-1", intent_request())

    with pytest.raises(PaymentError) as exc_info:
        await services.transactions.confirm("user-1", intent.id, "missing-method")
    assert exc_info.value.kind is PaymentErrorKind.PAYMENT_METHOD_NOT_FOUND
    assert services.gateway.confirmed == []

    transaction = await services.transactions.confirm("user-1", intent.id, method.id)
    assert transaction.payment_method_id == method.id


@pytest.mark.asyncio
async def test_processing_confirmation_settles_later(services, intent_request):
    services.gateway.confirm_status = "processing"
    intent = await services.intents.create("user-1", intent_request())

    transaction = await services.transactions.confirm("user-1", intent.id)
    assert transaction.status == TransactionStatus.PROCESSING
    assert transaction.processed_at is None

    settled = await services.transactions.apply_webhook_outcome("stripe", "pi_1", TransactionStatus.SUCCEEDED)
    assert settled.status == TransactionStatus.SUCCEEDED

    # late failure for an already settled payment changes nothing
    stale = await services.transactions.apply_webhook_outcome(
        "stripe", "pi_1", TransactionStatus.FAILED, failure_reason="late"
    )
    assert stale.status == TransactionStatus.SUCCEEDED

    with pytest.raises(PaymentError) as exc_info:
        await services.transactions.apply_webhook_outcome("stripe", "pi_404", TransactionStatus.SUCCEEDED)
    assert exc_info.value.kind is PaymentErrorKind.TRANSACTION_NOT_FOUND


@pytest.mark.asyncio
async def test_transaction_reads_and_statistics(services, succeeded_payment, intent_request):
    _, paid = await succeeded_payment("order-1", "100.00")
    await succeeded_payment("order-2", "20.00")
    await succeeded_payment("order-3", "5.00", user_id="user-2")

    services.gateway.decline()
    failed_intent = await services.intents.create("user-1", intent_request("order-4"))
    with pytest.raises(PaymentError):
        await services.transactions.confirm("user-1", failed_intent.id)

    items, total = await services.transactions.list_transactions("user-1", skip=0, limit=1)
    assert total == 2 and len(items) == 1

    items, total = await services.transactions.list_transactions(
        "user-1", TransactionFilter(status="succeeded", service_name="orders")
    )
    assert total == 2

    fetched = await services.transactions.get_transaction("user-1", paid.id)
    assert fetched.id == paid.id
    with pytest.raises(PaymentError):
        await services.transactions.get_transaction("user-2", paid.id)

    stats = await services.transactions.statistics("user-1")
    assert stats.total_count == 2
    assert stats.succeeded_count == 2
    assert stats.failed_count == 0
    assert stats.succeeded_amount == Decimal("120.00")
    assert stats.refunded_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_payment_methods_keep_a_single_default(services):
    first = await services.methods.add(
        "user-1", AddPaymentMethodRequest(type="card", provider_payment_method_id="pm_1", is_default=True)
    )
    second = await services.methods.add(
        "user-1", AddPaymentMethodRequest(type="card", provider_payment_method_id="pm_2", is_default=True)
    )

    methods = await services.methods.list("user-1")
    defaults = [m.id for m in methods if m.is_default]
    assert defaults == [second.id]
    assert {m.id for m in methods} == {first.id, second.id}

    with pytest.raises(PaymentError) as exc_info:
        await services.methods.add("user-1", AddPaymentMethodRequest(type="card", provider_payment_method_id="pm_1"))
    assert exc_info.value.kind is PaymentErrorKind.DUPLICATE_PAYMENT_METHOD


@pytest.mark.asyncio
async def test_remove_payment_method_detaches_at_processor(services):
    method = await services.methods.add(
        "user-1", AddPaymentMethodRequest(type="card", provider_payment_method_id="pm_1", is_default=True)
    )

    with pytest.raises(PaymentError) as exc_info:
        await services.methods.remove("user-2", method.id)
    assert exc_info.value.kind is PaymentErrorKind.PAYMENT_METHOD_NOT_FOUND
    assert services.gateway.detached == []

    services.gateway.detach_error = processor_unavailable("timeout", provider="stripe")
    with pytest.raises(PaymentError) as exc_info:
        await services.methods.remove("user-1", method.id)
    assert exc_info.value.kind is PaymentErrorKind.PROCESSOR_UNAVAILABLE
    assert [m.id for m in await services.methods.list("user-1")] == [method.id]

    services.gateway.detach_error = None
    await services.methods.remove("user-1", method.id)
    assert services.gateway.detached == ["pm_1", "pm_1"]
    assert await services.methods.list("user-1") == []

    with pytest.raises(PaymentError) as exc_info:
        await services.methods.remove("user-1", method.id)
    assert exc_info.value.kind is PaymentErrorKind.PAYMENT_METHOD_NOT_FOUND

    # the same processor reference can be saved again
    again = await services.methods.add("user-1", AddPaymentMethodRequest(type="card", provider_payment_method_id="pm_1"))
    assert again.id != method.id
