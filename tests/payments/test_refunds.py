import asyncio
from decimal import Decimal

import pytest

from domain.common.exceptions import PaymentError
from domain.payment.entity import RefundStatus, TransactionStatus
from infrastructure.external.payments.exceptions import processor_error, processor_unavailable
from shared.codes.payment_codes import PaymentErrorKind


@pytest.mark.asyncio
async def test_partial_then_full_refund(services, succeeded_payment, published):
    _, transaction = await succeeded_payment(amount="100.00")

    first = await services.refunds.create_refund("user-1", transaction.id, Decimal("30.00"), reason="requested_by_customer")
    assert first.status == RefundStatus.SUCCEEDED
    assert first.provider_refund_id == "re_1"
    assert (await services.transactions.get_transaction("user-1", transaction.id)).status == TransactionStatus.SUCCEEDED

    # no amount means the full transaction amount, which no longer fits
    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id)
    assert exc_info.value.kind is PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION
    assert len(services.gateway.refunds) == 1

    second = await services.refunds.create_refund("user-1", transaction.id, Decimal("70.00"))
    assert second.amount == Decimal("70.00")

    settled = await services.transactions.get_transaction("user-1", transaction.id)
    assert settled.status == TransactionStatus.REFUNDED
    assert [e["status"] for e in published("TransactionStatusChanged")] == ["succeeded", "refunded"]

    refunds = await services.refunds.list_refunds("user-1", transaction.id)
    assert [r.id for r in refunds] == [first.id, second.id]

    stats = await services.transactions.statistics("user-1")
    assert stats.refunded_count == 1
    assert stats.refunded_amount == Decimal("100.00")

    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id, Decimal("1.00"))
    assert exc_info.value.kind is PaymentErrorKind.INVALID_STATE


@pytest.mark.asyncio
async def test_refund_cannot_exceed_transaction(services, succeeded_payment):
    _, transaction = await succeeded_payment(amount="100.00")

    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id, Decimal("100.01"))

    assert exc_info.value.kind is PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION
    assert exc_info.value.http_status == 400
    assert services.gateway.refunds == []


@pytest.mark.asyncio
async def test_concurrent_refunds_never_overdraw(services, succeeded_payment):
    _, transaction = await succeeded_payment(amount="100.00")

    results = await asyncio.gather(
        services.refunds.create_refund("user-1", transaction.id, Decimal("60.00")),
        services.refunds.create_refund("user-1", transaction.id, Decimal("60.00")),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, PaymentError)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert failed[0].kind is PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION
    assert len(services.gateway.refunds) == 1


@pytest.mark.asyncio
async def test_refund_larger_than_payment_is_rejected(services, succeeded_payment):
    _, transaction = await succeeded_payment(amount="49.99")

    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id, Decimal("60.00"))

    assert exc_info.value.kind is PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION
    assert exc_info.value.http_status == 400
    assert await services.refunds.list_refunds("user-1", transaction.id) == []


@pytest.mark.asyncio
async def test_concurrent_partial_refunds_stay_within_payment(services, succeeded_payment):
    _, transaction = await succeeded_payment(amount="49.99")

    results = await asyncio.gather(
        services.refunds.create_refund("user-1", transaction.id, Decimal("30.00")),
        services.refunds.create_refund("user-1", transaction.id, Decimal("30.00")),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, PaymentError)]
    assert len(succeeded) == 1
    assert [e.kind for e in failed] == [PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION]

    refunds = await services.refunds.list_refunds("user-1", transaction.id)
    assert sum(r.amount for r in refunds if r.status == RefundStatus.SUCCEEDED) == Decimal("30.00")
    assert (await services.transactions.get_transaction("user-1", transaction.id)).status == TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_refund_requires_a_succeeded_payment(services, intent_request):
    services.gateway.confirm_status = "processing"
    intent = await services.intents.create("user-1", intent_request())
    transaction = await services.transactions.confirm("user-1", intent.id)

    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id)
    assert exc_info.value.kind is PaymentErrorKind.INVALID_STATE

    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-2", transaction.id)
    assert exc_info.value.kind is PaymentErrorKind.TRANSACTION_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_processor_outcome_keeps_reservation(services, succeeded_payment):
    _, transaction = await succeeded_payment(amount="100.00")
    services.gateway.refund_error = processor_unavailable("timeout", provider="stripe")

    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id, Decimal("80.00"))
    assert exc_info.value.kind is PaymentErrorKind.PROCESSOR_UNAVAILABLE

    [pending] = await services.refunds.list_refunds("user-1", transaction.id)
    assert pending.status == RefundStatus.PENDING

    services.gateway.refund_error = None
    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id, Decimal("30.00"))
    assert exc_info.value.kind is PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION


@pytest.mark.asyncio
async def test_processor_rejection_releases_reservation(services, succeeded_payment):
    _, transaction = await succeeded_payment(amount="100.00")
    services.gateway.refund_error = processor_error("charge already disputed", provider="stripe")

    with pytest.raises(PaymentError) as exc_info:
        await services.refunds.create_refund("user-1", transaction.id, Decimal("80.00"))
    assert exc_info.value.kind is PaymentErrorKind.PROCESSOR_ERROR

    [failed] = await services.refunds.list_refunds("user-1", transaction.id)
    assert failed.status == RefundStatus.FAILED
    assert failed.failure_reason == "charge already disputed"

    services.gateway.refund_error = None
    refund = await services.refunds.create_refund("user-1", transaction.id, Decimal("100.00"))
    assert refund.status == RefundStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_refund_carries_local_id_to_processor(services, succeeded_payment):
    _, transaction = await succeeded_payment(amount="100.00")
    services.gateway.refund_status = "pending"

    refund = await services.refunds.create_refund("user-1", transaction.id, Decimal("10.00"))

    assert refund.status == RefundStatus.PENDING
    assert refund.provider_refund_id == "re_1"
    sent = services.gateway.refunds[0]
    assert sent["metadata"] == {"refundId": refund.id}
    assert sent["idempotency_key"] == refund.id
    assert sent["payment_intent"] == "pi_1"
    assert sent["amount"] == Decimal("10.00")
