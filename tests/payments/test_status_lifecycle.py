from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException, PaymentError
from domain.payment.entity import (
    IntentStatus,
    PaymentIntent,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    Transition,
    owner_metadata,
    read_owner_metadata,
)
from domain.payment.service import (
    StatusChange,
    compare_and_swap,
    is_fully_refunded,
    resolve_refund_amount,
)
from shared.codes.payment_codes import PaymentErrorKind


def _transaction(status=TransactionStatus.PENDING, amount="100.00", currency="usd") -> Transaction:
    return Transaction(
        id="txn-1",
        user_id="user-1",
        amount=Decimal(amount),
        currency=currency,
        status=status,
        type=TransactionType.PAYMENT,
        provider="stripe",
        service_name="orders",
        service_transaction_id="order-1",
        provider_transaction_id="pi_1",
    )


def test_transaction_moves_forward_only():
    txn = _transaction()
    assert txn.transition_to(TransactionStatus.PROCESSING) is Transition.APPLIED
    assert txn.transition_to(TransactionStatus.PENDING) is Transition.REJECTED
    assert txn.status == TransactionStatus.PROCESSING
    assert txn.transition_to(TransactionStatus.PROCESSING) is Transition.UNCHANGED


def test_terminal_transaction_ignores_later_outcomes():
    txn = _transaction()
    assert txn.transition_to(TransactionStatus.SUCCEEDED) is Transition.APPLIED
    assert txn.processed_at is not None

    assert txn.transition_to(TransactionStatus.FAILED, failure_reason="late decline") is Transition.REJECTED
    assert txn.transition_to(TransactionStatus.PROCESSING) is Transition.REJECTED
    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.failure_reason is None


def test_refunded_requires_the_refund_flow():
    txn = _transaction(TransactionStatus.SUCCEEDED)
    assert txn.transition_to(TransactionStatus.REFUNDED) is Transition.REJECTED
    assert txn.transition_to(TransactionStatus.REFUNDED, allow_refunded=True) is Transition.APPLIED
    assert txn.status == TransactionStatus.REFUNDED
    # refunded is final
    assert txn.transition_to(TransactionStatus.SUCCEEDED) is Transition.REJECTED


def test_pending_transaction_cannot_jump_to_refunded():
    txn = _transaction()
    assert txn.transition_to(TransactionStatus.REFUNDED, allow_refunded=True) is Transition.REJECTED


def test_failed_transaction_needs_a_reason():
    txn = _transaction()
    with pytest.raises(DomainValidationException):
        txn.transition_to(TransactionStatus.FAILED)
    assert txn.transition_to(TransactionStatus.FAILED, failure_reason="card declined") is Transition.APPLIED
    assert txn.failure_reason == "card declined"


def test_intent_can_be_cancelled_from_any_open_status():
    intent = PaymentIntent(
        id="pi-local",
        user_id="user-1",
        amount=Decimal("10"),
        currency="EUR",
        status=IntentStatus.REQUIRES_ACTION,
        provider="stripe",
        service_name="orders",
        service_transaction_id="order-9",
    )
    assert intent.amount == Decimal("10.00")
    assert intent.transition_to(IntentStatus.REQUIRES_PAYMENT_METHOD) is Transition.REJECTED
    assert intent.transition_to(IntentStatus.CANCELLED) is Transition.APPLIED
    assert intent.is_terminal()
    assert intent.transition_to(IntentStatus.SUCCEEDED) is Transition.REJECTED


def test_refund_failure_reason_is_kept_in_metadata():
    refund = Refund(
        id="rf-1",
        transaction_id="txn-1",
        amount=Decimal("5.00"),
        currency="USD",
        status=RefundStatus.PENDING,
        provider="stripe",
    )
    assert refund.transition_to(RefundStatus.FAILED, failure_reason="expired card") is Transition.APPLIED
    assert refund.failure_reason == "expired card"
    assert refund.processed_at is not None
    assert refund.transition_to(RefundStatus.SUCCEEDED) is Transition.REJECTED


@pytest.mark.parametrize("amount", ["0", "-1.00", "1000000.00"])
def test_amount_bounds(amount):
    with pytest.raises(DomainValidationException):
        _transaction(amount=amount)


def test_zero_decimal_currency_takes_whole_amounts_only():
    with pytest.raises(DomainValidationException) as exc_info:
        _transaction(amount="500.50", currency="jpy")
    assert exc_info.value.field == "amount"

    assert _transaction(amount="500", currency="jpy").amount == Decimal("500.00")
    assert _transaction(amount="500.50", currency="usd").amount == Decimal("500.50")


def test_resolve_refund_amount_defaults_to_full_amount():
    txn = _transaction(TransactionStatus.SUCCEEDED)
    assert resolve_refund_amount(txn, None, Decimal("0.00")) == Decimal("100.00")
    assert resolve_refund_amount(txn, Decimal("40.00"), Decimal("60.00")) == Decimal("40.00")


def test_resolve_refund_amount_rejects_more_than_remaining():
    txn = _transaction(TransactionStatus.SUCCEEDED)
    with pytest.raises(PaymentError) as exc_info:
        resolve_refund_amount(txn, Decimal("40.01"), Decimal("60.00"))
    assert exc_info.value.kind is PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION
    assert exc_info.value.details["remaining"] == "40.00"

    # full refund once something is already reserved exceeds as well
    with pytest.raises(PaymentError):
        resolve_refund_amount(txn, None, Decimal("0.01"))


def test_is_fully_refunded():
    txn = _transaction(TransactionStatus.SUCCEEDED)
    assert not is_fully_refunded(txn, Decimal("99.99"))
    assert is_fully_refunded(txn, Decimal("100.00"))


def test_owner_metadata_round_trip():
    meta = {"orderRef": "A-1", **owner_metadata("user-1", "orders", "order-1")}
    assert read_owner_metadata(meta) == ("user-1", "orders", "order-1")
    assert read_owner_metadata({"userId": "user-1"}) is None
    assert read_owner_metadata(None) is None


@pytest.mark.asyncio
async def test_compare_and_swap_reloads_after_a_lost_race():
    stored = {"status": TransactionStatus.PENDING}
    saves = []

    async def load():
        return _transaction(stored["status"])

    async def save(entity, expected):
        saves.append(expected)
        if len(saves) == 1:
            # a concurrent writer got there first
            stored["status"] = TransactionStatus.PROCESSING
            return False
        stored["status"] = entity.status
        return True

    change = await compare_and_swap(load, lambda t: t.transition_to(TransactionStatus.SUCCEEDED), save)

    assert isinstance(change, StatusChange)
    assert change.applied
    assert change.previous_status == "processing"
    assert saves == ["pending", "processing"]
    assert stored["status"] == TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_compare_and_swap_does_not_write_stale_transitions():
    async def load():
        return _transaction(TransactionStatus.SUCCEEDED)

    async def save(entity, expected):
        raise AssertionError("stale transition must not be written")

    change = await compare_and_swap(load, lambda t: t.transition_to(TransactionStatus.PROCESSING), save)
    assert change.outcome is Transition.REJECTED
    assert change.entity.status == TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_compare_and_swap_gives_up_after_repeated_conflicts():
    async def load():
        return _transaction()

    async def save(entity, expected):
        return False

    with pytest.raises(PaymentError) as exc_info:
        await compare_and_swap(load, lambda t: t.transition_to(TransactionStatus.PROCESSING), save, attempts=3)
    assert exc_info.value.kind is PaymentErrorKind.INVALID_STATE
