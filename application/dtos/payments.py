"""
Payment DTOs (Pydantic v2) used at application boundaries.

Request/response models use camelCase on the wire (callers are other
services) and snake_case in Python.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel, to_snake
from pydantic.types import condecimal

from domain.payment.entity import (
    IntentStatus,
    PaymentMethodType,
    RefundStatus,
    TransactionStatus,
    TransactionType,
)
from shared.money import fits_minor_unit

# Amounts: positive, two decimals, at most 999999.99
Amount = condecimal(gt=0, max_digits=8, decimal_places=2)

SUPPORTED_PROVIDERS = {"stripe", "paypal", "flutterwave", "paystack"}


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


def _owner_field(attribute: str, alias: str) -> Any:
    """Entity attribute `attribute` exposed as `alias` on the wire."""
    return Field(
        validation_alias=AliasChoices(attribute, alias, to_snake(alias)),
        serialization_alias=alias,
    )


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreatePaymentIntentRequest(ApiModel):
    amount: Amount  # type: ignore[valid-type]
    currency: str = Field(default="USD")
    owner_service_name: str = Field(min_length=1, max_length=100)
    owner_transaction_id: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return _validate_currency(v)

    @model_validator(mode="after")
    def _whole_units_for_zero_decimal_currency(self) -> "CreatePaymentIntentRequest":
        if not fits_minor_unit(self.amount, self.currency):
            raise ValueError(f"{self.currency} amounts cannot have a fractional part")
        return self


class ConfirmPaymentRequest(ApiModel):
    payment_intent_id: str
    payment_method_id: Optional[str] = None


class CreateRefundRequest(ApiModel):
    transaction_id: str
    amount: Optional[Amount] = None  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=255)
    metadata: Optional[dict[str, Any]] = None


class AddPaymentMethodRequest(ApiModel):
    type: PaymentMethodType
    provider: str = "stripe"
    provider_payment_method_id: str = Field(min_length=1, max_length=255)
    is_default: bool = False
    metadata: Optional[dict[str, Any]] = None

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        name = (v or "").lower()
        if name not in SUPPORTED_PROVIDERS:
            raise ValueError(f"unsupported provider '{v}'")
        return name


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class PaymentIntentDTO(ApiModel):
    id: str
    user_id: str
    amount: Decimal
    currency: str
    status: IntentStatus
    provider: str
    provider_intent_id: Optional[str] = None
    owner_service_name: str = _owner_field("service_name", "ownerServiceName")
    owner_transaction_id: str = _owner_field("service_transaction_id", "ownerTransactionId")
    client_secret: Optional[str] = None
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransactionDTO(ApiModel):
    id: str
    user_id: str
    payment_method_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: TransactionStatus
    type: TransactionType
    provider: str
    provider_transaction_id: Optional[str] = None
    owner_service_name: str = _owner_field("service_name", "ownerServiceName")
    owner_transaction_id: str = _owner_field("service_transaction_id", "ownerTransactionId")
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RefundDTO(ApiModel):
    id: str
    transaction_id: str
    amount: Decimal
    currency: str
    status: RefundStatus
    provider: str
    provider_refund_id: Optional[str] = None
    reason: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PaymentMethodDTO(ApiModel):
    id: str
    user_id: str
    type: PaymentMethodType
    provider: str
    provider_payment_method_id: str
    is_default: bool
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class TransactionStatisticsDTO(ApiModel):
    total_count: int
    succeeded_count: int
    failed_count: int
    refunded_count: int
    succeeded_amount: Decimal
    refunded_amount: Decimal


class WebhookAckDTO(ApiModel):
    received: bool = True
    event_id: str
    event_type: str
    duplicate: bool = False
    processed: bool = False


# ---------------------------------------------------------------------------
# Processor gateway values
# ---------------------------------------------------------------------------


class ExternalIntent(BaseModel):
    """Processor-side intent as returned by a gateway call."""

    id: str
    provider: str
    processor_status: str
    status: Optional[IntentStatus] = None
    transaction_status: Optional[TransactionStatus] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    client_secret: Optional[str] = None
    failure_reason: Optional[str] = None


class ExternalRefund(BaseModel):
    id: str
    provider: str
    processor_status: str
    status: Optional[RefundStatus] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None


class ProcessorEvent(BaseModel):
    """Verified inbound processor event, normalized by the adapter.

    `type` uses the processor-independent names (`paymentIntent.succeeded`,
    `refund.failed`, ...); unknown processor types pass through unchanged.
    """

    id: str
    type: str
    raw_type: str
    provider: str
    object_id: Optional[str] = None
    related_id: Optional[str] = None
    processor_status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None
    payload: dict[str, Any] = Field(default_factory=dict)
