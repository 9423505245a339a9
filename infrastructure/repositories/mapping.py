"""
实体 <-> ORM 模型的声明式映射

每个实体只有一个映射器，所有读写路径共用，避免每个查询各写一份转换代码。
"""
from __future__ import annotations

import copy
import dataclasses
from enum import Enum
from typing import Any, Generic, Iterable, Optional, Type, TypeVar

from domain.payment.entity import (
    PaymentIntent,
    PaymentMethod,
    Refund,
    Transaction,
    WebhookEvent,
)
from infrastructure.models.payment import (
    PaymentIntentModel,
    PaymentMethodModel,
    RefundModel,
    TransactionModel,
    WebhookEventModel,
)

E = TypeVar("E")
M = TypeVar("M")

# metadata 是 DeclarativeBase 的保留属性，ORM 侧统一叫 extra_metadata
_DEFAULT_RENAMES = {"metadata": "extra_metadata"}


def _to_column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return copy.deepcopy(value)
    return value


class EntityMapper(Generic[E, M]):
    """按 dataclass 字段声明的映射器"""

    def __init__(
        self,
        entity_cls: Type[E],
        model_cls: Type[M],
        renames: Optional[dict[str, str]] = None,
    ) -> None:
        self.entity_cls = entity_cls
        self.model_cls = model_cls
        self.renames = {**_DEFAULT_RENAMES, **(renames or {})}
        self.fields = tuple(f.name for f in dataclasses.fields(entity_cls))

    def attr(self, field_name: str) -> str:
        """实体字段名对应的模型属性名"""
        return self.renames.get(field_name, field_name)

    def column(self, field_name: str):
        return getattr(self.model_cls, self.attr(field_name))

    def to_entity(self, model: M) -> E:
        kwargs = {}
        for name in self.fields:
            value = getattr(model, self.attr(name))
            if isinstance(value, (dict, list)):
                value = copy.deepcopy(value)
            kwargs[name] = value
        return self.entity_cls(**kwargs)

    def to_values(self, entity: E, only: Optional[Iterable[str]] = None) -> dict[str, Any]:
        """实体字段 -> {模型属性: 值}，可限定字段子集（用于 UPDATE）"""
        names = self.fields if only is None else tuple(only)
        return {self.attr(name): _to_column_value(getattr(entity, name)) for name in names}

    def to_model(self, entity: E) -> M:
        # None 不显式写入，交给列默认值（时间戳、id）
        values = {k: v for k, v in self.to_values(entity).items() if v is not None}
        return self.model_cls(**values)


intent_mapper: EntityMapper[PaymentIntent, PaymentIntentModel] = EntityMapper(PaymentIntent, PaymentIntentModel)
transaction_mapper: EntityMapper[Transaction, TransactionModel] = EntityMapper(Transaction, TransactionModel)
refund_mapper: EntityMapper[Refund, RefundModel] = EntityMapper(Refund, RefundModel)
payment_method_mapper: EntityMapper[PaymentMethod, PaymentMethodModel] = EntityMapper(
    PaymentMethod, PaymentMethodModel
)
webhook_event_mapper: EntityMapper[WebhookEvent, WebhookEventModel] = EntityMapper(WebhookEvent, WebhookEventModel)
