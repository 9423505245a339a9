"""
支付仓储接口 - 定义支付数据访问的抽象接口

所有读取返回的都是实体快照；状态更新统一走 compare_and_set_status（CAS），
只有当库中状态仍为 expected_status 时才写入。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from .entity import (
    PaymentIntent,
    PaymentMethod,
    Refund,
    RefundStatus,
    Transaction,
    WebhookEvent,
)


@dataclass
class TransactionFilter:
    """交易列表过滤条件"""
    status: Optional[str] = None
    type: Optional[str] = None
    provider: Optional[str] = None
    service_name: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class TransactionStatistics:
    total_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    refunded_count: int = 0
    succeeded_amount: Decimal = Decimal("0.00")
    refunded_amount: Decimal = Decimal("0.00")


class PaymentIntentRepository(ABC):
    """支付意图仓储"""

    @abstractmethod
    async def create(self, intent: PaymentIntent) -> PaymentIntent:
        """创建意图；归属键冲突时抛出 DUPLICATE_TRANSACTION"""
        pass

    @abstractmethod
    async def get_by_id(self, intent_id: str, *, for_update: bool = False) -> Optional[PaymentIntent]:
        """根据ID获取意图"""
        pass

    @abstractmethod
    async def get_by_owner_key(self, service_name: str, service_transaction_id: str) -> Optional[PaymentIntent]:
        """根据调用方归属键获取意图"""
        pass

    @abstractmethod
    async def get_by_provider_intent_id(self, provider: str, provider_intent_id: str) -> Optional[PaymentIntent]:
        """根据处理方意图ID获取意图"""
        pass

    @abstractmethod
    async def compare_and_set_status(self, intent: PaymentIntent, expected_status: str) -> bool:
        """CAS 写入状态，返回是否命中"""
        pass


class TransactionRepository(ABC):
    """交易仓储"""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Optional[Transaction]:
        """插入交易；归属键已存在时返回 None（不破坏外层事务）"""
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        """根据ID获取交易，for_update 时加行锁"""
        pass

    @abstractmethod
    async def get_by_owner_key(self, service_name: str, service_transaction_id: str) -> Optional[Transaction]:
        """根据调用方归属键获取交易"""
        pass

    @abstractmethod
    async def get_by_provider_transaction_id(
        self, provider: str, provider_transaction_id: str
    ) -> Optional[Transaction]:
        """根据处理方交易ID获取交易"""
        pass

    @abstractmethod
    async def list_by_user(
        self,
        user_id: str,
        filters: TransactionFilter,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        """分页获取用户交易，返回 (items, total)"""
        pass

    @abstractmethod
    async def statistics(self, user_id: str) -> TransactionStatistics:
        """用户交易统计"""
        pass

    @abstractmethod
    async def compare_and_set_status(self, transaction: Transaction, expected_status: str) -> bool:
        """CAS 写入状态，返回是否命中"""
        pass


class RefundRepository(ABC):
    """退款仓储"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        """根据ID获取退款"""
        pass

    @abstractmethod
    async def get_by_provider_refund_id(self, provider: str, provider_refund_id: str) -> Optional[Refund]:
        """根据处理方退款ID获取退款"""
        pass

    @abstractmethod
    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        """获取交易的退款列表"""
        pass

    @abstractmethod
    async def sum_amount(self, transaction_id: str, statuses: Iterable[RefundStatus]) -> Decimal:
        """按状态汇总交易的退款金额"""
        pass

    @abstractmethod
    async def compare_and_set_status(self, refund: Refund, expected_status: str) -> bool:
        """CAS 写入状态（同时写入 provider_refund_id / metadata / processed_at）"""
        pass


class PaymentMethodRepository(ABC):
    """支付方式仓储"""

    @abstractmethod
    async def create(self, method: PaymentMethod) -> PaymentMethod:
        """保存支付方式；重复时抛出 DUPLICATE_PAYMENT_METHOD"""
        pass

    @abstractmethod
    async def get_for_user(self, user_id: str, method_id: str) -> Optional[PaymentMethod]:
        """获取属于该用户的支付方式"""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> List[PaymentMethod]:
        """默认优先、创建时间倒序"""
        pass

    @abstractmethod
    async def clear_default(self, user_id: str) -> int:
        """取消用户现有默认支付方式"""
        pass

    @abstractmethod
    async def delete(self, user_id: str, method_id: str) -> bool:
        """删除属于该用户的支付方式；不存在返回 False"""
        pass


class WebhookEventRepository(ABC):
    """Webhook 事件仓储"""

    @abstractmethod
    async def claim(self, event: WebhookEvent) -> Optional[WebhookEvent]:
        """原子认领：插入成功返回记录，唯一键冲突返回 None"""
        pass

    @abstractmethod
    async def get_by_id(self, event_id: str) -> Optional[WebhookEvent]:
        """根据ID获取事件"""
        pass

    @abstractmethod
    async def mark_processed(self, event_id: str, processed_at: datetime) -> bool:
        """标记已处理"""
        pass

    @abstractmethod
    async def list_unprocessed(self, limit: int = 100) -> List[WebhookEvent]:
        """按接收时间获取未处理事件"""
        pass
