"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态更新统一为 UPDATE ... WHERE id = :id AND status = :expected（CAS），
唯一约束冲突在 SAVEPOINT 内捕获，不破坏外层事务。
"""
from datetime import datetime
from enum import Enum
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import PaymentError
from domain.payment.entity import (
    PaymentIntent,
    PaymentMethod,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookEvent,
)
from domain.payment.repository import (
    PaymentIntentRepository,
    PaymentMethodRepository,
    RefundRepository,
    TransactionFilter,
    TransactionRepository,
    TransactionStatistics,
    WebhookEventRepository,
)
from infrastructure.models.payment import (
    PaymentIntentModel,
    PaymentMethodModel,
    RefundModel,
    TransactionModel,
    WebhookEventModel,
)
from infrastructure.repositories.mapping import (
    EntityMapper,
    intent_mapper,
    payment_method_mapper,
    refund_mapper,
    transaction_mapper,
    webhook_event_mapper,
)
from shared.codes.payment_codes import PaymentErrorKind


logger = get_logger(__name__)


def _status_value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


class _SQLAlchemyRepository:
    """公共的插入 / 查询 / CAS 辅助"""

    mapper: EntityMapper

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _insert(self, entity):
        """插入实体；唯一约束冲突时回滚到保存点并抛出 IntegrityError"""
        model = self.mapper.to_model(entity)
        async with self.session.begin_nested():
            self.session.add(model)
            await self.session.flush()
        await self.session.refresh(model)
        return self.mapper.to_entity(model)

    async def _one(self, stmt):
        # 总是以库中最新值覆盖会话内已加载的对象
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        model = result.scalar_one_or_none()
        return self.mapper.to_entity(model) if model else None

    async def _compare_and_set(self, entity, expected_status: str, fields: Iterable[str]) -> bool:
        model_cls = self.mapper.model_cls
        values = self.mapper.to_values(entity, only=fields)
        stmt = (
            update(model_cls)
            .where(model_cls.id == entity.id, model_cls.status == _status_value(expected_status))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


class SQLAlchemyPaymentIntentRepository(_SQLAlchemyRepository, PaymentIntentRepository):
    """支付意图仓储的SQLAlchemy实现"""

    mapper = intent_mapper

    async def create(self, intent: PaymentIntent) -> PaymentIntent:
        try:
            created = await self._insert(intent)
        except IntegrityError:
            logger.warning(
                "payment_intent_create_conflict",
                service_name=intent.service_name,
                service_transaction_id=intent.service_transaction_id,
            )
            raise PaymentError(
                PaymentErrorKind.DUPLICATE_TRANSACTION,
                "Payment intent already exists for this service transaction",
                details={
                    "service_name": intent.service_name,
                    "service_transaction_id": intent.service_transaction_id,
                },
            )
        logger.info("payment_intent_persisted", intent_id=created.id, provider=created.provider)
        return created

    async def get_by_id(self, intent_id: str, *, for_update: bool = False) -> Optional[PaymentIntent]:
        stmt = select(PaymentIntentModel).where(PaymentIntentModel.id == intent_id)
        if for_update:
            stmt = stmt.with_for_update()
        return await self._one(stmt)

    async def get_by_owner_key(self, service_name: str, service_transaction_id: str) -> Optional[PaymentIntent]:
        return await self._one(
            select(PaymentIntentModel).where(
                PaymentIntentModel.service_name == service_name,
                PaymentIntentModel.service_transaction_id == service_transaction_id,
            )
        )

    async def get_by_provider_intent_id(self, provider: str, provider_intent_id: str) -> Optional[PaymentIntent]:
        return await self._one(
            select(PaymentIntentModel).where(
                PaymentIntentModel.provider == provider,
                PaymentIntentModel.provider_intent_id == provider_intent_id,
            )
        )

    async def compare_and_set_status(self, intent: PaymentIntent, expected_status: str) -> bool:
        return await self._compare_and_set(intent, expected_status, ("status", "updated_at"))


class SQLAlchemyTransactionRepository(_SQLAlchemyRepository, TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    mapper = transaction_mapper

    async def create(self, transaction: Transaction) -> Optional[Transaction]:
        try:
            created = await self._insert(transaction)
        except IntegrityError:
            logger.info(
                "transaction_already_recorded",
                service_name=transaction.service_name,
                service_transaction_id=transaction.service_transaction_id,
            )
            return None
        logger.info(
            "transaction_recorded",
            transaction_id=created.id,
            status=created.status.value,
            amount=str(created.amount),
        )
        return created

    async def get_by_id(self, transaction_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        stmt = select(TransactionModel).where(TransactionModel.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update()
        return await self._one(stmt)

    async def get_by_owner_key(self, service_name: str, service_transaction_id: str) -> Optional[Transaction]:
        return await self._one(
            select(TransactionModel).where(
                TransactionModel.service_name == service_name,
                TransactionModel.service_transaction_id == service_transaction_id,
            )
        )

    async def get_by_provider_transaction_id(
        self, provider: str, provider_transaction_id: str
    ) -> Optional[Transaction]:
        return await self._one(
            select(TransactionModel).where(
                TransactionModel.provider == provider,
                TransactionModel.provider_transaction_id == provider_transaction_id,
            )
        )

    @staticmethod
    def _filter_clauses(user_id: str, filters: TransactionFilter) -> list:
        clauses = [TransactionModel.user_id == user_id]
        if filters.status:
            clauses.append(TransactionModel.status == filters.status)
        if filters.type:
            clauses.append(TransactionModel.type == filters.type)
        if filters.provider:
            clauses.append(TransactionModel.provider == filters.provider)
        if filters.service_name:
            clauses.append(TransactionModel.service_name == filters.service_name)
        if filters.start_date:
            clauses.append(TransactionModel.created_at >= filters.start_date)
        if filters.end_date:
            clauses.append(TransactionModel.created_at <= filters.end_date)
        return clauses

    async def list_by_user(
        self,
        user_id: str,
        filters: TransactionFilter,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        clauses = self._filter_clauses(user_id, filters)
        total = await self.session.scalar(
            select(func.count()).select_from(TransactionModel).where(and_(*clauses))
        )
        result = await self.session.execute(
            select(TransactionModel)
            .where(and_(*clauses))
            .order_by(TransactionModel.created_at.desc(), TransactionModel.id)
            .offset(skip)
            .limit(limit)
        )
        items = [self.mapper.to_entity(m) for m in result.scalars().all()]
        return items, int(total or 0)

    async def statistics(self, user_id: str) -> TransactionStatistics:
        is_payment = TransactionModel.type == TransactionType.PAYMENT.value

        def _count(status: TransactionStatus):
            return func.coalesce(
                func.sum(case((and_(is_payment, TransactionModel.status == status.value), 1), else_=0)), 0
            )

        def _amount(status: TransactionStatus):
            return func.coalesce(
                func.sum(
                    case((and_(is_payment, TransactionModel.status == status.value), TransactionModel.amount), else_=0)
                ),
                0,
            )

        row = (
            await self.session.execute(
                select(
                    func.count(TransactionModel.id),
                    _count(TransactionStatus.SUCCEEDED),
                    _count(TransactionStatus.FAILED),
                    _count(TransactionStatus.REFUNDED),
                    _amount(TransactionStatus.SUCCEEDED),
                ).where(TransactionModel.user_id == user_id)
            )
        ).one()

        refunded = await self.session.scalar(
            select(func.coalesce(func.sum(RefundModel.amount), 0))
            .join(TransactionModel, RefundModel.transaction_id == TransactionModel.id)
            .where(
                TransactionModel.user_id == user_id,
                RefundModel.status == RefundStatus.SUCCEEDED.value,
            )
        )
        return TransactionStatistics(
            total_count=int(row[0] or 0),
            succeeded_count=int(row[1] or 0),
            failed_count=int(row[2] or 0),
            refunded_count=int(row[3] or 0),
            succeeded_amount=Decimal(str(row[4] or 0)).quantize(Decimal("0.01")),
            refunded_amount=Decimal(str(refunded or 0)).quantize(Decimal("0.01")),
        )

    async def compare_and_set_status(self, transaction: Transaction, expected_status: str) -> bool:
        return await self._compare_and_set(
            transaction,
            expected_status,
            ("status", "failure_reason", "processed_at", "updated_at"),
        )


class SQLAlchemyRefundRepository(_SQLAlchemyRepository, RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    mapper = refund_mapper

    async def create(self, refund: Refund) -> Refund:
        created = await self._insert(refund)
        logger.info(
            "refund_reserved",
            refund_id=created.id,
            transaction_id=created.transaction_id,
            amount=str(created.amount),
        )
        return created

    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        return await self._one(select(RefundModel).where(RefundModel.id == refund_id))

    async def get_by_provider_refund_id(self, provider: str, provider_refund_id: str) -> Optional[Refund]:
        return await self._one(
            select(RefundModel).where(
                RefundModel.provider == provider,
                RefundModel.provider_refund_id == provider_refund_id,
            )
        )

    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.transaction_id == transaction_id)
            .order_by(RefundModel.created_at.asc(), RefundModel.id)
        )
        return [self.mapper.to_entity(m) for m in result.scalars().all()]

    async def sum_amount(self, transaction_id: str, statuses: Iterable[RefundStatus]) -> Decimal:
        status_values = [RefundStatus(s).value for s in statuses]
        total = await self.session.scalar(
            select(func.coalesce(func.sum(RefundModel.amount), 0)).where(
                RefundModel.transaction_id == transaction_id,
                RefundModel.status.in_(status_values),
            )
        )
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))

    async def compare_and_set_status(self, refund: Refund, expected_status: str) -> bool:
        return await self._compare_and_set(
            refund,
            expected_status,
            ("status", "provider_refund_id", "metadata", "processed_at", "updated_at"),
        )


class SQLAlchemyPaymentMethodRepository(_SQLAlchemyRepository, PaymentMethodRepository):
    """支付方式仓储的SQLAlchemy实现"""

    mapper = payment_method_mapper

    async def create(self, method: PaymentMethod) -> PaymentMethod:
        try:
            created = await self._insert(method)
        except IntegrityError:
            logger.warning(
                "payment_method_create_conflict",
                user_id=method.user_id,
                provider_payment_method_id=method.provider_payment_method_id,
            )
            raise PaymentError(
                PaymentErrorKind.DUPLICATE_PAYMENT_METHOD,
                "Payment method already saved for this user",
                details={"provider_payment_method_id": method.provider_payment_method_id},
                field="provider_payment_method_id",
            )
        return created

    async def get_for_user(self, user_id: str, method_id: str) -> Optional[PaymentMethod]:
        return await self._one(
            select(PaymentMethodModel).where(
                PaymentMethodModel.id == method_id,
                PaymentMethodModel.user_id == user_id,
            )
        )

    async def list_by_user(self, user_id: str) -> List[PaymentMethod]:
        result = await self.session.execute(
            select(PaymentMethodModel)
            .where(PaymentMethodModel.user_id == user_id)
            .order_by(PaymentMethodModel.is_default.desc(), PaymentMethodModel.created_at.desc())
        )
        return [self.mapper.to_entity(m) for m in result.scalars().all()]

    async def clear_default(self, user_id: str) -> int:
        result = await self.session.execute(
            update(PaymentMethodModel)
            .where(PaymentMethodModel.user_id == user_id, PaymentMethodModel.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete(self, user_id: str, method_id: str) -> bool:
        result = await self.session.execute(
            delete(PaymentMethodModel)
            .where(PaymentMethodModel.id == method_id, PaymentMethodModel.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class SQLAlchemyWebhookEventRepository(_SQLAlchemyRepository, WebhookEventRepository):
    """Webhook 事件仓储的SQLAlchemy实现"""

    mapper = webhook_event_mapper

    async def claim(self, event: WebhookEvent) -> Optional[WebhookEvent]:
        try:
            return await self._insert(event)
        except IntegrityError:
            return None

    async def get_by_id(self, event_id: str) -> Optional[WebhookEvent]:
        return await self._one(select(WebhookEventModel).where(WebhookEventModel.id == event_id))

    async def mark_processed(self, event_id: str, processed_at: datetime) -> bool:
        result = await self.session.execute(
            update(WebhookEventModel)
            .where(WebhookEventModel.id == event_id, WebhookEventModel.processed.is_(False))
            .values(processed=True, processed_at=processed_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_unprocessed(self, limit: int = 100) -> List[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEventModel)
            .where(WebhookEventModel.processed.is_(False))
            .order_by(WebhookEventModel.created_at.asc())
            .limit(limit)
        )
        return [self.mapper.to_entity(m) for m in result.scalars().all()]
