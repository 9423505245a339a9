"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentIntentRepository,
    SQLAlchemyPaymentMethodRepository,
    SQLAlchemyRefundRepository,
    SQLAlchemyTransactionRepository,
    SQLAlchemyWebhookEventRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work，会话工厂由调用方注入"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.intents = SQLAlchemyPaymentIntentRepository(self.session)
        self.transactions = SQLAlchemyTransactionRepository(self.session)
        self.refunds = SQLAlchemyRefundRepository(self.session)
        self.payment_methods = SQLAlchemyPaymentMethodRepository(self.session)
        self.webhook_events = SQLAlchemyWebhookEventRepository(self.session)
        # 显式开启事务；只读时也需要，SQLite 依赖 begin 钩子串行化
        if not self.session.in_transaction():
            await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
            if self._readonly:
                await self.rollback()
        finally:
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self.intents = None  # type: ignore[assignment]
            self.transactions = None  # type: ignore[assignment]
            self.refunds = None  # type: ignore[assignment]
            self.payment_methods = None  # type: ignore[assignment]
            self.webhook_events = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
