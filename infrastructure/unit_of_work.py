"""SQLAlchemy Unit of Work 实现

每个实例持有一个 AsyncSession 和至多一个事务，退出时归还会话。
支付仓储与退款仓储共享同一会话，保证条件更新与退款写入同进同退。
"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentRepository,
    SQLAlchemyRefundRepository,
)

SessionFactory = Callable[[], AsyncSession]


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于 SQLAlchemy 的 Unit of Work，只读模式不开启显式事务"""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        if session_factory is None and session is None:
            from infrastructure.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._owns_session = session is None
        self._tx: Optional[AsyncSessionTransaction] = None
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.payment_repository = SQLAlchemyPaymentRepository(self.session)
        self.refund_repository = SQLAlchemyRefundRepository(self.session)
        if not self.readonly:
            self._tx = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            await self._dispose()

    async def _dispose(self) -> None:
        if self._tx is not None and self._tx.is_active:
            await self._tx.rollback()
        self._tx = None
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
        self.payment_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if not self.readonly and self.session is not None and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session is not None and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


def sqlalchemy_uow_factory(session_factory: SessionFactory) -> Callable[..., SQLAlchemyUnitOfWork]:
    """供 PaymentOrchestrator 使用：每次调用返回一个新的 Unit of Work"""

    def _factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)

    return _factory
