"""Unit of Work 抽象定义

编排服务的每一步（占用、提交、释放）各自使用一个独立的 Unit of Work，
因此一个实例只对应一个短事务，不跨越任何网关调用。
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import PaymentRepository, RefundRepository


class AbstractUnitOfWork(ABC):
    """事务边界：正常退出自动提交（只读除外），异常退出回滚"""

    payment_repository: PaymentRepository
    refund_repository: RefundRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.payment_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]

    @property
    def readonly(self) -> bool:
        return self._readonly

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            await self.rollback()
        elif not self._readonly and not self._committed:
            await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务（包括已执行的条件更新）"""
