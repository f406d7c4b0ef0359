"""
支付仓储接口 - 定义支付/退款流水数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import Payment, Refund
from .state_machine import PaymentState


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录（local_order_ref 重复时抛出 ConsistencyException）"""
        pass

    @abstractmethod
    async def get_by_order_ref(self, local_order_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        """根据本地订单号获取支付；for_update=True 时在当前事务内锁定该行"""
        pass

    @abstractmethod
    async def list_by_state(
        self,
        state: PaymentState,
        skip: int = 0,
        limit: int = 100
    ) -> List[Payment]:
        """根据状态获取支付列表"""
        pass

    @abstractmethod
    async def claim(
        self,
        local_order_ref: str,
        *,
        expected_state: PaymentState,
        token: str,
        operation: str,
        now: datetime,
        lease_cutoff: datetime,
    ) -> bool:
        """
        占用支付以执行需要调用网关的操作

        条件：state == expected_state 且（无人占用 或 占用已早于 lease_cutoff）。
        返回是否占用成功。
        """
        pass

    @abstractmethod
    async def release_claim(self, local_order_ref: str, token: str) -> bool:
        """释放占用（仅当 token 匹配），状态保持不变"""
        pass

    @abstractmethod
    async def save_transition(
        self,
        payment: Payment,
        *,
        expected_state: PaymentState,
        claim_token: Optional[str] = None,
    ) -> bool:
        """
        条件写入状态迁移（CAS）

        仅当库中 state == expected_state 且 claim_token 匹配（None 表示必须无人占用）
        时写入 payment 的状态、时间戳与渠道引用，并清除占用。返回是否写入成功。
        """
        pass


class RefundRepository(ABC):
    """退款流水仓储抽象接口（只追加）"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_provider_refund_ref(
        self,
        provider: str,
        provider_refund_ref: str
    ) -> Optional[Refund]:
        """根据渠道退款号获取退款"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: int) -> List[Refund]:
        """获取支付的退款列表（按处理时间升序）"""
        pass

    @abstractmethod
    async def count_by_payment(self, payment_id: int) -> int:
        """统计支付的退款次数"""
        pass

    @abstractmethod
    async def get_total_refunded_amount(self, payment_id: int) -> int:
        """获取支付已完成退款的总额"""
        pass
