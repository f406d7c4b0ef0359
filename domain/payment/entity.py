"""
支付领域实体 - 支付聚合根与退款流水
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from enum import Enum

from domain.common.exceptions import DomainValidationException
from domain.payment.state_machine import (
    PaymentOperation,
    PaymentState,
    ensure_transition,
    is_terminal,
    refund_target,
)


class RefundStatus(str, Enum):
    """退款状态枚举（失败的退款不落库）"""
    COMPLETED = "completed"


class RefundSource(str, Enum):
    """退款创建路径"""
    BACKEND = "backend"    # 编排服务调用网关退款
    FRONTEND = "frontend"  # 可信调用方提供已完成的渠道退款号


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _validate_currency(currency: str) -> None:
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise DomainValidationException(
            f"无效的货币代码: {currency}",
            field="currency"
        )


@dataclass
class Payment:
    """
    支付聚合根 - 管理一次购买尝试的授权/扣款/取消/退款生命周期

    业务规则：
    1. local_order_ref 全局唯一且不可变
    2. 金额为最小货币单位的整数，登记后不可变；只有零结算订单允许为 0
    3. 渠道引用只能设置一次
    4. 状态只能沿 state_machine.TRANSITIONS 迁移
    5. 各时间戳只设置一次且单调不减
    """

    id: Optional[int]
    local_order_ref: str
    provider: str
    amount: int
    currency: str
    state: PaymentState = PaymentState.PENDING
    customer_ref: Optional[str] = None

    # 渠道引用（登记或确认授权时写入，之后不可变）
    provider_order_ref: Optional[str] = None
    provider_access_ref: Optional[str] = None

    is_zero_settlement: bool = False

    # 时间戳
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    failure_reason: Optional[str] = None

    # 进行中操作的租约（见编排服务的并发协议）
    claim_token: Optional[str] = None
    claim_operation: Optional[str] = None
    claimed_at: Optional[datetime] = None

    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        """初始化后验证"""
        self.state = PaymentState(self.state)
        self._validate_amount()
        _validate_currency(self.currency)
        self.currency = self.currency.upper()
        self._normalize_timestamps()
        if self.metadata is None:
            self.metadata = {}

    def _validate_amount(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise DomainValidationException(
                f"支付金额必须为最小货币单位的整数: {self.amount!r}",
                field="amount"
            )
        if self.amount < 0 or (self.amount == 0 and not self.is_zero_settlement):
            raise DomainValidationException(
                f"支付金额必须大于0: {self.amount}",
                field="amount"
            )
        if self.is_zero_settlement and self.amount != 0:
            raise DomainValidationException(
                f"零结算订单金额必须为0: {self.amount}",
                field="amount"
            )

    def _normalize_timestamps(self) -> None:
        """规范化所有时间戳为 UTC"""
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.authorized_at = _ensure_utc(self.authorized_at)
        self.captured_at = _ensure_utc(self.captured_at)
        self.cancelled_at = _ensure_utc(self.cancelled_at)
        self.failed_at = _ensure_utc(self.failed_at)
        self.claimed_at = _ensure_utc(self.claimed_at)

    def _stamp(self, now: Optional[datetime]) -> datetime:
        """取迁移时间：不早于已有的任何时间戳"""
        ts = _ensure_utc(now) or datetime.now(timezone.utc)
        known = [
            t for t in (
                self.created_at,
                self.updated_at,
                self.authorized_at,
                self.captured_at,
                self.cancelled_at,
                self.failed_at,
            )
            if t is not None
        ]
        if known:
            ts = max(ts, max(known))
        self.updated_at = ts
        return ts

    def attach_provider_refs(
        self,
        provider_order_ref: Optional[str],
        provider_access_ref: Optional[str] = None,
    ) -> None:
        """写入渠道引用（只写一次；重复写入相同值视为无操作）"""
        for attr, value in (
            ("provider_order_ref", provider_order_ref),
            ("provider_access_ref", provider_access_ref),
        ):
            if value is None:
                continue
            current = getattr(self, attr)
            if current is None:
                setattr(self, attr, value)
            elif current != value:
                raise DomainValidationException(
                    f"{attr} 已设置且不可变更: {current}",
                    field=attr
                )

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)

    @property
    def is_claimed(self) -> bool:
        return self.claim_token is not None

    def confirm_authorization(
        self,
        now: Optional[datetime] = None,
        provider_order_ref: Optional[str] = None,
        provider_access_ref: Optional[str] = None,
    ) -> None:
        """pending -> authorized"""
        ensure_transition(self.local_order_ref, self.state, PaymentOperation.CONFIRM_AUTHORIZATION)
        self.attach_provider_refs(provider_order_ref, provider_access_ref)
        self.authorized_at = self._stamp(now)
        self.state = PaymentState.AUTHORIZED

    def fail_authorization(self, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        """pending -> failed"""
        ensure_transition(self.local_order_ref, self.state, PaymentOperation.FAIL_AUTHORIZATION)
        self.failed_at = self._stamp(now)
        self.failure_reason = reason
        self.state = PaymentState.FAILED

    def capture(self, now: Optional[datetime] = None) -> None:
        """
        authorized -> captured

        金额为 0 时即零结算：不经过渠道扣款，直接标记为已扣款。
        """
        ensure_transition(self.local_order_ref, self.state, PaymentOperation.CAPTURE)
        if self.amount == 0:
            self.is_zero_settlement = True
        self.captured_at = self._stamp(now)
        self.state = PaymentState.CAPTURED

    def fail_capture(self, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        """authorized -> failed（渠道拒绝扣款）"""
        ensure_transition(self.local_order_ref, self.state, PaymentOperation.FAIL_CAPTURE)
        self.failed_at = self._stamp(now)
        self.failure_reason = reason
        self.state = PaymentState.FAILED

    def cancel(self, now: Optional[datetime] = None) -> None:
        """authorized -> cancelled"""
        ensure_transition(self.local_order_ref, self.state, PaymentOperation.CANCEL)
        self.cancelled_at = self._stamp(now)
        self.state = PaymentState.CANCELLED

    def remaining_refundable(self, refunded_total: int) -> int:
        """剩余可退金额 = 支付金额 - 已完成退款之和"""
        return max(self.amount - refunded_total, 0)

    def ensure_refundable(self, amount: int, refunded_total: int) -> int:
        """
        校验一笔退款，返回退款后的剩余可退金额

        业务规则：
        1. 已全额退款的支付余额为 0，再退款视为金额不合法
        2. 其他状态必须存在 refund 出边
        3. 0 < amount <= 剩余可退金额
        """
        remaining = self.remaining_refundable(refunded_total)
        if self.state != PaymentState.REFUNDED:
            ensure_transition(self.local_order_ref, self.state, PaymentOperation.REFUND)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise DomainValidationException(
                f"退款金额必须为整数: {amount!r}",
                field="amount"
            )
        if amount <= 0:
            raise DomainValidationException(
                f"退款金额必须大于0: {amount}",
                field="amount"
            )
        if amount > remaining:
            raise DomainValidationException(
                f"退款金额 {amount} 超过可退金额 {remaining}",
                field="amount",
                details={"remaining_refundable": remaining},
            )
        return remaining - amount

    def apply_refund(self, amount: int, refunded_total: int, now: Optional[datetime] = None) -> int:
        """应用一笔退款并迁移到 partially_refunded / refunded，返回剩余可退金额"""
        remaining_after = self.ensure_refundable(amount, refunded_total)
        self._stamp(now)
        self.state = refund_target(remaining_after == 0)
        return remaining_after


@dataclass
class Refund:
    """
    退款流水 - 只追加，不修改

    业务规则：
    1. 金额为正整数且不超过创建时的剩余可退金额
    2. 只有完成的退款才会写入
    """

    id: Optional[int]
    payment_id: int
    local_order_ref: str  # 冗余，便于查询
    provider: str
    amount: int
    provider_refund_ref: Optional[str]
    source: RefundSource = RefundSource.BACKEND
    status: RefundStatus = RefundStatus.COMPLETED
    reason: Optional[str] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise DomainValidationException(
                f"退款金额必须为正整数: {self.amount!r}",
                field="amount"
            )
        self.source = RefundSource(self.source)
        self.status = RefundStatus(self.status)
        self.processed_at = _ensure_utc(self.processed_at) or datetime.now(timezone.utc)
