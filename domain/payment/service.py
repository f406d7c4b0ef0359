"""
支付领域服务 - 登记校验、零结算策略与领域事件
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .entity import Payment, Refund
from .events import (
    PaymentAuthorized,
    PaymentCancelled,
    PaymentCaptured,
    PaymentEvent,
    PaymentFailed,
    PaymentRefunded,
)
from .state_machine import PaymentState
from domain.common.exceptions import DomainValidationException


class CapturePath(str, Enum):
    """扣款路径，必须在任何渠道扣款调用之前决定"""
    PROVIDER = "provider"                # 调用渠道 capture
    ZERO_SETTLEMENT = "zero_settlement"  # 跳过渠道扣款，释放授权冻结


def generate_local_order_ref(prefix: str = "pay") -> str:
    """本地订单号：在任何外部调用之前生成"""
    return f"{prefix}_{uuid.uuid4().hex}"


def decide_capture_path(payment: Payment) -> CapturePath:
    """零结算策略：金额为 0 的订单永远不走渠道扣款"""
    if payment.amount == 0 or payment.is_zero_settlement:
        return CapturePath.ZERO_SETTLEMENT
    return CapturePath.PROVIDER


def should_release_hold(payment: Payment) -> bool:
    """零结算扣款后，只有存在渠道引用（即有冻结）时才需要调用 cancel 释放"""
    return bool(payment.provider_order_ref)


class PaymentDomainService:
    """
    支付领域服务

    职责：
    1. 登记时的金额与币种校验（最低收款额、零结算）
    2. 根据实体迁移结果产生领域事件
    """

    def __init__(self, minimum_charge: int):
        if minimum_charge <= 0:
            raise ValueError("minimum_charge must be positive")
        self.minimum_charge = minimum_charge
        self.events: List[PaymentEvent] = []  # 领域事件收集

    def validate_charge(self, amount: int) -> bool:
        """
        校验登记金额，返回是否为零结算

        业务规则：
        1. 金额必须是非负整数
        2. 金额为 0 时为零结算
        3. 其余金额不得低于最低收款额
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise DomainValidationException(
                f"支付金额必须为最小货币单位的整数: {amount!r}",
                field="amount"
            )
        if amount < 0:
            raise DomainValidationException(
                f"支付金额不能为负: {amount}",
                field="amount"
            )
        if amount == 0:
            return True
        if amount < self.minimum_charge:
            raise DomainValidationException(
                f"支付金额 {amount} 低于最低收款额 {self.minimum_charge}",
                field="amount",
                details={"minimum_charge": self.minimum_charge},
            )
        return False

    def new_payment(
        self,
        *,
        provider: str,
        amount: int,
        currency: str,
        customer_ref: Optional[str] = None,
        metadata: Optional[dict] = None,
        local_order_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """构建处于 pending 的新支付（尚未持久化）"""
        zero = self.validate_charge(amount)
        ts = now or datetime.now(timezone.utc)
        return Payment(
            id=None,
            local_order_ref=local_order_ref or generate_local_order_ref(),
            provider=provider,
            amount=amount,
            currency=currency,
            state=PaymentState.PENDING,
            customer_ref=customer_ref,
            is_zero_settlement=zero,
            created_at=ts,
            updated_at=ts,
            metadata=dict(metadata or {}),
        )

    def record_transition(self, payment: Payment, refund: Optional[Refund] = None, remaining: int = 0) -> None:
        """根据支付当前状态记录领域事件"""
        common = dict(
            local_order_ref=payment.local_order_ref,
            provider=payment.provider,
            provider_order_ref=payment.provider_order_ref,
        )
        if refund is not None:
            self.events.append(PaymentRefunded(
                refund_id=refund.id,
                amount=refund.amount,
                remaining_refundable=remaining,
                **common,
            ))
        elif payment.state == PaymentState.AUTHORIZED:
            self.events.append(PaymentAuthorized(**common))
        elif payment.state == PaymentState.CAPTURED:
            self.events.append(PaymentCaptured(
                amount=payment.amount,
                zero_settlement=payment.is_zero_settlement,
                **common,
            ))
        elif payment.state == PaymentState.CANCELLED:
            self.events.append(PaymentCancelled(**common))
        elif payment.state == PaymentState.FAILED:
            self.events.append(PaymentFailed(reason=payment.failure_reason, **common))

    def clear_events(self) -> List[PaymentEvent]:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
