"""
支付状态机 - 显式迁移表

所有状态判断（能否捕获、能否退款等）都由 TRANSITIONS 表推导出的纯函数给出，
实体与编排服务不再各自维护布尔判断，避免判断逻辑与持久化状态不一致。
"""
from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Mapping, Optional, Tuple

from domain.payment.exceptions import StateConflictException


class PaymentState(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                        # 已登记，等待前端授权结果
    AUTHORIZED = "authorized"                  # 已授权（资金冻结）
    CAPTURED = "captured"                      # 已扣款
    CANCELLED = "cancelled"                    # 授权已取消（终态）
    FAILED = "failed"                          # 授权或扣款失败（终态）
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款
    REFUNDED = "refunded"                      # 全额退款（终态）


class PaymentOperation(str, Enum):
    """会改变支付状态的操作"""
    CONFIRM_AUTHORIZATION = "confirm_authorization"
    FAIL_AUTHORIZATION = "fail_authorization"
    CAPTURE = "capture"
    FAIL_CAPTURE = "fail_capture"
    CANCEL = "cancel"
    REFUND = "refund"


_REFUND_TARGETS = frozenset({PaymentState.PARTIALLY_REFUNDED, PaymentState.REFUNDED})

# (当前状态, 操作) -> 可能的目标状态
TRANSITIONS: Mapping[Tuple[PaymentState, PaymentOperation], FrozenSet[PaymentState]] = {
    (PaymentState.PENDING, PaymentOperation.CONFIRM_AUTHORIZATION): frozenset({PaymentState.AUTHORIZED}),
    (PaymentState.PENDING, PaymentOperation.FAIL_AUTHORIZATION): frozenset({PaymentState.FAILED}),
    (PaymentState.AUTHORIZED, PaymentOperation.CAPTURE): frozenset({PaymentState.CAPTURED}),
    (PaymentState.AUTHORIZED, PaymentOperation.FAIL_CAPTURE): frozenset({PaymentState.FAILED}),
    (PaymentState.AUTHORIZED, PaymentOperation.CANCEL): frozenset({PaymentState.CANCELLED}),
    (PaymentState.CAPTURED, PaymentOperation.REFUND): _REFUND_TARGETS,
    (PaymentState.PARTIALLY_REFUNDED, PaymentOperation.REFUND): _REFUND_TARGETS,
}

# 操作的效果已经体现在当前状态上：直接返回当前状态，不调用网关也不写库
IDEMPOTENT_REPLAYS: FrozenSet[Tuple[PaymentState, PaymentOperation]] = frozenset({
    (PaymentState.AUTHORIZED, PaymentOperation.CONFIRM_AUTHORIZATION),
    (PaymentState.FAILED, PaymentOperation.FAIL_AUTHORIZATION),
    (PaymentState.CAPTURED, PaymentOperation.CAPTURE),
    (PaymentState.CANCELLED, PaymentOperation.CANCEL),
})

TERMINAL_STATES: FrozenSet[PaymentState] = frozenset({
    PaymentState.CANCELLED,
    PaymentState.FAILED,
    PaymentState.REFUNDED,
})

_CONFLICT_HINTS: Mapping[Tuple[PaymentState, PaymentOperation], str] = {
    (PaymentState.CAPTURED, PaymentOperation.CANCEL): "payment is captured, use refund instead",
    (PaymentState.PARTIALLY_REFUNDED, PaymentOperation.CANCEL): "payment is captured, use refund instead",
    (PaymentState.REFUNDED, PaymentOperation.CANCEL): "payment is already fully refunded",
}


def can_apply(state: PaymentState, operation: PaymentOperation) -> bool:
    """(state, operation) 是否为迁移表中的合法边"""
    return (PaymentState(state), PaymentOperation(operation)) in TRANSITIONS


def next_states(state: PaymentState, operation: PaymentOperation) -> FrozenSet[PaymentState]:
    return TRANSITIONS.get((PaymentState(state), PaymentOperation(operation)), frozenset())


def is_idempotent_replay(state: PaymentState, operation: PaymentOperation) -> bool:
    return (PaymentState(state), PaymentOperation(operation)) in IDEMPOTENT_REPLAYS


def is_terminal(state: PaymentState) -> bool:
    return PaymentState(state) in TERMINAL_STATES


def refund_target(exhausts_remaining: bool) -> PaymentState:
    """退款后的目标状态：余额归零即 refunded"""
    return PaymentState.REFUNDED if exhausts_remaining else PaymentState.PARTIALLY_REFUNDED


def conflict_hint(state: PaymentState, operation: PaymentOperation) -> Optional[str]:
    return _CONFLICT_HINTS.get((PaymentState(state), PaymentOperation(operation)))


def ensure_transition(
    local_order_ref: str,
    state: PaymentState,
    operation: PaymentOperation,
    target: Optional[PaymentState] = None,
) -> None:
    """
    校验迁移是否合法，不合法时抛出 StateConflictException

    target 为空时只校验 (state, operation) 是否存在出边。
    """
    allowed = next_states(state, operation)
    if not allowed or (target is not None and PaymentState(target) not in allowed):
        raise StateConflictException(
            local_order_ref,
            PaymentState(state).value,
            PaymentOperation(operation).value,
            hint=conflict_hint(state, operation),
        )
