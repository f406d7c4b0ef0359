"""
支付领域异常 - 错误分类

- DomainValidationException：输入不合法，不重试
- StateConflictException：当前状态不允许该操作，不重试
- PaymentNotFoundException：本地订单号不存在
- PaymentProviderError 及其子类：网关调用失败（拒付/瞬时/鉴权）
- ConsistencyException：条件更新失去竞争，需重新读取状态后重试
- PaymentBusyException：占用租约被其他请求持有，按租约时长等待
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException, DomainValidationException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


__all__ = [
    "DomainValidationException",
    "StateConflictException",
    "PaymentNotFoundException",
    "ConsistencyException",
    "PaymentBusyException",
    "PaymentProviderError",
    "ProviderDeclinedError",
    "ProviderTransientError",
    "ProviderAuthError",
]


class StateConflictException(BusinessException):
    """操作与支付当前状态冲突"""

    def __init__(
        self,
        local_order_ref: str,
        state: str,
        operation: str,
        hint: Optional[str] = None,
    ) -> None:
        message = f"Operation '{operation}' is not allowed for payment {local_order_ref} in state '{state}'"
        if hint:
            message = f"{message}; {hint}"
        super().__init__(
            code=PaymentCode.STATE_CONFLICT,
            message=message,
            error_type="StateConflictError",
            details={
                "local_order_ref": local_order_ref,
                "state": state,
                "operation": operation,
            },
            message_key="payment.state.conflict",
        )
        self.local_order_ref = local_order_ref
        self.state = state
        self.operation = operation


class PaymentNotFoundException(BusinessException):
    """支付记录不存在"""

    def __init__(self, local_order_ref: str) -> None:
        super().__init__(
            code=BusinessCode.NOT_FOUND,
            message=f"Payment not found: {local_order_ref}",
            error_type="NotFoundError",
            details={"local_order_ref": local_order_ref},
            message_key="payment.not_found",
        )


class ConsistencyException(BusinessException):
    """条件更新（CAS）未命中：并发写入已改变了支付记录"""

    retryable = True

    def __init__(self, local_order_ref: str, message: Optional[str] = None) -> None:
        super().__init__(
            code=PaymentCode.CONSISTENCY_CONFLICT,
            message=message or f"Concurrent update detected for payment {local_order_ref}",
            error_type="ConsistencyError",
            details={"local_order_ref": local_order_ref},
        )
        self.local_order_ref = local_order_ref


class PaymentBusyException(ConsistencyException):
    """另一个请求持有该支付的占用租约，等待其完成后重新读取状态"""

    def __init__(self, local_order_ref: str, held_by: Optional[str] = None) -> None:
        super().__init__(local_order_ref, "payment is busy with another operation")
        self.error_type = "PaymentBusy"
        if held_by:
            self.details = {**(self.details or {}), "held_by": held_by}
        self.held_by = held_by


class PaymentProviderError(BusinessException):
    """网关调用失败的基类，网关实现负责把渠道错误映射到具体子类"""

    default_code: int = PaymentCode.PROVIDER_ERROR
    default_type: str = "ProviderError"

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=self.default_code,
            message=message,
            error_type=self.default_type,
            details=full_details,
        )
        self.provider = provider
        self.provider_code = provider_code


class ProviderDeclinedError(PaymentProviderError):
    """卡片/业务规则拒绝，不可重试"""

    default_code = PaymentCode.PROVIDER_DECLINED
    default_type = "ProviderDeclined"


class ProviderTransientError(PaymentProviderError):
    """5xx/超时/限流，可安全重试同一操作"""

    default_code = PaymentCode.PROVIDER_RECOVERABLE
    default_type = "ProviderTransient"
    retryable = True


class ProviderAuthError(PaymentProviderError):
    """凭证配置错误，进程级故障"""

    default_code = PaymentCode.PROVIDER_AUTH
    default_type = "ProviderAuthError"
