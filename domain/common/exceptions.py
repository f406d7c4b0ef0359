"""领域层业务异常定义，供领域、应用与基础设施使用。

异常只携带业务码与上下文，不感知任何传输层（HTTP/gRPC）的映射；
retryable 标记由编排服务的重试策略读取。
"""
from __future__ import annotations

from typing import Any, Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    retryable: bool = False

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.message_key = message_key

    def to_dict(self) -> dict[str, Any]:
        """结构化日志使用的上下文"""
        data: dict[str, Any] = {
            "code": self.code,
            "error_type": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.field:
            data["field"] = self.field
        if self.details:
            data["details"] = self.details
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code}, message={self.message!r})"


class DomainValidationException(BusinessException):
    """输入不合法（金额、币种、退款额度等），不可重试"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="ValidationError",
            details=details,
            field=field,
            message_key="validation.failed",
        )
