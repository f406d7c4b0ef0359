"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Gateway clients receive their sub-settings object at construction; nothing
below reads credentials from the process environment at call time.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    """单次网关调用的传输层重试"""
    max: int = 2
    base_backoff: float = 0.2


class OrchestratorRetry(BaseModel):
    """编排层重试：仅针对 ProviderTransient / Consistency 错误

    max 限制瞬时错误与提交冲突的重试次数；等待其他请求释放占用时按
    busy_wait 秒计时，未配置时由网关超时与租约时长推导。
    """
    max: int = 3
    base_backoff: float = 0.05
    max_backoff: float = 1.0
    busy_wait: Optional[float] = None


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    api_version: Optional[str] = None


class YooKassaSettings(BaseModel):
    shop_id: Optional[str] = None
    secret_key: Optional[str] = None
    base_url: str = "https://api.yookassa.ru"
    return_url: Optional[str] = None


class PaymentSettings(BaseSettings):
    default_provider: str = "stripe"
    default_currency: str = "KRW"
    # 最小可收款金额（最小货币单位）；0 元订单走零结算
    minimum_charge: int = 100
    # 进行中操作的租约时长，超时后其他请求可接管
    claim_lease_seconds: int = 30

    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    orchestrator_retry: OrchestratorRetry = Field(default_factory=OrchestratorRetry)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    yookassa: YooKassaSettings = Field(default_factory=YooKassaSettings)

    model_config = SettingsConfigDict(
        env_prefix="PAYMENT__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        u = (v or "").upper()
        if len(u) != 3 or not u.isalpha():
            raise ValueError("default_currency must be ISO-4217 alpha-3")
        return u

    @field_validator("minimum_charge")
    @classmethod
    def _positive_floor(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("minimum_charge must be positive")
        return v

    @property
    def busy_wait_seconds(self) -> float:
        """等待占用释放的上限：覆盖持有者最长的网关调用，且不超过租约时长"""
        if self.orchestrator_retry.busy_wait is not None:
            return self.orchestrator_retry.busy_wait
        longest_call = self.timeouts.total * (self.retry.max + 1)
        return float(min(self.claim_lease_seconds, longest_call))


payment_settings = PaymentSettings()
