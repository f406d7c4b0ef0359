"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway-facing models describe what the orchestrator sends to and receives
from a PaymentGateway; result models are what callers of the orchestrator get.
Amounts are integers in the currency's minor unit throughout.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CNY", "JPY", "KRW", "HKD", "AUD", "CAD", "SGD", "RUB",
}

# Currencies whose minor unit equals the major unit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}


def normalize_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class CustomerInfo(BaseModel):
    customer_ref: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


# ---- Gateway requests ------------------------------------------------------


class RegisterPayment(BaseModel):
    local_order_ref: str
    amount: int = Field(gt=0)
    currency: str
    customer: CustomerInfo
    idempotency_key: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return normalize_currency(v)


class CapturePayment(BaseModel):
    local_order_ref: str
    provider_order_ref: str
    provider_access_ref: Optional[str] = None
    amount: int = Field(gt=0)
    currency: str
    idempotency_key: Optional[str] = None


class CancelPayment(BaseModel):
    local_order_ref: str
    provider_order_ref: str
    provider_access_ref: Optional[str] = None
    idempotency_key: Optional[str] = None


class RefundPayment(BaseModel):
    local_order_ref: str
    provider_order_ref: str
    provider_access_ref: Optional[str] = None
    # None means full refund of what the provider still holds
    amount: Optional[int] = Field(default=None, gt=0)
    currency: str
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


class QueryPayment(BaseModel):
    local_order_ref: str
    provider_order_ref: str
    provider_access_ref: Optional[str] = None


# ---- Gateway responses -----------------------------------------------------


class GatewayRegistration(BaseModel):
    provider: str
    provider_order_ref: str
    provider_access_ref: Optional[str] = None


class GatewayAck(BaseModel):
    provider: str
    provider_order_ref: str
    status: str


class GatewayRefund(BaseModel):
    provider: str
    provider_refund_ref: str
    status: str = "succeeded"


class GatewayPaymentStatus(BaseModel):
    provider: str
    provider_order_ref: str
    # Internal vocabulary: pending/authorized/captured/cancelled/failed
    status: str
    raw_status: Optional[str] = None
    failure_reason: Optional[str] = None


# ---- Orchestrator results --------------------------------------------------


class RegisteredPayment(BaseModel):
    local_order_ref: str
    provider_order_ref: Optional[str] = None
    provider_access_ref: Optional[str] = None
    state: str
    is_zero_settlement: bool = False


class RefundSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    amount: int
    provider_refund_ref: Optional[str] = None
    source: str
    status: str
    reason: Optional[str] = None
    processed_at: Optional[datetime] = None


class RefundOutcome(BaseModel):
    refund_id: Optional[int] = None
    amount: int
    remaining_refundable: int
    state: str
    provider_refund_ref: Optional[str] = None
    duplicate: bool = False


class PaymentSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    local_order_ref: str
    provider: str
    provider_order_ref: Optional[str] = None
    provider_access_ref: Optional[str] = None
    amount: int
    currency: str
    state: str
    is_zero_settlement: bool = False
    customer_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refunded_amount: int = 0
    remaining_refundable: int = 0
    refunds: list[RefundSnapshot] = Field(default_factory=list)
