"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.payments import (
    CancelPayment,
    CapturePayment,
    GatewayAck,
    GatewayPaymentStatus,
    GatewayRefund,
    GatewayRegistration,
    QueryPayment,
    RefundPayment,
    RegisterPayment,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Capability interface over one authorize/capture payment provider.

    Implementations must be async, keep no per-payment state, and raise only
    ``domain.payment.exceptions.PaymentProviderError`` subclasses
    (``ProviderDeclinedError``, ``ProviderTransientError``,
    ``ProviderAuthError``) so provider wire details never leak past the
    adapter.
    """

    provider: str

    async def register(self, req: RegisterPayment) -> GatewayRegistration: ...

    async def capture(self, req: CapturePayment) -> GatewayAck: ...

    async def cancel(self, req: CancelPayment) -> GatewayAck: ...

    async def refund(self, req: RefundPayment) -> GatewayRefund: ...

    async def query(self, req: QueryPayment) -> GatewayPaymentStatus: ...

    async def aclose(self) -> None: ...
