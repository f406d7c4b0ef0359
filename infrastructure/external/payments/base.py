"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers should subclass and implement provider-specific logic.
Every provider failure leaves this layer as one of the domain provider errors
(declined / transient / auth); raw httpx or SDK exceptions never escape.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from application.dtos.payments import (
    ZERO_DECIMAL_CURRENCIES,
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
from application.ports.payment_gateway import PaymentGateway
from domain.payment.exceptions import (
    PaymentProviderError,
    ProviderAuthError,
    ProviderDeclinedError,
    ProviderTransientError,
)
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_major_units(amount: int, currency: str) -> str:
    """Minor units -> decimal string in major units (5000 USD -> "50.00")."""
    exponent = currency_exponent(currency)
    value = Decimal(amount).scaleb(-exponent)
    return f"{value:.{exponent}f}"


def to_minor_units(value: str | int | float, currency: str) -> int:
    exponent = currency_exponent(currency)
    return int((Decimal(str(value)) * (Decimal(10) ** exponent)).to_integral_value())


class BasePaymentClient(PaymentGateway):
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        base_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._base_url = base_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    def _client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": self.timeouts, "base_url": self._base_url}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return kwargs

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(**self._client_kwargs())
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(
        self,
        fn: Callable[[], Any],
        retry_on: tuple[type[BaseException], ...] = (httpx.TimeoutException, httpx.TransportError),
    ):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(retry_on),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # Default implementations raise to force override where needed
    async def register(self, req: RegisterPayment) -> GatewayRegistration:  # type: ignore[override]
        raise NotImplementedError

    async def capture(self, req: CapturePayment) -> GatewayAck:  # type: ignore[override]
        raise NotImplementedError

    async def cancel(self, req: CancelPayment) -> GatewayAck:  # type: ignore[override]
        raise NotImplementedError

    async def refund(self, req: RefundPayment) -> GatewayRefund:  # type: ignore[override]
        raise NotImplementedError

    async def query(self, req: QueryPayment) -> GatewayPaymentStatus:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    def _map_status(self, provider_status: str) -> str:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status, provider_status)

    def _error_for_status(
        self,
        status_code: int,
        message: str,
        *,
        provider_code: Optional[str] = None,
        operation: str = "",
    ) -> PaymentProviderError:
        """HTTP status -> error taxonomy (401/403 auth, 429/5xx transient, other 4xx declined)."""
        details = {"operation": operation, "http_status": status_code}
        if status_code in (401, 403):
            cls: type[PaymentProviderError] = ProviderAuthError
        elif status_code == 429 or status_code >= 500:
            cls = ProviderTransientError
        elif 400 <= status_code < 500:
            cls = ProviderDeclinedError
        else:
            cls = PaymentProviderError
        return cls(message, provider=self.provider, provider_code=provider_code, details=details)

    def _transport_error(self, exc: Exception, operation: str) -> ProviderTransientError:
        return ProviderTransientError(
            f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
            provider=self.provider,
            provider_code="timeout" if isinstance(exc, httpx.TimeoutException) else "transport",
            details={"operation": operation},
        )

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
