"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- Intents are created with ``capture_method="manual"`` so the frontend
  confirms (authorizes) with the client secret and the backend captures or
  cancels later.
- Credentials and idempotency keys are passed as per-request options
  (``api_key``, ``idempotency_key``); the module-level ``stripe.api_key`` is
  never touched.
- The SDK is synchronous; calls run in a worker thread bounded by the
  configured total timeout. Connection errors and timeouts are retried with
  the same idempotency key, as many times as PAYMENT__RETRY__MAX allows.
- Stripe amounts are already in the smallest currency unit.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import stripe

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
from core.settings import StripeSettings
from domain.payment.exceptions import (
    PaymentProviderError,
    ProviderAuthError,
    ProviderDeclinedError,
    ProviderTransientError,
)
from infrastructure.external.payments.base import BasePaymentClient
from core.logging_config import get_logger


logger = get_logger(__name__)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(
        self,
        settings: StripeSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry)
        if not settings.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._settings = settings

    def _options(self, idempotency_key: Optional[str] = None) -> dict[str, Any]:
        opts: dict[str, Any] = {"api_key": self._settings.secret_key}
        if self._settings.api_version:
            opts["stripe_version"] = self._settings.api_version
        if idempotency_key:
            opts["idempotency_key"] = idempotency_key
        return opts

    def _map_error(self, exc: Exception, operation: str) -> PaymentProviderError:
        message = _field(exc, "user_message") or str(exc) or type(exc).__name__
        code = _field(exc, "code")
        details = {"operation": operation, "http_status": _field(exc, "http_status")}
        if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
            return ProviderAuthError(message, provider=self.provider, provider_code=code, details=details)
        if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError)):
            return ProviderTransientError(message, provider=self.provider, provider_code=code, details=details)
        if isinstance(exc, (stripe.CardError, stripe.InvalidRequestError, stripe.IdempotencyError)):
            return ProviderDeclinedError(message, provider=self.provider, provider_code=code, details=details)
        status = _field(exc, "http_status")
        if isinstance(status, int):
            return self._error_for_status(status, message, provider_code=code, operation=operation)
        return ProviderTransientError(message, provider=self.provider, provider_code=code, details=details)

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        total = self._timeouts_cfg["total"]

        async def _once() -> Any:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=total)

        try:
            result = await self._retry(_once, retry_on=(stripe.APIConnectionError, asyncio.TimeoutError))
        except asyncio.TimeoutError as exc:
            raise ProviderTransientError(
                f"Stripe {operation} timed out after {total}s",
                provider=self.provider,
                provider_code="timeout",
                details={"operation": operation},
            ) from exc
        except stripe.StripeError as exc:
            raise self._map_error(exc, operation) from exc
        self._log("stripe_response", operation=operation)
        return result

    async def register(self, req: RegisterPayment) -> GatewayRegistration:  # type: ignore[override]
        metadata = {str(k): str(v) for k, v in (req.metadata or {}).items()}
        metadata["local_order_ref"] = req.local_order_ref
        metadata["customer_ref"] = req.customer.customer_ref
        params: dict[str, Any] = {
            "amount": req.amount,
            "currency": req.currency.lower(),
            "capture_method": "manual",
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if req.customer.email:
            params["receipt_email"] = req.customer.email
        pi = await self._call(
            "register",
            stripe.PaymentIntent.create,
            **params,
            **self._options(req.idempotency_key),
        )
        return GatewayRegistration(
            provider=self.provider,
            provider_order_ref=str(_field(pi, "id")),
            provider_access_ref=_field(pi, "client_secret"),
        )

    async def capture(self, req: CapturePayment) -> GatewayAck:  # type: ignore[override]
        pi = await self._call(
            "capture",
            stripe.PaymentIntent.capture,
            req.provider_order_ref,
            amount_to_capture=req.amount,
            **self._options(req.idempotency_key),
        )
        return GatewayAck(
            provider=self.provider,
            provider_order_ref=str(_field(pi, "id", req.provider_order_ref)),
            status=self._map_status(str(_field(pi, "status", ""))),
        )

    async def cancel(self, req: CancelPayment) -> GatewayAck:  # type: ignore[override]
        pi = await self._call(
            "cancel",
            stripe.PaymentIntent.cancel,
            req.provider_order_ref,
            **self._options(req.idempotency_key),
        )
        return GatewayAck(
            provider=self.provider,
            provider_order_ref=str(_field(pi, "id", req.provider_order_ref)),
            status=self._map_status(str(_field(pi, "status", ""))),
        )

    async def refund(self, req: RefundPayment) -> GatewayRefund:  # type: ignore[override]
        params: dict[str, Any] = {
            "payment_intent": req.provider_order_ref,
            "metadata": {"local_order_ref": req.local_order_ref, "reason": req.reason or ""},
        }
        if req.amount is not None:
            params["amount"] = req.amount
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            **params,
            **self._options(req.idempotency_key),
        )
        status = str(_field(refund, "status", ""))
        if status in {"failed", "canceled"}:
            raise ProviderDeclinedError(
                f"Refund {status}: {_field(refund, 'failure_reason') or 'unknown'}",
                provider=self.provider,
                provider_code=_field(refund, "failure_reason"),
            )
        return GatewayRefund(
            provider=self.provider,
            provider_refund_ref=str(_field(refund, "id")),
            status=status,
        )

    async def query(self, req: QueryPayment) -> GatewayPaymentStatus:  # type: ignore[override]
        pi = await self._call(
            "query",
            stripe.PaymentIntent.retrieve,
            req.provider_order_ref,
            **self._options(),
        )
        raw = str(_field(pi, "status", ""))
        last_error = _field(pi, "last_payment_error")
        return GatewayPaymentStatus(
            provider=self.provider,
            provider_order_ref=str(_field(pi, "id", req.provider_order_ref)),
            status=self._map_status(raw),
            raw_status=raw,
            failure_reason=_field(last_error, "message") if last_error else _field(pi, "cancellation_reason"),
        )
