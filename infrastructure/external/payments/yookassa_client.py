"""
YooKassa two-stage payments adapter over httpx.

Payments are created with ``capture: false`` so the hold is placed by the
frontend widget (embedded confirmation) and captured or cancelled later.
Every mutating call carries an ``Idempotence-Key`` header. Amounts travel as
decimal strings in major units.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

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
from core.settings import YooKassaSettings
from domain.payment.exceptions import PaymentProviderError, ProviderDeclinedError
from infrastructure.external.payments.base import BasePaymentClient, to_major_units, to_minor_units


class YooKassaClient(BasePaymentClient):
    provider = "yookassa"

    def __init__(
        self,
        settings: YooKassaSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not (settings.shop_id and settings.secret_key):
            raise RuntimeError("PAYMENT__YOOKASSA__SHOP_ID / PAYMENT__YOOKASSA__SECRET_KEY not configured")
        super().__init__(timeouts=timeouts, retry=retry, base_url=settings.base_url, transport=transport)
        self._settings = settings

    def _client_kwargs(self) -> dict[str, Any]:
        kwargs = super()._client_kwargs()
        kwargs["auth"] = httpx.BasicAuth(self._settings.shop_id, self._settings.secret_key)
        return kwargs

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        headers = {"Idempotence-Key": idempotency_key} if idempotency_key else None

        async def _send() -> httpx.Response:
            async with self.client() as c:
                return await c.request(method, url, json=json, headers=headers)

        try:
            response = await self._retry(_send)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise self._transport_error(exc, operation) from exc

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise self._error_for_status(
                response.status_code,
                body.get("description") or response.text or f"HTTP {response.status_code}",
                provider_code=body.get("code"),
                operation=operation,
            )
        self._log("yookassa_response", operation=operation, http_status=response.status_code)
        return response.json()

    def _ack(self, data: dict[str, Any], fallback_ref: str) -> GatewayAck:
        return GatewayAck(
            provider=self.provider,
            provider_order_ref=str(data.get("id") or fallback_ref),
            status=self._map_status(str(data.get("status", ""))),
        )

    async def register(self, req: RegisterPayment) -> GatewayRegistration:  # type: ignore[override]
        metadata = dict(req.metadata or {})
        metadata["local_order_ref"] = req.local_order_ref
        metadata["customer_ref"] = req.customer.customer_ref
        payload: dict[str, Any] = {
            "amount": {"value": to_major_units(req.amount, req.currency), "currency": req.currency},
            "capture": False,
            "confirmation": {"type": "embedded"},
            "description": f"order:{req.local_order_ref}",
            "metadata": metadata,
        }
        if req.customer.email or req.customer.phone:
            customer = {k: v for k, v in {"email": req.customer.email, "phone": req.customer.phone}.items() if v}
            payload["receipt"] = {"customer": customer}
        data = await self._request("register", "POST", "/v3/payments", json=payload, idempotency_key=req.idempotency_key)
        confirmation = data.get("confirmation") or {}
        return GatewayRegistration(
            provider=self.provider,
            provider_order_ref=str(data["id"]),
            provider_access_ref=confirmation.get("confirmation_token"),
        )

    async def capture(self, req: CapturePayment) -> GatewayAck:  # type: ignore[override]
        payload = {"amount": {"value": to_major_units(req.amount, req.currency), "currency": req.currency}}
        data = await self._request(
            "capture",
            "POST",
            f"/v3/payments/{req.provider_order_ref}/capture",
            json=payload,
            idempotency_key=req.idempotency_key,
        )
        ack = self._ack(data, req.provider_order_ref)
        if data.get("status") == "canceled":
            reason = (data.get("cancellation_details") or {}).get("reason")
            raise ProviderDeclinedError(
                f"Capture rejected: {reason or data.get('status')}",
                provider=self.provider,
                provider_code=reason,
            )
        return ack

    async def cancel(self, req: CancelPayment) -> GatewayAck:  # type: ignore[override]
        data = await self._request(
            "cancel",
            "POST",
            f"/v3/payments/{req.provider_order_ref}/cancel",
            json={},
            idempotency_key=req.idempotency_key,
        )
        return self._ack(data, req.provider_order_ref)

    async def refund(self, req: RefundPayment) -> GatewayRefund:  # type: ignore[override]
        amount = req.amount
        if amount is None:
            # YooKassa requires an explicit amount: refund what is still held
            payment = await self._request("refund", "GET", f"/v3/payments/{req.provider_order_ref}")
            paid = to_minor_units(payment["amount"]["value"], req.currency)
            refunded = to_minor_units((payment.get("refunded_amount") or {}).get("value", "0"), req.currency)
            amount = paid - refunded
        payload: dict[str, Any] = {
            "payment_id": req.provider_order_ref,
            "amount": {"value": to_major_units(amount, req.currency), "currency": req.currency},
        }
        if req.reason:
            payload["description"] = req.reason
        data = await self._request("refund", "POST", "/v3/refunds", json=payload, idempotency_key=req.idempotency_key)
        status = str(data.get("status", ""))
        if status == "canceled":
            reason = (data.get("cancellation_details") or {}).get("reason")
            raise ProviderDeclinedError(
                f"Refund rejected: {reason or status}",
                provider=self.provider,
                provider_code=reason,
            )
        if "id" not in data:
            raise PaymentProviderError("Refund response without id", provider=self.provider)
        return GatewayRefund(provider=self.provider, provider_refund_ref=str(data["id"]), status=status)

    async def query(self, req: QueryPayment) -> GatewayPaymentStatus:  # type: ignore[override]
        data = await self._request("query", "GET", f"/v3/payments/{req.provider_order_ref}")
        raw = str(data.get("status", ""))
        reason = (data.get("cancellation_details") or {}).get("reason")
        return GatewayPaymentStatus(
            provider=self.provider,
            provider_order_ref=str(data.get("id") or req.provider_order_ref),
            status=self._map_status(raw),
            raw_status=raw,
            failure_reason=reason,
        )
