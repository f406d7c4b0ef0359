"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import PaymentSettings, payment_settings
from application.ports.payment_gateway import PaymentGateway


def get_payment_gateway(provider: Optional[str] = None, settings: Optional[PaymentSettings] = None) -> PaymentGateway:
    cfg = settings or payment_settings
    name = (provider or cfg.default_provider).lower()
    common = {
        "timeouts": cfg.timeouts.model_dump(),
        "retry": {"max": cfg.retry.max, "base": cfg.retry.base_backoff},
    }
    if name == "stripe":
        from .stripe_client import StripeClient
        return StripeClient(cfg.stripe, **common)
    if name in {"yookassa", "yoomoney"}:
        from .yookassa_client import YooKassaClient
        return YooKassaClient(cfg.yookassa, **common)
    raise ValueError(f"Unsupported payment provider: {name}")
