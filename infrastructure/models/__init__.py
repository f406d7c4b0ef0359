"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentModel, RefundModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "RefundModel",
]
