"""
Payment domain events.

Dataclass events record payment lifecycle facts produced by the orchestrator
(collected per operation and exposed for downstream handling). Domain remains
free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    local_order_ref: str
    provider: str
    provider_order_ref: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentAuthorized(PaymentEvent):
    pass


@dataclass
class PaymentCaptured(PaymentEvent):
    amount: int = 0
    zero_settlement: bool = False


@dataclass
class PaymentCancelled(PaymentEvent):
    pass


@dataclass
class PaymentFailed(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class PaymentRefunded(PaymentEvent):
    refund_id: Optional[int] = None
    amount: int = 0
    remaining_refundable: int = 0
