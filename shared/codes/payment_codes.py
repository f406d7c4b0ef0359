"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    PROVIDER_DECLINED = 60002
    PROVIDER_AUTH = 60003

    # Ledger/state errors (61xxx)
    STATE_CONFLICT = 61000
    CONSISTENCY_CONFLICT = 61001


# Internal vocabulary used by gateway query results
PROVIDER_STATUS_PENDING = "pending"
PROVIDER_STATUS_AUTHORIZED = "authorized"
PROVIDER_STATUS_CAPTURED = "captured"
PROVIDER_STATUS_CANCELLED = "cancelled"
PROVIDER_STATUS_FAILED = "failed"


# Provider→internal status mapping
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        # PaymentIntent.status
        "requires_payment_method": PROVIDER_STATUS_PENDING,
        "requires_confirmation": PROVIDER_STATUS_PENDING,
        "requires_action": PROVIDER_STATUS_PENDING,
        "processing": PROVIDER_STATUS_PENDING,
        "requires_capture": PROVIDER_STATUS_AUTHORIZED,
        "succeeded": PROVIDER_STATUS_CAPTURED,
        "canceled": PROVIDER_STATUS_CANCELLED,
    },
    "yookassa": {
        # payment.status
        "pending": PROVIDER_STATUS_PENDING,
        "waiting_for_capture": PROVIDER_STATUS_AUTHORIZED,
        "succeeded": PROVIDER_STATUS_CAPTURED,
        "canceled": PROVIDER_STATUS_CANCELLED,
    },
}
