"""
Shared business codes used across layers (Domain/Application/Infrastructure).

Generic codes live here as BusinessCode; payment ledger and provider codes
live in `shared.codes.payment_codes`. Ranges never overlap:
1xxxx input, 2xxxx lookup, 6xxxx payments.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    """Generic status codes shared by every error class."""

    # Input errors (1xxxx)
    PARAM_VALIDATION_ERROR = 10003

    # Lookup errors (2xxxx)
    NOT_FOUND = 20006


__all__ = ["BusinessCode"]
