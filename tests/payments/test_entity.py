from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import Payment, Refund, RefundSource
from domain.payment.exceptions import StateConflictException
from domain.payment.service import (
    CapturePath,
    PaymentDomainService,
    decide_capture_path,
    should_release_hold,
)
from domain.payment.state_machine import PaymentState


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _payment(amount=5000, **kw) -> Payment:
    return Payment(
        id=1,
        local_order_ref="pay_1",
        provider="fake",
        amount=amount,
        currency=kw.pop("currency", "krw"),
        created_at=T0,
        updated_at=T0,
        **kw,
    )


@pytest.mark.parametrize("amount", [-1, 0, Decimal("10"), 10.5, True])
def test_amount_must_be_positive_integer(amount):
    with pytest.raises(DomainValidationException):
        _payment(amount=amount)


def test_zero_amount_only_for_zero_settlement():
    p = _payment(amount=0, is_zero_settlement=True)
    assert p.amount == 0
    with pytest.raises(DomainValidationException):
        _payment(amount=100, is_zero_settlement=True)


def test_currency_normalized_and_validated():
    assert _payment().currency == "KRW"
    with pytest.raises(DomainValidationException):
        _payment(currency="won!")


def test_naive_timestamps_become_utc():
    p = _payment(authorized_at=datetime(2026, 1, 1, 13, 0))
    assert p.authorized_at.tzinfo == timezone.utc


def test_lifecycle_timestamps_are_monotonic():
    p = _payment()
    p.confirm_authorization(now=T0 + timedelta(minutes=5))
    # clock went backwards
    p.capture(now=T0 + timedelta(minutes=1))
    assert p.state is PaymentState.CAPTURED
    assert p.captured_at >= p.authorized_at >= p.created_at
    assert p.updated_at == p.captured_at


def test_provider_refs_set_once():
    p = _payment()
    p.attach_provider_refs("po_1", "secret_1")
    p.attach_provider_refs("po_1")
    with pytest.raises(DomainValidationException):
        p.attach_provider_refs("po_2")
    assert p.provider_order_ref == "po_1"


def test_confirm_authorization_sets_refs():
    p = _payment()
    p.confirm_authorization(now=T0, provider_order_ref="po_9", provider_access_ref="tok")
    assert p.provider_order_ref == "po_9"
    assert p.authorized_at is not None


def test_invalid_entity_transitions_raise_conflict():
    p = _payment()
    with pytest.raises(StateConflictException):
        p.capture(now=T0)
    p.fail_authorization(reason="card expired", now=T0)
    assert p.is_terminal
    with pytest.raises(StateConflictException):
        p.confirm_authorization(now=T0)


def test_refund_rules():
    p = _payment()
    p.confirm_authorization(now=T0)
    p.capture(now=T0)

    assert p.apply_refund(2000, 0, now=T0) == 3000
    assert p.state is PaymentState.PARTIALLY_REFUNDED

    with pytest.raises(DomainValidationException) as ei:
        p.ensure_refundable(3001, 2000)
    assert ei.value.details == {"remaining_refundable": 3000}

    with pytest.raises(DomainValidationException):
        p.ensure_refundable(0, 2000)

    assert p.apply_refund(3000, 2000, now=T0) == 0
    assert p.state is PaymentState.REFUNDED
    assert p.remaining_refundable(5000) == 0

    # fully refunded: no refundable amount left
    with pytest.raises(DomainValidationException):
        p.ensure_refundable(1, 5000)


def test_refund_before_capture_is_conflict():
    p = _payment()
    p.confirm_authorization(now=T0)
    with pytest.raises(StateConflictException):
        p.ensure_refundable(100, 0)


def test_refund_row_amount_positive():
    with pytest.raises(DomainValidationException):
        Refund(id=None, payment_id=1, local_order_ref="pay_1", provider="fake", amount=0, provider_refund_ref=None)
    r = Refund(id=None, payment_id=1, local_order_ref="pay_1", provider="fake", amount=5,
               provider_refund_ref="re_1", source="frontend")
    assert r.source is RefundSource.FRONTEND
    assert r.processed_at is not None


def test_domain_service_charge_floor():
    svc = PaymentDomainService(minimum_charge=100)
    assert svc.validate_charge(0) is True
    assert svc.validate_charge(100) is False
    with pytest.raises(DomainValidationException):
        svc.validate_charge(99)
    with pytest.raises(DomainValidationException):
        svc.validate_charge(-5)
    with pytest.raises(ValueError):
        PaymentDomainService(minimum_charge=0)


def test_new_payment_generates_local_ref():
    svc = PaymentDomainService(minimum_charge=100)
    a = svc.new_payment(provider="fake", amount=500, currency="KRW")
    b = svc.new_payment(provider="fake", amount=0, currency="KRW")
    assert a.local_order_ref.startswith("pay_")
    assert a.local_order_ref != b.local_order_ref
    assert a.state is PaymentState.PENDING
    assert b.is_zero_settlement


def test_capture_path_decision():
    zero = _payment(amount=0, is_zero_settlement=True)
    assert decide_capture_path(zero) is CapturePath.ZERO_SETTLEMENT
    assert not should_release_hold(zero)
    zero.attach_provider_refs("po_1")
    assert should_release_hold(zero)
    assert decide_capture_path(_payment()) is CapturePath.PROVIDER


def test_events_follow_transitions():
    svc = PaymentDomainService(minimum_charge=100)
    p = _payment()
    p.confirm_authorization(now=T0)
    svc.record_transition(p)
    p.capture(now=T0)
    svc.record_transition(p)
    events = svc.clear_events()
    assert [type(e).__name__ for e in events] == ["PaymentAuthorized", "PaymentCaptured"]
    assert svc.clear_events() == []
