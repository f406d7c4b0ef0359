import pytest

from application.dtos.payments import CustomerInfo
from domain.common.exceptions import DomainValidationException
from domain.payment.events import PaymentAuthorized, PaymentCaptured, PaymentRefunded
from domain.payment.exceptions import PaymentNotFoundException, StateConflictException
from domain.payment.state_machine import PaymentState


async def drive_to(orchestrator, state: PaymentState) -> str:
    if state is PaymentState.PENDING:
        return (await orchestrator.register(amount=5000, customer="cust-1")).local_order_ref
    if state is PaymentState.FAILED:
        ref = (await orchestrator.register(amount=5000, customer="cust-1")).local_order_ref
        await orchestrator.fail_authorization(ref, reason="3ds failed")
        return ref
    ref = (await orchestrator.register(amount=5000, customer="cust-1")).local_order_ref
    await orchestrator.confirm_authorization(ref)
    if state is PaymentState.AUTHORIZED:
        return ref
    if state is PaymentState.CANCELLED:
        await orchestrator.cancel(ref)
        return ref
    await orchestrator.capture(ref)
    if state is PaymentState.PARTIALLY_REFUNDED:
        await orchestrator.refund(ref, amount=1000)
    elif state is PaymentState.REFUNDED:
        await orchestrator.refund(ref)
    return ref


OPERATIONS = {
    "confirm_authorization": lambda o, ref: o.confirm_authorization(ref),
    "fail_authorization": lambda o, ref: o.fail_authorization(ref, reason="late failure"),
    "capture": lambda o, ref: o.capture(ref),
    "cancel": lambda o, ref: o.cancel(ref),
    "refund": lambda o, ref: o.refund(ref, amount=100),
}

CONFLICTS = [
    (PaymentState.PENDING, "capture"),
    (PaymentState.PENDING, "cancel"),
    (PaymentState.PENDING, "refund"),
    (PaymentState.AUTHORIZED, "fail_authorization"),
    (PaymentState.AUTHORIZED, "refund"),
    (PaymentState.CAPTURED, "confirm_authorization"),
    (PaymentState.CAPTURED, "fail_authorization"),
    (PaymentState.CAPTURED, "cancel"),
    (PaymentState.CANCELLED, "confirm_authorization"),
    (PaymentState.CANCELLED, "fail_authorization"),
    (PaymentState.CANCELLED, "capture"),
    (PaymentState.CANCELLED, "refund"),
    (PaymentState.FAILED, "confirm_authorization"),
    (PaymentState.FAILED, "capture"),
    (PaymentState.FAILED, "cancel"),
    (PaymentState.FAILED, "refund"),
    (PaymentState.PARTIALLY_REFUNDED, "confirm_authorization"),
    (PaymentState.PARTIALLY_REFUNDED, "fail_authorization"),
    (PaymentState.PARTIALLY_REFUNDED, "capture"),
    (PaymentState.PARTIALLY_REFUNDED, "cancel"),
    (PaymentState.REFUNDED, "confirm_authorization"),
    (PaymentState.REFUNDED, "fail_authorization"),
    (PaymentState.REFUNDED, "capture"),
    (PaymentState.REFUNDED, "cancel"),
]


@pytest.mark.asyncio
async def test_authorize_capture_happy_path(orchestrator, gateway):
    registered = await orchestrator.register(
        amount=5000,
        customer=CustomerInfo(customer_ref="cust-1", email="a@example.com"),
        currency="krw",
        metadata={"cart": "c-1"},
    )
    assert registered.state == "pending"
    assert registered.provider_order_ref == "po_1"
    assert registered.provider_access_ref == "secret_1"
    assert not registered.is_zero_settlement
    assert gateway.calls["register"][0].currency == "KRW"
    assert len(gateway.calls["register"][0].idempotency_key) == 64

    ref = registered.local_order_ref
    assert await orchestrator.confirm_authorization(ref) is PaymentState.AUTHORIZED
    assert await orchestrator.capture(ref) is PaymentState.CAPTURED

    (capture_req,) = gateway.calls["capture"]
    assert capture_req.amount == 5000
    assert capture_req.provider_order_ref == "po_1"

    snap = await orchestrator.get_payment(ref)
    assert snap.state == "captured"
    assert snap.customer_ref == "cust-1"
    assert snap.captured_at >= snap.authorized_at >= snap.created_at
    assert snap.remaining_refundable == 5000

    events = orchestrator.drain_events()
    assert [type(e) for e in events] == [PaymentAuthorized, PaymentCaptured]


@pytest.mark.asyncio
async def test_partial_then_full_refund(orchestrator, gateway, captured_payment):
    ref = await captured_payment()

    first = await orchestrator.refund(ref, amount=2000, reason="damaged")
    assert first.state == "partially_refunded"
    assert first.remaining_refundable == 3000
    assert first.provider_refund_ref

    second = await orchestrator.refund(ref, amount=3000)
    assert second.state == "refunded"
    assert second.remaining_refundable == 0

    with pytest.raises(DomainValidationException):
        await orchestrator.refund(ref, amount=1)

    snap = await orchestrator.get_payment(ref)
    assert snap.state == "refunded"
    assert snap.refunded_amount == 5000
    assert [r.amount for r in snap.refunds] == [2000, 3000]
    assert snap.refunds[0].reason == "damaged"

    keys = [req.idempotency_key for req in gateway.calls["refund"]]
    assert len(keys) == 2 and keys[0] != keys[1]

    refunded = [e for e in orchestrator.drain_events() if isinstance(e, PaymentRefunded)]
    assert [e.remaining_refundable for e in refunded] == [3000, 0]


@pytest.mark.asyncio
async def test_refund_defaults_to_remaining_amount(orchestrator, gateway, captured_payment):
    ref = await captured_payment()
    await orchestrator.refund(ref, amount=1500)
    outcome = await orchestrator.refund(ref)
    assert outcome.amount == 3500
    assert outcome.state == "refunded"
    assert gateway.calls["refund"][-1].amount == 3500


@pytest.mark.asyncio
async def test_refund_over_remaining_is_rejected(orchestrator, gateway, ledger, captured_payment):
    ref = await captured_payment()
    with pytest.raises(DomainValidationException) as ei:
        await orchestrator.refund(ref, amount=5001)
    assert ei.value.error_type == "ValidationError"
    assert gateway.calls["refund"] == []
    assert ledger.payments[ref].claim_token is None


@pytest.mark.asyncio
async def test_cancel_then_capture_conflicts(orchestrator, gateway, authorized_payment):
    ref = await authorized_payment()
    assert await orchestrator.cancel(ref) is PaymentState.CANCELLED
    with pytest.raises(StateConflictException):
        await orchestrator.capture(ref)
    assert gateway.calls["capture"] == []
    assert (await orchestrator.get_payment(ref)).cancelled_at is not None


@pytest.mark.asyncio
async def test_cancel_after_capture_suggests_refund(orchestrator, gateway, captured_payment):
    ref = await captured_payment()
    with pytest.raises(StateConflictException) as ei:
        await orchestrator.cancel(ref)
    assert "refund" in ei.value.message
    assert gateway.calls["cancel"] == []


@pytest.mark.parametrize("state,operation", CONFLICTS)
@pytest.mark.asyncio
async def test_invalid_operation_leaves_payment_untouched(orchestrator, gateway, ledger, state, operation):
    ref = await drive_to(orchestrator, state)
    before = await orchestrator.get_payment(ref)
    provider_calls = {op: len(gateway.calls[op]) for op in ("capture", "cancel", "refund")}

    with pytest.raises(StateConflictException):
        await OPERATIONS[operation](orchestrator, ref)

    after = await orchestrator.get_payment(ref)
    assert after == before
    assert {op: len(gateway.calls[op]) for op in ("capture", "cancel", "refund")} == provider_calls
    assert ledger.payments[ref].claim_token is None


@pytest.mark.asyncio
async def test_refund_on_fully_refunded_is_validation_error(orchestrator, gateway):
    ref = await drive_to(orchestrator, PaymentState.REFUNDED)
    with pytest.raises(DomainValidationException):
        await orchestrator.refund(ref, amount=100)
    with pytest.raises(DomainValidationException):
        await orchestrator.refund(ref)
    assert len(gateway.calls["refund"]) == 1


@pytest.mark.asyncio
async def test_repeated_operations_are_idempotent(orchestrator, gateway, authorized_payment):
    ref = await authorized_payment()
    assert await orchestrator.confirm_authorization(ref) is PaymentState.AUTHORIZED
    assert await orchestrator.capture(ref) is PaymentState.CAPTURED
    assert await orchestrator.capture(ref) is PaymentState.CAPTURED
    assert len(gateway.calls["capture"]) == 1

    other = await authorized_payment()
    await orchestrator.cancel(other)
    assert await orchestrator.cancel(other) is PaymentState.CANCELLED
    assert len(gateway.calls["cancel"]) == 1

    failed = await drive_to(orchestrator, PaymentState.FAILED)
    assert await orchestrator.fail_authorization(failed) is PaymentState.FAILED
    snap = await orchestrator.get_payment(failed)
    assert snap.failure_reason == "3ds failed"


@pytest.mark.asyncio
async def test_confirm_with_conflicting_provider_ref(orchestrator):
    ref = (await orchestrator.register(amount=5000, customer="cust-1")).local_order_ref
    with pytest.raises(DomainValidationException):
        await orchestrator.confirm_authorization(ref, provider_order_ref="po_other")
    assert (await orchestrator.get_payment(ref)).state == "pending"


@pytest.mark.parametrize("amount", [50, 99, -100])
@pytest.mark.asyncio
async def test_register_rejects_amount_below_floor(orchestrator, gateway, ledger, amount):
    with pytest.raises(DomainValidationException):
        await orchestrator.register(amount=amount, customer="cust-1")
    assert gateway.calls["register"] == []
    assert ledger.payments == {}


@pytest.mark.asyncio
async def test_register_rejects_unknown_currency(orchestrator, gateway):
    with pytest.raises(DomainValidationException) as ei:
        await orchestrator.register(amount=5000, customer="cust-1", currency="XXX")
    assert ei.value.field == "currency"
    assert gateway.calls["register"] == []


@pytest.mark.asyncio
async def test_unknown_payment(orchestrator):
    with pytest.raises(PaymentNotFoundException):
        await orchestrator.get_payment("pay_missing")
    with pytest.raises(PaymentNotFoundException):
        await orchestrator.capture("pay_missing")
    with pytest.raises(PaymentNotFoundException):
        await orchestrator.refund("pay_missing", amount=100)


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("authorized", PaymentState.AUTHORIZED),
        ("captured", PaymentState.AUTHORIZED),
        ("failed", PaymentState.FAILED),
        ("cancelled", PaymentState.FAILED),
        ("pending", PaymentState.PENDING),
    ],
)
@pytest.mark.asyncio
async def test_reconcile_authorization(orchestrator, gateway, provider_status, expected):
    ref = (await orchestrator.register(amount=5000, customer="cust-1")).local_order_ref
    gateway.query_status = provider_status
    assert await orchestrator.reconcile_authorization(ref) is expected


@pytest.mark.asyncio
async def test_reconcile_skips_settled_payments(orchestrator, gateway, authorized_payment):
    ref = await authorized_payment()
    assert await orchestrator.reconcile_authorization(ref) is PaymentState.AUTHORIZED
    assert gateway.calls["query"] == []


@pytest.mark.asyncio
async def test_reconcile_pending_batch(orchestrator, gateway, authorized_payment):
    a = (await orchestrator.register(amount=5000, customer="cust-1")).local_order_ref
    b = (await orchestrator.register(amount=7000, customer="cust-2")).local_order_ref
    await authorized_payment()
    results = await orchestrator.reconcile_pending()
    assert results == {a: PaymentState.AUTHORIZED, b: PaymentState.AUTHORIZED}
    assert len(gateway.calls["query"]) == 2


@pytest.mark.asyncio
async def test_aclose_closes_gateway(orchestrator, gateway):
    await orchestrator.aclose()
    assert gateway.closed
