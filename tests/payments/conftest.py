"""Shared fixtures for payment tests: in-memory ledger, unit of work and a recording gateway."""
from __future__ import annotations

import asyncio
import copy
import itertools
from collections import defaultdict
from typing import Callable, Optional

import pytest

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
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_service import PaymentOrchestrator
from core.settings import OrchestratorRetry, PaymentSettings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, Refund
from domain.payment.exceptions import ConsistencyException
from domain.payment.repository import PaymentRepository, RefundRepository
from domain.payment.state_machine import PaymentState


class InMemoryLedger:
    def __init__(self) -> None:
        self.payments: dict[str, Payment] = {}
        self.refunds: list[Refund] = []
        self.payment_ids = itertools.count(1)
        self.refund_ids = itertools.count(1)


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self, ledger: InMemoryLedger, undo: list[Callable[[], None]]):
        self.ledger = ledger
        self.undo = undo

    def _restore(self, ref: str, previous: Optional[Payment]) -> Callable[[], None]:
        def _undo() -> None:
            if previous is None:
                self.ledger.payments.pop(ref, None)
            else:
                self.ledger.payments[ref] = previous
        return _undo

    async def create(self, payment: Payment) -> Payment:
        if payment.local_order_ref in self.ledger.payments:
            raise ConsistencyException(payment.local_order_ref, "duplicate")
        stored = copy.deepcopy(payment)
        stored.id = next(self.ledger.payment_ids)
        self.ledger.payments[stored.local_order_ref] = stored
        self.undo.append(self._restore(stored.local_order_ref, None))
        return copy.deepcopy(stored)

    async def get_by_order_ref(self, local_order_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        stored = self.ledger.payments.get(local_order_ref)
        return copy.deepcopy(stored) if stored else None

    async def list_by_state(self, state: PaymentState, skip: int = 0, limit: int = 100) -> list[Payment]:
        rows = [p for p in self.ledger.payments.values() if p.state == state]
        rows.sort(key=lambda p: p.id)
        return [copy.deepcopy(p) for p in rows[skip:skip + limit]]

    async def claim(self, local_order_ref, *, expected_state, token, operation, now, lease_cutoff) -> bool:
        stored = self.ledger.payments.get(local_order_ref)
        if stored is None or stored.state != expected_state:
            return False
        if stored.claim_token is not None and stored.claimed_at >= lease_cutoff:
            return False
        self.undo.append(self._restore(local_order_ref, copy.deepcopy(stored)))
        stored.claim_token = token
        stored.claim_operation = operation
        stored.claimed_at = now
        return True

    async def release_claim(self, local_order_ref: str, token: str) -> bool:
        stored = self.ledger.payments.get(local_order_ref)
        if stored is None or stored.claim_token != token:
            return False
        self.undo.append(self._restore(local_order_ref, copy.deepcopy(stored)))
        stored.claim_token = None
        stored.claim_operation = None
        stored.claimed_at = None
        return True

    async def save_transition(self, payment: Payment, *, expected_state, claim_token=None) -> bool:
        stored = self.ledger.payments.get(payment.local_order_ref)
        if stored is None or stored.state != expected_state or stored.claim_token != claim_token:
            return False
        self.undo.append(self._restore(payment.local_order_ref, stored))
        updated = copy.deepcopy(payment)
        updated.id = stored.id
        updated.claim_token = None
        updated.claim_operation = None
        updated.claimed_at = None
        self.ledger.payments[payment.local_order_ref] = updated
        payment.claim_token = None
        payment.claim_operation = None
        payment.claimed_at = None
        return True


class InMemoryRefundRepository(RefundRepository):
    def __init__(self, ledger: InMemoryLedger, undo: list[Callable[[], None]]):
        self.ledger = ledger
        self.undo = undo

    async def create(self, refund: Refund) -> Refund:
        for r in self.ledger.refunds:
            if (
                refund.provider_refund_ref is not None
                and r.provider == refund.provider
                and r.provider_refund_ref == refund.provider_refund_ref
            ):
                raise ConsistencyException(refund.local_order_ref, "duplicate refund ref")
        stored = copy.deepcopy(refund)
        stored.id = next(self.ledger.refund_ids)
        self.ledger.refunds.append(stored)
        self.undo.append(lambda: self.ledger.refunds.remove(stored))
        return copy.deepcopy(stored)

    async def get_by_provider_refund_ref(self, provider: str, provider_refund_ref: str) -> Optional[Refund]:
        for r in self.ledger.refunds:
            if r.provider == provider and r.provider_refund_ref == provider_refund_ref:
                return copy.deepcopy(r)
        return None

    async def list_by_payment(self, payment_id: int) -> list[Refund]:
        return [copy.deepcopy(r) for r in self.ledger.refunds if r.payment_id == payment_id]

    async def count_by_payment(self, payment_id: int) -> int:
        return sum(1 for r in self.ledger.refunds if r.payment_id == payment_id)

    async def get_total_refunded_amount(self, payment_id: int) -> int:
        return sum(r.amount for r in self.ledger.refunds if r.payment_id == payment_id)


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """Writes apply immediately; rollback replays the undo log."""

    def __init__(self, ledger: InMemoryLedger, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self.ledger = ledger
        self._undo: list[Callable[[], None]] = []

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        self.payment_repository = InMemoryPaymentRepository(self.ledger, self._undo)
        self.refund_repository = InMemoryRefundRepository(self.ledger, self._undo)
        return self

    async def commit(self) -> None:
        self._undo.clear()
        self._committed = True

    async def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()
        self._committed = False


class FakeGateway(PaymentGateway):
    """Records every call; errors can be queued per operation."""

    provider = "fake"

    def __init__(self) -> None:
        self.calls: dict[str, list] = defaultdict(list)
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.delay = 0.0
        self.query_status = "authorized"
        # one-shot callbacks run when an operation is invoked
        self.on_call: dict[str, Callable] = {}
        self.closed = False
        # provider refund refs to hand out before falling back to re_<n>
        self.refund_refs: list[str] = []
        self._seq = itertools.count(1)

    def fail_next(self, operation: str, exc: Exception, times: int = 1) -> None:
        self.failures[operation].extend([exc] * times)

    async def _enter(self, operation: str, req) -> int:
        self.calls[operation].append(req)
        hook = self.on_call.pop(operation, None)
        if hook is not None:
            hook(req)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures[operation]:
            raise self.failures[operation].pop(0)
        return next(self._seq)

    async def register(self, req: RegisterPayment) -> GatewayRegistration:
        n = await self._enter("register", req)
        return GatewayRegistration(
            provider=self.provider,
            provider_order_ref=f"po_{n}",
            provider_access_ref=f"secret_{n}",
        )

    async def capture(self, req: CapturePayment) -> GatewayAck:
        await self._enter("capture", req)
        return GatewayAck(provider=self.provider, provider_order_ref=req.provider_order_ref, status="captured")

    async def cancel(self, req: CancelPayment) -> GatewayAck:
        await self._enter("cancel", req)
        return GatewayAck(provider=self.provider, provider_order_ref=req.provider_order_ref, status="cancelled")

    async def refund(self, req: RefundPayment) -> GatewayRefund:
        n = await self._enter("refund", req)
        ref = self.refund_refs.pop(0) if self.refund_refs else f"re_{n}"
        return GatewayRefund(provider=self.provider, provider_refund_ref=ref)

    async def query(self, req: QueryPayment) -> GatewayPaymentStatus:
        await self._enter("query", req)
        return GatewayPaymentStatus(
            provider=self.provider,
            provider_order_ref=req.provider_order_ref,
            status=self.query_status,
            raw_status=self.query_status,
        )

    async def aclose(self) -> None:
        self.closed = True


def make_settings(**overrides) -> PaymentSettings:
    base = dict(
        default_provider="fake",
        default_currency="KRW",
        minimum_charge=100,
        claim_lease_seconds=30,
        orchestrator_retry=OrchestratorRetry(base_backoff=0.005, max_backoff=0.02),
    )
    base.update(overrides)
    return PaymentSettings(**base)


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_orchestrator(ledger, gateway):
    """Factory: orchestrator over the in-memory ledger (or a given UoW factory) with settings overrides."""

    def _make(uow_factory=None, **overrides) -> PaymentOrchestrator:
        if uow_factory is None:
            def uow_factory(*, readonly: bool = False) -> InMemoryUnitOfWork:
                return InMemoryUnitOfWork(ledger, readonly=readonly)
        return PaymentOrchestrator(uow_factory, gateway, make_settings(**overrides))

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> PaymentOrchestrator:
    return make_orchestrator()


@pytest.fixture
def authorized_payment(orchestrator):
    """Factory: registers and confirms a payment, returns its local_order_ref."""

    async def _make(amount: int = 5000, customer: str = "cust-1") -> str:
        registered = await orchestrator.register(amount=amount, customer=customer)
        await orchestrator.confirm_authorization(registered.local_order_ref)
        return registered.local_order_ref

    return _make


@pytest.fixture
def captured_payment(orchestrator, authorized_payment):
    async def _make(amount: int = 5000) -> str:
        ref = await authorized_payment(amount)
        await orchestrator.capture(ref)
        return ref

    return _make
