"""
Application service orchestrating the payment lifecycle.

The orchestrator depends only on the PaymentGateway port, the unit-of-work
abstraction and the payment domain. Gateway and unit-of-work implementations
are injected from the composition root, keeping dependencies one-way.

Concurrency protocol for operations that call the provider:

1. claim   - short transaction: read, validate against the state machine, then
             conditionally set a claim token (``state == expected`` and no live
             claim). Losing the race raises PaymentBusyException.
2. call    - provider call outside any transaction.
3. commit  - second transaction: compare-and-swap the state under the claim
             token and, for refunds, re-read the remaining amount and insert
             the refund row in the same transaction.
4. release - provider failures without a state edge clear the claim so the
             payment stays in its prior state.

ProviderTransientError and ConsistencyException are retried a bounded number
of times. PaymentBusyException is retried until the holder's longest provider
call could have finished (PaymentSettings.busy_wait_seconds), so duplicate
requests end up reading the final state. Every attempt starts over from a
fresh read.
"""
from __future__ import annotations

import hashlib
import inspect
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from tenacity import AsyncRetrying, retry_if_exception, wait_exponential

from application.dtos.payments import (
    CancelPayment,
    CapturePayment,
    CustomerInfo,
    PaymentSnapshot,
    QueryPayment,
    RefundOutcome,
    RefundPayment,
    RefundSnapshot,
    RegisteredPayment,
    RegisterPayment,
    normalize_currency,
)
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, Refund, RefundSource
from domain.payment.events import PaymentEvent
from domain.payment.exceptions import (
    ConsistencyException,
    PaymentBusyException,
    PaymentNotFoundException,
    PaymentProviderError,
    ProviderAuthError,
    ProviderDeclinedError,
    ProviderTransientError,
)
from domain.payment.service import (
    CapturePath,
    PaymentDomainService,
    decide_capture_path,
    should_release_hold,
)
from domain.payment.state_machine import (
    PaymentOperation,
    PaymentState,
    ensure_transition,
    is_idempotent_replay,
)
from shared.codes.payment_codes import (
    PROVIDER_STATUS_AUTHORIZED,
    PROVIDER_STATUS_CANCELLED,
    PROVIDER_STATUS_CAPTURED,
    PROVIDER_STATUS_FAILED,
)


logger = get_logger(__name__)

UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]


def _idempotency_key(operation: str, local_order_ref: str, *parts: Any) -> str:
    # Stable, reproducible key derived from business identifiers (no timestamp)
    base = "|".join([operation, local_order_ref, *(str(p) for p in parts)])
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def _is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


class PaymentOrchestrator:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateway: PaymentGateway,
        settings: Optional[PaymentSettings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.gateway = gateway
        self.settings = settings or payment_settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.domain = PaymentDomainService(self.settings.minimum_charge)

    # ------------------------------------------------------------------ retry

    async def _with_retry(self, operation: str, local_order_ref: str, fn: Callable[[], Any]):
        cfg = self.settings.orchestrator_retry
        busy_wait = self.settings.busy_wait_seconds
        failures = {"count": 0}

        def _stop(retry_state) -> bool:
            # Contention is bounded by time, everything else by attempts.
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(exc, PaymentBusyException):
                return retry_state.seconds_since_start >= busy_wait
            failures["count"] += 1
            return failures["count"] > cfg.max

        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "payment_operation_retry",
                operation=operation,
                local_order_ref=local_order_ref,
                attempt=retry_state.attempt_number,
                error_type=getattr(exc, "error_type", type(exc).__name__),
            )

        async for attempt in AsyncRetrying(
            stop=_stop,
            wait=wait_exponential(multiplier=cfg.base_backoff, max=cfg.max_backoff),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return await fn()

    # ----------------------------------------------------------------- ledger

    async def _load(
        self,
        uow: AbstractUnitOfWork,
        local_order_ref: str,
        *,
        for_update: bool = False,
    ) -> Payment:
        payment = await uow.payment_repository.get_by_order_ref(local_order_ref, for_update=for_update)
        if payment is None:
            raise PaymentNotFoundException(local_order_ref)
        return payment

    async def _apply_direct(
        self,
        local_order_ref: str,
        operation: PaymentOperation,
        mutate: Callable[[Payment], None],
    ) -> PaymentState:
        """State edges without a provider call: one CAS on state."""
        async with self.uow_factory() as uow:
            payment = await self._load(uow, local_order_ref)
            if is_idempotent_replay(payment.state, operation):
                logger.info(
                    "payment_operation_replayed",
                    operation=operation.value,
                    local_order_ref=local_order_ref,
                    state=payment.state.value,
                )
                return payment.state
            ensure_transition(local_order_ref, payment.state, operation)
            if payment.is_claimed:
                raise PaymentBusyException(local_order_ref, payment.claim_operation)
            expected = payment.state
            mutate(payment)
            saved = await uow.payment_repository.save_transition(payment, expected_state=expected)
            if not saved:
                raise ConsistencyException(local_order_ref)
            self.domain.record_transition(payment)
        logger.info(
            "payment_state_changed",
            operation=operation.value,
            local_order_ref=local_order_ref,
            from_state=expected.value,
            state=payment.state.value,
        )
        return payment.state

    async def _claim(
        self,
        local_order_ref: str,
        operation: PaymentOperation,
        validate: Optional[Callable[[AbstractUnitOfWork, Payment], Any]] = None,
    ) -> tuple[Payment, Optional[str]]:
        """Returns (payment, claim_token); a None token means the operation already took effect."""
        async with self.uow_factory() as uow:
            payment = await self._load(uow, local_order_ref)
            if is_idempotent_replay(payment.state, operation):
                return payment, None
            if validate is None:
                ensure_transition(local_order_ref, payment.state, operation)
            else:
                res = validate(uow, payment)
                if inspect.isawaitable(res):
                    await res
            token = uuid.uuid4().hex
            now = self.clock()
            claimed = await uow.payment_repository.claim(
                local_order_ref,
                expected_state=payment.state,
                token=token,
                operation=operation.value,
                now=now,
                lease_cutoff=now - timedelta(seconds=self.settings.claim_lease_seconds),
            )
            if not claimed:
                logger.warning(
                    "payment_claim_lost",
                    operation=operation.value,
                    local_order_ref=local_order_ref,
                    state=payment.state.value,
                    held_by=payment.claim_operation,
                )
                raise PaymentBusyException(local_order_ref, payment.claim_operation)
        payment.claim_token = token
        payment.claim_operation = operation.value
        payment.claimed_at = now
        return payment, token

    async def _release(self, local_order_ref: str, token: str) -> None:
        try:
            async with self.uow_factory() as uow:
                released = await uow.payment_repository.release_claim(local_order_ref, token)
        except Exception:
            # The claim lease expires on its own; the original error is what the caller needs.
            logger.exception("payment_claim_release_failed", local_order_ref=local_order_ref)
            return
        if not released:
            logger.warning("payment_claim_release_missed", local_order_ref=local_order_ref)

    async def _commit(
        self,
        local_order_ref: str,
        token: str,
        expected: PaymentState,
        mutate: Callable[[AbstractUnitOfWork, Payment], Any],
        *,
        record_event: bool = True,
    ) -> tuple[Payment, Any]:
        claim_lost = False
        try:
            async with self.uow_factory() as uow:
                payment = await self._load(uow, local_order_ref, for_update=True)
                if payment.claim_token != token or payment.state != expected:
                    claim_lost = True
                    raise ConsistencyException(local_order_ref, "claim was lost before commit")
                result = mutate(uow, payment)
                if inspect.isawaitable(result):
                    result = await result
                saved = await uow.payment_repository.save_transition(
                    payment,
                    expected_state=expected,
                    claim_token=token,
                )
                if not saved:
                    raise ConsistencyException(local_order_ref)
                if record_event:
                    self.domain.record_transition(payment)
        except ConsistencyException:
            logger.warning(
                "payment_commit_conflict",
                local_order_ref=local_order_ref,
                expected_state=expected.value,
                claim_lost=claim_lost,
            )
            if not claim_lost:
                await self._release(local_order_ref, token)
            raise
        except Exception:
            await self._release(local_order_ref, token)
            raise
        logger.info(
            "payment_state_changed",
            local_order_ref=local_order_ref,
            from_state=expected.value,
            state=payment.state.value,
        )
        return payment, result

    async def _call_provider(self, local_order_ref: str, token: str, operation: PaymentOperation, call):
        """Provider call outside any transaction; failures release the claim."""
        try:
            return await call()
        except ProviderAuthError as exc:
            await self._release(local_order_ref, token)
            logger.critical(
                "payment_provider_auth_failed",
                operation=operation.value,
                local_order_ref=local_order_ref,
                provider=exc.provider,
                message=exc.message,
            )
            raise
        except ProviderTransientError as exc:
            await self._release(local_order_ref, token)
            logger.warning(
                "payment_provider_transient",
                operation=operation.value,
                local_order_ref=local_order_ref,
                provider=exc.provider,
                message=exc.message,
            )
            raise
        except ProviderDeclinedError:
            raise
        except Exception:
            await self._release(local_order_ref, token)
            raise

    # ------------------------------------------------------------- operations

    async def register(
        self,
        amount: int,
        customer: Union[CustomerInfo, str],
        currency: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> RegisteredPayment:
        """
        登记支付：生成本地订单号，向渠道登记（零结算除外），写入 pending 记录
        """
        if not isinstance(customer, CustomerInfo):
            customer = CustomerInfo(customer_ref=str(customer))
        try:
            currency = normalize_currency(currency or self.settings.default_currency)
        except ValueError as exc:
            raise DomainValidationException(str(exc), field="currency") from exc

        payment = self.domain.new_payment(
            provider=self.gateway.provider,
            amount=amount,
            currency=currency,
            customer_ref=customer.customer_ref,
            metadata=metadata,
            now=self.clock(),
        )
        ref = payment.local_order_ref

        if not payment.is_zero_settlement:
            req = RegisterPayment(
                local_order_ref=ref,
                amount=amount,
                currency=currency,
                customer=customer,
                idempotency_key=_idempotency_key("register", ref, amount, currency),
                metadata=metadata,
            )
            logger.info(
                "payment_register_request",
                local_order_ref=ref,
                provider=self.gateway.provider,
                amount=amount,
                currency=currency,
            )
            registration = await self._with_retry("register", ref, lambda: self.gateway.register(req))
            payment.attach_provider_refs(registration.provider_order_ref, registration.provider_access_ref)

        async with self.uow_factory() as uow:
            payment = await uow.payment_repository.create(payment)

        logger.info(
            "payment_registered",
            local_order_ref=ref,
            provider=payment.provider,
            provider_order_ref=payment.provider_order_ref,
            amount=amount,
            zero_settlement=payment.is_zero_settlement,
        )
        return RegisteredPayment(
            local_order_ref=ref,
            provider_order_ref=payment.provider_order_ref,
            provider_access_ref=payment.provider_access_ref,
            state=payment.state.value,
            is_zero_settlement=payment.is_zero_settlement,
        )

    async def confirm_authorization(
        self,
        local_order_ref: str,
        provider_order_ref: Optional[str] = None,
        provider_access_ref: Optional[str] = None,
    ) -> PaymentState:
        """前端回报渠道授权成功：pending -> authorized"""

        def _mutate(payment: Payment) -> None:
            payment.confirm_authorization(
                now=self.clock(),
                provider_order_ref=provider_order_ref,
                provider_access_ref=provider_access_ref,
            )

        return await self._with_retry(
            "confirm_authorization",
            local_order_ref,
            lambda: self._apply_direct(local_order_ref, PaymentOperation.CONFIRM_AUTHORIZATION, _mutate),
        )

    async def fail_authorization(self, local_order_ref: str, reason: Optional[str] = None) -> PaymentState:
        """前端/渠道回报授权失败：pending -> failed"""

        def _mutate(payment: Payment) -> None:
            payment.fail_authorization(reason=reason, now=self.clock())

        return await self._with_retry(
            "fail_authorization",
            local_order_ref,
            lambda: self._apply_direct(local_order_ref, PaymentOperation.FAIL_AUTHORIZATION, _mutate),
        )

    async def capture(self, local_order_ref: str) -> PaymentState:
        return await self._with_retry("capture", local_order_ref, lambda: self._capture_once(local_order_ref))

    async def _capture_once(self, local_order_ref: str) -> PaymentState:
        payment, token = await self._claim(local_order_ref, PaymentOperation.CAPTURE)
        if token is None:
            logger.info("payment_operation_replayed", operation="capture", local_order_ref=local_order_ref)
            return payment.state

        # Zero settlement is decided before any capture-path provider call.
        if decide_capture_path(payment) is CapturePath.ZERO_SETTLEMENT:
            committed, _ = await self._commit(
                local_order_ref,
                token,
                PaymentState.AUTHORIZED,
                lambda uow, p: p.capture(now=self.clock()),
            )
            logger.info("payment_zero_settled", local_order_ref=local_order_ref)
            if should_release_hold(committed):
                await self._release_hold(committed)
            return committed.state

        req = CapturePayment(
            local_order_ref=local_order_ref,
            provider_order_ref=payment.provider_order_ref,
            provider_access_ref=payment.provider_access_ref,
            amount=payment.amount,
            currency=payment.currency,
            idempotency_key=_idempotency_key("capture", local_order_ref, payment.amount),
        )
        try:
            await self._call_provider(
                local_order_ref, token, PaymentOperation.CAPTURE, lambda: self.gateway.capture(req)
            )
        except ProviderDeclinedError as exc:
            await self._commit(
                local_order_ref,
                token,
                PaymentState.AUTHORIZED,
                lambda uow, p: p.fail_capture(reason=exc.message, now=self.clock()),
            )
            logger.warning(
                "payment_capture_declined",
                local_order_ref=local_order_ref,
                provider=exc.provider,
                provider_code=exc.provider_code,
            )
            raise

        committed, _ = await self._commit(
            local_order_ref,
            token,
            PaymentState.AUTHORIZED,
            lambda uow, p: p.capture(now=self.clock()),
        )
        logger.info("payment_captured", local_order_ref=local_order_ref, amount=committed.amount)
        return committed.state

    async def _release_hold(self, payment: Payment) -> None:
        """零结算后释放授权冻结：尽力而为，失败只记录日志"""
        req = CancelPayment(
            local_order_ref=payment.local_order_ref,
            provider_order_ref=payment.provider_order_ref,
            provider_access_ref=payment.provider_access_ref,
            idempotency_key=_idempotency_key("release", payment.local_order_ref),
        )
        try:
            await self.gateway.cancel(req)
        except Exception as exc:
            # The hold expires on the provider side.
            logger.warning(
                "zero_settlement_hold_release_failed",
                local_order_ref=payment.local_order_ref,
                provider=payment.provider,
                error_type=getattr(exc, "error_type", type(exc).__name__),
                message=str(exc),
            )
            return
        logger.info("zero_settlement_hold_released", local_order_ref=payment.local_order_ref)

    async def cancel(self, local_order_ref: str) -> PaymentState:
        return await self._with_retry("cancel", local_order_ref, lambda: self._cancel_once(local_order_ref))

    async def _cancel_once(self, local_order_ref: str) -> PaymentState:
        payment, token = await self._claim(local_order_ref, PaymentOperation.CANCEL)
        if token is None:
            logger.info("payment_operation_replayed", operation="cancel", local_order_ref=local_order_ref)
            return payment.state

        if payment.provider_order_ref:
            req = CancelPayment(
                local_order_ref=local_order_ref,
                provider_order_ref=payment.provider_order_ref,
                provider_access_ref=payment.provider_access_ref,
                idempotency_key=_idempotency_key("cancel", local_order_ref),
            )
            try:
                await self._call_provider(
                    local_order_ref, token, PaymentOperation.CANCEL, lambda: self.gateway.cancel(req)
                )
            except ProviderDeclinedError:
                await self._release(local_order_ref, token)
                raise

        committed, _ = await self._commit(
            local_order_ref,
            token,
            PaymentState.AUTHORIZED,
            lambda uow, p: p.cancel(now=self.clock()),
        )
        logger.info("payment_cancelled", local_order_ref=local_order_ref)
        return committed.state

    async def refund(
        self,
        local_order_ref: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        external_refund_ref: Optional[str] = None,
    ) -> RefundOutcome:
        """
        退款（全额或部分）

        external_refund_ref 不为空时为前端路径：渠道侧退款已完成，不调用网关，
        但金额校验与后端路径完全相同。
        """
        return await self._with_retry(
            "refund",
            local_order_ref,
            lambda: self._refund_once(local_order_ref, amount, reason, external_refund_ref),
        )

    async def _existing_refund(self, local_order_ref: str, external_refund_ref: str) -> Optional[RefundOutcome]:
        async with self.uow_factory(readonly=True) as uow:
            payment = await self._load(uow, local_order_ref)
            existing = await uow.refund_repository.get_by_provider_refund_ref(payment.provider, external_refund_ref)
            if existing is None:
                return None
            if existing.payment_id != payment.id:
                raise DomainValidationException(
                    f"Refund reference {external_refund_ref} belongs to another payment",
                    field="external_refund_ref",
                )
            refunded = await uow.refund_repository.get_total_refunded_amount(payment.id)
        logger.info(
            "payment_refund_replayed",
            local_order_ref=local_order_ref,
            provider_refund_ref=external_refund_ref,
        )
        return RefundOutcome(
            refund_id=existing.id,
            amount=existing.amount,
            remaining_refundable=payment.remaining_refundable(refunded),
            state=payment.state.value,
            provider_refund_ref=existing.provider_refund_ref,
            duplicate=True,
        )

    async def _refund_once(
        self,
        local_order_ref: str,
        amount: Optional[int],
        reason: Optional[str],
        external_refund_ref: Optional[str],
    ) -> RefundOutcome:
        if external_refund_ref:
            replay = await self._existing_refund(local_order_ref, external_refund_ref)
            if replay is not None:
                return replay

        decided: dict[str, int] = {}

        async def _validate(uow: AbstractUnitOfWork, payment: Payment) -> None:
            refunded = await uow.refund_repository.get_total_refunded_amount(payment.id)
            value = amount if amount is not None else payment.remaining_refundable(refunded)
            payment.ensure_refundable(value, refunded)
            decided["amount"] = value
            decided["sequence"] = await uow.refund_repository.count_by_payment(payment.id) + 1

        payment, token = await self._claim(local_order_ref, PaymentOperation.REFUND, validate=_validate)
        refund_amount = decided["amount"]
        expected = payment.state

        if external_refund_ref:
            source = RefundSource.FRONTEND
            provider_refund_ref = external_refund_ref
        else:
            source = RefundSource.BACKEND
            if not payment.provider_order_ref:
                await self._release(local_order_ref, token)
                raise DomainValidationException(
                    f"Payment {local_order_ref} has no provider reference to refund against",
                    field="local_order_ref",
                )
            req = RefundPayment(
                local_order_ref=local_order_ref,
                provider_order_ref=payment.provider_order_ref,
                provider_access_ref=payment.provider_access_ref,
                amount=refund_amount,
                currency=payment.currency,
                reason=reason,
                idempotency_key=_idempotency_key("refund", local_order_ref, decided["sequence"], refund_amount),
            )
            try:
                result = await self._call_provider(
                    local_order_ref, token, PaymentOperation.REFUND, lambda: self.gateway.refund(req)
                )
            except ProviderDeclinedError as exc:
                await self._release(local_order_ref, token)
                logger.warning(
                    "payment_refund_declined",
                    local_order_ref=local_order_ref,
                    provider=exc.provider,
                    provider_code=exc.provider_code,
                )
                raise
            provider_refund_ref = result.provider_refund_ref

        remaining: dict[str, int] = {}

        async def _apply(uow: AbstractUnitOfWork, current: Payment) -> Refund:
            # Remaining amount is re-read in the same transaction as the insert.
            refunded = await uow.refund_repository.get_total_refunded_amount(current.id)
            remaining["value"] = current.apply_refund(refund_amount, refunded, now=self.clock())
            return await uow.refund_repository.create(Refund(
                id=None,
                payment_id=current.id,
                local_order_ref=local_order_ref,
                provider=current.provider,
                amount=refund_amount,
                provider_refund_ref=provider_refund_ref,
                source=source,
                reason=reason,
                processed_at=current.updated_at,
            ))

        committed, refund = await self._commit(local_order_ref, token, expected, _apply, record_event=False)
        self.domain.record_transition(committed, refund, remaining["value"])
        logger.info(
            "payment_refunded",
            local_order_ref=local_order_ref,
            refund_id=refund.id,
            amount=refund_amount,
            remaining_refundable=remaining["value"],
            source=source.value,
            state=committed.state.value,
        )
        return RefundOutcome(
            refund_id=refund.id,
            amount=refund_amount,
            remaining_refundable=remaining["value"],
            state=committed.state.value,
            provider_refund_ref=provider_refund_ref,
        )

    async def get_payment(self, local_order_ref: str) -> PaymentSnapshot:
        async with self.uow_factory(readonly=True) as uow:
            payment = await self._load(uow, local_order_ref)
            refunds = await uow.refund_repository.list_by_payment(payment.id)
        refunded = sum(r.amount for r in refunds)
        return PaymentSnapshot(
            local_order_ref=payment.local_order_ref,
            provider=payment.provider,
            provider_order_ref=payment.provider_order_ref,
            provider_access_ref=payment.provider_access_ref,
            amount=payment.amount,
            currency=payment.currency,
            state=payment.state.value,
            is_zero_settlement=payment.is_zero_settlement,
            customer_ref=payment.customer_ref,
            created_at=payment.created_at,
            authorized_at=payment.authorized_at,
            captured_at=payment.captured_at,
            cancelled_at=payment.cancelled_at,
            failed_at=payment.failed_at,
            failure_reason=payment.failure_reason,
            refunded_amount=refunded,
            remaining_refundable=payment.remaining_refundable(refunded),
            refunds=[
                RefundSnapshot(
                    id=r.id,
                    amount=r.amount,
                    provider_refund_ref=r.provider_refund_ref,
                    source=r.source.value,
                    status=r.status.value,
                    reason=r.reason,
                    processed_at=r.processed_at,
                )
                for r in refunds
            ],
        )

    async def reconcile_authorization(self, local_order_ref: str) -> PaymentState:
        """
        轮询兜底：前端未回报授权结果时，向渠道查询并推进 pending 支付
        """
        async with self.uow_factory(readonly=True) as uow:
            payment = await self._load(uow, local_order_ref)
        if payment.state != PaymentState.PENDING or not payment.provider_order_ref:
            return payment.state

        query = QueryPayment(
            local_order_ref=local_order_ref,
            provider_order_ref=payment.provider_order_ref,
            provider_access_ref=payment.provider_access_ref,
        )
        status = await self._with_retry("query", local_order_ref, lambda: self.gateway.query(query))
        logger.info(
            "payment_reconcile_status",
            local_order_ref=local_order_ref,
            provider_status=status.status,
            raw_status=status.raw_status,
        )
        if status.status in (PROVIDER_STATUS_AUTHORIZED, PROVIDER_STATUS_CAPTURED):
            if status.status == PROVIDER_STATUS_CAPTURED:
                logger.warning("payment_reconcile_captured_while_pending", local_order_ref=local_order_ref)
            return await self.confirm_authorization(local_order_ref)
        if status.status in (PROVIDER_STATUS_FAILED, PROVIDER_STATUS_CANCELLED):
            return await self.fail_authorization(
                local_order_ref,
                reason=status.failure_reason or f"provider reported {status.raw_status or status.status}",
            )
        return payment.state

    async def reconcile_pending(self, limit: int = 100) -> dict[str, PaymentState]:
        """批量对账 pending 支付；单笔失败不影响其余"""
        async with self.uow_factory(readonly=True) as uow:
            pending = await uow.payment_repository.list_by_state(PaymentState.PENDING, limit=limit)
        results: dict[str, PaymentState] = {}
        for payment in pending:
            try:
                results[payment.local_order_ref] = await self.reconcile_authorization(payment.local_order_ref)
            except PaymentProviderError as exc:
                logger.warning(
                    "payment_reconcile_failed",
                    local_order_ref=payment.local_order_ref,
                    **exc.to_dict(),
                )
        return results

    def drain_events(self) -> list[PaymentEvent]:
        return self.domain.clear_events()

    async def aclose(self) -> None:
        # Best-effort close underlying resources
        close = getattr(self.gateway, "aclose", None)
        if callable(close):
            await close()
