"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态迁移与占用均为单条条件 UPDATE，通过 rowcount 判断是否命中。
"""
from datetime import datetime
from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update, or_
from sqlalchemy.exc import IntegrityError

from domain.payment.entity import Payment, Refund, RefundSource, RefundStatus
from domain.payment.exceptions import ConsistencyException
from domain.payment.repository import PaymentRepository, RefundRepository
from domain.payment.state_machine import PaymentState
from infrastructure.models.payment import PaymentModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            local_order_ref=model.local_order_ref,
            provider=model.provider,
            amount=int(model.amount),
            currency=model.currency,
            state=PaymentState(model.state),
            customer_ref=model.customer_ref,
            provider_order_ref=model.provider_order_ref,
            provider_access_ref=model.provider_access_ref,
            is_zero_settlement=bool(model.is_zero_settlement),
            created_at=model.created_at,
            updated_at=model.updated_at,
            authorized_at=model.authorized_at,
            captured_at=model.captured_at,
            cancelled_at=model.cancelled_at,
            failed_at=model.failed_at,
            failure_reason=model.failure_reason,
            claim_token=model.claim_token,
            claim_operation=model.claim_operation,
            claimed_at=model.claimed_at,
            metadata=model.extra_metadata or {}
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            local_order_ref=entity.local_order_ref,
            customer_ref=entity.customer_ref,
            provider=entity.provider,
            provider_order_ref=entity.provider_order_ref,
            provider_access_ref=entity.provider_access_ref,
            amount=entity.amount,
            currency=entity.currency,
            is_zero_settlement=entity.is_zero_settlement,
            state=entity.state.value,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            authorized_at=entity.authorized_at,
            captured_at=entity.captured_at,
            cancelled_at=entity.cancelled_at,
            failed_at=entity.failed_at,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        try:
            db_payment = self._to_model(payment)
            self.session.add(db_payment)
            await self.session.flush()
            await self.session.refresh(db_payment)
        except IntegrityError as e:
            logger.warning(
                "payment_create_conflict",
                local_order_ref=payment.local_order_ref,
                error=str(e.orig) if e.orig else str(e),
            )
            raise ConsistencyException(
                payment.local_order_ref,
                f"Payment {payment.local_order_ref} already exists"
            ) from e
        logger.debug(
            "payment_row_created",
            payment_id=db_payment.id,
            local_order_ref=db_payment.local_order_ref,
            provider=db_payment.provider
        )
        return self._to_entity(db_payment)

    async def get_by_order_ref(self, local_order_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        """根据本地订单号获取支付"""
        stmt = select(PaymentModel).where(PaymentModel.local_order_ref == local_order_ref)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def list_by_state(
        self,
        state: PaymentState,
        skip: int = 0,
        limit: int = 100
    ) -> List[Payment]:
        """根据状态获取支付列表（按创建时间升序，先到先处理）"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.state == PaymentState(state).value)
            .order_by(PaymentModel.created_at.asc(), PaymentModel.id.asc())
            .offset(skip)
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def claim(
        self,
        local_order_ref: str,
        *,
        expected_state: PaymentState,
        token: str,
        operation: str,
        now: datetime,
        lease_cutoff: datetime,
    ) -> bool:
        """条件占用：状态匹配且无人占用（或占用已过期）"""
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.local_order_ref == local_order_ref,
                PaymentModel.state == PaymentState(expected_state).value,
                or_(
                    PaymentModel.claim_token.is_(None),
                    PaymentModel.claimed_at < lease_cutoff,
                ),
            )
            .values(claim_token=token, claim_operation=operation, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_claim(self, local_order_ref: str, token: str) -> bool:
        """释放占用（仅当令牌匹配）"""
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.local_order_ref == local_order_ref,
                PaymentModel.claim_token == token,
            )
            .values(claim_token=None, claim_operation=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def save_transition(
        self,
        payment: Payment,
        *,
        expected_state: PaymentState,
        claim_token: Optional[str] = None,
    ) -> bool:
        """CAS：WHERE state = :expected AND claim_token = :token，成功后清除占用"""
        if claim_token is None:
            claim_clause = PaymentModel.claim_token.is_(None)
        else:
            claim_clause = PaymentModel.claim_token == claim_token
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.local_order_ref == payment.local_order_ref,
                PaymentModel.state == PaymentState(expected_state).value,
                claim_clause,
            )
            .values(
                state=payment.state.value,
                provider_order_ref=payment.provider_order_ref,
                provider_access_ref=payment.provider_access_ref,
                is_zero_settlement=payment.is_zero_settlement,
                updated_at=payment.updated_at,
                authorized_at=payment.authorized_at,
                captured_at=payment.captured_at,
                cancelled_at=payment.cancelled_at,
                failed_at=payment.failed_at,
                failure_reason=payment.failure_reason,
                claim_token=None,
                claim_operation=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        saved = result.rowcount == 1
        if saved:
            payment.claim_token = None
            payment.claim_operation = None
            payment.claimed_at = None
        return saved


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        """将数据库模型转换为领域实体"""
        return Refund(
            id=model.id,
            payment_id=model.payment_id,
            local_order_ref=model.local_order_ref,
            provider=model.provider,
            amount=int(model.amount),
            provider_refund_ref=model.provider_refund_ref,
            source=RefundSource(model.source),
            status=RefundStatus(model.status),
            reason=model.reason,
            processed_at=model.processed_at,
        )

    def _to_model(self, entity: Refund) -> RefundModel:
        """将领域实体转换为数据库模型"""
        return RefundModel(
            id=entity.id,
            payment_id=entity.payment_id,
            local_order_ref=entity.local_order_ref,
            provider=entity.provider,
            provider_refund_ref=entity.provider_refund_ref,
            amount=entity.amount,
            source=entity.source.value,
            status=entity.status.value,
            reason=entity.reason,
            processed_at=entity.processed_at,
        )

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        try:
            db_refund = self._to_model(refund)
            self.session.add(db_refund)
            await self.session.flush()
            await self.session.refresh(db_refund)
        except IntegrityError as e:
            logger.warning(
                "refund_create_conflict",
                local_order_ref=refund.local_order_ref,
                provider_refund_ref=refund.provider_refund_ref,
            )
            raise ConsistencyException(
                refund.local_order_ref,
                f"Refund {refund.provider_refund_ref} already recorded"
            ) from e

        logger.debug(
            "refund_row_created",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            local_order_ref=db_refund.local_order_ref,
            amount=db_refund.amount
        )
        return self._to_entity(db_refund)

    async def get_by_provider_refund_ref(
        self,
        provider: str,
        provider_refund_ref: str
    ) -> Optional[Refund]:
        """根据渠道退款号获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(
                RefundModel.provider == provider,
                RefundModel.provider_refund_ref == provider_refund_ref
            )
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def list_by_payment(self, payment_id: int) -> List[Refund]:
        """获取支付的退款列表"""
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.payment_id == payment_id)
            .order_by(RefundModel.processed_at.asc(), RefundModel.id.asc())
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def count_by_payment(self, payment_id: int) -> int:
        """统计支付的退款次数"""
        result = await self.session.execute(
            select(func.count(RefundModel.id)).where(
                RefundModel.payment_id == payment_id
            )
        )
        return result.scalar_one()

    async def get_total_refunded_amount(self, payment_id: int) -> int:
        """获取支付已完成退款的总额"""
        result = await self.session.execute(
            select(func.coalesce(func.sum(RefundModel.amount), 0)).where(
                RefundModel.payment_id == payment_id,
                RefundModel.status == RefundStatus.COMPLETED.value
            )
        )
        return int(result.scalar_one())
