"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    BigInteger, Boolean, Column, Integer, String, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付流水表

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, autoincrement=True)

    # 订单信息
    local_order_ref = Column(String(64), unique=True, nullable=False, comment="本地订单号（全局唯一）")
    customer_ref = Column(String(100), nullable=True, index=True, comment="调用方客户标识")

    # 支付渠道信息
    provider = Column(String(50), nullable=False, comment="支付提供商: stripe/yookassa")
    provider_order_ref = Column(String(200), nullable=True, comment="渠道订单号（只写一次）")
    provider_access_ref = Column(String(500), nullable=True, comment="渠道前端凭证（只写一次）")

    # 金额信息（最小货币单位整数）
    amount = Column(BigInteger, nullable=False, comment="支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, default="KRW", comment="货币代码 ISO-4217")
    is_zero_settlement = Column(Boolean, nullable=False, default=False, comment="是否零结算")

    # 状态
    state = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/authorized/captured/cancelled/failed/partially_refunded/refunded"
    )

    # 进行中操作租约
    claim_token = Column(String(64), nullable=True, comment="进行中操作的占用令牌")
    claim_operation = Column(String(32), nullable=True, comment="进行中的操作")
    claimed_at = Column(DateTime(timezone=True), nullable=True, comment="占用时间")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    authorized_at = Column(DateTime(timezone=True), nullable=True, comment="授权时间")
    captured_at = Column(DateTime(timezone=True), nullable=True, comment="扣款时间")
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")
    failed_at = Column(DateTime(timezone=True), nullable=True, comment="失败时间")

    # 失败原因
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 关系
    refunds = relationship("RefundModel", back_populates="payment", lazy="select")

    # 索引
    __table_args__ = (
        Index("ix_payments_provider_order_ref", "provider", "provider_order_ref"),
        Index("ix_payments_created_at", "created_at"),
        CheckConstraint("amount >= 0", name="amount_non_negative"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, local_order_ref='{self.local_order_ref}', "
            f"provider='{self.provider}', amount={self.amount}, state='{self.state}')>"
        )


class RefundModel(Base):
    """
    退款流水表（只追加）
    """
    __tablename__ = "refunds"

    # 主键
    id = Column(Integer, primary_key=True, autoincrement=True)

    # 关联支付
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    # 订单信息（冗余，便于查询）
    local_order_ref = Column(String(64), index=True, nullable=False, comment="本地订单号")

    # 退款渠道信息
    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_refund_ref = Column(String(200), nullable=True, comment="渠道退款号")

    # 金额信息
    amount = Column(BigInteger, nullable=False, comment="退款金额（最小货币单位）")

    # 来源与状态
    source = Column(String(16), nullable=False, default="backend", comment="创建路径: backend/frontend")
    status = Column(String(16), nullable=False, default="completed", comment="退款状态: completed")

    # 退款原因
    reason = Column(Text, nullable=True, comment="退款原因")

    processed_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="处理时间"
    )

    # 关系
    payment = relationship("PaymentModel", back_populates="refunds")

    __table_args__ = (
        UniqueConstraint("provider", "provider_refund_ref", name="uq_refunds_provider_refund_ref"),
        CheckConstraint("amount > 0", name="amount_positive"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, source='{self.source}')>"
        )
