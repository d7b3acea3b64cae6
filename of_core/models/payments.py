"""
支付记录模型
一个订单可以有多条支付记录（重试），权威记录由支付子账规则决定
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger, Text, DateTime, CheckConstraint, Index, ForeignKey, func
)
from sqlalchemy.dialects.postgresql import NUMERIC
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, utcnow
from .enums import PaymentGateway, PaymentStatus, enum_values


class Payment(Base):
    """支付表"""
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id"),
        nullable=False,
        comment="关联订单ID"
    )

    gateway: Mapped[str] = mapped_column(Text, nullable=False, comment="支付渠道")
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=PaymentStatus.PENDING.value,
        comment="支付状态"
    )

    amount: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2),
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        nullable=False,
        comment="支付金额"
    )
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="VND", comment="币种")

    # 网关回传的交易号（银行对账时按此匹配）
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(Text, comment="网关交易号")
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), comment="支付时间")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="创建时间"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="更新时间"
    )

    __table_args__ = (
        Index("ix_payments_order_created", "order_id", "created_at"),
        Index("ix_payments_gateway_txn", "gateway_transaction_id"),
        CheckConstraint(f"gateway IN ({enum_values(PaymentGateway)})", name="ck_payments_gateway"),
        CheckConstraint(f"status IN ({enum_values(PaymentStatus)})", name="ck_payments_status"),
        CheckConstraint(
            "status <> 'paid' OR paid_at IS NOT NULL",
            name="ck_payments_paid_at_required"
        ),
    )

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value
