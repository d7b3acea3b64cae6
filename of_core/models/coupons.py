"""
优惠券模型（订单引擎只读，used_count 由下单时递增）
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Integer, Text, UniqueConstraint, func
)
from sqlalchemy.dialects.postgresql import NUMERIC
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, utcnow


class Coupon(Base):
    """优惠券表"""
    __tablename__ = "coupons"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    code: Mapped[str] = mapped_column(Text, nullable=False, comment="优惠码")
    description: Mapped[Optional[str]] = mapped_column(Text, comment="描述")

    # 百分比优先；未设置百分比时使用固定金额
    discount_percent: Mapped[Optional[Decimal]] = mapped_column(
        NUMERIC(5, 2),
        CheckConstraint(
            "discount_percent IS NULL OR (discount_percent >= 0 AND discount_percent <= 100)",
            name="ck_coupons_percent_range"
        ),
        comment="折扣百分比"
    )
    discount_amount: Mapped[Optional[Decimal]] = mapped_column(
        NUMERIC(18, 2),
        CheckConstraint(
            "discount_amount IS NULL OR discount_amount >= 0",
            name="ck_coupons_amount_non_negative"
        ),
        comment="固定减免金额"
    )
    min_cart_value: Mapped[Optional[Decimal]] = mapped_column(NUMERIC(18, 2), comment="最低订单金额")

    # 有效期
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), comment="生效时间")
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), comment="失效时间")

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, comment="是否启用")

    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, comment="总使用次数上限")
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="已使用次数")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="创建时间"
    )

    __table_args__ = (
        UniqueConstraint("code", name="uq_coupons_code"),
    )
