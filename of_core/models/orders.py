"""
订单相关数据模型
订单、订单行（价格快照）、状态历史
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    BigInteger, Text, Integer,
    DateTime, CheckConstraint, Index,
    ForeignKey, UniqueConstraint, func
)
from sqlalchemy.dialects.postgresql import NUMERIC
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, utcnow
from .enums import OrderStatus, PaymentGateway, enum_values


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    # 主键
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    # 对外订单号（创建后不可变）
    order_number: Mapped[str] = mapped_column(Text, nullable=False, comment="订单编号")

    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="下单用户ID")

    # 订单状态：只允许通过状态机修改
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=OrderStatus.PENDING.value,
        comment="订单状态"
    )

    payment_method: Mapped[str] = mapped_column(Text, nullable=False, comment="下单时选择的支付渠道")

    # 金额（必须使用 Decimal）
    total_amount: Mapped[Decimal] = mapped_column(NUMERIC(18, 2), nullable=False, comment="应付总额")
    discount_amount: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2), nullable=False, default=Decimal("0"), comment="优惠金额"
    )
    shipping_fee: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2), nullable=False, default=Decimal("0"), comment="运费"
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2), nullable=False, default=Decimal("0"), comment="税费"
    )
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="VND", comment="币种")

    # 优惠券（快照 code，优惠券后续失效不影响已下单订单）
    coupon_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="优惠券ID")
    coupon_code: Mapped[Optional[str]] = mapped_column(Text, comment="优惠券代码快照")

    # 地址引用
    shipping_address_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="收货地址ID")
    billing_address_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="账单地址ID")

    processed_by: Mapped[Optional[int]] = mapped_column(BigInteger, comment="处理人ID")
    notes: Mapped[Optional[str]] = mapped_column(Text, comment="备注")

    # 系统时间戳
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="记录创建时间"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="记录更新时间"
    )

    # 约束
    __table_args__ = (
        UniqueConstraint("order_number", name="uq_orders_order_number"),
        Index("ix_orders_user_created", "user_id", "created_at"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_created_at", "created_at"),
        CheckConstraint(f"status IN ({enum_values(OrderStatus)})", name="ck_orders_status"),
        CheckConstraint(f"payment_method IN ({enum_values(PaymentGateway)})", name="ck_orders_payment_method"),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint(
            "discount_amount >= 0 AND shipping_fee >= 0 AND tax_amount >= 0",
            name="ck_orders_amounts_non_negative"
        ),
    )

    # 关系
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id"
    )

    @property
    def items_total(self) -> Decimal:
        """订单行合计"""
        return sum((item.total_price for item in self.items), Decimal("0"))


class OrderItem(Base):
    """订单行项目表（创建后不可变）"""
    __tablename__ = "order_items"

    # 主键
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    # 外键
    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="关联订单ID"
    )

    # 商品信息
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="商品ID")
    product_name: Mapped[Optional[str]] = mapped_column(Text, comment="商品名称快照")

    # 数量和价格快照
    quantity: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        nullable=False,
        comment="数量"
    )
    unit_price: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2),
        CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price_non_negative"),
        nullable=False,
        comment="下单时单价"
    )
    total_price: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2),
        nullable=False,
        comment="行合计（单价 × 数量）"
    )

    # 约束
    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
        Index("ix_order_items_product", "product_id"),
    )

    # 关系
    order: Mapped["Order"] = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    """订单状态历史（只追加）"""
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="关联订单ID"
    )
    from_status: Mapped[Optional[str]] = mapped_column(Text, comment="原状态（创建时为空）")
    to_status: Mapped[str] = mapped_column(Text, nullable=False, comment="新状态")
    actor_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="操作人ID")
    note: Mapped[Optional[str]] = mapped_column(Text, comment="备注")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="变更时间"
    )

    __table_args__ = (
        Index("ix_order_status_history_order", "order_id", "created_at"),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")
