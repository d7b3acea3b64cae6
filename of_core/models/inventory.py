"""
库存台账模型
只追加：每一次库存变化（销售、退货、调整）都是一条新记录
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, Text, Integer, DateTime, CheckConstraint, Index, ForeignKey, func
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, utcnow
from .enums import InventoryChangeType, enum_values


class InventoryTransaction(Base):
    """库存变动表"""
    __tablename__ = "inventory_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    product_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("products.id"),
        nullable=False,
        comment="商品ID"
    )

    # 有符号变动量
    quantity_change: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity_change <> 0", name="ck_inventory_transactions_non_zero"),
        nullable=False,
        comment="库存变动量（正数入库，负数出库）"
    )
    change_type: Mapped[str] = mapped_column(Text, nullable=False, comment="变动类型")

    order_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="引起变动的订单ID")
    note: Mapped[Optional[str]] = mapped_column(Text, comment="原因")
    created_by: Mapped[Optional[int]] = mapped_column(BigInteger, comment="操作人ID")

    # 写入后的库存快照，便于审计
    stock_after: Mapped[int] = mapped_column(Integer, nullable=False, comment="变动后库存")

    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="变动时间"
    )

    __table_args__ = (
        Index("ix_inventory_transactions_product", "product_id", "changed_at"),
        Index("ix_inventory_transactions_order", "order_id"),
        CheckConstraint(
            f"change_type IN ({enum_values(InventoryChangeType)})",
            name="ck_inventory_transactions_change_type"
        ),
    )
