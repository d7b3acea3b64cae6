"""
商品目录模型（由目录模块维护，订单引擎只读价格与身份）
库存数量为物化计数器，只能通过库存台账写入
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Index, Integer, Text,
    UniqueConstraint, func
)
from sqlalchemy.dialects.postgresql import NUMERIC
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, utcnow


class Product(Base):
    """商品表"""
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    sku: Mapped[str] = mapped_column(Text, nullable=False, comment="商品SKU")
    name: Mapped[str] = mapped_column(Text, nullable=False, comment="商品名称")

    price: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2),
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        nullable=False,
        comment="当前售价"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, comment="是否上架")

    # 物化库存：与 inventory_transactions 的变动合计保持一致
    stock_quantity: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        nullable=False,
        default=0,
        comment="当前库存（由库存台账维护）"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="创建时间"
    )

    __table_args__ = (
        UniqueConstraint("sku", name="uq_products_sku"),
        Index("ix_products_active", "is_active"),
    )
