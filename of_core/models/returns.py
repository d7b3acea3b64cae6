"""
退货申请模型
"""
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import (
    BigInteger, Text, DateTime, ForeignKey, Index, JSON, func
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, utcnow
from .enums import ReturnRequestStatus


class ReturnRequest(Base):
    """退货申请表"""
    __tablename__ = "return_requests"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id"),
        nullable=False,
        comment="关联订单ID"
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="下单用户ID")

    reason: Mapped[str] = mapped_column(Text, nullable=False, comment="退货原因")
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=ReturnRequestStatus.APPROVED.value,
        comment="申请状态"
    )

    # 退回的订单行快照
    items: Mapped[List[Any]] = mapped_column(JSON, nullable=False, default=list, comment="退货明细")

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="申请时间"
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), comment="处理时间")
    processed_by: Mapped[Optional[int]] = mapped_column(BigInteger, comment="处理人ID")

    __table_args__ = (
        Index("ix_return_requests_order", "order_id"),
        Index("ix_return_requests_user", "user_id"),
    )
