"""
银行账户、银行流水与对账模型
银行流水导入后只允许修改状态和对账关联
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger, Text, Integer, DateTime, CheckConstraint, Index,
    ForeignKey, UniqueConstraint, func
)
from sqlalchemy.dialects.postgresql import NUMERIC
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, utcnow
from .enums import BankTxnStatus, BankTxnType, ReconciliationOutcomeType, enum_values


class BankAccount(Base):
    """银行账户表"""
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    bank_name: Mapped[str] = mapped_column(Text, nullable=False, comment="开户行")
    account_number: Mapped[str] = mapped_column(Text, nullable=False, comment="账号")
    account_name: Mapped[Optional[str]] = mapped_column(Text, comment="户名")
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="VND", comment="币种")

    # 余额只随流水导入变化
    balance: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2), nullable=False, default=Decimal("0"), comment="当前余额"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="创建时间"
    )

    __table_args__ = (
        UniqueConstraint("account_number", name="uq_bank_accounts_number"),
    )


class BankTransaction(Base):
    """银行流水表"""
    __tablename__ = "bank_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    account_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("bank_accounts.id"),
        nullable=False,
        comment="银行账户ID"
    )
    external_txn_id: Mapped[str] = mapped_column(Text, nullable=False, comment="银行侧流水号")

    txn_type: Mapped[str] = mapped_column(Text, nullable=False, comment="流水方向")
    amount: Mapped[Decimal] = mapped_column(
        NUMERIC(18, 2),
        CheckConstraint("amount > 0", name="ck_bank_transactions_amount_positive"),
        nullable=False,
        comment="金额（正数，方向由 txn_type 决定）"
    )
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="VND", comment="币种")
    description: Mapped[Optional[str]] = mapped_column(Text, comment="银行附言")

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=BankTxnStatus.POSTED.value,
        comment="流水状态"
    )

    balance_before: Mapped[Decimal] = mapped_column(NUMERIC(18, 2), nullable=False, comment="入账前余额")
    balance_after: Mapped[Decimal] = mapped_column(NUMERIC(18, 2), nullable=False, comment="入账后余额")

    # 对账关联
    related_order_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="关联订单ID")
    related_payment_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="关联支付ID")

    posted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="银行记账时间"
    )
    imported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="导入时间"
    )
    created_by: Mapped[Optional[int]] = mapped_column(BigInteger, comment="导入人ID")

    __table_args__ = (
        UniqueConstraint("account_id", "external_txn_id", name="uq_bank_transactions_account_external"),
        Index("ix_bank_transactions_status", "status"),
        Index("ix_bank_transactions_posted", "account_id", "posted_at"),
        Index("ix_bank_transactions_order", "related_order_id"),
        CheckConstraint(f"txn_type IN ({enum_values(BankTxnType)})", name="ck_bank_transactions_type"),
        CheckConstraint(f"status IN ({enum_values(BankTxnStatus)})", name="ck_bank_transactions_status"),
    )


class BankReconciliation(Base):
    """银行对账表：一条流水最多对应一条支付/订单"""
    __tablename__ = "bank_reconciliations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    bank_txn_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("bank_transactions.id"),
        nullable=False,
        comment="银行流水ID"
    )
    order_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="订单ID")
    payment_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="支付ID")

    outcome: Mapped[str] = mapped_column(Text, nullable=False, comment="对账结果")
    matched_by: Mapped[str] = mapped_column(Text, nullable=False, comment="auto 或操作人ID")
    match_score: Mapped[Optional[int]] = mapped_column(Integer, comment="匹配置信度（0-100）")
    notes: Mapped[Optional[str]] = mapped_column(Text, comment="备注")

    matched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="对账时间"
    )

    __table_args__ = (
        UniqueConstraint("bank_txn_id", name="uq_bank_reconciliations_txn"),
        Index("ix_bank_reconciliations_order", "order_id"),
        Index("ix_bank_reconciliations_payment", "payment_id"),
        CheckConstraint(
            f"outcome IN ({enum_values(ReconciliationOutcomeType)})",
            name="ck_bank_reconciliations_outcome"
        ),
    )
