"""
枚举类型定义
"""

from enum import Enum


class OrderStatus(str, Enum):
    """订单状态"""

    PENDING = "pending"  # 待确认
    CONFIRMED = "confirmed"  # 已确认
    SHIPPING = "shipping"  # 配送中
    DELIVERED = "delivered"  # 已送达
    COMPLETED = "completed"  # 已完成
    CANCELLED = "cancelled"  # 已取消（终态）
    RETURNED = "returned"  # 已退货（终态）


class PaymentGateway(str, Enum):
    """支付渠道"""

    COD = "cod"  # 货到付款
    MOMO = "momo"  # 在线钱包
    BANK_TRANSFER = "bank_transfer"


class PaymentStatus(str, Enum):
    """支付状态"""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    VOID = "void"  # 订单取消后作废


class InventoryChangeType(str, Enum):
    """库存变动类型"""

    IN = "IN"
    OUT = "OUT"
    SALE = "SALE"
    RESTOCK = "RESTOCK"
    RETURN = "RETURN"
    ADJUSTMENT = "ADJUSTMENT"


class BankTxnType(str, Enum):
    """银行流水方向"""

    CREDIT = "credit"
    DEBIT = "debit"
    TRANSFER = "transfer"
    FEE = "fee"
    REFUND = "refund"


class BankTxnStatus(str, Enum):
    """银行流水状态"""

    PENDING = "pending"
    POSTED = "posted"
    RECONCILED = "reconciled"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReconciliationOutcomeType(str, Enum):
    """对账记录结果"""

    MATCHED = "matched"  # 自动匹配
    MANUAL = "manual"  # 人工指定
    MISMATCH = "mismatch"  # 人工标记不符


class ReturnRequestStatus(str, Enum):
    """退货申请状态"""

    APPROVED = "approved"
    REJECTED = "rejected"


def enum_values(enum_cls) -> str:
    """生成 CHECK 约束用的取值列表"""
    return ", ".join(f"'{member.value}'" for member in enum_cls)
