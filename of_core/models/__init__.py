"""
OrderFlow 数据模型包
"""
from .base import Base
from .catalog import Product
from .orders import Order, OrderItem, OrderStatusHistory
from .payments import Payment
from .inventory import InventoryTransaction
from .coupons import Coupon
from .returns import ReturnRequest
from .banking import BankAccount, BankTransaction, BankReconciliation

__all__ = [
    "Base",
    "Product",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "Payment",
    "InventoryTransaction",
    "Coupon",
    "ReturnRequest",
    "BankAccount",
    "BankTransaction",
    "BankReconciliation",
]
