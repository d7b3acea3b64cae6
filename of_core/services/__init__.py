"""
OrderFlow 服务层
"""
from .base import BaseService, ServiceResult, RepositoryMixin
from .coupons import CouponValidator, CouponCheck, CouponRejectReason, evaluate_coupon
from .inventory import InventoryLedgerService
from .payments import PaymentLedgerService
from .reconciliation import ReconciliationService, ReconciliationOutcome, MatchKind
from .orders import OrdersService
from .order_states import OrderAction, ORDER_TRANSITIONS

__all__ = [
    "BaseService",
    "ServiceResult",
    "RepositoryMixin",
    "CouponValidator",
    "CouponCheck",
    "CouponRejectReason",
    "evaluate_coupon",
    "InventoryLedgerService",
    "PaymentLedgerService",
    "ReconciliationService",
    "ReconciliationOutcome",
    "MatchKind",
    "OrdersService",
    "OrderAction",
    "ORDER_TRANSITIONS",
]
