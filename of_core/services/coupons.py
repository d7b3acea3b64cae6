"""
优惠券校验服务
校验本身无副作用；使用次数在下单事务中单独递增
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import or_, select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from of_core.models import Coupon
from of_core.models.base import ensure_utc, utcnow
from of_core.utils.errors import OrderFlowException, ValidationError
from of_core.utils.money import ZERO, to_money
from .base import BaseService, ServiceResult


class CouponRejectReason(str, Enum):
    """优惠券拒绝原因"""

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    USAGE_EXHAUSTED = "usage_exhausted"
    BELOW_MINIMUM = "below_minimum"


REASON_MESSAGES = {
    CouponRejectReason.NOT_FOUND: "Coupon does not exist",
    CouponRejectReason.INACTIVE: "Coupon has been deactivated",
    CouponRejectReason.NOT_STARTED: "Coupon is not yet valid",
    CouponRejectReason.EXPIRED: "Coupon has expired",
    CouponRejectReason.USAGE_EXHAUSTED: "Coupon usage limit reached",
}


@dataclass
class CouponCheck:
    """优惠券校验结果"""
    valid: bool
    discount_amount: Decimal
    reason: Optional[CouponRejectReason] = None
    message: Optional[str] = None
    coupon_id: Optional[int] = None
    code: Optional[str] = None

    @classmethod
    def reject(cls, reason: CouponRejectReason, message: Optional[str] = None, coupon: Optional[Coupon] = None) -> "CouponCheck":
        return cls(
            valid=False,
            discount_amount=ZERO,
            reason=reason,
            message=message or REASON_MESSAGES[reason],
            coupon_id=coupon.id if coupon else None,
            code=coupon.code if coupon else None
        )


def compute_discount(coupon: Coupon, cart_value: Decimal) -> Decimal:
    """计算折扣：百分比优先，其次固定金额；不超过订单金额"""
    cart_value = to_money(cart_value)
    percent = Decimal(str(coupon.discount_percent)) if coupon.discount_percent else Decimal("0")

    if percent > 0:
        discount = cart_value * percent / Decimal("100")
    else:
        discount = Decimal(str(coupon.discount_amount or 0))

    return to_money(min(max(discount, ZERO), cart_value))


def evaluate_coupon(coupon: Optional[Coupon], cart_value: Any, now: Optional[datetime] = None) -> CouponCheck:
    """纯函数：判断优惠券在给定时间、给定订单金额下是否可用"""
    if coupon is None:
        return CouponCheck.reject(CouponRejectReason.NOT_FOUND)

    now = ensure_utc(now or utcnow())
    cart_value = to_money(cart_value)

    if not coupon.is_active:
        return CouponCheck.reject(CouponRejectReason.INACTIVE, coupon=coupon)

    if coupon.start_date is not None and ensure_utc(coupon.start_date) > now:
        return CouponCheck.reject(CouponRejectReason.NOT_STARTED, coupon=coupon)

    if coupon.end_date is not None and ensure_utc(coupon.end_date) < now:
        return CouponCheck.reject(CouponRejectReason.EXPIRED, coupon=coupon)

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return CouponCheck.reject(CouponRejectReason.USAGE_EXHAUSTED, coupon=coupon)

    if coupon.min_cart_value and cart_value < to_money(coupon.min_cart_value):
        return CouponCheck.reject(
            CouponRejectReason.BELOW_MINIMUM,
            message=f"Minimum cart value is {to_money(coupon.min_cart_value)}",
            coupon=coupon
        )

    return CouponCheck(
        valid=True,
        discount_amount=compute_discount(coupon, cart_value),
        coupon_id=coupon.id,
        code=coupon.code,
        message="Coupon is valid"
    )


class CouponValidator(BaseService):
    """优惠券校验服务"""

    async def validate(
        self,
        code: str,
        cart_value: Any,
        now: Optional[datetime] = None
    ) -> ServiceResult[CouponCheck]:
        """只读校验（结果中的 valid=False 不是错误）"""
        try:
            if not code or not str(code).strip():
                raise ValidationError(code="MISSING_COUPON_CODE", detail="Coupon code is required")
            try:
                cart_value = to_money(cart_value)
            except ValueError as e:
                raise ValidationError(code="INVALID_CART_VALUE", detail=str(e))

            check = await self.execute_with_session(self.validate_tx, code, cart_value, now)
            return ServiceResult.ok(check)
        except OrderFlowException as e:
            return self.fail(e, "Coupon validation", coupon_code=code)

    async def validate_tx(
        self,
        session: AsyncSession,
        code: str,
        cart_value: Decimal,
        now: Optional[datetime] = None
    ) -> CouponCheck:
        """在给定会话中加载并校验优惠券"""
        coupon = await self.find_by_code(session, code)
        check = evaluate_coupon(coupon, cart_value, now)
        if not check.valid:
            self.logger.info("Coupon rejected", code=code, reason=check.reason.value)
        return check

    async def find_by_code(self, session: AsyncSession, code: str) -> Optional[Coupon]:
        stmt = select(Coupon).where(Coupon.code == str(code).strip())
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def redeem_tx(self, session: AsyncSession, coupon_id: int) -> bool:
        """条件递增使用次数；超过上限返回 False"""
        stmt = (
            sql_update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit)
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1
