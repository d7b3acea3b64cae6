"""
优惠券校验测试
"""
from datetime import timedelta
from decimal import Decimal

from of_core.models import Coupon
from of_core.models.base import utcnow
from of_core.services.coupons import CouponRejectReason, compute_discount, evaluate_coupon


def _coupon(**fields):
    now = utcnow()
    data = {
        "id": 1,
        "code": "SAVE10",
        "discount_percent": Decimal("10"),
        "discount_amount": None,
        "min_cart_value": None,
        "start_date": now - timedelta(days=1),
        "end_date": now + timedelta(days=1),
        "is_active": True,
        "usage_limit": None,
        "used_count": 0,
    }
    data.update(fields)
    return Coupon(**data)


def test_unknown_coupon_is_not_found():
    check = evaluate_coupon(None, "100000")
    assert not check.valid
    assert check.reason == CouponRejectReason.NOT_FOUND
    assert check.discount_amount == Decimal("0")


def test_expired_yesterday_is_rejected():
    coupon = _coupon(end_date=utcnow() - timedelta(days=1), start_date=utcnow() - timedelta(days=30))
    check = evaluate_coupon(coupon, "100000")
    assert not check.valid
    assert check.reason == CouponRejectReason.EXPIRED


def test_not_started_is_rejected():
    coupon = _coupon(start_date=utcnow() + timedelta(hours=1))
    assert evaluate_coupon(coupon, "100000").reason == CouponRejectReason.NOT_STARTED


def test_inactive_is_rejected():
    assert evaluate_coupon(_coupon(is_active=False), "100000").reason == CouponRejectReason.INACTIVE


def test_usage_exhausted_is_rejected():
    coupon = _coupon(usage_limit=3, used_count=3)
    assert evaluate_coupon(coupon, "100000").reason == CouponRejectReason.USAGE_EXHAUSTED


def test_minimum_cart_value():
    coupon = _coupon(min_cart_value=Decimal("500000"))

    below = evaluate_coupon(coupon, "400000")
    assert not below.valid
    assert below.reason == CouponRejectReason.BELOW_MINIMUM

    above = evaluate_coupon(coupon, "600000")
    assert above.valid
    assert above.discount_amount == Decimal("60000.00")


def test_percent_takes_precedence_over_flat_amount():
    coupon = _coupon(discount_percent=Decimal("10"), discount_amount=Decimal("99999"))
    assert compute_discount(coupon, Decimal("130000")) == Decimal("13000.00")


def test_flat_amount_is_capped_at_cart_value():
    coupon = _coupon(discount_percent=None, discount_amount=Decimal("80000"))
    assert compute_discount(coupon, Decimal("50000")) == Decimal("50000.00")


def test_percent_discount_rounds_half_up():
    coupon = _coupon(discount_percent=Decimal("12.5"))
    assert compute_discount(coupon, Decimal("0.20")) == Decimal("0.03")


def test_window_uses_supplied_clock():
    now = utcnow()
    coupon = _coupon(start_date=now, end_date=now + timedelta(days=1))
    assert evaluate_coupon(coupon, "1000", now=now - timedelta(seconds=1)).reason == CouponRejectReason.NOT_STARTED
    assert evaluate_coupon(coupon, "1000", now=now + timedelta(days=2)).reason == CouponRejectReason.EXPIRED
    assert evaluate_coupon(coupon, "1000", now=now + timedelta(hours=1)).valid


async def test_validator_reads_coupon_without_side_effects(coupons, make_coupon, db_session):
    coupon_id = await make_coupon(code="WELCOME", usage_limit=5)

    result = await coupons.validate("WELCOME", "200000")

    assert result.success
    assert result.data.valid
    assert result.data.coupon_id == coupon_id
    assert result.data.discount_amount == Decimal("20000.00")

    stored = await db_session.get(Coupon, coupon_id)
    assert stored.used_count == 0


async def test_validator_reports_unknown_code_as_rejection(coupons, db_manager):
    result = await coupons.validate("NOPE", "200000")
    assert result.success
    assert not result.data.valid
    assert result.data.reason == CouponRejectReason.NOT_FOUND


async def test_validator_rejects_blank_code(coupons, db_manager):
    result = await coupons.validate("  ", "200000")
    assert not result.success
    assert result.error_kind == "validation_error"
