"""
金额工具
所有金额使用 Decimal，统一保留两位小数（ROUND_HALF_UP）
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """转换为两位小数的 Decimal；非法值抛出 ValueError"""
    if value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, ROUND_HALF_UP)


def money_equal(a: Any, b: Any) -> bool:
    """按分比较两个金额"""
    return to_money(a) == to_money(b)
