"""
OrderFlow 数据库基础模型
遵循约束：UTC 时间、Decimal 金额、统一命名规范
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import BigInteger, DateTime, Integer
from sqlalchemy.orm import DeclarativeBase

# SQLite 只有 INTEGER PRIMARY KEY 才会自增
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """当前 UTC 时间（timezone-aware）"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """SQLite 读回的时间不带时区，统一按 UTC 处理"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """数据库模型基类"""

    # 统一类型映射
    type_annotation_map = {
        datetime: DateTime(timezone=True),  # 强制使用 timezone-aware datetime
    }

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)

            # 处理特殊类型
            if isinstance(value, Decimal):
                result[column.key] = str(value)
            elif isinstance(value, datetime):
                result[column.key] = ensure_utc(value).isoformat()
            elif isinstance(value, Enum):
                result[column.key] = value.value
            else:
                result[column.key] = value

        return result
