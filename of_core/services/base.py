"""
基础服务类
每个写操作在一个事务（工作单元）中执行；类型化异常在服务边界转换为 ServiceResult
"""
from typing import TypeVar, Generic, Optional, Dict, Any, List
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from of_core.utils.logger import get_logger
from of_core.utils.errors import (
    OrderFlowException, InternalServerError, ValidationError, problem_metadata
)
from of_core.database import DatabaseManager, get_db_manager

T = TypeVar('T')

logger = get_logger(__name__)


@dataclass
class ServiceResult(Generic[T]):
    """服务执行结果"""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_kind: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ServiceResult[T]":
        """成功结果"""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def error(
        cls,
        error: str,
        error_code: Optional[str] = None,
        error_kind: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> "ServiceResult[T]":
        """失败结果"""
        return cls(success=False, error=error, error_code=error_code, error_kind=error_kind, metadata=metadata)

    @classmethod
    def from_exception(cls, exc: OrderFlowException) -> "ServiceResult[T]":
        """由类型化异常生成失败结果"""
        return cls.error(
            error=exc.detail or exc.title,
            error_code=exc.code,
            error_kind=exc.kind,
            metadata=problem_metadata(exc) or None
        )


class BaseService:
    """基础服务类"""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_db_manager()
        self.logger = get_logger(self.__class__.__name__)

    async def execute_with_transaction(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """在事务中执行操作：成功提交，任何异常整体回滚"""
        try:
            async with self.db_manager.get_transaction() as session:
                return await operation(session, *args, **kwargs)
        except OrderFlowException:
            raise
        except Exception as e:
            self.logger.error("Transaction operation failed", exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail=f"Database transaction failed: {str(e)}"
            )

    async def execute_with_session(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """使用数据库会话执行只读操作"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except OrderFlowException:
            raise
        except Exception as e:
            self.logger.error("Session operation failed", exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail=f"Database operation failed: {str(e)}"
            )

    def fail(self, exc: OrderFlowException, action: str, **context) -> ServiceResult:
        """记录并转换失败结果"""
        if isinstance(exc, InternalServerError):
            self.logger.error(f"{action} failed", code=exc.code, detail=exc.detail, **context)
        else:
            self.logger.warning(f"{action} rejected", code=exc.code, kind=exc.kind, detail=exc.detail, **context)
        return ServiceResult.from_exception(exc)

    def validate_required_fields(self, data: Dict[str, Any], required_fields: List[str]) -> None:
        """验证必填字段"""
        missing_fields = []
        for field in required_fields:
            if field not in data or data[field] is None:
                missing_fields.append(field)

        if missing_fields:
            raise ValidationError(
                code="MISSING_REQUIRED_FIELDS",
                detail=f"Missing required fields: {', '.join(missing_fields)}"
            )


class RepositoryMixin:
    """仓储混入类 - 提供常用的数据库操作"""

    async def get_by_id(
        self,
        session: AsyncSession,
        model_class,
        record_id: int,
        for_update: bool = False
    ) -> Optional[Any]:
        """根据ID获取记录（可加行锁）"""
        stmt = select(model_class).where(model_class.id == record_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_field(
        self,
        session: AsyncSession,
        model_class,
        field_name: str,
        field_value: Any
    ) -> Optional[Any]:
        """根据字段获取记录"""
        stmt = select(model_class).where(getattr(model_class, field_name) == field_value)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many_by_field(
        self,
        session: AsyncSession,
        model_class,
        field_name: str,
        field_value: Any,
        limit: Optional[int] = None,
        offset: Optional[int] = None
    ) -> List[Any]:
        """根据字段获取多个记录（按ID升序）"""
        stmt = (
            select(model_class)
            .where(getattr(model_class, field_name) == field_value)
            .order_by(model_class.id)
        )

        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)

        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        session: AsyncSession,
        model_class,
        data: Dict[str, Any]
    ) -> Any:
        """创建记录"""
        instance = model_class(**data)
        session.add(instance)
        await session.flush()  # 获取生成的ID
        return instance

    async def exists(
        self,
        session: AsyncSession,
        model_class,
        **filters
    ) -> bool:
        """检查记录是否存在"""
        stmt = select(model_class.id)
        for field, value in filters.items():
            stmt = stmt.where(getattr(model_class, field) == value)

        stmt = stmt.limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None
