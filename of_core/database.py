"""
OrderFlow 数据库连接和会话管理
"""
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy import text, event

from of_core.config import Settings, get_settings
from of_core.utils.logger import get_logger
from of_core.models.base import Base

logger = get_logger(__name__)


def _setup_slow_query_logging(engine, threshold_ms: int):
    """为同步引擎设置慢查询监控"""
    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_times = conn.info.get("query_start_time", [])
        if start_times:
            start_time = start_times.pop()
            duration_ms = (time.perf_counter() - start_time) * 1000

            if duration_ms >= threshold_ms:
                # 截断过长的 SQL 语句
                sql = statement[:2000] + "..." if len(statement) > 2000 else statement
                sql = sql.replace("\n", " ").replace("  ", " ")
                logger.warning(
                    "Slow query",
                    duration_ms=round(duration_ms, 1),
                    sql=sql,
                )


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._async_engine: Optional[AsyncEngine] = None
        self._async_session_factory: Optional[async_sessionmaker] = None

    def create_async_engine(self) -> AsyncEngine:
        """创建异步数据库引擎"""
        if self._async_engine is None:
            if self.settings.is_sqlite:
                # SQLite 写锁等待（并发事务排队而不是立即失败）
                engine_kwargs = {"connect_args": {"timeout": 30}}
            else:
                engine_kwargs = {
                    "pool_size": self.settings.db_pool_size,
                    "max_overflow": self.settings.db_max_overflow,
                    "pool_pre_ping": True,  # 连接前检查有效性
                    "pool_recycle": 3600,   # 1小时回收连接
                }
            self._async_engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.db_echo,
                **engine_kwargs,
            )
            _setup_slow_query_logging(
                self._async_engine.sync_engine,
                self.settings.slow_query_threshold_ms
            )
            logger.info("Created async database engine", sqlite=self.settings.is_sqlite)

        return self._async_engine

    def get_async_session_factory(self) -> async_sessionmaker:
        """获取异步会话工厂"""
        if self._async_session_factory is None:
            engine = self.create_async_engine()
            self._async_session_factory = async_sessionmaker(
                engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,  # 手动控制刷新时机
            )

        return self._async_session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """获取数据库会话上下文管理器"""
        session_factory = self.get_async_session_factory()
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def get_transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """获取事务上下文管理器：正常退出提交，异常回滚"""
        session_factory = self.get_async_session_factory()
        async with session_factory() as session:
            async with session.begin():
                yield session

    async def create_tables(self) -> None:
        """创建所有表（仅用于测试和本地开发）"""
        import of_core.models  # noqa: F401

        engine = self.create_async_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Created all database tables")

    async def drop_tables(self) -> None:
        """删除所有表（仅用于测试）"""
        engine = self.create_async_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Dropped all database tables")

    async def check_connection(self) -> bool:
        """检查数据库连接"""
        try:
            engine = self.create_async_engine()
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection check passed")
            return True
        except Exception:
            logger.error("Database connection check failed", exc_info=True)
            return False

    async def close(self) -> None:
        """关闭数据库连接"""
        if self._async_engine:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
            logger.info("Closed async database engine")


# 全局数据库管理器实例
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """获取数据库管理器单例"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def set_db_manager(manager: Optional[DatabaseManager]) -> None:
    """替换全局数据库管理器（测试或多数据库场景）"""
    global _db_manager
    _db_manager = manager
