"""
OrderFlow Configuration Management
遵循约束：环境变量前缀 OF__
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="OF__",
        case_sensitive=False
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="orderflow")
    db_user: str = Field(default="orderflow")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=20)
    db_max_overflow: int = Field(default=40)
    db_echo: bool = Field(default=False)
    # 完整连接串（设置后覆盖 host/port/name，测试中用于 sqlite+aiosqlite）
    db_url: Optional[str] = Field(default=None)

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text
    log_pii_masking: bool = Field(default=True)
    slow_query_threshold_ms: int = Field(default=100)

    # 订单
    default_currency: str = Field(default="VND")
    order_number_prefix: str = Field(default="ORD")
    list_page_size_max: int = Field(default=200)

    # COD 订单完成前是否必须确认收款（或存在银行对账记录）
    cod_completion_requires_payment: bool = Field(default=False)

    @field_validator("order_number_prefix")
    @classmethod
    def validate_order_number_prefix(cls, v):
        """订单号前缀只允许大写字母和数字"""
        if not v or not v.isalnum() or v.upper() != v:
            raise ValueError("Order number prefix must be upper-case alphanumeric")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_default_currency(cls, v):
        """币种使用 ISO 4217 三位代码"""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter ISO 4217 code")
        return v.upper()

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def sync_database_url(self) -> str:
        """构建同步数据库连接字符串（用于 Alembic）"""
        if self.db_url:
            return self.db_url.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
