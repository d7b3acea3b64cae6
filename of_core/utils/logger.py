# mypy: disable-error-code="no-untyped-def, assignment, var-annotated"
"""
OrderFlow 日志系统
- JSON 格式输出
- 上下文字段：ts, level, trace_id, actor_id, order_id, action, err
- PII 自动脱敏（订单备注、地址等可能包含电话和邮箱）
"""
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar

import structlog
from structlog.processors import JSONRenderer, TimeStamper, add_log_level

# Context variables for request tracking
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
actor_id_var: ContextVar[Optional[int]] = ContextVar("actor_id", default=None)
order_id_var: ContextVar[Optional[int]] = ContextVar("order_id", default=None)


class PIIMaskingProcessor:
    """PII 数据脱敏处理器"""

    # 脱敏规则
    PATTERNS = {
        # 电话号码：保留前缀和后3位
        "phone": (re.compile(r"(\+?\d{2,3}\s?\d{2,3})\d{3,6}(\d{3})"), r"\1****\2"),
        # 邮箱：保留首字母和域名
        "email": (re.compile(r"([a-zA-Z0-9])[a-zA-Z0-9._-]*@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})"), r"\1***@\2"),
        # Token/密钥
        "token": (re.compile(r"(token|key|secret|password)[\"']?\s*[:=]\s*[\"']?([^\"'\s,}]+)"), r"\1=***MASKED***"),
    }

    def __call__(self, logger, method_name, event_dict):
        """处理日志事件，脱敏 PII 数据"""
        return self._mask_dict(event_dict)

    def _mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """递归脱敏字典中的 PII 数据"""
        if not isinstance(data, dict):
            return data

        masked_data = {}
        for key, value in data.items():
            if isinstance(value, str):
                masked_data[key] = self._mask_string(value)
            elif isinstance(value, dict):
                masked_data[key] = self._mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [
                    (
                        self._mask_dict(item)
                        if isinstance(item, dict)
                        else self._mask_string(item) if isinstance(item, str) else item
                    )
                    for item in value
                ]
            else:
                masked_data[key] = value
        return masked_data

    def _mask_string(self, text: str) -> str:
        """脱敏字符串中的 PII 数据"""
        for pattern, replacement in self.PATTERNS.values():
            text = pattern.sub(replacement, text)
        return text


class OrderFlowProcessor:
    """添加 OrderFlow 上下文字段"""

    def __call__(self, logger, method_name, event_dict):
        event_dict["ts"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        if trace_id := trace_id_var.get():
            event_dict["trace_id"] = trace_id

        if actor_id := actor_id_var.get():
            event_dict.setdefault("actor_id", actor_id)

        if order_id := order_id_var.get():
            event_dict.setdefault("order_id", order_id)

        # 重命名标准字段
        if "event" in event_dict:
            event_dict["action"] = event_dict.pop("event")

        if "exception" in event_dict:
            event_dict["err"] = str(event_dict.pop("exception"))

        return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", enable_pii_masking: bool = True) -> None:
    """配置日志系统

    structlog 与标准 logging 都输出到 stdout
    """
    level = getattr(logging, log_level.upper())

    processors = [
        TimeStamper(fmt="iso"),
        add_log_level,
        OrderFlowProcessor(),
    ]

    if enable_pii_masking:
        processors.append(PIIMaskingProcessor())

    if log_format == "json":
        processors.append(JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 移除已有的 handlers，避免重复
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S"
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    of_logger = logging.getLogger("of_core")
    of_logger.setLevel(level)
    of_logger.propagate = True

    # 降低第三方库的日志级别，避免噪音
    for logger_name in ("asyncio", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取日志记录器"""
    return structlog.get_logger(name)


class LogContext:
    """日志上下文管理器，用于设置请求级别的上下文"""

    def __init__(self, trace_id: Optional[str] = None, actor_id: Optional[int] = None, order_id: Optional[int] = None):
        self.trace_id = trace_id
        self.actor_id = actor_id
        self.order_id = order_id
        self._tokens = []

    def __enter__(self):
        if self.trace_id:
            self._tokens.append(trace_id_var.set(self.trace_id))
        if self.actor_id:
            self._tokens.append(actor_id_var.set(self.actor_id))
        if self.order_id:
            self._tokens.append(order_id_var.set(self.order_id))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
