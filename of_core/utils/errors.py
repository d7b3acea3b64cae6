"""
OrderFlow 错误处理系统
遵循 RFC7807 Problem Details 标准
"""
from typing import Any, Dict, Optional
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Invalid Transition",
                "status": 409,
                "detail": "Order ORD-1700000000000-ABCDEFGHI cannot cancel from status confirmed",
                "code": "ORDER_INVALID_TRANSITION"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class OrderFlowException(Exception):
    """OrderFlow 基础异常类"""

    kind = "error"

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **self.extra
        )

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        """转换为 JSON 响应"""
        instance = str(request.url) if request else None
        problem = self.to_problem_detail(instance)

        return JSONResponse(
            status_code=self.status,
            content={
                "ok": False,
                "error": problem.model_dump(mode="json", exclude_none=True)
            }
        )


class NotFoundError(OrderFlowException):
    """404 未找到"""
    kind = "not_found"

    def __init__(self, code: str, resource: str):
        super().__init__(
            status=404,
            code=code,
            title="Not Found",
            detail=f"{resource} not found"
        )


class ConflictError(OrderFlowException):
    """409 冲突"""
    kind = "conflict"

    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=409,
            code=code,
            title="Conflict",
            detail=detail,
            **kwargs
        )


class InvalidTransitionError(ConflictError):
    """409 状态前置条件不满足"""
    kind = "invalid_transition"

    def __init__(
        self,
        detail: str,
        code: str = "INVALID_TRANSITION",
        current_status: Optional[str] = None,
        action: Optional[str] = None
    ):
        super().__init__(code=code, detail=detail, current_status=current_status, action=action)
        self.title = "Invalid Transition"
        self.current_status = current_status
        self.action = action


class InsufficientStockError(ConflictError):
    """409 库存不足"""
    kind = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        detail = f"Insufficient stock for product {product_id}: requested {requested}"
        if available is not None:
            detail += f", available {available}"
        super().__init__(
            code="INSUFFICIENT_STOCK",
            detail=detail,
            product_id=product_id,
            requested=requested,
            available=available
        )
        self.title = "Insufficient Stock"
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ValidationError(OrderFlowException):
    """422 验证失败"""
    kind = "validation_error"

    def __init__(self, code: str, detail: str):
        super().__init__(
            status=422,
            code=code,
            title="Validation Failed",
            detail=detail
        )


class CouponInvalidError(OrderFlowException):
    """422 优惠券不可用（过期、停用、未达最低消费等）"""
    kind = "coupon_invalid"

    def __init__(self, code: str, reason: str, detail: str):
        super().__init__(
            status=422,
            code=code,
            title="Coupon Invalid",
            detail=detail,
            reason=reason
        )
        self.reason = reason


class InternalServerError(OrderFlowException):
    """500 内部错误"""
    kind = "internal_error"

    def __init__(self, code: str = "INTERNAL_ERROR", detail: str = "An internal error occurred"):
        super().__init__(
            status=500,
            code=code,
            title="Internal Server Error",
            detail=detail
        )


def problem_metadata(exc: OrderFlowException) -> Dict[str, Any]:
    """提取异常附加字段（去掉空值）"""
    return {k: v for k, v in exc.extra.items() if v is not None}
