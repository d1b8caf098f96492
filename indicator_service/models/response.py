"""统一 API 响应模型"""

from typing import Any, Optional

from pydantic import BaseModel


class ApiResponse(BaseModel):
    """标准 API 响应封装：{success, data, message, error}"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)

    @classmethod
    def not_found(cls, key: str) -> "ApiResponse":
        """前端据此显示“找不到指标数据”"""
        return cls(success=False, error="indicator not found", message=f"未知指标: {key}")
