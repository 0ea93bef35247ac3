"""換髮型流程共用的錯誤分類。"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    SAFETY_BLOCKED = "safety_blocked"
    INVALID_INPUT = "invalid_input"
    AUTH_ERROR = "auth_error"
    NETWORK_ERROR = "network_error"
    NO_IMAGE_RETURNED = "no_image_returned"
    DIMENSION_MISMATCH = "dimension_mismatch"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.NETWORK_ERROR)


# 給前端顯示的提示訊息
USER_HINTS = {
    ErrorKind.RATE_LIMITED: "目前請求過多，請稍後再試。",
    ErrorKind.SAFETY_BLOCKED: "照片未通過內容審查，請更換一張清楚的正面照片。",
    ErrorKind.INVALID_INPUT: "照片格式或內容無法處理，請更換照片後再試。",
    ErrorKind.AUTH_ERROR: "換髮型服務金鑰無效或額度不足，請聯絡管理者。",
    ErrorKind.NETWORK_ERROR: "網路連線不穩定，請稍後再試。",
    ErrorKind.NO_IMAGE_RETURNED: "服務未返回圖片，請調整描述或更換照片。",
    ErrorKind.DIMENSION_MISMATCH: "生成結果尺寸異常，請重新嘗試。",
    ErrorKind.UNKNOWN: "換髮型服務發生未知錯誤。",
}


class HairPipelineError(Exception):
    """帶有 ErrorKind 的例外，供流程各階段拋出。"""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None) -> None:
        self.kind = ErrorKind(kind)
        self.message = message or USER_HINTS[self.kind]
        super().__init__(f"{self.kind.value}: {self.message}")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.kind.retryable,
            "hint": USER_HINTS[self.kind],
        }


class InvalidInput(HairPipelineError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(ErrorKind.INVALID_INPUT, message)


class DimensionMismatch(HairPipelineError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(ErrorKind.DIMENSION_MISMATCH, message)


class PipelineCancelled(Exception):
    """呼叫端取消了正在執行的換髮型流程。"""
