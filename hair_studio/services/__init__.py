"""呼叫端 (HTTP 層) 使用的服務模組入口。"""

from .photo_service import PhotoService
from .transform_service import TransformService

__all__ = [
    "PhotoService",
    "TransformService",
]
