"""生成式後端的請求與結果型別。"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from hair_studio.common.errors import ErrorKind
from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.models.photo import Photo


class GenerationMode(str, Enum):
    DIRECT_EDIT = "direct_edit"
    MASK_INPAINT = "mask_inpaint"
    REFERENCE_GUIDED = "reference_guided"


@dataclass(frozen=True)
class GenerationRequest:
    source: Photo
    instruction: str
    mode: GenerationMode
    mask: Optional[HairMask] = None
    reference: Optional[Photo] = None

    def __post_init__(self) -> None:
        if self.mode is GenerationMode.MASK_INPAINT and self.mask is None:
            raise ValueError("mask_inpaint requests need a mask")
        if self.mode is GenerationMode.REFERENCE_GUIDED and self.reference is None:
            raise ValueError("reference_guided requests need a reference photo")


@dataclass(frozen=True)
class GenerationResult:
    """候選圖片或帶型別的失敗，兩者只會有一個。"""

    photo: Optional[Photo] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    backend: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.photo is None) == (self.error_kind is None):
            raise ValueError("GenerationResult must carry exactly one of photo / error_kind")

    @classmethod
    def ok(cls, photo: Photo, backend: Optional[str] = None) -> "GenerationResult":
        return cls(photo=photo, backend=backend)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, backend: Optional[str] = None) -> "GenerationResult":
        return cls(error_kind=ErrorKind(kind), message=message, backend=backend)

    @property
    def succeeded(self) -> bool:
        return self.photo is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok" if self.succeeded else "error",
            "backend": self.backend,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
        }
