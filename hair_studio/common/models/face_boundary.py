from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Tuple


@dataclass(frozen=True)
class FaceBoundary:
    """以 0~1 比例表示的臉部範圍。

    forehead_top: 髮際線 (額頭上緣) 的 y
    eye_level:    雙眼的 y
    face_left / face_right: 臉頰左右兩側的 x
    chin_bottom:  下巴的 y

    型別本身不做驗證，讓下游元件也能面對退化的輸入；
    估計器永遠只會輸出 is_valid() 為 True 的值。
    """

    forehead_top: float
    eye_level: float
    face_left: float
    face_right: float
    chin_bottom: float

    FIELDS = ("forehead_top", "eye_level", "face_left", "face_right", "chin_bottom")

    @classmethod
    def fallback(cls) -> "FaceBoundary":
        return cls(
            forehead_top=0.25,
            eye_level=0.35,
            face_left=0.30,
            face_right=0.70,
            chin_bottom=0.70,
        )

    @property
    def face_width(self) -> float:
        return self.face_right - self.face_left

    @property
    def face_height(self) -> float:
        return self.chin_bottom - self.forehead_top

    @property
    def center_x(self) -> float:
        return (self.face_left + self.face_right) / 2.0

    def values(self) -> Tuple[float, ...]:
        return tuple(getattr(self, name) for name in self.FIELDS)

    def is_finite(self) -> bool:
        return all(isinstance(v, (int, float)) and math.isfinite(v) for v in self.values())

    def is_valid(self) -> bool:
        if not self.is_finite():
            return False
        if any(v < 0.0 or v > 1.0 for v in self.values()):
            return False
        return self.face_left < self.face_right and self.forehead_top < self.eye_level < self.chin_bottom

    def to_pixels(self, width: int, height: int) -> Dict[str, int]:
        return {
            "forehead_top": int(round(self.forehead_top * height)),
            "eye_level": int(round(self.eye_level * height)),
            "face_left": int(round(self.face_left * width)),
            "face_right": int(round(self.face_right * width)),
            "chin_bottom": int(round(self.chin_bottom * height)),
        }

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FaceBoundary":
        return cls(**{name: float(data[name]) for name in cls.FIELDS})
