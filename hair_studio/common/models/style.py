"""使用者指定的目標髮型描述。"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.models.photo import Photo

VOLUMES = ("flat", "natural", "voluminous")
PARTINGS = ("left", "center", "right", "none")


class HairStrategy(str, Enum):
    AUTO = "auto"
    INPAINT = "inpaint"
    DIRECT = "direct"
    OVERLAY = "overlay"

    @classmethod
    def parse(cls, value: Any, default: Optional["HairStrategy"] = None) -> "HairStrategy":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return default or cls.AUTO


@dataclass(frozen=True)
class StyleDescriptor:
    description: str = ""
    name: Optional[str] = None
    color: Optional[str] = None
    volume: str = "natural"
    parting: str = "none"
    texture: Optional[str] = None
    reference_photo: Optional[Photo] = None
    strategy: Optional[HairStrategy] = None
    confirmed_mask: Optional[HairMask] = None

    def __post_init__(self) -> None:
        if self.volume not in VOLUMES:
            raise ValueError(f"volume must be one of {VOLUMES}, got {self.volume!r}")
        if self.parting not in PARTINGS:
            raise ValueError(f"parting must be one of {PARTINGS}, got {self.parting!r}")
        if not (self.description or self.name or self.reference_photo is not None):
            raise ValueError("style needs a description, a style name or a reference photo")

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        reference_photo: Optional[Photo] = None,
        confirmed_mask: Optional[HairMask] = None,
    ) -> "StyleDescriptor":
        strategy = data.get("strategy")
        return cls(
            description=str(data.get("description") or "").strip(),
            name=(str(data["name"]).strip() or None) if data.get("name") else None,
            color=(str(data["color"]).strip() or None) if data.get("color") else None,
            volume=str(data.get("volume") or "natural").strip().lower(),
            parting=str(data.get("parting") or "none").strip().lower(),
            texture=(str(data["texture"]).strip() or None) if data.get("texture") else None,
            reference_photo=reference_photo,
            strategy=HairStrategy.parse(strategy) if strategy else None,
            confirmed_mask=confirmed_mask,
        )
