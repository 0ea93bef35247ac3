"""單通道髮型遮罩：255 代表可重新生成，0 代表必須保留原圖。"""

from __future__ import annotations

import base64
from io import BytesIO
from typing import Tuple

import numpy as np
from PIL import Image

from hair_studio.common.models.photo import Photo

SOURCE_BOUNDARY = "boundary"
SOURCE_FALLBACK = "fallback"
SOURCE_CONFIRMED = "confirmed"

CONVENTION_LUMINANCE = "luminance"
CONVENTION_ALPHA = "alpha"
CONVENTION_TRANSPARENT = "transparent"
MASK_CONVENTIONS = (CONVENTION_LUMINANCE, CONVENTION_ALPHA, CONVENTION_TRANSPARENT)


class HairMask:
    __slots__ = ("_values", "source")

    def __init__(self, values: np.ndarray, source: str = SOURCE_BOUNDARY) -> None:
        if values.ndim != 2:
            raise ValueError(f"HairMask expects a 2-D array, got shape {values.shape}")
        frozen = np.array(values, dtype=np.uint8, copy=True)
        frozen.setflags(write=False)
        self._values = frozen
        self.source = source

    @classmethod
    def from_array(cls, values, source: str = SOURCE_BOUNDARY) -> "HairMask":
        """從任意數值陣列建立遮罩，超出 0~255 的值一律拒絕。"""
        arr = np.asarray(values)
        if arr.ndim != 2:
            raise ValueError(f"HairMask expects a 2-D array, got shape {arr.shape}")
        if arr.size:
            if np.issubdtype(arr.dtype, np.floating) and not np.all(np.isfinite(arr)):
                raise ValueError("HairMask values must be finite")
            lo, hi = arr.min(), arr.max()
            if lo < 0 or hi > 255:
                raise ValueError(f"HairMask values must be within [0, 255], got [{lo}, {hi}]")
        return cls(np.rint(arr).astype(np.uint8) if np.issubdtype(arr.dtype, np.floating) else arr.astype(np.uint8), source)

    @classmethod
    def from_image(
        cls,
        image: Image.Image,
        source: str = SOURCE_CONFIRMED,
        convention: str = CONVENTION_LUMINANCE,
    ) -> "HairMask":
        """依 convention 讀取遮罩影像：

        - luminance：灰階亮度，白色 = 可重新生成 (預設，與 to_png_bytes() 相同)
        - alpha：不透明 = 可重新生成
        - transparent：透明 = 可重新生成 (OpenAI images/edits 的遮罩格式)
        """
        if convention not in MASK_CONVENTIONS:
            raise ValueError(f"unknown mask convention {convention!r}, expected one of {MASK_CONVENTIONS}")
        if convention == CONVENTION_LUMINANCE:
            return cls(np.asarray(image.convert("L")), source)
        alpha = np.asarray(image.convert("RGBA").getchannel("A"))
        if convention == CONVENTION_TRANSPARENT:
            alpha = 255 - alpha
        return cls(alpha, source)

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        source: str = SOURCE_CONFIRMED,
        convention: str = CONVENTION_LUMINANCE,
    ) -> "HairMask":
        with Image.open(BytesIO(data)) as im:
            im.load()
            return cls.from_image(im, source, convention)

    @classmethod
    def from_data_url(
        cls,
        data_url: str,
        source: str = SOURCE_CONFIRMED,
        convention: str = CONVENTION_LUMINANCE,
    ) -> "HairMask":
        if not data_url or "," not in data_url:
            raise ValueError("無法解析遮罩資料。")
        _header, b64 = data_url.split(",", 1)
        return cls.from_bytes(base64.b64decode(b64), source, convention)

    @property
    def width(self) -> int:
        return int(self._values.shape[1])

    @property
    def height(self) -> int:
        return int(self._values.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def array(self) -> np.ndarray:
        return self._values

    def value_at(self, x: int, y: int) -> int:
        return int(self._values[y, x])

    def matches(self, photo: Photo) -> bool:
        return self.size == photo.size

    def coverage(self) -> float:
        """可重新生成區域所佔比例 (以 255 加權)。"""
        if not self._values.size:
            return 0.0
        return float(self._values.mean() / 255.0)

    def resized(self, size: Tuple[int, int]) -> "HairMask":
        if tuple(size) == self.size:
            return self
        image = Image.fromarray(np.array(self._values)).resize(tuple(size), Image.BILINEAR)
        return HairMask(np.asarray(image), self.source)

    def inverted(self) -> "HairMask":
        return HairMask(255 - self._values, self.source)

    def to_image(self) -> Image.Image:
        return Image.fromarray(np.array(self._values))

    def to_png_bytes(self) -> bytes:
        buf = BytesIO()
        self.to_image().save(buf, format="PNG")
        return buf.getvalue()

    def to_data_url(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.to_png_bytes()).decode("ascii")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HairMask):
            return NotImplemented
        return np.array_equal(self._values, other._values)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"HairMask({self.width}x{self.height}, source={self.source})"
