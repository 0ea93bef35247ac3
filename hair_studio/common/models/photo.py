"""不可變的 RGBA 照片型別。"""

from __future__ import annotations

import base64
import binascii
from io import BytesIO
from typing import Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from hair_studio.common.errors import InvalidInput

register_heif_opener()

HEIF_MIME_TYPES = {
    "image/heic",
    "image/heif",
    "image/heic-sequence",
    "image/heif-sequence",
}


class Photo:
    """RGBA 點陣圖，建立後像素不可被修改。

    所有存取都回傳副本或唯讀陣列，因此同一張 Photo 可以安全地在
    多個執行緒之間共用。
    """

    __slots__ = ("_pixels",)

    def __init__(self, pixels: np.ndarray) -> None:
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"Photo expects an HxWx4 array, got shape {pixels.shape}")
        frozen = np.array(pixels, dtype=np.uint8, copy=True)
        frozen.setflags(write=False)
        self._pixels = frozen

    # ------------------------------------------------------------------
    # Constructors

    @classmethod
    def from_image(cls, image: Image.Image) -> "Photo":
        try:
            image = ImageOps.exif_transpose(image)
        except Exception:
            pass
        rgba = image.convert("RGBA")
        return cls(np.asarray(rgba, dtype=np.uint8))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Photo":
        if not data:
            raise InvalidInput("圖片內容為空，請重新拍攝或選擇檔案。")
        try:
            with Image.open(BytesIO(data)) as im:
                im.load()
                return cls.from_image(im)
        except Image.DecompressionBombError as exc:
            raise InvalidInput("圖片尺寸過大，請縮小後再上傳。") from exc
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise InvalidInput("無法辨識的圖片格式，請改用 JPG 或 PNG。") from exc

    @classmethod
    def from_data_url(cls, data_url: str) -> "Photo":
        """解析 data:image/...;base64,xxxxx 形式的圖片。"""
        if not data_url or "," not in data_url:
            raise InvalidInput("無法解析上傳的圖片資料，請重新選擇。")

        header, b64 = data_url.split(",", 1)
        try:
            raw = base64.b64decode(b64, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise InvalidInput("圖片資料解碼失敗，請改用 JPG 或 PNG 檔案。") from exc

        mime = mime_from_data_url_header(header)
        try:
            return cls.from_bytes(raw)
        except InvalidInput as exc:
            if mime in HEIF_MIME_TYPES:
                raise InvalidInput("HEIC/HEIF 照片解碼失敗，請改用 JPG 或 PNG。") from exc
            raise InvalidInput(f"上傳的圖片格式（{mime}）目前不支援，請改用 JPG 或 PNG。") from exc

    @classmethod
    def blank(cls, width: int, height: int, color: Tuple[int, int, int, int] = (0, 0, 0, 255)) -> "Photo":
        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[...] = color
        return cls(pixels)

    # ------------------------------------------------------------------
    # Accessors

    @property
    def width(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self._pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def array(self) -> np.ndarray:
        return self._pixels

    def to_image(self) -> Image.Image:
        return Image.fromarray(np.array(self._pixels))

    def to_bytes(self, fmt: str = "PNG") -> bytes:
        image = self.to_image()
        if fmt.upper() in ("JPEG", "JPG"):
            image = image.convert("RGB")
            fmt = "JPEG"
        buf = BytesIO()
        image.save(buf, format=fmt)
        return buf.getvalue()

    def to_data_url(self, fmt: str = "PNG") -> str:
        mime = "image/jpeg" if fmt.upper() in ("JPEG", "JPG") else f"image/{fmt.lower()}"
        b64 = base64.b64encode(self.to_bytes(fmt)).decode("ascii")
        return f"data:{mime};base64,{b64}"

    def resized(self, size: Tuple[int, int]) -> "Photo":
        if tuple(size) == self.size:
            return self
        return Photo.from_image(self.to_image().resize(tuple(size), Image.LANCZOS))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Photo):
            return NotImplemented
        return np.array_equal(self._pixels, other._pixels)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Photo({self.width}x{self.height})"


def mime_from_data_url_header(header: str) -> str:
    if ";" in header and ":" in header:
        return header.split(":", 1)[1].split(";", 1)[0].strip().lower() or "image/jpeg"
    return "image/jpeg"
