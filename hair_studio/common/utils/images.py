from __future__ import annotations

from io import BytesIO
from typing import Optional, Tuple

from PIL import Image

from hair_studio.common.models.photo import Photo

SUPPORTED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}

_ASPECT_RATIOS = {
    1.0: "1:1",
    4 / 5: "4:5",
    5 / 4: "5:4",
    3 / 4: "3:4",
    4 / 3: "4:3",
    2 / 3: "2:3",
    3 / 2: "3:2",
    9 / 16: "9:16",
    16 / 9: "16:9",
}


def aspect_ratio_tag(width: int, height: int) -> Optional[str]:
    """回傳最接近的 Gemini 支援長寬比字串，例如 "3:4"。"""
    if width <= 0 or height <= 0:
        return None
    r = width / height
    best = None
    best_diff = 1e9
    for val, tag in _ASPECT_RATIOS.items():
        diff = abs(r - val)
        if diff < best_diff:
            best = tag
            best_diff = diff
    return best


def aspect_ratio_differs(a: Tuple[int, int], b: Tuple[int, int], tolerance: float = 0.02) -> bool:
    if a[1] <= 0 or b[1] <= 0:
        return True
    ra = a[0] / a[1]
    rb = b[0] / b[1]
    return abs(ra - rb) / ra > tolerance


def encode_photo(photo: Photo, fmt: str = "PNG") -> Tuple[str, bytes]:
    """將照片編碼成上傳用的 (mime_type, bytes)，移除 alpha。"""
    image = photo.to_image().convert("RGB")
    buf = BytesIO()
    if fmt.upper() in ("JPEG", "JPG"):
        image.save(buf, format="JPEG", quality=95)
        return "image/jpeg", buf.getvalue()
    image.save(buf, format="PNG")
    return "image/png", buf.getvalue()


def downscale(photo: Photo, max_side: int = 640) -> Photo:
    """長邊縮到 max_side 以內；已經夠小就直接回傳原照片。"""
    w, h = photo.size
    longest = max(w, h)
    if longest <= max_side or longest == 0:
        return photo
    scale = max_side / float(longest)
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return Photo.from_image(photo.to_image().resize(size, Image.LANCZOS))
