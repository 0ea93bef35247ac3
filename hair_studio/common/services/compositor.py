"""將生成結果與原圖合成，保證受保護區域像素不變。"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
from PIL import Image

from hair_studio.common.errors import DimensionMismatch
from hair_studio.common.models.face_boundary import FaceBoundary
from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.models.photo import Photo
from hair_studio.common.utils.images import aspect_ratio_differs

logger = logging.getLogger(__name__)


class IdentityCompositor:
    """依遮罩逐像素混合原圖與候選圖。

    alpha = mask / 255
    - alpha <= 0.2：直接使用原圖像素 (位元完全相同)
    - alpha >= 0.8：直接使用候選圖像素
    - 其他：線性混合後四捨五入
    """

    # 以整數比較避免浮點誤差：m/255 <= 1/5  <=>  5m <= 255
    PROTECT_NUMERATOR = 1
    REPLACE_NUMERATOR = 4
    DENOMINATOR = 5

    OVERLAY_SCALE_BOOST = 1.1

    def composite(self, original: Photo, candidate: Photo, mask: HairMask) -> Photo:
        if not mask.matches(original):
            raise DimensionMismatch(
                f"mask {mask.width}x{mask.height} does not match photo {original.width}x{original.height}"
            )
        if candidate.width == 0 or candidate.height == 0:
            raise DimensionMismatch("candidate image is empty")
        if original.width == 0 or original.height == 0:
            return original

        if candidate.size != original.size:
            if aspect_ratio_differs(candidate.size, original.size):
                logger.warning(
                    "[IdentityCompositor] candidate aspect %sx%s differs from original %sx%s, resampling anyway",
                    candidate.width, candidate.height, original.width, original.height,
                )
            candidate = candidate.resized(original.size)

        m = mask.array().astype(np.int32)
        protect = m * self.DENOMINATOR <= 255 * self.PROTECT_NUMERATOR
        replace = m * self.DENOMINATOR >= 255 * self.REPLACE_NUMERATOR

        orig = original.array().astype(np.float64)
        cand = candidate.array().astype(np.float64)
        alpha = (m.astype(np.float64) / 255.0)[:, :, None]
        blended = np.rint(orig * (1.0 - alpha) + cand * alpha)

        out = np.where(protect[:, :, None], original.array(), np.clip(blended, 0, 255).astype(np.uint8))
        out = np.where(replace[:, :, None], candidate.array(), out)
        return Photo(out)

    def overlay(
        self,
        original: Photo,
        sprite: Photo,
        sprite_boundary: FaceBoundary,
        user_boundary: FaceBoundary,
        mask: HairMask,
    ) -> Photo:
        """把參考照片的髮型貼圖對齊到使用者額頭，再透過遮罩合成。"""
        scale = self.overlay_scale(original, sprite, sprite_boundary, user_boundary)
        target_w = max(1, int(round(sprite.width * scale)))
        target_h = max(1, int(round(sprite.height * scale)))
        dest = self.overlay_offset(original, sprite, sprite_boundary, user_boundary, scale)

        scaled = sprite.to_image().resize((target_w, target_h), Image.LANCZOS)
        layer = Image.new("RGBA", original.size, (0, 0, 0, 0))
        layer.paste(scaled, dest, scaled)
        candidate = Photo.from_image(Image.alpha_composite(original.to_image(), layer))
        return self.composite(original, candidate, mask)

    def overlay_scale(
        self,
        original: Photo,
        sprite: Photo,
        sprite_boundary: FaceBoundary,
        user_boundary: FaceBoundary,
    ) -> float:
        user_face_px = user_boundary.face_width * original.width
        ref_face_px = sprite_boundary.face_width * sprite.width
        if ref_face_px <= 0 or user_face_px <= 0:
            if sprite.width == 0:
                return 1.0
            return original.width / float(sprite.width)
        return user_face_px / ref_face_px * self.OVERLAY_SCALE_BOOST

    @staticmethod
    def overlay_offset(
        original: Photo,
        sprite: Photo,
        sprite_boundary: FaceBoundary,
        user_boundary: FaceBoundary,
        scale: float,
    ) -> Tuple[int, int]:
        # 對齊臉部中心 x 與額頭線 y
        user_cx = user_boundary.center_x * original.width
        user_forehead = user_boundary.forehead_top * original.height
        ref_cx = sprite_boundary.center_x * sprite.width * scale
        ref_forehead = sprite_boundary.forehead_top * sprite.height * scale
        return int(round(user_cx - ref_cx)), int(round(user_forehead - ref_forehead))
