"""從參考髮型照片擷取只有頭髮的透明貼圖 (overlay 策略使用)。"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from hair_studio.common.models.face_boundary import FaceBoundary
from hair_studio.common.models.hair_mask import SOURCE_FALLBACK, HairMask
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.face_boundary_estimator import FaceBoundaryEstimator
from hair_studio.common.services.hair_mask_synthesizer import HairMaskSynthesizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedHair:
    sprite: Photo
    boundary: FaceBoundary
    mask: HairMask
    used_fallback: bool = False


class ReferenceHairExtractor:
    # 遮罩值 <= 20% 的像素視為背景，alpha 直接歸零
    LOW_MASK_CUTOFF = 51
    FALLBACK_TOP_FRACTION = 0.35
    FALLBACK_FADE_START = 0.8
    FALLBACK_FADE_END = 1.2

    def __init__(self, estimator: FaceBoundaryEstimator, synthesizer: HairMaskSynthesizer) -> None:
        self._estimator = estimator
        self._synthesizer = synthesizer

    def extract(self, reference: Photo) -> ExtractedHair:
        boundary = self._estimator.estimate(reference)
        try:
            mask = self._synthesizer.build(reference, boundary)
            sprite = self.apply_mask(reference, mask)
        except Exception as exc:
            logger.warning("[ReferenceHairExtractor] mask synthesis failed (%s: %s), using top-%d%% sprite",
                           type(exc).__name__, exc, int(self.FALLBACK_TOP_FRACTION * 100))
            return self.fallback(reference, boundary)
        return ExtractedHair(sprite=sprite, boundary=boundary, mask=mask)

    def apply_mask(self, reference: Photo, mask: HairMask) -> Photo:
        if not mask.matches(reference):
            raise ValueError("mask size does not match reference photo")
        pixels = np.array(reference.array())
        m = mask.array().astype(np.uint16)
        alpha = np.where(m <= self.LOW_MASK_CUTOFF, 0, m)
        pixels[:, :, 3] = (pixels[:, :, 3].astype(np.uint16) * alpha // 255).astype(np.uint8)
        return Photo(pixels)

    def fallback(self, reference: Photo, boundary: FaceBoundary) -> ExtractedHair:
        height = reference.height
        cutoff = height * self.FALLBACK_TOP_FRACTION
        start = cutoff * self.FALLBACK_FADE_START
        end = cutoff * self.FALLBACK_FADE_END
        ys = np.arange(height, dtype=np.float64) + 0.5
        if end > start:
            rows = np.clip((end - ys) / (end - start), 0.0, 1.0)
        else:
            rows = (ys < end).astype(np.float64)
        profile = np.rint(rows * 255).astype(np.uint8)
        mask = HairMask(np.repeat(profile[:, None], reference.width, axis=1), SOURCE_FALLBACK)

        pixels = np.array(reference.array())
        pixels[:, :, 3] = (pixels[:, :, 3].astype(np.uint16) * profile[:, None].astype(np.uint16) // 255).astype(np.uint8)
        return ExtractedHair(sprite=Photo(pixels), boundary=boundary, mask=mask, used_fallback=True)
