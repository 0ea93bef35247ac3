"""依臉部範圍產生髮型遮罩。

遮罩由兩個區塊組成：
- 頭頂區：以臉部中心為準、寬度約 1.8 倍臉寬的矩形，從影像頂端延伸到額頭線，
  並在額頭線上下做線性漸層 (feather)。
- 兩側區：臉頰左右各 0.4 倍臉寬的矩形，從影像頂端延伸到眼睛高度。

臉部本身永遠不在遮罩內，合成時會保留原圖像素。
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np

from hair_studio.common.models.face_boundary import FaceBoundary
from hair_studio.common.models.hair_mask import SOURCE_BOUNDARY, SOURCE_FALLBACK, HairMask
from hair_studio.common.models.photo import Photo

logger = logging.getLogger(__name__)

MAX_VALUE = 255


class HairMaskSynthesizer:
    TOP_WIDTH_RATIO = 1.8
    SIDE_WIDTH_RATIO = 0.4
    FEATHER_FRACTION = 0.04
    MIN_FEATHER_PX = 2
    MIN_FACE_WIDTH = 0.10
    FALLBACK_TOP_FRACTION = 0.35

    def synthesize(self, photo: Photo, boundary: Optional[FaceBoundary]) -> HairMask:
        """產生與 photo 同尺寸的遮罩；任何失敗都改用頂部比例遮罩。"""
        if boundary is None or not boundary.is_finite():
            logger.info("[HairMaskSynthesizer] no usable boundary, using fallback mask")
            return self.fallback(photo)
        try:
            return self.build(photo, boundary)
        except Exception as exc:
            logger.warning("[HairMaskSynthesizer] synthesis failed (%s: %s), using fallback mask", type(exc).__name__, exc)
            return self.fallback(photo)

    def build(self, photo: Photo, boundary: FaceBoundary) -> HairMask:
        """不含 fallback 的遮罩計算，失敗時直接拋出例外。"""
        width, height = photo.size
        if not boundary.is_finite():
            raise ValueError("boundary contains non-finite values")
        b = self.sanitize(boundary)

        band = self.feather_height(height)
        face_w = b.face_width * width
        center_x = b.center_x * width
        left_x = b.face_left * width
        right_x = b.face_right * width
        forehead_y = b.forehead_top * height
        eye_y = b.eye_level * height

        xs = np.arange(width, dtype=np.float64) + 0.5
        ys = np.arange(height, dtype=np.float64) + 0.5

        half_top = face_w * self.TOP_WIDTH_RATIO / 2.0
        top_cols = (xs >= center_x - half_top) & (xs < center_x + half_top)
        top_rows = _ramp(ys, forehead_y - band / 2.0, forehead_y + band / 2.0)

        side_w = face_w * self.SIDE_WIDTH_RATIO
        side_cols = ((xs >= left_x - side_w) & (xs < left_x)) | ((xs >= right_x) & (xs < right_x + side_w))
        side_rows = _ramp(ys, eye_y - band, eye_y)

        values = np.maximum(
            np.outer(top_rows, top_cols.astype(np.float64)),
            np.outer(side_rows, side_cols.astype(np.float64)),
        )
        return HairMask(np.rint(values * MAX_VALUE).astype(np.uint8), SOURCE_BOUNDARY)

    def fallback(self, photo: Photo) -> HairMask:
        """沒有臉部資訊時：整個寬度的頂部 35% 視為頭髮。"""
        width, height = photo.size
        cutoff = height * self.FALLBACK_TOP_FRACTION
        band = self.feather_height(height)
        ys = np.arange(height, dtype=np.float64) + 0.5
        rows = _ramp(ys, cutoff - band / 2.0, cutoff + band / 2.0)
        values = np.repeat(rows[:, None], width, axis=1)
        return HairMask(np.rint(values * MAX_VALUE).astype(np.uint8), SOURCE_FALLBACK)

    def feather_height(self, height: int) -> float:
        return float(max(self.MIN_FEATHER_PX, round(height * self.FEATHER_FRACTION)))

    def sanitize(self, boundary: FaceBoundary) -> FaceBoundary:
        """夾到 [0,1]，並把過窄或左右顛倒的臉寬撐開到最小寬度。"""
        forehead, eye, left, right, chin = (_clamp01(v) for v in boundary.values())

        if right - left <= self.MIN_FACE_WIDTH:
            center = _clamp01((left + right) / 2.0)
            left, right = _centered_span(center, self.MIN_FACE_WIDTH)

        if eye < forehead:
            eye = forehead
        if chin < eye:
            chin = eye
        return FaceBoundary(
            forehead_top=forehead,
            eye_level=eye,
            face_left=left,
            face_right=right,
            chin_bottom=chin,
        )


def _ramp(positions: np.ndarray, start: float, end: float) -> np.ndarray:
    """start 之前為 1，end 之後為 0，中間線性遞減。"""
    if end <= start:
        return (positions < end).astype(np.float64)
    return np.clip((end - positions) / (end - start), 0.0, 1.0)


def _clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def _centered_span(center: float, span: float) -> Tuple[float, float]:
    left = center - span / 2.0
    right = center + span / 2.0
    if left < 0.0:
        left, right = 0.0, span
    elif right > 1.0:
        left, right = 1.0 - span, 1.0
    return left, right
