"""透過 Gemini LLM 估計臉部範圍。"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Optional

from google.genai import types as genai_types

from hair_studio.common.errors import HairPipelineError
from hair_studio.common.models.face_boundary import FaceBoundary
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.gemini_vision import GeminiVisionService
from hair_studio.common.services.logging import log_event
from hair_studio.common.services.prompts import BOUNDARY_PROMPT

logger = logging.getLogger(__name__)

_BOUNDARY_SCHEMA = genai_types.Schema(
    type=genai_types.Type.OBJECT,
    properties={name: genai_types.Schema(type=genai_types.Type.NUMBER) for name in FaceBoundary.FIELDS},
    required=list(FaceBoundary.FIELDS),
)


class FaceBoundaryEstimator(GeminiVisionService):
    """呼叫視覺模型取得五個臉部比例值。

    任何失敗 (沒有金鑰、逾時、網路錯誤、回傳格式錯誤、缺欄位、數值不合理)
    都回傳 FaceBoundary.fallback()，不會往外拋例外。
    """

    label = "face-boundary"

    def estimate(self, photo: Photo) -> FaceBoundary:
        if self.client is None:
            return self._fallback("client_unavailable")

        try:
            text = self._call_llm(photo, BOUNDARY_PROMPT, _BOUNDARY_SCHEMA)
        except HairPipelineError as exc:
            return self._fallback(exc.kind.value, detail=exc.message)
        except Exception as exc:
            return self._fallback("llm_error", detail=f"{type(exc).__name__}: {exc}")

        parsed = self._parse_json_response(text)
        if not parsed:
            return self._fallback("unparsable", detail=str(text or "")[:120])

        boundary = self._to_boundary(parsed)
        if boundary is None:
            return self._fallback("invalid_values", detail=json.dumps(parsed, ensure_ascii=False)[:200])

        log_event("info", "face_boundary_estimated", source="model", **boundary.to_dict())
        return boundary

    # ------------------------------------------------------------------

    @staticmethod
    def _to_boundary(parsed: Dict[str, Any]) -> Optional[FaceBoundary]:
        values = {}
        for name in FaceBoundary.FIELDS:
            raw = parsed.get(name)
            if isinstance(raw, bool) or raw is None:
                return None
            try:
                value = float(raw)
            except (TypeError, ValueError):
                return None
            if not math.isfinite(value):
                return None
            values[name] = value

        # 有些回應會用百分比
        if all(1.0 < v <= 100.0 for v in values.values()):
            values = {k: v / 100.0 for k, v in values.items()}

        values = {k: min(1.0, max(0.0, v)) for k, v in values.items()}
        if values["face_left"] > values["face_right"]:
            values["face_left"], values["face_right"] = values["face_right"], values["face_left"]

        boundary = FaceBoundary(**values)
        return boundary if boundary.is_valid() else None

    @staticmethod
    def _fallback(reason: str, detail: Optional[str] = None) -> FaceBoundary:
        logger.warning("[FaceBoundaryEstimator] using fallback boundary: %s %s", reason, detail or "")
        log_event("warning", "face_boundary_fallback", reason=reason)
        return FaceBoundary.fallback()
