"""從參考照片讀出髮型名稱、捲度、髮量與顏色。"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Optional

from google.genai import types as genai_types

from hair_studio.common.errors import HairPipelineError
from hair_studio.common.models.photo import Photo
from hair_studio.common.models.style import VOLUMES, StyleDescriptor
from hair_studio.common.services.gemini_vision import GeminiVisionService
from hair_studio.common.services.logging import log_event
from hair_studio.common.services.prompts import REFERENCE_STYLE_PROMPT

logger = logging.getLogger(__name__)

TEXTURES = ("straight", "wavy", "curly", "permed")
LENGTHS = ("short", "medium", "long")

_STYLE_KEYS = ("style_name", "description", "length", "texture", "volume", "color")
_STYLE_SCHEMA = genai_types.Schema(
    type=genai_types.Type.OBJECT,
    properties={name: genai_types.Schema(type=genai_types.Type.STRING) for name in _STYLE_KEYS},
    required=["style_name", "description"],
)


class ReferenceStyleAnalyzer(GeminiVisionService):
    """使用者只給參考照片、沒有文字描述時，用視覺模型補上描述。

    分析失敗只記錄警告，不影響換髮型流程。
    """

    label = "reference-style"

    def analyze(self, reference: Photo) -> Optional[Dict[str, str]]:
        if self.client is None:
            return None
        try:
            text = self._call_llm(reference, REFERENCE_STYLE_PROMPT, _STYLE_SCHEMA)
        except HairPipelineError as exc:
            return self._skip(exc.kind.value, exc.message)
        except Exception as exc:
            return self._skip("llm_error", f"{type(exc).__name__}: {exc}")

        parsed = self._parse_json_response(text)
        if not parsed:
            return self._skip("unparsable", str(text or "")[:120])
        analysis = self._normalize(parsed)
        if not analysis.get("description") and not analysis.get("style_name"):
            return self._skip("empty", None)
        log_event("info", "reference_style_analyzed", **analysis)
        return analysis

    def enrich(self, style: StyleDescriptor) -> StyleDescriptor:
        """只在沒有名稱也沒有描述時補齊；使用者填過的欄位一律保留。"""
        if style.reference_photo is None or style.description or style.name:
            return style
        analysis = self.analyze(style.reference_photo)
        if not analysis:
            return style

        description = analysis.get("description") or ""
        if analysis.get("length"):
            description = f"{description} ({analysis['length']} length)" if description else f"{analysis['length']} length hair"
        volume = style.volume
        if volume == "natural" and analysis.get("volume") in VOLUMES:
            volume = analysis["volume"]
        return dataclasses.replace(
            style,
            name=analysis.get("style_name") or None,
            description=description,
            texture=style.texture or analysis.get("texture") or None,
            volume=volume,
            color=style.color or analysis.get("color") or None,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _normalize(parsed: Dict[str, Any]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key in _STYLE_KEYS:
            raw = parsed.get(key)
            if isinstance(raw, str) and raw.strip():
                out[key] = raw.strip()
        for key, allowed in (("texture", TEXTURES), ("length", LENGTHS), ("volume", VOLUMES)):
            if key in out:
                value = out[key].lower()
                if value in allowed:
                    out[key] = value
                else:
                    del out[key]
        return out

    @staticmethod
    def _skip(reason: str, detail: Optional[str]) -> None:
        logger.warning("[ReferenceStyleAnalyzer] skipped: %s %s", reason, detail or "")
        log_event("warning", "reference_style_skipped", reason=reason)
        return None
