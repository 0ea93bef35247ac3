"""Gemini 影像生成後端 (google-genai)。"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from hair_studio.common.errors import ErrorKind, HairPipelineError
from hair_studio.common.models.generation import GenerationMode, GenerationRequest
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.backends.base import GenerativeBackend, error_kind_for_status
from hair_studio.common.services.logging import mask_secret
from hair_studio.common.utils.images import aspect_ratio_tag, encode_photo
from hair_studio.common.utils.timeouts import CancelToken

# finish_reason / block_reason 中代表內容被擋下的值
BLOCKING_FINISH_REASONS = {
    "SAFETY",
    "PROHIBITED_CONTENT",
    "IMAGE_SAFETY",
    "IMAGE_PROHIBITED_CONTENT",
    "BLOCKLIST",
    "SPII",
    "RECITATION",
}

_THRESHOLDS = ("BLOCK_NONE", "BLOCK_ONLY_HIGH", "BLOCK_MEDIUM_AND_ABOVE", "BLOCK_LOW_AND_ABOVE")


def _enum_name(value: Any) -> str:
    if value is None:
        return ""
    name = getattr(value, "name", None)
    if isinstance(name, str):
        return name.upper()
    return str(value).split(".")[-1].upper()


class GeminiHairBackend(GenerativeBackend):
    """
    Gemini API 換髮型後端：
    - direct_edit：只送原圖與文字指示
    - mask_inpaint：額外附上黑白遮罩 (白色 = 可重新生成)
    - reference_guided：額外附上參考髮型照片
    """

    name = "gemini"
    supported_modes = frozenset(
        {GenerationMode.DIRECT_EDIT, GenerationMode.MASK_INPAINT, GenerationMode.REFERENCE_GUIDED}
    )

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-flash-image",
        safety_level: str = "BLOCK_ONLY_HIGH",
        timeout_s: float = 120.0,
        client: Optional[Any] = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.model = model
        self.safety_level = safety_level if safety_level in _THRESHOLDS else "BLOCK_ONLY_HIGH"
        self.client = client
        if self.client is None and api_key:
            try:
                self.client = genai.Client(api_key=api_key)
                print(f"[GeminiHairBackend] Client initialized successfully with API key: {mask_secret(api_key)}")
            except Exception as e:
                print(f"[GeminiHairBackend] Failed to initialize Gemini client: {type(e).__name__}: {e}")
                self.client = None

    @classmethod
    def from_config(cls, config) -> "GeminiHairBackend":
        return cls(
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            safety_level=config.gemini_safety_level,
            timeout_s=config.generation_timeout,
        )

    def is_configured(self) -> bool:
        return self.client is not None

    def _generate(self, request: GenerationRequest, cancel_token: Optional[CancelToken]) -> Photo:
        contents = self._build_contents(request)
        cfg = self._build_config(request.source)
        print(f"[GeminiHairBackend] API call starting, timeout={self.timeout_s:g}s model={self.model} mode={request.mode.value}")
        try:
            response = self._run(
                lambda: self.client.models.generate_content(model=self.model, contents=contents, config=cfg),
                cancel_token,
                label="generate",
            )
        except genai_errors.APIError as exc:
            raise HairPipelineError(error_kind_for_status(getattr(exc, "code", None)), f"gemini: {exc}") from exc
        except (httpx.TransportError, OSError) as exc:
            raise HairPipelineError(ErrorKind.NETWORK_ERROR, f"gemini network error: {type(exc).__name__}") from exc
        return self.photo_from_response(response)

    def _build_contents(self, request: GenerationRequest) -> List[Any]:
        mime_type, image_bytes = encode_photo(request.source)
        parts = [
            genai_types.Part.from_text(text=request.instruction),
            genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
        ]
        if request.mode is GenerationMode.MASK_INPAINT and request.mask is not None:
            parts.append(genai_types.Part.from_bytes(data=request.mask.to_png_bytes(), mime_type="image/png"))
        if request.mode is GenerationMode.REFERENCE_GUIDED and request.reference is not None:
            r_mime, r_bytes = encode_photo(request.reference)
            parts.append(genai_types.Part.from_bytes(data=r_bytes, mime_type=r_mime))
        return [genai_types.Content(role="user", parts=parts)]

    def _build_config(self, source: Photo):
        image_cfg = None
        if hasattr(genai_types, "ImageConfig"):
            ar_value = aspect_ratio_tag(source.width, source.height)
            image_cfg = genai_types.ImageConfig(aspect_ratio=ar_value) if ar_value else genai_types.ImageConfig()
        return genai_types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            image_config=image_cfg,
            safety_settings=self._get_safety_settings(),
        )

    def _get_safety_settings(self) -> List[Any]:
        threshold = getattr(genai_types.HarmBlockThreshold, self.safety_level)
        categories = (
            genai_types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
            genai_types.HarmCategory.HARM_CATEGORY_HARASSMENT,
            genai_types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
            genai_types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        )
        return [genai_types.SafetySetting(category=c, threshold=threshold) for c in categories]

    # ------------------------------------------------------------------
    # Response parsing

    def photo_from_response(self, response: Any) -> Photo:
        """解析 SDK 回應 (或其 dict 形式)，被擋下或沒有圖片時拋出 HairPipelineError。"""
        if response is None:
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "gemini returned an empty response")
        if isinstance(response, dict):
            return self._photo_from_dict(response)

        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None) if feedback is not None else None
        if block_reason:
            raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, f"gemini prompt blocked: {_enum_name(block_reason)}")

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "gemini returned no candidates")

        for idx, candidate in enumerate(candidates):
            reason = _enum_name(getattr(candidate, "finish_reason", None))
            if reason in BLOCKING_FINISH_REASONS:
                print(f"[GeminiHairBackend] SAFETY CHECK: candidate[{idx}].finish_reason={reason}")
                raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, f"gemini finish_reason={reason}")

        data = self._extract_image_bytes_from_sdk(candidates)
        if data:
            return self._decode_image(data)

        text = self._extract_text(candidates)
        raise HairPipelineError(
            ErrorKind.NO_IMAGE_RETURNED,
            f"gemini returned text only: {text[:160]}" if text else "gemini returned no image data",
        )

    @staticmethod
    def _extract_image_bytes_from_sdk(candidates: List[Any]) -> Optional[bytes]:
        for candidate in candidates:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                data = getattr(inline, "data", None) if inline is not None else None
                if isinstance(data, (bytes, bytearray)) and data:
                    return bytes(data)
                if isinstance(data, str) and data:
                    return _b64decode(data)
        return None

    @staticmethod
    def _extract_text(candidates: List[Any]) -> str:
        texts = []
        for candidate in candidates:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                text = getattr(part, "text", None)
                if isinstance(text, str) and text.strip():
                    texts.append(text.strip())
        return " ".join(texts)

    def _photo_from_dict(self, result: Dict[str, Any]) -> Photo:
        feedback = result.get("promptFeedback") or result.get("prompt_feedback") or {}
        block_reason = feedback.get("blockReason") or feedback.get("block_reason")
        if block_reason:
            raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, f"gemini prompt blocked: {block_reason}")

        candidates = result.get("candidates") or []
        if not candidates:
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "gemini returned no candidates")

        for candidate in candidates:
            reason = str(candidate.get("finishReason") or candidate.get("finish_reason") or "").upper()
            if reason in BLOCKING_FINISH_REASONS:
                raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, f"gemini finish_reason={reason}")

        for candidate in candidates:
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data") or part.get("media")
                if inline and inline.get("data"):
                    data = inline["data"]
                    return self._decode_image(data if isinstance(data, (bytes, bytearray)) else _b64decode(data))
        raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "gemini returned no image data")


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError) as exc:
        raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "gemini returned undecodable image data") from exc
