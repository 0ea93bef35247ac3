"""Gemini 視覺模型的共用呼叫與 JSON 解析。"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from google import genai
from google.genai import types as genai_types

from hair_studio.common.models.photo import Photo
from hair_studio.common.services.logging import mask_secret
from hair_studio.common.utils.images import downscale, encode_photo
from hair_studio.common.utils.timeouts import call_with_timeout


class GeminiVisionService:
    """送一張縮小後的照片加一段提示，取回 JSON 文字。

    子類別負責把 JSON 轉成自己的型別，以及失敗時的後備值。
    """

    label = "vision"

    def __init__(
        self,
        client: Optional[Any] = None,
        model: str = "gemini-2.5-flash",
        timeout_s: float = 15.0,
        max_side: int = 640,
    ) -> None:
        self.client = client
        self.model = model
        self.timeout_s = timeout_s
        self.max_side = max_side

    @classmethod
    def from_config(cls, config):
        client = None
        if config.gemini_api_key:
            try:
                client = genai.Client(api_key=config.gemini_api_key)
                print(f"[{cls.__name__}] Client initialized with API key: {mask_secret(config.gemini_api_key)}")
            except Exception as e:
                print(f"[{cls.__name__}] Failed to initialize Gemini client: {type(e).__name__}: {e}")
        else:
            print(f"[{cls.__name__}] No GEMINI_API_KEY, fallback values will be used")
        return cls(client=client, model=config.gemini_llm, timeout_s=config.vision_timeout)

    def _call_llm(self, photo: Photo, prompt: str, schema: Optional[Any] = None) -> str:
        mime_type, image_bytes = encode_photo(downscale(photo, self.max_side), "JPEG")
        contents = [
            genai_types.Content(
                role="user",
                parts=[
                    genai_types.Part.from_text(text=prompt),
                    genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                ],
            )
        ]
        cfg = genai_types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=schema,
            temperature=0.0,
        )
        response = call_with_timeout(
            lambda: self.client.models.generate_content(model=self.model, contents=contents, config=cfg),
            self.timeout_s,
            label=self.label,
        )
        return _response_text(response)

    @staticmethod
    def _strip_markdown_fences(text: str) -> str:
        stripped = text.strip()
        m = re.match(r"^```(?:json)?\s*(.*?)\s*```$", stripped, re.DOTALL | re.IGNORECASE)
        return m.group(1) if m else stripped

    def _parse_json_response(self, text: Optional[str]) -> Optional[Dict[str, Any]]:
        if not isinstance(text, str) or not text:
            return None
        cleaned = self._strip_markdown_fences(text)
        try:
            data = json.loads(cleaned)
        except ValueError:
            match = re.search(r"\{.*\}", cleaned, re.DOTALL)
            if not match:
                return None
            try:
                data = json.loads(match.group(0))
            except ValueError:
                return None
        if isinstance(data, list) and data and isinstance(data[0], dict):
            data = data[0]
        return data if isinstance(data, dict) else None


def _response_text(response: Any) -> str:
    if response is None:
        return ""
    if isinstance(response, dict):
        for candidate in response.get("candidates") or []:
            for part in ((candidate.get("content") or {}).get("parts") or []):
                if part.get("text"):
                    return part["text"]
        return ""
    try:
        text = getattr(response, "text", None)
    except ValueError:
        text = None
    if text:
        return text
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "text", None):
                return part.text
    return ""
