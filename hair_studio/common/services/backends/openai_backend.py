"""OpenAI gpt-image-1 影像編輯後端。"""

from __future__ import annotations

import base64
import binascii
from io import BytesIO
from typing import Optional

import numpy as np
import requests
from PIL import Image

from hair_studio.common.errors import ErrorKind, HairPipelineError
from hair_studio.common.models.generation import GenerationMode, GenerationRequest
from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.backends.base import GenerativeBackend
from hair_studio.common.utils.images import encode_photo
from hair_studio.common.utils.timeouts import CancelToken

OPENAI_EDITS_URL = "https://api.openai.com/v1/images/edits"

_SAFETY_CODES = {"moderation_blocked", "content_policy_violation"}


def _edit_size(width: int, height: int) -> str:
    if height > width * 1.2:
        return "1024x1536"
    if width > height * 1.2:
        return "1536x1024"
    return "1024x1024"


def mask_to_alpha_png(mask: HairMask) -> bytes:
    """OpenAI 以透明像素表示可編輯區域，因此 alpha = 255 - mask。"""
    h, w = mask.height, mask.width
    rgba = np.zeros((h, w, 4), dtype=np.uint8)
    rgba[:, :, 3] = 255 - mask.array()
    buf = BytesIO()
    Image.fromarray(rgba).save(buf, format="PNG")
    return buf.getvalue()


class OpenAIImageBackend(GenerativeBackend):
    name = "openai"
    supported_modes = frozenset({GenerationMode.DIRECT_EDIT, GenerationMode.MASK_INPAINT})

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_s: float = 120.0,
        model: str = "gpt-image-1",
        url: str = OPENAI_EDITS_URL,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.api_key = api_key
        self.model = model
        self.url = url

    @classmethod
    def from_config(cls, config) -> "OpenAIImageBackend":
        return cls(api_key=config.openai_api_key, timeout_s=config.generation_timeout)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _generate(self, request: GenerationRequest, cancel_token: Optional[CancelToken]) -> Photo:
        mime_type, image_bytes = encode_photo(request.source)
        files = [("image", ("image.png", image_bytes, mime_type))]
        if request.mode is GenerationMode.MASK_INPAINT and request.mask is not None:
            files.append(("mask", ("mask.png", mask_to_alpha_png(request.mask), "image/png")))
        data = {
            "model": self.model,
            "prompt": request.instruction,
            "size": _edit_size(request.source.width, request.source.height),
            "quality": "high",
            "n": "1",
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        response = self._run(
            lambda: requests.post(self.url, headers=headers, files=files, data=data, timeout=self.timeout_s),
            cancel_token,
            label="edit",
        )

        if response.status_code != 200:
            code = self._error_code(response)
            if code in _SAFETY_CODES:
                raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, f"openai rejected the request: {code}")
        self._raise_for_status(response)

        try:
            items = response.json().get("data") or []
        except ValueError as exc:
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "openai returned a non-JSON body") from exc
        if not items:
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "openai returned no images")

        first = items[0] or {}
        if first.get("b64_json"):
            try:
                raw = base64.b64decode(first["b64_json"])
            except (binascii.Error, ValueError) as exc:
                raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "openai returned undecodable image data") from exc
            return self._decode_image(raw)
        if first.get("url"):
            return self._download_image(first["url"], cancel_token)
        raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "openai response had neither b64_json nor url")

    @staticmethod
    def _error_code(response: requests.Response) -> str:
        try:
            err = (response.json() or {}).get("error") or {}
        except ValueError:
            return ""
        if not isinstance(err, dict):
            return ""
        return str(err.get("code") or err.get("type") or "")
