"""Stability AI inpaint 後端 (只支援遮罩重繪)。"""

from __future__ import annotations

from typing import Optional

import requests

from hair_studio.common.errors import ErrorKind, HairPipelineError
from hair_studio.common.models.generation import GenerationMode, GenerationRequest
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.backends.base import GenerativeBackend, extract_error_message
from hair_studio.common.services.prompts import NEGATIVE_PROMPT
from hair_studio.common.utils.images import encode_photo
from hair_studio.common.utils.timeouts import CancelToken

STABILITY_INPAINT_URL = "https://api.stability.ai/v2beta/stable-image/edit/inpaint"


class StabilityInpaintBackend(GenerativeBackend):
    name = "stability"
    supported_modes = frozenset({GenerationMode.MASK_INPAINT})

    def __init__(self, api_key: Optional[str] = None, timeout_s: float = 120.0, url: str = STABILITY_INPAINT_URL) -> None:
        super().__init__(timeout_s=timeout_s)
        self.api_key = api_key
        self.url = url

    @classmethod
    def from_config(cls, config) -> "StabilityInpaintBackend":
        return cls(api_key=config.stability_api_key, timeout_s=config.generation_timeout)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _generate(self, request: GenerationRequest, cancel_token: Optional[CancelToken]) -> Photo:
        mime_type, image_bytes = encode_photo(request.source)
        files = {
            "image": ("image.png", image_bytes, mime_type),
            "mask": ("mask.png", request.mask.to_png_bytes(), "image/png"),
        }
        data = {
            "prompt": request.instruction,
            "negative_prompt": NEGATIVE_PROMPT,
            "output_format": "png",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "image/*",
        }
        print(f"[StabilityInpaintBackend] Sending inpaint request {request.source.width}x{request.source.height}")
        response = self._run(
            lambda: requests.post(self.url, headers=headers, files=files, data=data, timeout=self.timeout_s),
            cancel_token,
            label="inpaint",
        )

        if response.status_code == 403 and "moderation" in extract_error_message(response).lower():
            raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, "stability content moderation rejected the request")
        if response.status_code == 401:
            raise HairPipelineError(ErrorKind.AUTH_ERROR, "Invalid Stability AI API key")
        if response.status_code == 402:
            raise HairPipelineError(ErrorKind.AUTH_ERROR, "Insufficient Stability AI credits")
        self._raise_for_status(response)

        finish_reason = (response.headers.get("finish-reason") or "").upper()
        if finish_reason == "CONTENT_FILTERED":
            raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, "stability finish-reason=CONTENT_FILTERED")
        if finish_reason and finish_reason != "SUCCESS":
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, f"stability finish-reason={finish_reason}")
        return self._decode_image(response.content)
