"""Replicate (flux-kontext-pro) 直接編輯後端。"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from hair_studio.common.errors import ErrorKind, HairPipelineError, PipelineCancelled
from hair_studio.common.models.generation import GenerationMode, GenerationRequest
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.backends.base import GenerativeBackend
from hair_studio.common.utils.timeouts import CancelToken

logger = logging.getLogger(__name__)

REPLICATE_API = "https://api.replicate.com/v1"
REPLICATE_MODEL = "black-forest-labs/flux-kontext-pro"

_SAFETY_WORDS = ("nsfw", "sensitive", "flagged", "safety", "content policy")


class ReplicateKontextBackend(GenerativeBackend):
    name = "replicate"
    supported_modes = frozenset({GenerationMode.DIRECT_EDIT})

    POLL_INTERVAL_S = 2.0
    REQUEST_TIMEOUT_S = 60

    def __init__(
        self,
        api_token: Optional[str] = None,
        timeout_s: float = 120.0,
        model: str = REPLICATE_MODEL,
        api_base: str = REPLICATE_API,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.api_token = api_token
        self.model = model
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_config(cls, config) -> "ReplicateKontextBackend":
        return cls(api_token=config.replicate_api_token, timeout_s=config.generation_timeout)

    def is_configured(self) -> bool:
        return bool(self.api_token)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _generate(self, request: GenerationRequest, cancel_token: Optional[CancelToken]) -> Photo:
        payload = {
            "input": {
                "prompt": request.instruction,
                "input_image": request.source.to_data_url("JPEG"),
                "aspect_ratio": "match_input_image",
                "safety_tolerance": 2,
                "output_format": "png",
            }
        }
        url = f"{self.api_base}/models/{self.model}/predictions"
        response = self._run(
            lambda: requests.post(url, headers=self._get_headers(), json=payload, timeout=self.REQUEST_TIMEOUT_S),
            cancel_token,
            label="create",
        )
        self._raise_for_status(response)

        prediction = response.json()
        prediction_id = prediction.get("id")
        if not prediction_id:
            raise HairPipelineError(ErrorKind.UNKNOWN, "replicate did not return a prediction id")
        print(f"[ReplicateKontextBackend] Prediction created: {prediction_id}")

        if prediction.get("status") != "succeeded":
            prediction = self._poll_prediction(prediction, cancel_token)
        return self._download_image(self._output_url(prediction.get("output")), cancel_token)

    def _poll_prediction(self, prediction: Dict[str, Any], cancel_token: Optional[CancelToken]) -> Dict[str, Any]:
        """每 2 秒查詢一次 prediction 狀態直到完成、失敗或逾時。"""
        prediction_id = prediction["id"]
        poll_url = (prediction.get("urls") or {}).get("get") or f"{self.api_base}/predictions/{prediction_id}"
        start_time = time.time()
        poll_count = 0

        while time.time() - start_time < self.timeout_s:
            if cancel_token is not None and cancel_token.wait(self.POLL_INTERVAL_S):
                self._cancel_prediction(prediction)
                raise PipelineCancelled()
            if cancel_token is None:
                time.sleep(self.POLL_INTERVAL_S)
            poll_count += 1

            response = requests.get(poll_url, headers=self._get_headers(), timeout=10)
            if response.status_code != 200:
                print(f"[ReplicateKontextBackend] Poll #{poll_count}: HTTP {response.status_code}")
                if response.status_code in (401, 403, 404):
                    self._raise_for_status(response)
                continue

            prediction = response.json()
            status = prediction.get("status")
            if poll_count % 5 == 1 or status not in ("starting", "processing"):
                print(f"[ReplicateKontextBackend] Poll #{poll_count} (elapsed {int(time.time() - start_time)}s): status={status}")

            if status == "succeeded":
                return prediction
            if status == "failed":
                error = str(prediction.get("error") or "prediction failed")
                if any(word in error.lower() for word in _SAFETY_WORDS):
                    raise HairPipelineError(ErrorKind.SAFETY_BLOCKED, f"replicate: {error}")
                raise HairPipelineError(ErrorKind.UNKNOWN, f"replicate: {error}")
            if status == "canceled":
                raise HairPipelineError(ErrorKind.UNKNOWN, "replicate prediction was canceled")

        print(f"[ReplicateKontextBackend] Prediction {prediction_id} timeout after {self.timeout_s:g}s")
        raise HairPipelineError(ErrorKind.NETWORK_ERROR, f"replicate prediction timed out after {self.timeout_s:g}s")

    def _cancel_prediction(self, prediction: Dict[str, Any]) -> None:
        cancel_url = (prediction.get("urls") or {}).get("cancel") or f"{self.api_base}/predictions/{prediction['id']}/cancel"
        try:
            requests.post(cancel_url, headers=self._get_headers(), timeout=10)
        except requests.exceptions.RequestException as exc:
            logger.warning("[ReplicateKontextBackend] cancel request failed: %s", exc)

    @staticmethod
    def _output_url(output: Any) -> Optional[str]:
        if isinstance(output, str):
            return output
        if isinstance(output, list):
            for item in output:
                if isinstance(item, str) and item:
                    return item
        return None
