"""生成式後端共用介面與 HTTP 工具。"""

from __future__ import annotations

import logging
from typing import Any, Callable, FrozenSet, Optional

import requests

from hair_studio.common.errors import ErrorKind, HairPipelineError, InvalidInput, PipelineCancelled
from hair_studio.common.models.generation import GenerationMode, GenerationRequest, GenerationResult
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.logging import log_event
from hair_studio.common.utils.timeouts import CancelToken, call_with_timeout

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_S = 30


def error_kind_for_status(status_code: Optional[int]) -> ErrorKind:
    if status_code is None:
        return ErrorKind.NETWORK_ERROR
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 402, 403):
        return ErrorKind.AUTH_ERROR
    if status_code in (400, 404, 413, 415, 422):
        return ErrorKind.INVALID_INPUT
    if status_code >= 500:
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.UNKNOWN


def extract_error_message(response: requests.Response) -> str:
    """從錯誤回應中取出可讀訊息。"""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        for key in ("message", "detail", "name"):
            if data.get(key):
                return str(data[key])
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(e) for e in errors)
    text = (response.text or "").strip()
    return text[:200] or f"HTTP {response.status_code}"


class GenerativeBackend:
    """所有生成式後端的共同介面。

    子類別實作 _generate()，回傳候選 Photo 或拋出 HairPipelineError。
    generate() 負責把失敗統一包成 GenerationResult.fail()，
    絕不會把原圖當成成功結果回傳。
    """

    name = "base"
    supported_modes: FrozenSet[GenerationMode] = frozenset()

    def __init__(self, timeout_s: float = 120.0) -> None:
        self.timeout_s = timeout_s

    def is_configured(self) -> bool:
        return False

    def supports(self, mode: GenerationMode) -> bool:
        return mode in self.supported_modes

    def generate(self, request: GenerationRequest, cancel_token: Optional[CancelToken] = None) -> GenerationResult:
        if not self.supports(request.mode):
            return GenerationResult.fail(
                ErrorKind.INVALID_INPUT, f"{self.name} does not support {request.mode.value}", backend=self.name
            )
        if not self.is_configured():
            return GenerationResult.fail(ErrorKind.AUTH_ERROR, f"{self.name} API key not configured", backend=self.name)

        log_event("info", "generation_started", backend=self.name, mode=request.mode.value)
        try:
            photo = self._generate(request, cancel_token)
        except PipelineCancelled:
            raise
        except HairPipelineError as exc:
            log_event("warning", "generation_failed", backend=self.name, kind=exc.kind.value, message=exc.message)
            return GenerationResult.fail(exc.kind, exc.message, backend=self.name)
        except requests.exceptions.Timeout as exc:
            log_event("warning", "generation_failed", backend=self.name, kind="network_error", message="timeout")
            return GenerationResult.fail(ErrorKind.NETWORK_ERROR, f"{self.name} request timed out: {exc}", backend=self.name)
        except requests.exceptions.RequestException as exc:
            log_event("warning", "generation_failed", backend=self.name, kind="network_error", message=str(exc))
            return GenerationResult.fail(ErrorKind.NETWORK_ERROR, f"{type(exc).__name__}: {exc}", backend=self.name)

        log_event("info", "generation_succeeded", backend=self.name, width=photo.width, height=photo.height)
        return GenerationResult.ok(photo, backend=self.name)

    def _generate(self, request: GenerationRequest, cancel_token: Optional[CancelToken]) -> Photo:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Shared helpers

    def _run(self, fn: Callable[[], Any], cancel_token: Optional[CancelToken], label: str) -> Any:
        """在可取消的逾時保護下執行網路呼叫。"""
        return call_with_timeout(fn, self.timeout_s, cancel_token, label=f"{self.name}-{label}")

    def _raise_for_status(self, response: requests.Response) -> None:
        if 200 <= response.status_code < 300:
            return
        message = extract_error_message(response)
        print(f"[{type(self).__name__}] API error: {response.status_code} {message}")
        raise HairPipelineError(error_kind_for_status(response.status_code), f"{self.name} HTTP {response.status_code}: {message}")

    def _decode_image(self, data: bytes) -> Photo:
        if not data:
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, f"{self.name} returned an empty image")
        try:
            return Photo.from_bytes(data)
        except InvalidInput as exc:
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, f"{self.name} returned undecodable image data") from exc

    def _download_image(self, url: str, cancel_token: Optional[CancelToken]) -> Photo:
        """下載後端回傳的遠端圖片網址。"""
        if not url or not isinstance(url, str):
            raise HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, f"{self.name} returned no image url")
        print(f"[{type(self).__name__}] Downloading result image: {url[:80]}")
        response = call_with_timeout(
            lambda: requests.get(url, timeout=DOWNLOAD_TIMEOUT_S),
            DOWNLOAD_TIMEOUT_S + 5,
            cancel_token,
            label=f"{self.name}-download",
        )
        if response.status_code != 200:
            kind = ErrorKind.NETWORK_ERROR if response.status_code >= 500 else ErrorKind.NO_IMAGE_RETURNED
            raise HairPipelineError(kind, f"Failed to download image: HTTP {response.status_code}")
        return self._decode_image(response.content)
