"""可取消的逾時呼叫工具。"""

from __future__ import annotations

import concurrent.futures
import threading
from typing import Callable, Optional, TypeVar

from hair_studio.common.errors import ErrorKind, HairPipelineError, PipelineCancelled

T = TypeVar("T")

_POLL_SLICE_S = 0.1


class CancelToken:
    """呼叫端持有的取消旗標。"""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled()

    def wait(self, timeout: float) -> bool:
        """等待最多 timeout 秒，若期間被取消則回傳 True。"""
        return self._event.wait(timeout)


def call_with_timeout(
    fn: Callable[[], T],
    timeout_s: float,
    cancel_token: Optional[CancelToken] = None,
    label: str = "call",
) -> T:
    """在背景執行緒呼叫 fn，逾時或取消時放棄等待。

    逾時轉為 NETWORK_ERROR；取消則拋出 PipelineCancelled。
    fn 本身的例外原樣往外拋。
    """
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    ex = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"hair-{label}")
    try:
        fut = ex.submit(fn)
        waited = 0.0
        while True:
            slice_s = min(_POLL_SLICE_S, max(timeout_s - waited, 0.0)) or _POLL_SLICE_S
            try:
                return fut.result(timeout=slice_s)
            except concurrent.futures.TimeoutError:
                waited += slice_s
            if cancel_token is not None and cancel_token.cancelled:
                fut.cancel()
                raise PipelineCancelled()
            if waited >= timeout_s:
                fut.cancel()
                raise HairPipelineError(ErrorKind.NETWORK_ERROR, f"{label} timed out after {timeout_s:g}s")
    finally:
        ex.shutdown(wait=False, cancel_futures=True)
