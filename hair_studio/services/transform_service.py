"""呼叫端的換髮型工作階段管理 (記憶體內)。"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional

from hair_studio.common.errors import ErrorKind, HairPipelineError, PipelineCancelled
from hair_studio.common.models.photo import Photo
from hair_studio.common.models.style import StyleDescriptor
from hair_studio.common.services.logging import log_event
from hair_studio.common.services.pipeline import PipelineOrchestrator, PipelineState, TransformHandle


class TransformService:
    """把 PipelineOrchestrator.submit() 的工作依 session_id 保存，供前端輪詢。

    流程核心不持有任何全域狀態，工作階段只存在這一層。
    """

    def __init__(self, orchestrator: PipelineOrchestrator, max_sessions: int = 200) -> None:
        self._orchestrator = orchestrator
        self._max_sessions = max_sessions
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def start(self, photo: Photo, style: StyleDescriptor) -> str:
        holder: Dict[str, Any] = {"state": PipelineState.IDLE.value}

        def _on_state(state: PipelineState) -> None:
            with self._lock:
                holder["state"] = state.value

        handle = self._orchestrator.submit(photo, style, listener=_on_state)
        holder.update(handle=handle, created=time.time())
        with self._lock:
            self._sessions[handle.request_id] = holder
            self._prune_locked()
        log_event("info", "transform_session_started", session_id=handle.request_id)
        return handle.request_id

    def get_result(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            holder = self._sessions.get(session_id)
            if holder is None:
                return None
            handle: TransformHandle = holder["handle"]
            state = holder["state"]

        if handle.cancelled:
            return {"session_id": session_id, "status": "cancelled", "state": state}
        if not handle.done():
            return {"session_id": session_id, "status": "pending", "state": state}

        try:
            result = handle.result(timeout=0)
        except PipelineCancelled:
            return {"session_id": session_id, "status": "cancelled", "state": state}
        except Exception as exc:
            error = HairPipelineError(ErrorKind.UNKNOWN, f"{type(exc).__name__}: {exc}")
            return {"session_id": session_id, "status": "error", "state": PipelineState.FAILED.value, "error": error.to_dict()}

        data = result.to_dict()
        data["session_id"] = session_id
        data["state"] = result.states[-1].value if result.states else state
        return data

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            holder = self._sessions.get(session_id)
        if holder is None:
            return False
        holder["handle"].cancel()
        log_event("info", "transform_session_cancelled", session_id=session_id)
        return True

    def _prune_locked(self) -> None:
        if len(self._sessions) <= self._max_sessions:
            return
        finished = sorted(
            (sid for sid, h in self._sessions.items() if h["handle"].done()),
            key=lambda sid: self._sessions[sid]["created"],
        )
        for sid in finished[: len(self._sessions) - self._max_sessions]:
            self._sessions.pop(sid, None)
