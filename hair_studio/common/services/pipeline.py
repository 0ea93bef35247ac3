"""換髮型流程協調器。

IDLE -> DETECTING_BOUNDARY -> SYNTHESIZING_MASK -> GENERATING -> COMPOSITING -> DONE
任何階段失敗都會進入 FAILED；狀態只會往前走。

使用者照片的臉部估計與參考照片的髮型擷取彼此沒有相依，會同時執行。
生成失敗不自動重試，直接以後端回報的 ErrorKind 結束。
"""

from __future__ import annotations

import concurrent.futures
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from hair_studio.common.errors import ErrorKind, HairPipelineError, InvalidInput, PipelineCancelled
from hair_studio.common.models.face_boundary import FaceBoundary
from hair_studio.common.models.generation import GenerationMode, GenerationRequest, GenerationResult
from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.models.photo import Photo
from hair_studio.common.models.style import HairStrategy, StyleDescriptor
from hair_studio.common.services.backends import GenerativeBackend, build_backends
from hair_studio.common.services.compositor import IdentityCompositor
from hair_studio.common.services.face_boundary_estimator import FaceBoundaryEstimator
from hair_studio.common.services.hair_mask_synthesizer import HairMaskSynthesizer
from hair_studio.common.services.logging import log_event
from hair_studio.common.services.prompts import build_instruction
from hair_studio.common.services.reference_extractor import ExtractedHair, ReferenceHairExtractor
from hair_studio.common.services.reference_style_analyzer import ReferenceStyleAnalyzer
from hair_studio.common.utils.images import downscale
from hair_studio.common.utils.timeouts import CancelToken

logger = logging.getLogger(__name__)

_WAIT_SLICE_S = 0.1

# 送往生成服務的圖片長邊上限，合成時再放大回原尺寸
DEFAULT_GENERATION_MAX_SIDE = 1024

STRATEGY_OVERLAY = "overlay"


class PipelineState(str, Enum):
    IDLE = "idle"
    DETECTING_BOUNDARY = "detecting_boundary"
    SYNTHESIZING_MASK = "synthesizing_mask"
    GENERATING = "generating"
    COMPOSITING = "compositing"
    DONE = "done"
    FAILED = "failed"


_FORWARD_ORDER = [
    PipelineState.IDLE,
    PipelineState.DETECTING_BOUNDARY,
    PipelineState.SYNTHESIZING_MASK,
    PipelineState.GENERATING,
    PipelineState.COMPOSITING,
    PipelineState.DONE,
]

StateListener = Callable[[PipelineState], None]


class _StateTracker:
    def __init__(self, request_id: str, token: CancelToken, listener: Optional[StateListener]) -> None:
        self.request_id = request_id
        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]
        self._token = token
        self._listener = listener

    def advance(self, state: PipelineState) -> None:
        if self.state in (PipelineState.DONE, PipelineState.FAILED):
            raise RuntimeError(f"pipeline already finished in state {self.state.value}")
        if state is not PipelineState.FAILED and _FORWARD_ORDER.index(state) <= _FORWARD_ORDER.index(self.state):
            raise RuntimeError(f"illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        log_event("info", "pipeline_state", request_id=self.request_id, state=state.value)
        # 取消之後不再通知呼叫端
        if self._listener is not None and not self._token.cancelled:
            self._listener(state)


@dataclass(frozen=True)
class TransformResult:
    request_id: str
    photo: Optional[Photo] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    strategy: Optional[str] = None
    mode: Optional[GenerationMode] = None
    backend: Optional[str] = None
    boundary: Optional[FaceBoundary] = None
    mask: Optional[HairMask] = None
    states: Tuple[PipelineState, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.photo is not None and self.error_kind is None

    def to_dict(self, include_image: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "request_id": self.request_id,
            "status": "ok" if self.succeeded else "error",
            "strategy": self.strategy,
            "mode": self.mode.value if self.mode else None,
            "backend": self.backend,
            "states": [s.value for s in self.states],
            "boundary": self.boundary.to_dict() if self.boundary else None,
            "mask_source": self.mask.source if self.mask is not None else None,
        }
        if self.succeeded:
            if include_image:
                data["output"] = self.photo.to_data_url("PNG")
            data["size"] = {"width": self.photo.width, "height": self.photo.height}
        else:
            kind = self.error_kind or ErrorKind.UNKNOWN
            data["error"] = HairPipelineError(kind, self.message).to_dict()
        return data


class TransformHandle:
    """submit() 回傳的非同步工作代號。"""

    def __init__(self, request_id: str, future: "concurrent.futures.Future[TransformResult]", token: CancelToken) -> None:
        self.request_id = request_id
        self.future = future
        self.cancel_token = token

    def cancel(self) -> None:
        self.cancel_token.cancel()
        self.future.cancel()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> TransformResult:
        return self.future.result(timeout=timeout)


class PipelineOrchestrator:
    def __init__(
        self,
        estimator: FaceBoundaryEstimator,
        synthesizer: HairMaskSynthesizer,
        compositor: IdentityCompositor,
        backends: Sequence[GenerativeBackend],
        extractor: Optional[ReferenceHairExtractor] = None,
        default_strategy: HairStrategy = HairStrategy.AUTO,
        max_workers: int = 4,
        generation_max_side: int = DEFAULT_GENERATION_MAX_SIDE,
        style_analyzer: Optional[ReferenceStyleAnalyzer] = None,
    ) -> None:
        self.estimator = estimator
        self.synthesizer = synthesizer
        self.compositor = compositor
        self.backends = list(backends)
        self.extractor = extractor or ReferenceHairExtractor(estimator, synthesizer)
        self.default_strategy = default_strategy
        self.generation_max_side = generation_max_side
        self.style_analyzer = style_analyzer
        # 子步驟與整體工作分開兩個 pool，避免工作互相卡住 worker
        self._steps = concurrent.futures.ThreadPoolExecutor(max_workers=max(2, max_workers), thread_name_prefix="hair-step")
        self._jobs = concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="hair-job")

    @classmethod
    def from_config(cls, config) -> "PipelineOrchestrator":
        estimator = FaceBoundaryEstimator.from_config(config)
        synthesizer = HairMaskSynthesizer()
        return cls(
            estimator=estimator,
            synthesizer=synthesizer,
            compositor=IdentityCompositor(),
            backends=build_backends(config),
            default_strategy=config.hair_strategy,
            max_workers=config.pipeline_workers,
            generation_max_side=config.generation_max_side,
            style_analyzer=ReferenceStyleAnalyzer.from_config(config),
        )

    def reload(self, config) -> None:
        """設定變更後重新建立估計器與後端。"""
        self.estimator = FaceBoundaryEstimator.from_config(config)
        self.extractor = ReferenceHairExtractor(self.estimator, self.synthesizer)
        self.backends = build_backends(config)
        self.default_strategy = config.hair_strategy
        self.generation_max_side = config.generation_max_side
        self.style_analyzer = ReferenceStyleAnalyzer.from_config(config)

    def shutdown(self) -> None:
        self._jobs.shutdown(wait=False, cancel_futures=True)
        self._steps.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Public API

    def submit(
        self,
        photo: Photo,
        style: StyleDescriptor,
        listener: Optional[StateListener] = None,
    ) -> TransformHandle:
        token = CancelToken()
        request_id = uuid.uuid4().hex[:12]
        future = self._jobs.submit(self.transform_hair, photo, style, token, listener, request_id)
        return TransformHandle(request_id, future, token)

    def transform_hair(
        self,
        photo: Photo,
        style: StyleDescriptor,
        cancel_token: Optional[CancelToken] = None,
        listener: Optional[StateListener] = None,
        request_id: Optional[str] = None,
    ) -> TransformResult:
        """執行完整流程，回傳最終照片或帶型別的錯誤；被取消時拋出 PipelineCancelled。"""
        token = cancel_token or CancelToken()
        tracker = _StateTracker(request_id or uuid.uuid4().hex[:12], token, listener)
        ctx: Dict[str, Any] = {}
        try:
            token.raise_if_cancelled()
            strategy, mode = self.resolve_strategy(style)
            ctx.update(strategy=strategy, mode=mode)
            log_event("info", "pipeline_start", request_id=tracker.request_id, strategy=strategy,
                      width=photo.width, height=photo.height)
            return self._run(photo, style, strategy, mode, token, tracker, ctx)
        except PipelineCancelled:
            log_event("info", "pipeline_cancelled", request_id=tracker.request_id, state=tracker.state.value)
            raise
        except HairPipelineError as exc:
            return self._fail(tracker, ctx, exc.kind, exc.message)
        except Exception as exc:
            logger.exception("[PipelineOrchestrator] request %s failed unexpectedly", tracker.request_id)
            return self._fail(tracker, ctx, ErrorKind.UNKNOWN, f"{type(exc).__name__}: {exc}")

    def preview_mask(self, photo: Photo) -> Tuple[FaceBoundary, HairMask]:
        """給使用者確認用：估計臉部範圍並產生遮罩，不呼叫生成服務。"""
        boundary = self.estimator.estimate(photo)
        return boundary, self.synthesizer.synthesize(photo, boundary)

    def resolve_strategy(self, style: StyleDescriptor) -> Tuple[str, Optional[GenerationMode]]:
        requested = style.strategy or self.default_strategy
        if requested is HairStrategy.OVERLAY:
            if style.reference_photo is None:
                raise InvalidInput("overlay 模式需要提供參考髮型照片。")
            return STRATEGY_OVERLAY, None
        if style.reference_photo is not None:
            mode = GenerationMode.REFERENCE_GUIDED
        elif requested is HairStrategy.DIRECT:
            mode = GenerationMode.DIRECT_EDIT
        elif requested is HairStrategy.INPAINT:
            mode = GenerationMode.MASK_INPAINT
        else:
            primary = next((b for b in self.backends if b.is_configured()), None)
            if primary is not None and primary.supports(GenerationMode.MASK_INPAINT):
                mode = GenerationMode.MASK_INPAINT
            else:
                mode = GenerationMode.DIRECT_EDIT
        return mode.value, mode

    def select_backend(self, mode: GenerationMode) -> Optional[GenerativeBackend]:
        """依偏好順序挑第一個已設定且支援此模式的後端。"""
        for backend in self.backends:
            if backend.is_configured() and backend.supports(mode):
                return backend
        return None

    # ------------------------------------------------------------------

    def _run(
        self,
        photo: Photo,
        style: StyleDescriptor,
        strategy: str,
        mode: Optional[GenerationMode],
        token: CancelToken,
        tracker: _StateTracker,
        ctx: Dict[str, Any],
    ) -> TransformResult:
        overlay = strategy == STRATEGY_OVERLAY
        backend: Optional[GenerativeBackend] = None
        if not overlay:
            backend = self.select_backend(mode)
            if backend is None:
                raise HairPipelineError(ErrorKind.AUTH_ERROR, f"沒有已設定金鑰且支援 {mode.value} 的換髮型服務。")
            ctx["backend"] = backend.name

        tracker.advance(PipelineState.DETECTING_BOUNDARY)
        confirmed = style.confirmed_mask
        boundary: Optional[FaceBoundary] = None
        reference_future = None
        if overlay:
            reference_future = self._steps.submit(self.extractor.extract, style.reference_photo)
        style_future = None
        if mode is GenerationMode.REFERENCE_GUIDED and self.style_analyzer is not None:
            style_future = self._steps.submit(self.style_analyzer.enrich, style)
        if confirmed is None or overlay:
            boundary_future = self._steps.submit(self.estimator.estimate, photo)
            boundary = self._await(boundary_future, token)
            ctx["boundary"] = boundary

        tracker.advance(PipelineState.SYNTHESIZING_MASK)
        if confirmed is not None:
            mask = confirmed if confirmed.matches(photo) else confirmed.resized(photo.size)
        else:
            mask = self.synthesizer.synthesize(photo, boundary)
        ctx["mask"] = mask
        token.raise_if_cancelled()

        tracker.advance(PipelineState.GENERATING)
        extracted: Optional[ExtractedHair] = None
        generation: Optional[GenerationResult] = None
        if overlay:
            extracted = self._await(reference_future, token)
        else:
            if style_future is not None:
                style = self._await(style_future, token)
            request = self._generation_request(photo, style, mode, mask)
            generation = self._generate(backend, request, token)
            token.raise_if_cancelled()
            if not generation.succeeded:
                return self._fail(tracker, ctx, generation.error_kind, generation.message)

        tracker.advance(PipelineState.COMPOSITING)
        if overlay:
            final = self.compositor.overlay(photo, extracted.sprite, extracted.boundary, boundary, mask)
        else:
            final = self.compositor.composite(photo, generation.photo, mask)
        token.raise_if_cancelled()

        tracker.advance(PipelineState.DONE)
        log_event("info", "pipeline_done", request_id=tracker.request_id, strategy=strategy, backend=ctx.get("backend"))
        return TransformResult(
            request_id=tracker.request_id,
            photo=final,
            strategy=strategy,
            mode=mode,
            backend=ctx.get("backend"),
            boundary=boundary,
            mask=mask,
            states=tuple(tracker.history),
        )

    def _generation_request(
        self,
        photo: Photo,
        style: StyleDescriptor,
        mode: GenerationMode,
        mask: HairMask,
    ) -> GenerationRequest:
        """縮小到 generation_max_side 以內再送出，遮罩跟著縮放。"""
        source = downscale(photo, self.generation_max_side)
        reference = None
        if mode is GenerationMode.REFERENCE_GUIDED and style.reference_photo is not None:
            reference = downscale(style.reference_photo, self.generation_max_side)
        request_mask = None
        if mode is GenerationMode.MASK_INPAINT:
            request_mask = mask if mask.matches(source) else mask.resized(source.size)
        return GenerationRequest(
            source=source,
            instruction=build_instruction(style, mode),
            mode=mode,
            mask=request_mask,
            reference=reference,
        )

    def _generate(self, backend: GenerativeBackend, request: GenerationRequest, token: CancelToken) -> GenerationResult:
        try:
            return backend.generate(request, token)
        except (PipelineCancelled, HairPipelineError):
            raise
        except Exception as exc:
            logger.exception("[PipelineOrchestrator] backend %s raised unexpectedly", backend.name)
            return GenerationResult.fail(ErrorKind.UNKNOWN, f"{type(exc).__name__}: {exc}", backend=backend.name)

    @staticmethod
    def _await(future: "concurrent.futures.Future[Any]", token: CancelToken) -> Any:
        while True:
            if token.cancelled:
                future.cancel()
                raise PipelineCancelled()
            try:
                return future.result(timeout=_WAIT_SLICE_S)
            except concurrent.futures.TimeoutError:
                continue

    @staticmethod
    def _fail(tracker: _StateTracker, ctx: Dict[str, Any], kind: Optional[ErrorKind], message: Optional[str]) -> TransformResult:
        kind = kind or ErrorKind.UNKNOWN
        if tracker.state not in (PipelineState.DONE, PipelineState.FAILED):
            tracker.advance(PipelineState.FAILED)
        log_event("warning", "pipeline_failed", request_id=tracker.request_id, kind=kind.value, message=message)
        return TransformResult(
            request_id=tracker.request_id,
            error_kind=kind,
            message=message,
            strategy=ctx.get("strategy"),
            mode=ctx.get("mode"),
            backend=ctx.get("backend"),
            boundary=ctx.get("boundary"),
            mask=ctx.get("mask"),
            states=tuple(tracker.history),
        )
