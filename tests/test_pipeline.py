import json
import threading
import unittest
from types import SimpleNamespace

import numpy as np

from hair_studio.common.errors import ErrorKind, HairPipelineError, InvalidInput, PipelineCancelled
from hair_studio.common.models.generation import GenerationMode
from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.models.style import HairStrategy, StyleDescriptor
from hair_studio.common.services.compositor import IdentityCompositor
from hair_studio.common.services.hair_mask_synthesizer import HairMaskSynthesizer
from hair_studio.common.services.pipeline import PipelineOrchestrator, PipelineState, _StateTracker
from hair_studio.common.services.reference_style_analyzer import ReferenceStyleAnalyzer
from hair_studio.common.utils.timeouts import CancelToken
from hair_studio.config import StudioConfig
from tests._helpers import FakeBackend, FakeEstimator, fake_genai_client, noise_photo, solid_photo


class SlowBackend(FakeBackend):
    """在 _run() 中等待，直到被取消或 release 被設定。"""

    def __init__(self):
        super().__init__(name="slow")
        self.started = threading.Event()
        self.release = threading.Event()

    def _generate(self, request, cancel_token):
        self.started.set()
        self._run(lambda: self.release.wait(5), cancel_token, label="slow")
        return super()._generate(request, cancel_token)


def _orchestrator(backends, estimator=None, **kwargs):
    return PipelineOrchestrator(
        estimator=estimator or FakeEstimator(),
        synthesizer=HairMaskSynthesizer(),
        compositor=IdentityCompositor(),
        backends=backends,
        **kwargs,
    )


class TestPipelineOrchestrator(unittest.TestCase):
    def setUp(self):
        self.photo = noise_photo(120, 160, seed=21)
        self.style = StyleDescriptor(description="shoulder-length layered cut", strategy=HairStrategy.INPAINT)
        self._orchestrators = []

    def tearDown(self):
        for orch in self._orchestrators:
            orch.shutdown()

    def _make(self, backends, estimator=None, **kwargs):
        orch = _orchestrator(backends, estimator, **kwargs)
        self._orchestrators.append(orch)
        return orch

    def test_inpaint_success_preserves_face_pixels(self):
        backend = FakeBackend()
        states = []
        result = self._make([backend]).transform_hair(self.photo, self.style, listener=states.append)

        self.assertTrue(result.succeeded)
        self.assertIsNone(result.error_kind)
        self.assertEqual(result.photo.size, self.photo.size)
        self.assertEqual(result.mode, GenerationMode.MASK_INPAINT)
        self.assertEqual(result.backend, "fake")

        protected = result.mask.array() <= 51
        self.assertTrue(protected.any())
        np.testing.assert_array_equal(result.photo.array()[protected], self.photo.array()[protected])
        self.assertEqual(
            states,
            [
                PipelineState.DETECTING_BOUNDARY,
                PipelineState.SYNTHESIZING_MASK,
                PipelineState.GENERATING,
                PipelineState.COMPOSITING,
                PipelineState.DONE,
            ],
        )
        self.assertIs(backend.requests[0].mask, result.mask)

    def test_no_image_is_reported_not_replaced_with_original(self):
        backend = FakeBackend(error=HairPipelineError(ErrorKind.NO_IMAGE_RETURNED, "text only"))
        result = self._make([backend]).transform_hair(self.photo, self.style)

        self.assertFalse(result.succeeded)
        self.assertIsNone(result.photo)
        self.assertEqual(result.error_kind, ErrorKind.NO_IMAGE_RETURNED)
        self.assertEqual(result.states[-1], PipelineState.FAILED)
        self.assertNotIn(PipelineState.COMPOSITING, result.states)

    def test_safety_block_is_not_retried(self):
        backend = FakeBackend(error=HairPipelineError(ErrorKind.SAFETY_BLOCKED, "blocked"))
        fallback = FakeBackend(name="other")
        result = self._make([backend, fallback]).transform_hair(self.photo, self.style)

        self.assertEqual(result.error_kind, ErrorKind.SAFETY_BLOCKED)
        self.assertEqual(len(backend.requests), 1)
        self.assertEqual(fallback.requests, [])
        self.assertFalse(result.to_dict()["error"]["retryable"])

    def test_unexpected_backend_exception_is_unknown(self):
        result = self._make([FakeBackend(error=RuntimeError("boom"))]).transform_hair(self.photo, self.style)
        self.assertEqual(result.error_kind, ErrorKind.UNKNOWN)
        self.assertIn("boom", result.message)

    def test_no_configured_backend_is_auth_error(self):
        orch = self._make([FakeBackend(configured=False)])
        result = orch.transform_hair(self.photo, self.style)
        self.assertEqual(result.error_kind, ErrorKind.AUTH_ERROR)
        self.assertEqual(result.states, (PipelineState.IDLE, PipelineState.FAILED))

    def test_backend_selection_skips_unconfigured_and_unsupported(self):
        direct_only = FakeBackend(name="direct", modes=(GenerationMode.DIRECT_EDIT,))
        missing_key = FakeBackend(name="missing", configured=False)
        inpaint = FakeBackend(name="inpaint", modes=(GenerationMode.MASK_INPAINT,))
        orch = self._make([missing_key, direct_only, inpaint])

        self.assertIs(orch.select_backend(GenerationMode.MASK_INPAINT), inpaint)
        self.assertIs(orch.select_backend(GenerationMode.DIRECT_EDIT), direct_only)
        self.assertIsNone(orch.select_backend(GenerationMode.REFERENCE_GUIDED))

    def test_auto_strategy_follows_primary_backend(self):
        auto = StyleDescriptor(description="bob")
        direct_first = self._make([FakeBackend(modes=(GenerationMode.DIRECT_EDIT,)), FakeBackend()])
        self.assertEqual(direct_first.resolve_strategy(auto), ("direct_edit", GenerationMode.DIRECT_EDIT))

        inpaint_first = self._make([FakeBackend()])
        self.assertEqual(inpaint_first.resolve_strategy(auto), ("mask_inpaint", GenerationMode.MASK_INPAINT))

        forced = self._make([FakeBackend()], default_strategy=HairStrategy.DIRECT)
        self.assertEqual(forced.resolve_strategy(auto)[1], GenerationMode.DIRECT_EDIT)

    def test_reference_photo_selects_reference_guided(self):
        style = StyleDescriptor(reference_photo=noise_photo(40, 50, seed=3))
        backend = FakeBackend()
        result = self._make([backend]).transform_hair(self.photo, style)
        self.assertTrue(result.succeeded)
        self.assertEqual(backend.requests[0].mode, GenerationMode.REFERENCE_GUIDED)
        self.assertIsNone(backend.requests[0].mask)

    def test_large_photo_is_downscaled_before_generation(self):
        photo = noise_photo(2048, 1536, seed=8)
        backend = FakeBackend()
        result = self._make([backend]).transform_hair(photo, self.style)

        self.assertTrue(result.succeeded, result.message)
        request = backend.requests[0]
        self.assertEqual(request.source.size, (1024, 768))
        self.assertEqual(request.mask.size, (1024, 768))
        self.assertEqual(result.photo.size, (2048, 1536))
        self.assertEqual(result.mask.size, (2048, 1536))
        protected = result.mask.array() <= 51
        np.testing.assert_array_equal(result.photo.array()[protected], photo.array()[protected])

    def test_generation_max_side_applies_to_reference(self):
        style = StyleDescriptor(reference_photo=noise_photo(1600, 1200, seed=4))
        backend = FakeBackend()
        result = self._make([backend], generation_max_side=512).transform_hair(self.photo, style)

        self.assertTrue(result.succeeded, result.message)
        self.assertEqual(backend.requests[0].reference.size, (512, 384))
        self.assertEqual(backend.requests[0].source.size, self.photo.size)

    def test_reference_only_style_is_described_by_analyzer(self):
        analysis = {"style_name": "Curtain fringe", "description": "long layers with curtain bangs", "volume": "flat"}
        client = fake_genai_client(lambda **kwargs: SimpleNamespace(text=json.dumps(analysis)))
        backend = FakeBackend()
        orch = self._make([backend], style_analyzer=ReferenceStyleAnalyzer(client=client, timeout_s=5.0))
        result = orch.transform_hair(self.photo, StyleDescriptor(reference_photo=noise_photo(40, 50, seed=3)))

        self.assertTrue(result.succeeded, result.message)
        instruction = backend.requests[0].instruction
        self.assertIn("Curtain fringe: long layers with curtain bangs", instruction)
        self.assertIn("with flat sleek low volume", instruction)

    def test_failed_style_analysis_still_generates(self):
        def raises(**kwargs):
            raise ConnectionError("network down")

        backend = FakeBackend()
        orch = self._make([backend], style_analyzer=ReferenceStyleAnalyzer(client=fake_genai_client(raises)))
        result = orch.transform_hair(self.photo, StyleDescriptor(reference_photo=noise_photo(40, 50, seed=3)))

        self.assertTrue(result.succeeded, result.message)
        self.assertIn("the hairstyle shown in the reference photo", backend.requests[0].instruction)

    def test_from_config_and_reload_apply_generation_settings(self):
        orch = PipelineOrchestrator.from_config(StudioConfig.from_mapping({"GENERATION_MAX_SIDE": 768}))
        self._orchestrators.append(orch)
        self.assertEqual(orch.generation_max_side, 768)
        self.assertIsInstance(orch.style_analyzer, ReferenceStyleAnalyzer)

        orch.reload(StudioConfig.from_mapping({"GENERATION_MAX_SIDE": 512}))
        self.assertEqual(orch.generation_max_side, 512)

    def test_overlay_without_reference_is_invalid(self):
        with self.assertRaises(InvalidInput):
            self._make([FakeBackend()]).resolve_strategy(StyleDescriptor(description="x", strategy=HairStrategy.OVERLAY))

    def test_overlay_runs_estimation_and_extraction_concurrently(self):
        # 兩次估計必須同時進行才能通過 barrier
        estimator = FakeEstimator(barrier=threading.Barrier(2))
        backend = FakeBackend()
        style = StyleDescriptor(reference_photo=solid_photo(80, 100, (120, 60, 20, 255)), strategy=HairStrategy.OVERLAY)
        result = self._make([backend], estimator=estimator).transform_hair(self.photo, style)

        self.assertTrue(result.succeeded, result.message)
        self.assertEqual(result.strategy, "overlay")
        self.assertIsNone(result.backend)
        self.assertEqual(estimator.calls, 2)
        self.assertEqual(backend.requests, [])
        protected = result.mask.array() <= 51
        np.testing.assert_array_equal(result.photo.array()[protected], self.photo.array()[protected])

    def test_confirmed_mask_skips_estimation(self):
        estimator = FakeEstimator()
        confirmed = HairMask.from_array(np.zeros((80, 60)))
        style = StyleDescriptor(description="buzz cut", strategy=HairStrategy.INPAINT, confirmed_mask=confirmed)
        result = self._make([FakeBackend()], estimator=estimator).transform_hair(self.photo, style)

        self.assertTrue(result.succeeded)
        self.assertEqual(estimator.calls, 0)
        self.assertEqual(result.mask.size, self.photo.size)
        # 全黑遮罩：輸出與原圖完全相同
        self.assertEqual(result.photo, self.photo)

    def test_cancel_stops_pipeline_and_listener(self):
        backend = SlowBackend()
        states = []
        orch = self._make([backend])
        handle = orch.submit(self.photo, self.style, listener=states.append)
        self.assertTrue(backend.started.wait(5))

        handle.cancel()
        with self.assertRaises(PipelineCancelled):
            handle.result(timeout=5)
        self.assertTrue(handle.cancelled)
        self.assertEqual(states[-1], PipelineState.GENERATING)
        self.assertNotIn(PipelineState.DONE, states)
        backend.release.set()

    def test_pre_cancelled_token_raises(self):
        token = CancelToken()
        token.cancel()
        with self.assertRaises(PipelineCancelled):
            self._make([FakeBackend()]).transform_hair(self.photo, self.style, cancel_token=token)

    def test_submit_returns_result(self):
        handle = self._make([FakeBackend()]).submit(self.photo, self.style)
        result = handle.result(timeout=10)
        self.assertTrue(result.succeeded)
        self.assertEqual(result.request_id, handle.request_id)
        data = result.to_dict()
        self.assertTrue(data["output"].startswith("data:image/png;base64,"))
        self.assertEqual(data["states"][-1], "done")


class TestStateTracker(unittest.TestCase):
    def test_transitions_only_move_forward(self):
        tracker = _StateTracker("req", CancelToken(), None)
        tracker.advance(PipelineState.DETECTING_BOUNDARY)
        tracker.advance(PipelineState.SYNTHESIZING_MASK)
        with self.assertRaises(RuntimeError):
            tracker.advance(PipelineState.DETECTING_BOUNDARY)
        tracker.advance(PipelineState.FAILED)
        with self.assertRaises(RuntimeError):
            tracker.advance(PipelineState.DONE)


if __name__ == "__main__":
    unittest.main()
