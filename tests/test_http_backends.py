import base64
import unittest
from io import BytesIO
from unittest.mock import patch

import numpy as np
import requests
from PIL import Image

from hair_studio.common.errors import ErrorKind
from hair_studio.common.models.generation import GenerationMode, GenerationRequest
from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.services.backends.openai_backend import OpenAIImageBackend, mask_to_alpha_png
from hair_studio.common.services.backends.replicate_backend import ReplicateKontextBackend
from hair_studio.common.services.backends.stability_backend import StabilityInpaintBackend
from tests._helpers import noise_photo, png_bytes


class FakeResponse:
    def __init__(self, status_code=200, content=b"", payload=None, headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self._payload = payload
        self.text = "" if payload is None else str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


def _inpaint_request():
    return GenerationRequest(
        source=noise_photo(48, 64),
        instruction="long wavy hair",
        mode=GenerationMode.MASK_INPAINT,
        mask=HairMask.from_array(np.full((64, 48), 255)),
    )


def _direct_request():
    return GenerationRequest(source=noise_photo(48, 64), instruction="pixie cut", mode=GenerationMode.DIRECT_EDIT)


class TestStabilityInpaintBackend(unittest.TestCase):
    def setUp(self):
        self.backend = StabilityInpaintBackend(api_key="sk-test", timeout_s=5)

    def test_success_returns_decoded_image(self):
        with patch("requests.post", return_value=FakeResponse(200, png_bytes(48, 64), headers={"finish-reason": "SUCCESS"})) as post:
            result = self.backend.generate(_inpaint_request())
        self.assertTrue(result.succeeded)
        self.assertEqual(result.photo.size, (48, 64))
        kwargs = post.call_args.kwargs
        self.assertIn("mask", kwargs["files"])
        self.assertEqual(kwargs["headers"]["Accept"], "image/*")
        self.assertEqual(kwargs["data"]["prompt"], "long wavy hair")

    def test_content_filtered_is_safety_blocked(self):
        response = FakeResponse(200, png_bytes(8, 8), headers={"finish-reason": "CONTENT_FILTERED"})
        with patch("requests.post", return_value=response):
            result = self.backend.generate(_inpaint_request())
        self.assertEqual(result.error_kind, ErrorKind.SAFETY_BLOCKED)
        self.assertIsNone(result.photo)

    def test_status_codes(self):
        cases = {
            402: ErrorKind.AUTH_ERROR,
            401: ErrorKind.AUTH_ERROR,
            429: ErrorKind.RATE_LIMITED,
            500: ErrorKind.NETWORK_ERROR,
            400: ErrorKind.INVALID_INPUT,
        }
        for status, kind in cases.items():
            with self.subTest(status):
                response = FakeResponse(status, payload={"errors": ["something"], "name": "error"})
                with patch("requests.post", return_value=response):
                    self.assertEqual(self.backend.generate(_inpaint_request()).error_kind, kind)

    def test_moderation_403_is_safety_blocked(self):
        response = FakeResponse(403, payload={"name": "content_moderation", "errors": ["flagged by moderation"]})
        with patch("requests.post", return_value=response):
            self.assertEqual(self.backend.generate(_inpaint_request()).error_kind, ErrorKind.SAFETY_BLOCKED)

    def test_connection_error_is_network_error(self):
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("refused")):
            self.assertEqual(self.backend.generate(_inpaint_request()).error_kind, ErrorKind.NETWORK_ERROR)

    def test_direct_edit_is_not_supported(self):
        with patch("requests.post") as post:
            result = self.backend.generate(_direct_request())
        self.assertEqual(result.error_kind, ErrorKind.INVALID_INPUT)
        post.assert_not_called()


class TestReplicateKontextBackend(unittest.TestCase):
    def setUp(self):
        self.backend = ReplicateKontextBackend(api_token="r8-test", timeout_s=5)
        self.backend.POLL_INTERVAL_S = 0

    def test_polls_until_succeeded_then_downloads(self):
        created = FakeResponse(201, payload={"id": "p1", "status": "starting", "urls": {"get": "https://poll/p1"}})
        polls = [
            FakeResponse(200, payload={"id": "p1", "status": "processing"}),
            FakeResponse(200, payload={"id": "p1", "status": "succeeded", "output": "https://img/p1.png"}),
            FakeResponse(200, content=png_bytes(48, 64)),
        ]
        with patch("requests.post", return_value=created) as post, patch("requests.get", side_effect=polls) as get:
            result = self.backend.generate(_direct_request())
        self.assertTrue(result.succeeded)
        self.assertEqual(result.photo.size, (48, 64))
        payload = post.call_args.kwargs["json"]["input"]
        self.assertTrue(payload["input_image"].startswith("data:image/jpeg;base64,"))
        self.assertEqual(get.call_args_list[0].args[0], "https://poll/p1")
        self.assertEqual(get.call_args_list[-1].args[0], "https://img/p1.png")

    def test_nsfw_failure_is_safety_blocked(self):
        created = FakeResponse(201, payload={"id": "p2", "status": "starting"})
        failed = FakeResponse(200, payload={"id": "p2", "status": "failed", "error": "NSFW content detected"})
        with patch("requests.post", return_value=created), patch("requests.get", return_value=failed):
            result = self.backend.generate(_direct_request())
        self.assertEqual(result.error_kind, ErrorKind.SAFETY_BLOCKED)

    def test_other_failure_is_unknown(self):
        created = FakeResponse(201, payload={"id": "p3", "status": "starting"})
        failed = FakeResponse(200, payload={"id": "p3", "status": "failed", "error": "CUDA out of memory"})
        with patch("requests.post", return_value=created), patch("requests.get", return_value=failed):
            self.assertEqual(self.backend.generate(_direct_request()).error_kind, ErrorKind.UNKNOWN)

    def test_output_url_accepts_lists(self):
        self.assertEqual(ReplicateKontextBackend._output_url(["", "https://a/b.png"]), "https://a/b.png")
        self.assertIsNone(ReplicateKontextBackend._output_url(None))

    def test_mask_inpaint_is_not_supported(self):
        self.assertEqual(self.backend.generate(_inpaint_request()).error_kind, ErrorKind.INVALID_INPUT)


class TestOpenAIImageBackend(unittest.TestCase):
    def setUp(self):
        self.backend = OpenAIImageBackend(api_key="sk-test", timeout_s=5)

    def test_b64_response_with_mask(self):
        body = {"data": [{"b64_json": base64.b64encode(png_bytes(48, 64)).decode("ascii")}]}
        with patch("requests.post", return_value=FakeResponse(200, payload=body)) as post:
            result = self.backend.generate(_inpaint_request())
        self.assertTrue(result.succeeded)
        kwargs = post.call_args.kwargs
        self.assertEqual([name for name, _ in kwargs["files"]], ["image", "mask"])
        self.assertEqual(kwargs["data"]["size"], "1024x1024")

    def test_moderation_blocked(self):
        body = {"error": {"code": "moderation_blocked", "message": "Your request was rejected"}}
        with patch("requests.post", return_value=FakeResponse(400, payload=body)):
            self.assertEqual(self.backend.generate(_direct_request()).error_kind, ErrorKind.SAFETY_BLOCKED)

    def test_empty_data_is_no_image(self):
        with patch("requests.post", return_value=FakeResponse(200, payload={"data": []})):
            self.assertEqual(self.backend.generate(_direct_request()).error_kind, ErrorKind.NO_IMAGE_RETURNED)

    def test_mask_alpha_is_inverted(self):
        mask = HairMask.from_array(np.array([[0, 255], [128, 255]]))
        alpha = np.asarray(Image.open(BytesIO(mask_to_alpha_png(mask))))[:, :, 3]
        np.testing.assert_array_equal(alpha, [[255, 0], [127, 0]])

    def test_unconfigured_is_auth_error(self):
        self.assertEqual(OpenAIImageBackend(api_key="").generate(_direct_request()).error_kind, ErrorKind.AUTH_ERROR)


if __name__ == "__main__":
    unittest.main()
