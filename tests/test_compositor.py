import unittest

import numpy as np

from hair_studio.common.errors import DimensionMismatch, ErrorKind
from hair_studio.common.models.hair_mask import HairMask
from hair_studio.common.models.photo import Photo
from hair_studio.common.services.compositor import IdentityCompositor
from hair_studio.common.services.hair_mask_synthesizer import HairMaskSynthesizer
from tests._helpers import DEFAULT_BOUNDARY, noise_photo, solid_photo


def _random_mask(width, height, seed=1):
    rng = np.random.default_rng(seed)
    return HairMask.from_array(rng.integers(0, 256, size=(height, width)))


class TestIdentityCompositor(unittest.TestCase):
    def setUp(self):
        self.compositor = IdentityCompositor()

    def test_low_mask_pixels_are_bit_identical_to_original(self):
        original = noise_photo(64, 48, seed=3)
        candidate = noise_photo(64, 48, seed=4)
        mask = _random_mask(64, 48)
        out = self.compositor.composite(original, candidate, mask)

        protected = mask.array() <= 51
        self.assertTrue(protected.any())
        np.testing.assert_array_equal(out.array()[protected], original.array()[protected])

    def test_high_mask_pixels_take_candidate(self):
        original = noise_photo(32, 32, seed=5)
        candidate = noise_photo(32, 32, seed=6)
        mask = _random_mask(32, 32, seed=7)
        out = self.compositor.composite(original, candidate, mask)

        replaced = mask.array() >= 204
        np.testing.assert_array_equal(out.array()[replaced], candidate.array()[replaced])

    def test_middle_band_blends(self):
        original = solid_photo(4, 4, (0, 0, 0, 255))
        candidate = solid_photo(4, 4, (200, 100, 50, 255))
        mask = HairMask.from_array(np.full((4, 4), 128))
        out = self.compositor.composite(original, candidate, mask)
        alpha = 128 / 255.0
        self.assertEqual(tuple(out.array()[0, 0]), (round(200 * alpha), round(100 * alpha), round(50 * alpha), 255))

    def test_compositing_is_idempotent(self):
        original = noise_photo(40, 30, seed=8)
        candidate = noise_photo(40, 30, seed=9)
        mask = _random_mask(40, 30, seed=10)
        first = self.compositor.composite(original, candidate, mask)
        second = self.compositor.composite(original, candidate, mask)
        self.assertEqual(first.to_bytes(), second.to_bytes())

    def test_smaller_candidate_is_resampled_to_original_size(self):
        original = noise_photo(1024, 1024, seed=11)
        candidate = solid_photo(512, 512, (0, 255, 0, 255))
        mask = HairMaskSynthesizer().synthesize(original, DEFAULT_BOUNDARY)
        out = self.compositor.composite(original, candidate, mask)

        self.assertEqual(out.size, (1024, 1024))
        np.testing.assert_array_equal(out.array()[512, 512], original.array()[512, 512])
        self.assertEqual(tuple(out.array()[20, 512]), (0, 255, 0, 255))

    def test_mask_size_mismatch_raises(self):
        original = noise_photo(10, 10)
        with self.assertRaises(DimensionMismatch) as ctx:
            self.compositor.composite(original, noise_photo(10, 10), HairMask.from_array(np.zeros((9, 10))))
        self.assertEqual(ctx.exception.kind, ErrorKind.DIMENSION_MISMATCH)

    def test_empty_candidate_raises(self):
        original = noise_photo(10, 10)
        empty = Photo(np.zeros((0, 0, 4), dtype=np.uint8))
        with self.assertRaises(DimensionMismatch):
            self.compositor.composite(original, empty, HairMask.from_array(np.zeros((10, 10))))

    def test_overlay_keeps_face_and_size(self):
        original = noise_photo(200, 300, seed=12)
        sprite = solid_photo(100, 150, (255, 0, 255, 255))
        mask = HairMaskSynthesizer().synthesize(original, DEFAULT_BOUNDARY)
        out = self.compositor.overlay(original, sprite, DEFAULT_BOUNDARY, DEFAULT_BOUNDARY, mask)

        self.assertEqual(out.size, original.size)
        protected = mask.array() <= 51
        np.testing.assert_array_equal(out.array()[protected], original.array()[protected])
        # 頭頂位置被貼圖覆蓋
        self.assertEqual(tuple(out.array()[10, 100]), (255, 0, 255, 255))

    def test_overlay_scale_uses_face_width_ratio(self):
        original = solid_photo(400, 400)
        sprite = solid_photo(200, 200)
        scale = self.compositor.overlay_scale(original, sprite, DEFAULT_BOUNDARY, DEFAULT_BOUNDARY)
        self.assertAlmostEqual(scale, 2.0 * 1.1)


if __name__ == "__main__":
    unittest.main()
