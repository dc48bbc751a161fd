"""Tests for threshold matrices and noise textures."""

import numpy as np
import pytest

from dither_engine import (
    BLUE_NOISE_CACHE_SIZE,
    DOT_CLASS_MATRIX,
    PATTERN_4x4,
    MatrixGenerator,
    _build_blue_noise,
    tile_matrix,
)


class TestBayerMatrix:
    """Recursive Bayer matrix construction."""

    def test_base_case(self):
        expected = np.array([[0.0, 0.5], [0.75, 0.25]], dtype=np.float32)
        np.testing.assert_array_equal(MatrixGenerator.bayer_matrix(2), expected)

    def test_recursion_top_left_quadrant(self):
        """Top-left quadrant of size 4 is 4*B2/16."""
        b2 = MatrixGenerator.bayer_matrix(2)
        b4 = MatrixGenerator.bayer_matrix(4)
        np.testing.assert_allclose(b4[0:2, 0:2], b2 * 4 / 16)
        np.testing.assert_allclose(b4[0:2, 2:4], (b2 * 4 + 2) / 16)

    def test_recursion_other_quadrants(self):
        b4 = MatrixGenerator.bayer_matrix(4)
        b8 = MatrixGenerator.bayer_matrix(8)
        np.testing.assert_allclose(b8[0:4, 4:8], (4 * b4 + 2) / 64)
        np.testing.assert_allclose(b8[4:8, 0:4], (4 * b4 + 3) / 64)
        np.testing.assert_allclose(b8[4:8, 4:8], (4 * b4 + 1) / 64)

    @pytest.mark.parametrize("size", [2, 4, 8, 16])
    def test_shape_and_range(self, size):
        m = MatrixGenerator.bayer_matrix(size)
        assert m.shape == (size, size)
        assert m.min() >= 0.0
        assert m.max() < 1.0

    def test_cached_matrix_is_read_only(self):
        m = MatrixGenerator.bayer_matrix(8)
        assert m is MatrixGenerator.bayer_matrix(8)
        assert not m.flags.writeable
        with pytest.raises(ValueError):
            m[0, 0] = 1.0


class TestBlueNoise:
    """Seeded blurred-noise texture."""

    def test_shape_and_normalization(self):
        tex = MatrixGenerator.blue_noise_texture(256, 42)
        assert tex.shape == (256, 256)
        assert tex.min() == pytest.approx(0.0)
        assert tex.max() == pytest.approx(1.0)

    def test_same_seed_same_texture(self):
        a = MatrixGenerator.blue_noise_texture(64, 7)
        _build_blue_noise.cache_clear()
        b = MatrixGenerator.blue_noise_texture(64, 7)
        assert a is not b
        np.testing.assert_array_equal(a, b)

    def test_texture_cache_is_bounded(self):
        _build_blue_noise.cache_clear()
        for seed in range(3 * BLUE_NOISE_CACHE_SIZE):
            MatrixGenerator.blue_noise_texture(16, seed)
        info = _build_blue_noise.cache_info()
        assert info.maxsize == BLUE_NOISE_CACHE_SIZE
        assert info.currsize == BLUE_NOISE_CACHE_SIZE

    def test_cached_texture_is_shared_and_read_only(self):
        tex = MatrixGenerator.blue_noise_texture(32, 9)
        assert tex is MatrixGenerator.blue_noise_texture(32, 9)
        assert not tex.flags.writeable

    def test_different_seed_different_texture(self):
        a = MatrixGenerator.blue_noise_texture(64, 1)
        b = MatrixGenerator.blue_noise_texture(64, 2)
        assert not np.array_equal(a, b)

    def test_smoother_than_white_noise(self):
        """Blurring removes most of the pixel-to-pixel variation."""
        tex = MatrixGenerator.blue_noise_texture(128, 3)
        white = np.random.RandomState(3).random_sample((128, 128))
        assert np.abs(np.diff(tex, axis=1)).mean() < np.abs(np.diff(white, axis=1)).mean()


class TestStaticTables:

    def test_pattern_matrix(self):
        assert PATTERN_4x4.shape == (4, 4)
        assert PATTERN_4x4[0, 0] == 0.0
        assert PATTERN_4x4[3, 0] == 0.9375
        assert len(np.unique(PATTERN_4x4)) == 16

    def test_dot_class_matrix(self):
        assert DOT_CLASS_MATRIX.shape == (8, 8)
        assert DOT_CLASS_MATRIX[0, 0] == 39
        assert DOT_CLASS_MATRIX[5, 6] == 61
        thresholds = MatrixGenerator.dot_class_thresholds()
        assert thresholds[0, 0] == pytest.approx(39 / 64)

    def test_tile_matrix_wraps(self):
        m = np.arange(4).reshape(2, 2)
        tiled = tile_matrix(m, 3, 5)
        assert tiled.shape == (3, 5)
        assert tiled[2, 4] == m[0, 0]
        assert tiled[1, 3] == m[1, 1]
