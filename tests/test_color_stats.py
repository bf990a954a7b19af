"""
Tests for HSV/LAB channel statistics.
"""

import numpy as np
import pytest

from color_space import rgb_to_lab
from color_stats import calculate_color_stats


def test_uniform_image_has_zero_deviation():
    pixels = np.tile(np.array([30, 90, 150, 255], dtype=np.uint8), (64, 1))
    stats = calculate_color_stats(pixels)

    assert stats.count == 64
    np.testing.assert_allclose(stats.lab_mean, rgb_to_lab(30, 90, 150))
    np.testing.assert_allclose(stats.lab_std, 0, atol=1e-9)
    np.testing.assert_allclose(stats.hsv_std, 0, atol=1e-9)


def test_black_and_white():
    pixels = np.array([[0, 0, 0, 255], [255, 255, 255, 255]], dtype=np.uint8)
    stats = calculate_color_stats(pixels)

    assert stats.lab_mean[0] == pytest.approx(50.0, abs=1e-3)
    assert stats.hsv_mean.tolist() == pytest.approx([0.0, 0.0, 0.5])
    # Sample standard deviation of {0, 1}
    assert stats.hsv_std[2] == pytest.approx(np.sqrt(0.5))


def test_single_pixel():
    stats = calculate_color_stats(np.array([10, 20, 30, 255], dtype=np.uint8))
    assert stats.count == 1
    np.testing.assert_allclose(stats.lab_std, 0, atol=1e-9)


def test_sample_factor():
    pixels = np.zeros((100, 4), dtype=np.uint8)
    assert calculate_color_stats(pixels, sample_factor=4).count == 25


def test_empty_buffer():
    assert calculate_color_stats(np.zeros(0, dtype=np.uint8)) is None
