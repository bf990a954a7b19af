"""
Tests for synchronous and background LAB conversion.
"""

import numpy as np
import pytest

from color_space import rgb_array_to_lab
from lab_worker import LabConversionService, convert_to_lab


@pytest.fixture
def pixels():
    rng = np.random.default_rng(5)
    return rng.integers(0, 256, size=(500, 4), dtype=np.uint8)


class TestConvertToLab:
    """Test the conversion function"""

    def test_matches_array_conversion(self, pixels):
        result = convert_to_lab(pixels)
        np.testing.assert_array_equal(result.values, rgb_array_to_lab(pixels[:, :3]))
        assert result.count == 500
        np.testing.assert_allclose(result.mean, result.values.mean(axis=0))

    def test_sample_factor(self, pixels):
        result = convert_to_lab(pixels, sample_factor=10)
        assert result.count == 50
        np.testing.assert_array_equal(result.values, rgb_array_to_lab(pixels[::10, :3]))

    def test_flat_buffer(self, pixels):
        np.testing.assert_array_equal(convert_to_lab(pixels.ravel()).values, convert_to_lab(pixels).values)

    def test_invalid_sample_factor(self, pixels):
        with pytest.raises(ValueError):
            convert_to_lab(pixels, sample_factor=0)


class TestLabConversionService:
    """Test the background worker"""

    def test_worker_matches_synchronous(self, pixels):
        expected = convert_to_lab(pixels, sample_factor=3)
        with LabConversionService() as service:
            assert service.running
            result = service.convert(pixels, sample_factor=3).result(timeout=30)
        np.testing.assert_array_equal(result.values, expected.values)
        assert result.count == expected.count
        assert not service.running

    def test_not_started_runs_inline(self, pixels):
        service = LabConversionService()
        future = service.convert(pixels)
        assert future.done()
        np.testing.assert_array_equal(future.result().values, convert_to_lab(pixels).values)

    def test_inline_error_is_carried_by_future(self, pixels):
        future = LabConversionService().convert(pixels, sample_factor=0)
        assert isinstance(future.exception(), ValueError)

    def test_worker_error_is_carried_by_future(self, pixels):
        with LabConversionService() as service:
            future = service.convert(pixels, sample_factor=0)
            with pytest.raises(ValueError):
                future.result(timeout=30)

    def test_start_is_idempotent(self):
        service = LabConversionService()
        assert service.start() is service.start()
        service.shutdown()
        service.shutdown()
        assert not service.running
