"""
End-to-end tests for the palette pipeline.
"""

import json

import numpy as np
import pytest
from PIL import Image

from color_stats import calculate_color_stats
from extract_palette import (
    InvalidInputError, PaletteConfig, extract_palette, extract_palette_from_file,
    format_palette, format_stats, load_pixel_buffer, stats_to_dict,
    validate_pixel_buffer,
)
from lab_worker import LabConversionService


def image_buffer(rgb: np.ndarray) -> bytes:
    """(h, w, 3) uint8 -> interleaved RGBA bytes."""
    h, w = rgb.shape[:2]
    rgba = np.full((h, w, 4), 255, dtype=np.uint8)
    rgba[:, :, :3] = rgb
    return rgba.tobytes()


def striped_image(width=24, height=24):
    """Vertical stripes of eight well-separated colors with mild noise."""
    colors = np.array([
        (0, 0, 0), (255, 255, 255), (255, 0, 0), (0, 255, 0),
        (0, 0, 255), (255, 255, 0), (0, 255, 255), (255, 0, 255),
    ])
    stripe = (np.arange(width) * len(colors)) // width
    rgb = np.repeat(colors[stripe][None, :, :], height, axis=0)
    rng = np.random.default_rng(2)
    rgb = np.clip(rgb + rng.integers(-6, 7, size=rgb.shape), 0, 255)
    return rgb.astype(np.uint8)


@pytest.fixture
def noisy_buffer():
    rng = np.random.default_rng(9)
    return image_buffer(rng.integers(0, 256, size=(32, 32, 3), dtype=np.uint8))


class TestScenarios:
    """Known-answer scenarios"""

    def test_red_and_blue(self):
        rgb = np.array([[(255, 0, 0), (0, 0, 255)], [(255, 0, 0), (0, 0, 255)]], dtype=np.uint8)
        result = extract_palette(image_buffer(rgb), 2, 2, PaletteConfig(palette_size=2))

        assert result.ok
        assert result.total_pixels == 4
        entries = {c.rgb: (c.count, c.percentage) for c in result.colors}
        assert entries == {(255, 0, 0): (2, 0.5), (0, 0, 255): (2, 0.5)}
        # Sorted by lightness: blue is darker than red
        assert result.colors[0].rgb == (0, 0, 255)

    @pytest.mark.parametrize("use_superpixels", [False, True])
    def test_uniform_image(self, use_superpixels):
        rgb = np.full((10, 10, 3), (120, 130, 140), dtype=np.uint8)
        config = PaletteConfig(use_superpixels=use_superpixels)
        result = extract_palette(image_buffer(rgb), 10, 10, config)

        assert len(result.colors) == 1
        color = result.colors[0]
        assert color.rgb == (120, 130, 140)
        assert color.count == 100
        assert color.percentage == 1.0
        assert color.is_background
        assert not color.is_hidden

    def test_uniform_image_superpixels_collapse(self):
        rgb = np.full((100, 100, 3), (40, 40, 40), dtype=np.uint8)
        config = PaletteConfig(use_superpixels=True, superpixel_count=50)
        result = extract_palette(image_buffer(rgb), 100, 100, config)

        assert len(result.superpixels.features) == 1
        assert len(result.colors) == 1
        assert result.colors[0].count == 10_000

    def test_small_region_survives_superpixels(self, noisy_regions):
        pixels, width, height = noisy_regions
        result = extract_palette(pixels, width, height, PaletteConfig(use_superpixels=True))

        assert result.ok
        assert len(result.superpixels.features) >= 50
        assert any(r > 180 and g > 170 and b < 90 for r, g, b in (c.rgb for c in result.colors))


class TestInvariants:
    """Properties that hold for any input"""

    @pytest.mark.parametrize("use_delta_e", [True, False])
    def test_raw_counts_sum_to_pixels(self, noisy_buffer, use_delta_e):
        result = extract_palette(noisy_buffer, 32, 32, PaletteConfig(use_delta_e=use_delta_e))
        assert sum(c.count for c in result.colors) == 1024
        assert len(result.colors) <= 12

    @pytest.mark.parametrize("use_delta_e", [True, False])
    def test_superpixel_counts_sum_to_processed_pixels(self, use_delta_e):
        config = PaletteConfig(use_superpixels=True, superpixel_count=16, use_delta_e=use_delta_e)
        result = extract_palette(image_buffer(striped_image()), 24, 24, config)
        assert result.total_pixels == result.superpixels.processed_pixels == 576
        assert sum(c.count for c in result.colors) == 576

    def test_palette_size_is_monotone(self):
        buffer = image_buffer(striped_image())
        sizes = []
        for palette_size in range(1, 11):
            config = PaletteConfig(palette_size=palette_size, dominant_colors=16)
            result = extract_palette(buffer, 24, 24, config)
            assert len(result.colors) <= palette_size
            sizes.append(len(result.colors))

        assert sizes[0] == 1
        assert sizes == sorted(sizes)

    def test_output_sorted_by_lightness(self, noisy_buffer):
        result = extract_palette(noisy_buffer, 32, 32)
        lightness = [c.lab[0] for c in result.colors]
        assert lightness == sorted(lightness)

    def test_at_most_one_background(self, noisy_buffer):
        result = extract_palette(noisy_buffer, 32, 32)
        assert sum(c.is_background for c in result.colors) <= 1
        assert sum(c.is_hidden for c in result.colors) <= 3


class TestInputContract:
    """Invalid input produces a diagnostic, not an exception"""

    @pytest.mark.parametrize("buffer,width,height", [
        (bytes(15), 2, 2),
        (bytes(16), 0, 2),
        (bytes(16), 2, -2),
        (None, 2, 2),
        (bytes(16), 2.0, 2),
    ])
    def test_bad_buffer(self, buffer, width, height):
        result = extract_palette(buffer, width, height)
        assert not result.ok
        assert result.colors == []
        assert result.diagnostic

    def test_bad_config(self):
        result = extract_palette(bytes(16), 2, 2, PaletteConfig(palette_size=0))
        assert not result.ok
        assert "palette_size" in result.diagnostic

    @pytest.mark.parametrize("name,value", [
        ('merge_radius', -1.0),
        ('feature_threshold', -0.5),
        ('background_threshold', -15.0),
        ('background_variance_scale', -1.0),
        ('superpixel_compactness', -10.0),
        ('merge_radius', float('nan')),
        ('min_hidden_percentage', 1.5),
        ('min_background_percentage', -0.1),
        ('max_pixels', -1),
    ])
    def test_out_of_range_config(self, name, value):
        config = PaletteConfig(**{name: value})
        result = extract_palette(bytes(16), 2, 2, config)
        assert not result.ok
        assert name in result.diagnostic

    def test_background_variance_scale_through_superpixels(self):
        config = PaletteConfig(use_superpixels=True, background_variance_scale=-1.0)
        result = extract_palette(image_buffer(striped_image()), 24, 24, config)
        assert not result.ok
        assert result.colors == []

    @pytest.mark.parametrize("buffer", [
        np.full(16, np.nan),
        np.full(16, np.inf),
        np.full(16, 0.5),
        np.full(16, True),
        np.full(16, 1 + 2j),
    ])
    def test_unusable_array_values(self, buffer):
        result = extract_palette(buffer, 2, 2)
        assert not result.ok
        assert result.colors == []

    def test_whole_number_floats_accepted(self):
        buffer = np.tile([10.0, 20.0, 30.0, 255.0], 4)
        result = extract_palette(buffer, 2, 2)
        assert result.ok
        assert [c.rgb for c in result.colors] == [(10, 20, 30)]

    def test_unknown_hidden_policy(self):
        result = extract_palette(bytes(16), 2, 2, PaletteConfig(hidden_policy='loudest'))
        assert not result.ok

    def test_validate_raises_value_error(self):
        with pytest.raises(ValueError):
            validate_pixel_buffer(bytes(3), 1, 1)
        with pytest.raises(InvalidInputError):
            validate_pixel_buffer(np.array([0, 0, 0, 300]), 1, 1)

    def test_array_and_bytes_agree(self, noisy_buffer):
        arr = np.frombuffer(noisy_buffer, dtype=np.uint8).reshape(32, 32, 4)
        from_bytes = extract_palette(noisy_buffer, 32, 32)
        from_array = extract_palette(arr, 32, 32)
        assert [c.rgb for c in from_bytes.colors] == [c.rgb for c in from_array.colors]


class TestLabService:
    """The background LAB worker does not change the result"""

    def test_service_matches_inline(self, noisy_buffer):
        inline = extract_palette(noisy_buffer, 32, 32)
        with LabConversionService() as service:
            threaded = extract_palette(noisy_buffer, 32, 32, lab_service=service)
        assert [c.to_dict() for c in threaded.colors] == [c.to_dict() for c in inline.colors]


class TestFiles:
    """Image loading and formatting"""

    def test_load_png(self, tmp_path):
        path = tmp_path / "swatch.png"
        Image.new('RGB', (5, 3), (10, 20, 30)).save(path)

        buffer, width, height = load_pixel_buffer(str(path))
        assert (width, height) == (5, 3)
        assert len(buffer) == 5 * 3 * 4
        assert buffer[:4] == bytes([10, 20, 30, 255])

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pixel_buffer(str(tmp_path / "missing.png"))

    def test_not_an_image(self, tmp_path):
        path = tmp_path / "notes.png"
        path.write_text("not an image")
        with pytest.raises(ValueError):
            load_pixel_buffer(str(path))

    def test_extract_from_file_and_format(self, tmp_path):
        path = tmp_path / "swatch.png"
        Image.new('RGB', (4, 4), (31, 78, 121)).save(path)

        result = extract_palette_from_file(str(path))
        text = format_palette(result)
        assert "#1F4E79" in text
        assert "background" in text

        payload = json.loads(json.dumps(result.to_dict()))
        assert payload['totalPixels'] == 16
        assert payload['colors'][0]['isBackground'] is True

    def test_format_diagnostic(self):
        result = extract_palette(bytes(3), 1, 1)
        assert format_palette(result).startswith("No palette")

    def test_stats_report(self):
        buffer = image_buffer(np.full((3, 3, 3), (31, 78, 121), dtype=np.uint8))
        stats = calculate_color_stats(buffer)
        assert stats.count == 9
        assert "9 pixels" in format_stats(stats)
        assert stats_to_dict(stats)['labStd'] == pytest.approx([0.0, 0.0, 0.0], abs=1e-9)
        assert stats_to_dict(None) is None
