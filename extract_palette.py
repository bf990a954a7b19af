#!/usr/bin/env python3
"""
Palette extraction pipeline.

RGBA buffer -> median cut seeds -> (optional SLIC superpixels) -> refinement
-> annotated palette sorted by lightness.

Input contract violations never raise out of extract_palette(); they come back
as an empty PaletteResult with a diagnostic message.
"""

import json
from dataclasses import dataclass, field, fields
from typing import Optional

import numpy as np
from loguru import logger
from PIL import Image

from color_stats import ColorStats, calculate_color_stats
from median_cut import extract_palette_median_cut
from refine_palette import (
    BACKGROUND_THRESHOLD, FEATURE_THRESHOLD, HIDDEN_POLICIES, MAX_ITERATIONS,
    MERGE_RADIUS, MIN_BACKGROUND_PERCENTAGE, PaletteColor, RawPixels,
    SuperpixelFeatures, refine_palette,
)
from slic import COLOR_SPACES, MAX_PIXELS, SlicResult, apply_slic


# =============================================================================
# Constants
# =============================================================================

# Image size limits (security: prevent decompression bombs)
MAX_IMAGE_PIXELS = 50_000_000  # 50 megapixels
MAX_IMAGE_DIMENSION = 10_000  # 10k pixels per side

CHANNELS = 4  # Interleaved R, G, B, A


class InvalidInputError(ValueError):
    """Pixel buffer or configuration violates the input contract."""


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class PaletteConfig:
    """Parameters for one extraction run. Distance thresholds are Delta-E76."""
    palette_size: int = 12  # Upper bound on output colors
    dominant_colors: int = 12  # Median cut seed count
    min_colors: int = 3  # Merging never goes below this
    merge_radius: float = MERGE_RADIUS
    max_cluster_radius: Optional[float] = None  # Enables constrained k-means
    max_iterations: int = MAX_ITERATIONS

    max_hidden_colors: int = 3
    min_hidden_percentage: float = 0.001  # Fraction of total weight
    feature_threshold: float = FEATURE_THRESHOLD
    hidden_policy: str = 'outlier'

    superpixel_count: int = 200
    superpixel_compactness: float = 10.0
    superpixel_color_space: str = 'lab'
    max_pixels: int = MAX_PIXELS

    max_backgrounds: int = 1
    background_variance_scale: float = 1.0
    background_threshold: float = BACKGROUND_THRESHOLD
    min_background_percentage: float = MIN_BACKGROUND_PERCENTAGE

    use_superpixels: bool = False
    use_delta_e: bool = True

    def validate(self):
        """
        Raises:
            InvalidInputError: If a count, threshold or percentage is out of
                range or an option is unknown
        """
        for name in ('palette_size', 'dominant_colors', 'superpixel_count',
                     'max_iterations'):
            value = getattr(self, name)
            if not value > 0:
                raise InvalidInputError(f"{name} must be positive, got {value}")
        for name in ('min_colors', 'max_hidden_colors', 'max_backgrounds',
                     'merge_radius', 'feature_threshold', 'background_threshold',
                     'background_variance_scale', 'superpixel_compactness'):
            value = getattr(self, name)
            # NaN fails both comparisons
            if not value >= 0:
                raise InvalidInputError(f"{name} must not be negative, got {value}")
        for name in ('min_hidden_percentage', 'min_background_percentage'):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise InvalidInputError(f"{name} must be a fraction in [0, 1], got {value}")
        if self.max_cluster_radius is not None and self.max_cluster_radius <= 0:
            raise InvalidInputError(f"max_cluster_radius must be positive, got {self.max_cluster_radius}")
        if self.max_pixels is not None and self.max_pixels < 0:
            raise InvalidInputError(f"max_pixels must not be negative, got {self.max_pixels}")
        if self.hidden_policy not in HIDDEN_POLICIES:
            raise InvalidInputError(f"Unknown hidden_policy '{self.hidden_policy}'")
        if self.superpixel_color_space not in COLOR_SPACES:
            raise InvalidInputError(f"Unknown superpixel_color_space '{self.superpixel_color_space}'")


@dataclass
class PaletteResult:
    """Output of extract_palette()."""
    colors: list = field(default_factory=list)  # PaletteColor, sorted by L*
    total_pixels: int = 0  # Processed pixel count (post-downsampling)
    diagnostic: Optional[str] = None
    superpixels: Optional[SlicResult] = None

    @property
    def ok(self) -> bool:
        return self.diagnostic is None

    def to_dict(self) -> dict:
        return {
            'colors': [c.to_dict() for c in self.colors],
            'totalPixels': self.total_pixels,
            'diagnostic': self.diagnostic,
        }


# =============================================================================
# Input validation
# =============================================================================

def validate_pixel_buffer(buffer, width: int, height: int) -> np.ndarray:
    """
    Check the RGBA buffer contract and return it as an (n, 4) uint8 array.

    Raises:
        InvalidInputError: If the size is zero/negative, the buffer length
            is not width * height * 4, or an array holds values that are not
            whole numbers in 0-255
    """
    if not isinstance(width, (int, np.integer)) or not isinstance(height, (int, np.integer)):
        raise InvalidInputError(f"Width and height must be integers, got {width!r}x{height!r}")
    if width <= 0 or height <= 0:
        raise InvalidInputError(f"Image size must be positive, got {width}x{height}")
    if buffer is None:
        raise InvalidInputError("Pixel buffer is missing")

    if isinstance(buffer, (bytes, bytearray, memoryview)):
        arr = np.frombuffer(buffer, dtype=np.uint8)
    else:
        arr = np.asarray(buffer)
        if arr.dtype != np.uint8:
            if arr.dtype == np.bool_ or arr.dtype.kind not in 'iuf':
                raise InvalidInputError(f"Pixel values must be numeric, got dtype {arr.dtype}")
            if arr.size:
                if not np.isfinite(arr).all():
                    raise InvalidInputError("Pixel values must be finite")
                if (arr != np.round(arr)).any():
                    raise InvalidInputError("Pixel values must be whole numbers")
                if arr.min() < 0 or arr.max() > 255:
                    raise InvalidInputError("Pixel values must be in 0-255")
            arr = arr.astype(np.uint8)

    expected = width * height * CHANNELS
    if arr.size != expected:
        raise InvalidInputError(
            f"Pixel buffer has {arr.size} values, expected {expected} for {width}x{height} RGBA"
        )

    return arr.reshape(-1, CHANNELS)


# =============================================================================
# Pipeline
# =============================================================================

def extract_palette(buffer, width: int, height: int,
                    config: Optional[PaletteConfig] = None,
                    lab_service=None) -> PaletteResult:
    """
    Extract the annotated palette from an RGBA pixel buffer.

    Args:
        buffer: Interleaved RGBA bytes (bytes, bytearray, memoryview or array)
        width: Image width
        height: Image height
        config: Extraction parameters (defaults if None)
        lab_service: Optional LabConversionService used for the median cut LAB pass

    Returns:
        PaletteResult. On invalid input the colors are empty and diagnostic
        explains why.
    """
    config = config or PaletteConfig()

    try:
        config.validate()
        pixels = validate_pixel_buffer(buffer, width, height)
    except InvalidInputError as e:
        logger.warning(f"Rejected palette extraction input: {e}")
        return PaletteResult(diagnostic=str(e))

    lab = None
    if lab_service is not None:
        lab = lab_service.convert(pixels).result().values

    seeds = extract_palette_median_cut(pixels, config.dominant_colors, lab=lab)
    logger.debug(f"Median cut: {len(seeds)} seed colors")

    superpixels = None
    if config.use_superpixels:
        superpixels = apply_slic(
            pixels, width, height,
            superpixel_count=config.superpixel_count,
            compactness=config.superpixel_compactness,
            color_space=config.superpixel_color_space,
            max_pixels=config.max_pixels,
        )
        source = SuperpixelFeatures.from_slic(superpixels)
        total_pixels = superpixels.processed_pixels
    else:
        source = RawPixels(pixels)
        total_pixels = len(pixels)

    colors = refine_palette(
        source, seeds,
        palette_size=config.palette_size,
        min_colors=config.min_colors,
        merge_radius=config.merge_radius,
        use_delta_e=config.use_delta_e,
        max_radius=config.max_cluster_radius,
        max_iterations=config.max_iterations,
        background_threshold=config.background_threshold,
        background_variance_scale=config.background_variance_scale,
        max_backgrounds=config.max_backgrounds,
        min_background_percentage=config.min_background_percentage,
        feature_threshold=config.feature_threshold,
        max_hidden_colors=config.max_hidden_colors,
        min_hidden_percentage=config.min_hidden_percentage,
        hidden_policy=config.hidden_policy,
    )

    logger.info(f"Extracted {len(colors)} colors from {width}x{height} image")
    return PaletteResult(colors=colors, total_pixels=total_pixels, superpixels=superpixels)


# =============================================================================
# Image loading
# =============================================================================

def load_pixel_buffer(image_path: str) -> tuple[bytes, int, int]:
    """
    Load an image file as an interleaved RGBA buffer.

    Returns:
        Tuple of (buffer, width, height)

    Raises:
        FileNotFoundError: If image file doesn't exist
        ValueError: If file is not a valid image or exceeds size limits
    """
    try:
        img = Image.open(image_path)
    except FileNotFoundError:
        raise FileNotFoundError(f"Image not found: {image_path}")
    except Exception as e:
        raise ValueError(f"Could not open image: {e}")

    # Validate image dimensions (security: prevent decompression bombs)
    width, height = img.size
    if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
        raise ValueError(
            f"Image dimensions {width}x{height} exceed maximum "
            f"{MAX_IMAGE_DIMENSION}x{MAX_IMAGE_DIMENSION}"
        )
    if width * height > MAX_IMAGE_PIXELS:
        raise ValueError(
            f"Image has {width * height:,} pixels, exceeding maximum {MAX_IMAGE_PIXELS:,}"
        )

    return img.convert('RGBA').tobytes(), width, height


def extract_palette_from_file(image_path: str, config: Optional[PaletteConfig] = None) -> PaletteResult:
    """Load an image and run the pipeline on it."""
    buffer, width, height = load_pixel_buffer(image_path)
    return extract_palette(buffer, width, height, config)


def format_palette(result: PaletteResult) -> str:
    """One line per color: hex, share, count and flags."""
    if not result.ok:
        return f"No palette: {result.diagnostic}"

    lines = [f"{len(result.colors)} colors from {result.total_pixels:,} pixels"]
    for color in result.colors:
        flags = []
        if color.is_background:
            flags.append('background')
        if color.is_hidden:
            flags.append('hidden')
        L, a, b = color.lab
        lines.append(
            f"  {color.hex}  {color.percentage * 100:5.1f}%  {color.count:>9,}  "
            f"L={L:5.1f} a={a:6.1f} b={b:6.1f}  {', '.join(flags)}".rstrip()
        )
    return '\n'.join(lines)


def stats_to_dict(stats: Optional[ColorStats]) -> Optional[dict]:
    if stats is None:
        return None
    return {
        'hsvMean': stats.hsv_mean.tolist(),
        'hsvStd': stats.hsv_std.tolist(),
        'labMean': stats.lab_mean.tolist(),
        'labStd': stats.lab_std.tolist(),
        'count': stats.count,
    }


def format_stats(stats: Optional[ColorStats]) -> str:
    if stats is None:
        return "No statistics: empty image"
    h, s, v = stats.hsv_mean
    L, a, b = stats.lab_mean
    sL, sa, sb = stats.lab_std
    return (f"Stats over {stats.count:,} pixels\n"
            f"  HSV mean: h={h:.3f} s={s:.3f} v={v:.3f}\n"
            f"  LAB mean: L={L:5.1f} a={a:6.1f} b={b:6.1f}  (std {sL:.1f}, {sa:.1f}, {sb:.1f})")


# =============================================================================
# CLI
# =============================================================================

def add_config_arguments(parser):
    """Register one flag per PaletteConfig field."""
    for f in fields(PaletteConfig):
        flag = '--' + f.name.replace('_', '-')
        if f.type in (bool, 'bool'):
            parser.add_argument(flag, dest=f.name, action='store_true', default=f.default,
                                help=f"Enable {f.name}")
            parser.add_argument('--no-' + f.name.replace('_', '-'), dest=f.name,
                                action='store_false', help=f"Disable {f.name}")
        elif f.name in ('max_cluster_radius',):
            parser.add_argument(flag, dest=f.name, type=float, default=f.default)
        elif f.type in (int, 'int'):
            parser.add_argument(flag, dest=f.name, type=int, default=f.default)
        elif f.type in (float, 'float'):
            parser.add_argument(flag, dest=f.name, type=float, default=f.default)
        else:
            parser.add_argument(flag, dest=f.name, default=f.default)


def config_from_args(args) -> PaletteConfig:
    return PaletteConfig(**{f.name: getattr(args, f.name) for f in fields(PaletteConfig)})


if __name__ == '__main__':
    import argparse
    import sys

    parser = argparse.ArgumentParser(
        description='Extract an annotated color palette from an image.'
    )
    parser.add_argument(
        '--input', '-i',
        required=True,
        help='Path to the image file'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the palette as JSON instead of text'
    )
    parser.add_argument(
        '--stats',
        action='store_true',
        help='Also print HSV/LAB channel statistics of the image'
    )
    add_config_arguments(parser)

    args = parser.parse_args()

    try:
        buffer, width, height = load_pixel_buffer(args.input)
        result = extract_palette(buffer, width, height, config_from_args(args))
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error analyzing image: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        payload = result.to_dict()
        if args.stats:
            payload['stats'] = stats_to_dict(calculate_color_stats(buffer))
        print(json.dumps(payload, indent=2))
    else:
        print(format_palette(result))
        if args.stats:
            print(format_stats(calculate_color_stats(buffer)))

    if not result.ok:
        sys.exit(1)
