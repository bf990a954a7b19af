#!/usr/bin/env python3
"""Channel statistics (mean, sample standard deviation) in HSV and LAB."""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from color_space import rgb_array_to_hsv, rgb_array_to_lab


@dataclass
class ColorStats:
    """Per-channel summary of a (sampled) pixel buffer."""
    hsv_mean: np.ndarray
    hsv_std: np.ndarray
    lab_mean: np.ndarray
    lab_std: np.ndarray
    count: int


def calculate_color_stats(pixels, sample_factor: int = 1) -> Optional[ColorStats]:
    """
    Compute HSV and LAB channel statistics.

    Hue is averaged linearly, not circularly.

    Args:
        pixels: Flat RGBA buffer (bytes or array) or array of shape (n, 3) / (n, 4)
        sample_factor: Process every Nth pixel

    Returns:
        ColorStats, or None for an empty buffer
    """
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        arr = np.frombuffer(pixels, dtype=np.uint8)
    else:
        arr = np.asarray(pixels, dtype=np.uint8)
    if arr.size == 0:
        return None
    if arr.ndim == 1:
        arr = arr.reshape(-1, 4)

    rgb = arr[::max(1, sample_factor), :3]
    hsv = rgb_array_to_hsv(rgb)
    lab = rgb_array_to_lab(rgb)

    # Sample standard deviation needs two values
    ddof = 1 if len(rgb) > 1 else 0

    return ColorStats(
        hsv_mean=hsv.mean(axis=0),
        hsv_std=hsv.std(axis=0, ddof=ddof),
        lab_mean=lab.mean(axis=0),
        lab_std=lab.std(axis=0, ddof=ddof),
        count=len(rgb),
    )
