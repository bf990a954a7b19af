"""
Shared synthetic images.
"""

import numpy as np
import pytest


YELLOW = (235, 220, 30)


@pytest.fixture
def noisy_regions():
    """
    200x200 RGBA pixels: red left half, blue right half and a 40x40 yellow
    square (4% of the image), all with Gaussian noise (sigma 25).

    Returns:
        Tuple of (pixels (n, 4) uint8, width, height)
    """
    size = 200
    rgb = np.zeros((size, size, 3), dtype=np.float64)
    rgb[:, :size // 2] = (200, 40, 40)
    rgb[:, size // 2:] = (40, 60, 200)
    rgb[80:120, 80:120] = YELLOW

    rng = np.random.default_rng(4)
    rgb = np.clip(rgb + rng.normal(0, 25, size=rgb.shape), 0, 255)

    pixels = np.full((size * size, 4), 255, dtype=np.uint8)
    pixels[:, :3] = np.round(rgb).reshape(-1, 3).astype(np.uint8)
    return pixels, size, size
