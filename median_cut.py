#!/usr/bin/env python3
"""
Modified median cut quantization (MMCQ).

Splits the pixel population into boxes along the widest of six channels
(R, G, B, L*, a*, b*) and returns one averaged color per box. The result is
used as the seed set for palette refinement.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from loguru import logger

from color_space import rgb_array_to_lab


MAX_SPLITS = 4096  # Hard ceiling on split attempts per run


@dataclass(frozen=True)
class BoxColor:
    """Average color of one terminal box."""
    r: int
    g: int
    b: int
    count: int

    @property
    def rgb(self) -> tuple:
        return (self.r, self.g, self.b)


class ColorBox:
    """
    A set of pixel samples with the true per-channel min/max of its members.

    Members are stored as a single (n, 6) float array: RGB followed by Lab.
    """

    def __init__(self, samples: np.ndarray):
        self.samples = samples
        self.terminal = False
        if len(samples):
            self.min = samples.min(axis=0)
            self.max = samples.max(axis=0)
        else:
            self.min = np.zeros(6)
            self.max = np.zeros(6)
        self.range = self.max - self.min

    def __len__(self) -> int:
        return len(self.samples)

    def widest_channel(self) -> int:
        """Index of the channel with the widest range (first one wins ties)."""
        return int(np.argmax(self.range))

    def split(self) -> tuple:
        """Sort along the widest channel and split at the median index."""
        channel = self.widest_channel()
        order = np.argsort(self.samples[:, channel], kind='stable')
        ordered = self.samples[order]
        median = len(ordered) // 2
        return ColorBox(ordered[:median]), ColorBox(ordered[median:])

    def average_color(self) -> Optional[BoxColor]:
        if len(self.samples) == 0:
            return None
        mean = self.samples[:, :3].mean(axis=0)
        r, g, b = (int(v) for v in np.floor(mean + 0.5))
        return BoxColor(r=r, g=g, b=b, count=len(self.samples))


def extract_palette_median_cut(pixels: np.ndarray, max_colors: int,
                               lab: Optional[np.ndarray] = None) -> list[BoxColor]:
    """
    Extract up to max_colors representative colors with median cut.

    Args:
        pixels: Array of shape (n, 3) or (n, 4) with 0-255 channels, or a flat
            interleaved RGBA buffer. Alpha is ignored.
        max_colors: Target number of boxes
        lab: Optional precomputed LAB values for the pixels, shape (n, 3)

    Returns:
        List of BoxColor, one per non-empty box. Counts sum to n.
    """
    pixels = np.asarray(pixels)
    if pixels.size == 0 or max_colors <= 0:
        logger.warning(f"Median cut skipped: {pixels.size} values, max_colors={max_colors}")
        return []

    if pixels.ndim == 1:
        pixels = pixels.reshape(-1, 4)
    rgb = pixels.reshape(len(pixels), -1)[:, :3].astype(np.float64)
    if lab is None:
        lab = rgb_array_to_lab(rgb)
    elif len(lab) != len(rgb):
        raise ValueError(f"LAB array has {len(lab)} rows, expected {len(rgb)}")

    boxes = [ColorBox(np.hstack([rgb, np.asarray(lab, dtype=np.float64)]))]
    split_limit = min(max_colors * max_colors, MAX_SPLITS)
    splits = 0

    while len(boxes) < max_colors and splits < split_limit:
        candidates = [i for i, box in enumerate(boxes) if not box.terminal]
        if not candidates:
            break

        # Largest box first; max() keeps the first one found on ties
        index = max(candidates, key=lambda i: len(boxes[i]))
        box = boxes[index]
        if len(box) <= 1:
            break

        splits += 1
        left, right = box.split()
        if len(left) == 0 or len(right) == 0:
            logger.warning("Median cut split produced an empty box; keeping parent as terminal")
            box.terminal = True
            continue

        boxes[index:index + 1] = [left, right]

    if splits >= split_limit:
        logger.debug(f"Median cut reached split ceiling ({split_limit})")

    palette = [color for color in (box.average_color() for box in boxes) if color is not None]
    logger.debug(f"Median cut produced {len(palette)} colors from {len(rgb)} pixels")
    return palette
