#!/usr/bin/env python3
"""
SLIC (Simple Linear Iterative Clustering) superpixels.

Partitions an image into compact, color-homogeneous regions and reduces each
region to its average color and pixel count. Used as a noise-suppressing
pre-aggregation stage before palette refinement.

Stages:
    1. Optional area downsampling above a pixel ceiling
    2. Grid seeding, moved to the lowest local gradient
    3. Fixed number of assignment/update rounds in a 2*step search window
    4. Connectivity enforcement (4-connected) and merging of identical neighbors
    5. Per-superpixel features
"""

import math
from dataclasses import dataclass, field

import numpy as np
from loguru import logger
from PIL import Image
from scipy import ndimage
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial.distance import cdist

from color_space import rgb_array_to_lab


# =============================================================================
# Constants
# =============================================================================

MAX_PIXELS = 100_000  # Downsample above this many pixels
ITERATIONS = 10  # Assignment/update rounds
MERGE_TOLERANCE = 0.5  # Delta-E below which adjacent superpixels are the same color

FOUR_CONNECTED = ndimage.generate_binary_structure(2, 1)

COLOR_SPACES = ('lab', 'rgb')


@dataclass
class SuperpixelFeature:
    """Average color and size of one superpixel."""
    avg_rgb: np.ndarray  # (3,) float, 0-255
    avg_lab: np.ndarray  # (3,) float
    pixel_count: int


@dataclass
class SlicResult:
    """Output of apply_slic()."""
    labels: np.ndarray  # int32, width * height, original resolution
    features: list = field(default_factory=list)  # SuperpixelFeature per label
    processed_width: int = 0
    processed_height: int = 0

    @property
    def processed_pixels(self) -> int:
        return self.processed_width * self.processed_height

    @property
    def weights(self) -> np.ndarray:
        return np.array([f.pixel_count for f in self.features], dtype=np.int64)

    @property
    def colors(self) -> np.ndarray:
        return np.array([f.avg_rgb for f in self.features], dtype=np.float64).reshape(-1, 3)


# =============================================================================
# Resampling
# =============================================================================

def downsample_image(rgb: np.ndarray, max_pixels: int) -> np.ndarray:
    """Area-downsample an (h, w, 3) uint8 image so it has at most max_pixels pixels."""
    h, w = rgb.shape[:2]
    if not max_pixels or h * w <= max_pixels:
        return rgb

    scale = math.sqrt(max_pixels / (h * w))
    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))

    img = Image.fromarray(np.ascontiguousarray(rgb, dtype=np.uint8))
    resized = img.resize((new_w, new_h), Image.Resampling.BOX)
    logger.debug(f"SLIC downsampled {w}x{h} -> {new_w}x{new_h}")
    return np.asarray(resized, dtype=np.uint8)


def upsample_labels(labels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Nearest-neighbor upsampling of a 2D label map; returns a flat int32 array."""
    h, w = labels.shape
    if (h, w) == (height, width):
        return labels.astype(np.int32).ravel()

    rows = (np.arange(height) * h) // height
    cols = (np.arange(width) * w) // width
    return labels[rows[:, None], cols[None, :]].astype(np.int32).ravel()


# =============================================================================
# Seeding
# =============================================================================

def gradient_map(lab: np.ndarray) -> np.ndarray:
    """Squared central-difference gradient magnitude; border pixels are infinite."""
    h, w = lab.shape[:2]
    grad = np.full((h, w), np.inf)
    if h >= 3 and w >= 3:
        dx = lab[1:-1, 2:] - lab[1:-1, :-2]
        dy = lab[2:, 1:-1] - lab[:-2, 1:-1]
        grad[1:-1, 1:-1] = (dx ** 2).sum(axis=2) + (dy ** 2).sum(axis=2)
    return grad


def lowest_gradient_neighbor(gradient: np.ndarray, x: int, y: int) -> tuple:
    """Position with the lowest gradient in the 3x3 neighborhood of (x, y)."""
    h, w = gradient.shape
    best = (x, y)
    best_gradient = np.inf

    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            nx, ny = x + dx, y + dy
            if 0 <= nx < w and 0 <= ny < h and gradient[ny, nx] < best_gradient:
                best_gradient = gradient[ny, nx]
                best = (nx, ny)

    return best


def initialize_centers(color: np.ndarray, gradient: np.ndarray, step: float) -> np.ndarray:
    """
    Seed centers on a regular grid with the given spacing.

    Returns:
        Array of shape (k, 5): x, y followed by the three color channels.
    """
    h, w = gradient.shape
    # Thin images can be narrower than half a grid step
    grid_y = np.arange(step / 2, h, step) if step / 2 < h else np.array([(h - 1) / 2])
    grid_x = np.arange(step / 2, w, step) if step / 2 < w else np.array([(w - 1) / 2])

    centers = []
    for y in grid_y:
        for x in grid_x:
            cx, cy = lowest_gradient_neighbor(gradient, int(x), int(y))
            centers.append([cx, cy, *color[cy, cx]])

    return np.array(centers, dtype=np.float64).reshape(-1, 5)


# =============================================================================
# Iteration
# =============================================================================

def _assign_window(center: np.ndarray, index: int, color: np.ndarray,
                   xs: np.ndarray, ys: np.ndarray, labels: np.ndarray,
                   distances: np.ndarray, radius: int, spatial_weight: float):
    """Claim pixels in the center's search window that are closer to it."""
    h, w = labels.shape
    cx, cy = center[0], center[1]
    y0, y1 = max(0, int(cy) - radius), min(h, int(cy) + radius + 1)
    x0, x1 = max(0, int(cx) - radius), min(w, int(cx) + radius + 1)
    if y0 >= y1 or x0 >= x1:
        return

    d_color = np.sqrt(((color[y0:y1, x0:x1] - center[2:]) ** 2).sum(axis=2))
    d_space = np.sqrt((xs[y0:y1, x0:x1] - cx) ** 2 + (ys[y0:y1, x0:x1] - cy) ** 2)
    d = d_color + spatial_weight * d_space

    window_dist = distances[y0:y1, x0:x1]
    closer = d < window_dist
    window_dist[closer] = d[closer]
    labels[y0:y1, x0:x1][closer] = index


def _assign_unreached(labels: np.ndarray, centers: np.ndarray,
                      xs: np.ndarray, ys: np.ndarray):
    """Give pixels outside every search window to the spatially nearest center."""
    unreached = labels < 0
    if not unreached.any():
        return
    points = np.column_stack([xs[unreached], ys[unreached]])
    labels[unreached] = np.argmin(cdist(points, centers[:, :2]), axis=1)


def update_centers(labels: np.ndarray, color: np.ndarray, xs: np.ndarray,
                   ys: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """Mean position and color per label; empty labels keep their previous center."""
    k = len(centers)
    flat = labels.ravel()
    counts = np.bincount(flat, minlength=k)

    channels = [xs.ravel(), ys.ravel(), *color.reshape(-1, 3).T]
    sums = np.column_stack([np.bincount(flat, weights=c, minlength=k) for c in channels])

    updated = centers.copy()
    nonempty = counts > 0
    updated[nonempty] = sums[nonempty] / counts[nonempty, None]
    return updated


def iterate_clusters(color: np.ndarray, centers: np.ndarray, step: float,
                     compactness: float, iterations: int = ITERATIONS) -> tuple:
    """
    Run the bounded-window assignment/update rounds.

    Label and distance buffers are allocated once and reset every round.

    Returns:
        Tuple of (labels (h, w) int32, final centers)
    """
    h, w = color.shape[:2]
    labels = np.full((h, w), -1, dtype=np.int32)
    distances = np.full((h, w), np.inf)
    ys, xs = np.mgrid[0:h, 0:w].astype(np.float64)

    radius = max(1, int(2 * step))
    spatial_weight = compactness / step

    for _ in range(max(1, iterations)):
        labels.fill(-1)
        distances.fill(np.inf)

        for index, center in enumerate(centers):
            _assign_window(center, index, color, xs, ys, labels, distances, radius, spatial_weight)

        _assign_unreached(labels, centers, xs, ys)
        centers = update_centers(labels, color, xs, ys, centers)

    return labels, centers


# =============================================================================
# Connectivity
# =============================================================================

def label_components(labels: np.ndarray) -> tuple:
    """
    4-connected components of every label value.

    Returns:
        Tuple of (components (h, w) ids 0..n-1, label value of each component)
    """
    components = np.full(labels.shape, -1, dtype=np.int64)
    values = []
    n_components = 0

    for value, region in enumerate(ndimage.find_objects(labels + 1)):
        if region is None:
            continue
        comp, n = ndimage.label(labels[region] == value, structure=FOUR_CONNECTED)
        mask = comp > 0
        components[region][mask] = comp[mask] - 1 + n_components
        values.extend([value] * n)
        n_components += n

    return components, np.array(values, dtype=np.int64)


def border_counts(components: np.ndarray, n: int) -> tuple:
    """
    Shared 4-connected border length between every pair of touching components.

    Returns:
        Tuple of (source, neighbor, count) arrays, one entry per direction
    """
    pairs = np.concatenate([
        np.column_stack([components[:, :-1].ravel(), components[:, 1:].ravel()]),
        np.column_stack([components[:-1, :].ravel(), components[1:, :].ravel()]),
    ])
    pairs = pairs[pairs[:, 0] != pairs[:, 1]]
    pairs = np.concatenate([pairs, pairs[:, ::-1]])

    codes, counts = np.unique(pairs[:, 0] * n + pairs[:, 1], return_counts=True)
    return codes // n, codes % n, counts


def enforce_connectivity(labels: np.ndarray) -> np.ndarray:
    """
    Split labels into 4-connected components and absorb small ones.

    The largest component of every label is kept, as is any other component
    of at least half the average expected segment size
    (W*H / (2 * distinct labels)). Every remaining fragment joins the kept
    segment it shares the longest border with. Fragments that only touch
    other fragments are resolved outward from the kept segments, so the
    number of segments stays close to the number of labels.

    Returns:
        (h, w) array of segment ids (not contiguous).
    """
    h, w = labels.shape
    components, values = label_components(labels)
    n_components = len(values)
    min_size = (h * w) / (2 * len(np.unique(values)))
    sizes = np.bincount(components.ravel(), minlength=n_components)

    kept = sizes >= min_size
    by_label = np.lexsort((-sizes, values))
    _, first = np.unique(values[by_label], return_index=True)
    kept[by_label[first]] = True

    owner = np.arange(n_components)
    resolved = kept.copy()
    source, neighbor, border = border_counts(components, n_components)

    while not resolved.all():
        edges = ~resolved[source] & resolved[neighbor]
        if not edges.any():
            logger.warning(f"Connectivity: {int((~resolved).sum())} fragments touch no kept segment")
            break

        # Total border per (fragment, kept segment), longest wins; ties go to the lower id
        codes, inverse = np.unique(source[edges] * n_components + owner[neighbor[edges]],
                                   return_inverse=True)
        totals = np.bincount(inverse.ravel(), weights=border[edges])
        fragment, target = codes // n_components, codes % n_components

        order = np.lexsort((target, -totals, fragment))
        fragment, target = fragment[order], target[order]
        _, first = np.unique(fragment, return_index=True)

        owner[fragment[first]] = target[first]
        resolved[fragment[first]] = True

    logger.debug(f"Connectivity: {n_components} components, {int(kept.sum())} kept "
                 f"(min size {min_size:.1f})")
    return owner[components]


def merge_similar_segments(segments: np.ndarray, lab: np.ndarray,
                           tolerance: float) -> np.ndarray:
    """Merge adjacent segments whose mean LAB colors are within tolerance (Delta-E)."""
    ids, inverse = np.unique(segments.ravel(), return_inverse=True)
    n = len(ids)
    seg = inverse.reshape(segments.shape)
    if n < 2:
        return seg

    counts = np.bincount(inverse, minlength=n)
    lab_flat = lab.reshape(-1, 3)
    means = np.column_stack([
        np.bincount(inverse, weights=lab_flat[:, c], minlength=n) for c in range(3)
    ]) / counts[:, None]

    pairs = np.concatenate([
        np.column_stack([seg[:, :-1].ravel(), seg[:, 1:].ravel()]),
        np.column_stack([seg[:-1, :].ravel(), seg[1:, :].ravel()]),
    ])
    pairs = pairs[pairs[:, 0] != pairs[:, 1]]

    close = np.linalg.norm(means[pairs[:, 0]] - means[pairs[:, 1]], axis=1) <= tolerance
    pairs = pairs[close]

    graph = coo_matrix((np.ones(len(pairs)), (pairs[:, 0], pairs[:, 1])), shape=(n, n))
    _, groups = connected_components(graph, directed=False)
    return groups[seg]


def relabel_raster_order(segments: np.ndarray) -> np.ndarray:
    """Renumber segments 0..n-1 in order of their first pixel."""
    values, first = np.unique(segments.ravel(), return_index=True)
    mapping = np.zeros(int(values.max()) + 1, dtype=np.int32)
    mapping[values[np.argsort(first)]] = np.arange(len(values), dtype=np.int32)
    return mapping[segments]


# =============================================================================
# Features
# =============================================================================

def extract_features(labels: np.ndarray, rgb: np.ndarray, lab: np.ndarray) -> list[SuperpixelFeature]:
    """Pixel-count-weighted average color per label."""
    flat = labels.ravel()
    n = int(flat.max()) + 1
    counts = np.bincount(flat, minlength=n)

    rgb_flat = rgb.reshape(-1, 3).astype(np.float64)
    lab_flat = lab.reshape(-1, 3)
    rgb_sums = np.column_stack([np.bincount(flat, weights=rgb_flat[:, c], minlength=n) for c in range(3)])
    lab_sums = np.column_stack([np.bincount(flat, weights=lab_flat[:, c], minlength=n) for c in range(3)])

    features = []
    for i in range(n):
        if counts[i] == 0:
            continue
        features.append(SuperpixelFeature(
            avg_rgb=rgb_sums[i] / counts[i],
            avg_lab=lab_sums[i] / counts[i],
            pixel_count=int(counts[i]),
        ))
    return features


# =============================================================================
# Main entry point
# =============================================================================

def apply_slic(pixels, width: int, height: int, superpixel_count: int,
               compactness: float, color_space: str = 'lab',
               max_pixels: int = MAX_PIXELS, iterations: int = ITERATIONS,
               merge_tolerance: float = MERGE_TOLERANCE) -> SlicResult:
    """
    Segment an image into superpixels.

    Args:
        pixels: RGBA or RGB pixels, flat or shaped, height * width pixels
        width: Image width
        height: Image height
        superpixel_count: Desired number of superpixels (K)
        compactness: Weight of spatial vs color distance (m)
        color_space: 'lab' or 'rgb' color distance
        max_pixels: Downsampling ceiling (None or 0 disables)
        iterations: Number of assignment/update rounds
        merge_tolerance: Delta-E below which adjacent superpixels merge (None disables)

    Returns:
        SlicResult with labels at the original resolution and one feature per
        surviving superpixel. Feature pixel counts sum to processed_pixels.

    Raises:
        ValueError: If the dimensions, counts or color space are invalid
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size {width}x{height}")
    if superpixel_count <= 0:
        raise ValueError(f"superpixel_count must be positive, got {superpixel_count}")
    if color_space not in COLOR_SPACES:
        raise ValueError(f"Unknown color space '{color_space}', expected one of {COLOR_SPACES}")

    arr = np.asarray(pixels, dtype=np.uint8)
    if arr.size % (width * height) != 0 or arr.size // (width * height) not in (3, 4):
        raise ValueError(f"Pixel buffer of {arr.size} values does not match {width}x{height}")
    rgb = arr.reshape(height, width, -1)[:, :, :3]

    rgb = downsample_image(rgb, max_pixels)
    h, w = rgb.shape[:2]
    lab = rgb_array_to_lab(rgb.reshape(-1, 3)).reshape(h, w, 3)
    color = lab if color_space == 'lab' else rgb.astype(np.float64)

    k = min(superpixel_count, h * w)
    step = math.sqrt((h * w) / k)

    centers = initialize_centers(color, gradient_map(lab), step)
    labels, centers = iterate_clusters(color, centers, step, compactness, iterations)

    segments = enforce_connectivity(labels)
    if merge_tolerance is not None and merge_tolerance >= 0:
        segments = merge_similar_segments(segments, lab, merge_tolerance)
    segments = relabel_raster_order(segments)

    features = extract_features(segments, rgb, lab)
    logger.debug(f"SLIC completed with {len(features)} superpixels from {len(centers)} seeds")

    return SlicResult(
        labels=upsample_labels(segments, width, height),
        features=features,
        processed_width=w,
        processed_height=h,
    )
