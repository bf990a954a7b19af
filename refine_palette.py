#!/usr/bin/env python3
"""
Palette refinement: clustering, merging and classification.

Takes raw pixels or superpixel features plus median-cut seed colors, runs a
weighted k-means pass (optionally radius-constrained), merges near-duplicate
clusters and flags background and hidden (feature) colors.

All thresholds are Delta-E76 values, including when samples are assigned by
RGB Euclidean distance.
"""

from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from loguru import logger
from scipy.sparse.csgraph import connected_components
from scipy.spatial.distance import cdist
from sklearn.neighbors import radius_neighbors_graph

from color_space import pairwise_lab_distances, rgb_array_to_lab, rgb_to_hex, rgb_to_lab


# =============================================================================
# Constants
# =============================================================================

MAX_ITERATIONS = 20  # k-means iteration cap
MERGE_RADIUS = 20.0  # Delta-E below which clusters are merged
FEATURE_THRESHOLD = 36.0  # Mean Delta-E above which a color is "hidden"
BACKGROUND_THRESHOLD = 15.0  # Delta-E edge threshold for the background graph
MIN_BACKGROUND_PERCENTAGE = 0.4  # Share the background component must reach

HIDDEN_POLICIES = ('outlier', 'smallest')


# =============================================================================
# Data types
# =============================================================================

@dataclass(frozen=True)
class RawPixels:
    """Every pixel of the image, shape (n, 3) or (n, 4)."""
    rgb: np.ndarray


@dataclass(frozen=True)
class SuperpixelFeatures:
    """Average superpixel colors (k, 3) with their pixel counts."""
    rgb: np.ndarray
    weights: np.ndarray

    @classmethod
    def from_slic(cls, result) -> "SuperpixelFeatures":
        return cls(rgb=result.colors, weights=result.weights)


PixelSource = Union[RawPixels, SuperpixelFeatures]


@dataclass
class Samples:
    """Weighted color samples in both RGB and LAB."""
    rgb: np.ndarray  # (n, 3) float
    lab: np.ndarray  # (n, 3)
    weights: np.ndarray  # (n,) float

    def __len__(self) -> int:
        return len(self.weights)

    @property
    def total_weight(self) -> int:
        return int(round(self.weights.sum()))


@dataclass
class ClusterResult:
    """Output of cluster_colors()."""
    rgb: np.ndarray  # (k, 3) centroids
    lab: np.ndarray  # (k, 3) centroids
    weights: np.ndarray  # (k,) accumulated sample weight
    assignments: np.ndarray  # (n,) cluster index per sample
    iterations: int
    converged: bool


@dataclass(frozen=True)
class PaletteColor:
    """One entry of the final palette."""
    rgb: tuple  # (r, g, b) ints
    lab: tuple  # (L, a, b) derived from rgb
    count: int
    percentage: float  # Share of total weight, 0-1
    is_background: bool = False
    is_hidden: bool = False

    @property
    def is_feature(self) -> bool:
        return self.is_hidden

    @property
    def hex(self) -> str:
        return rgb_to_hex(self.rgb)

    def to_dict(self) -> dict:
        r, g, b = self.rgb
        return {
            'rgb': {'r': r, 'g': g, 'b': b},
            'lab': list(self.lab),
            'count': self.count,
            'percentage': self.percentage,
            'isBackground': self.is_background,
            'isHidden': self.is_hidden,
        }


# =============================================================================
# Input dispatch
# =============================================================================

def resolve_source(source: PixelSource) -> Samples:
    """
    Turn a pixel source into weighted samples.

    Raw pixels are collapsed to unique colors with counts, which gives the
    same weighted sums as clustering every pixel.
    """
    if isinstance(source, RawPixels):
        arr = np.asarray(source.rgb, dtype=np.uint8)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 4)
        rgb = arr.reshape(len(arr), -1)[:, :3].astype(np.uint32)
        codes = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
        unique, counts = np.unique(codes, return_counts=True)
        colors = np.column_stack([(unique >> 16) & 0xFF, (unique >> 8) & 0xFF, unique & 0xFF])
        colors = colors.astype(np.float64)
        return Samples(rgb=colors, lab=rgb_array_to_lab(colors), weights=counts.astype(np.float64))

    if isinstance(source, SuperpixelFeatures):
        colors = np.asarray(source.rgb, dtype=np.float64).reshape(-1, 3)
        weights = np.asarray(source.weights, dtype=np.float64).reshape(-1)
        if len(colors) != len(weights):
            raise ValueError(f"{len(colors)} superpixel colors but {len(weights)} weights")
        return Samples(rgb=colors, lab=rgb_array_to_lab(colors), weights=weights)

    raise TypeError(f"Unsupported pixel source: {type(source).__name__}")


def seed_array(seeds) -> np.ndarray:
    """Seed colors as a (k, 3) float array. Accepts arrays or objects with .rgb."""
    if isinstance(seeds, np.ndarray):
        return seeds.astype(np.float64).reshape(-1, 3)
    rows = [s.rgb if hasattr(s, 'rgb') else s for s in seeds]
    return np.array(rows, dtype=np.float64).reshape(-1, 3)


# =============================================================================
# Clustering
# =============================================================================

def assign_samples(samples: Samples, centers_rgb: np.ndarray, centers_lab: np.ndarray,
                   use_delta_e: bool = True, max_radius: Optional[float] = None) -> np.ndarray:
    """
    Index of the nearest center for every sample.

    With max_radius, only centers within that Delta-E are eligible; samples
    with no eligible center fall back to the globally nearest one.
    """
    if use_delta_e:
        dist = cdist(samples.lab, centers_lab)
    else:
        dist = cdist(samples.rgb, centers_rgb)

    if max_radius is None:
        return np.argmin(dist, axis=1)

    delta_e = dist if use_delta_e else cdist(samples.lab, centers_lab)
    eligible = delta_e <= max_radius
    constrained = np.argmin(np.where(eligible, dist, np.inf), axis=1)
    return np.where(eligible.any(axis=1), constrained, np.argmin(dist, axis=1))


def weighted_centroids(samples: Samples, assignments: np.ndarray,
                       centers_rgb: np.ndarray, centers_lab: np.ndarray) -> tuple:
    """Weighted mean RGB and LAB per cluster; empty clusters keep their centers."""
    k = len(centers_rgb)
    weights = np.bincount(assignments, weights=samples.weights, minlength=k)

    rgb_sums = np.column_stack([
        np.bincount(assignments, weights=samples.weights * samples.rgb[:, c], minlength=k)
        for c in range(3)
    ])
    lab_sums = np.column_stack([
        np.bincount(assignments, weights=samples.weights * samples.lab[:, c], minlength=k)
        for c in range(3)
    ])

    new_rgb = centers_rgb.copy()
    new_lab = centers_lab.copy()
    nonempty = weights > 0
    new_rgb[nonempty] = rgb_sums[nonempty] / weights[nonempty, None]
    new_lab[nonempty] = lab_sums[nonempty] / weights[nonempty, None]

    return new_rgb, new_lab, weights


def cluster_colors(samples: Samples, seeds, use_delta_e: bool = True,
                   max_radius: Optional[float] = None,
                   max_iterations: int = MAX_ITERATIONS) -> ClusterResult:
    """
    Weighted k-means seeded with the given colors.

    Stops when no sample changes cluster or after max_iterations rounds; in the
    latter case the last centroids are returned as they are.

    Args:
        samples: Weighted samples from resolve_source()
        seeds: Initial centers, (k, 3) RGB
        use_delta_e: Assign by LAB Delta-E instead of RGB Euclidean distance
        max_radius: Delta-E radius for the constrained variant (None = plain k-means)
        max_iterations: Iteration cap

    Returns:
        ClusterResult. Cluster weights sum to the total sample weight.
    """
    centers_rgb = seed_array(seeds).copy()
    centers_lab = rgb_array_to_lab(centers_rgb)
    weights = np.zeros(len(centers_rgb))
    assignments = np.full(len(samples), -1, dtype=np.int64)
    converged = False
    iteration = 0

    for iteration in range(1, max(1, max_iterations) + 1):
        new_assignments = assign_samples(samples, centers_rgb, centers_lab, use_delta_e, max_radius)
        if np.array_equal(new_assignments, assignments):
            converged = True
            break
        assignments = new_assignments
        centers_rgb, centers_lab, weights = weighted_centroids(samples, assignments, centers_rgb, centers_lab)

    if converged:
        logger.debug(f"Clustering converged after {iteration} iterations")
    else:
        logger.debug(f"Clustering stopped at iteration cap ({iteration}) without converging")

    return ClusterResult(
        rgb=centers_rgb,
        lab=centers_lab,
        weights=weights,
        assignments=assignments,
        iterations=iteration,
        converged=converged,
    )


def merge_close_clusters(rgb: np.ndarray, lab: np.ndarray, weights: np.ndarray,
                         merge_radius: float = MERGE_RADIUS, min_colors: int = 1,
                         max_colors: Optional[int] = None) -> tuple:
    """
    Merge near-duplicate clusters, then enforce the color limit.

    First the closest pair is merged while its Delta-E is below merge_radius
    and more than min_colors clusters remain. Then, while more than
    max_colors remain, the closest pair is merged regardless of distance.
    Merged centroids are weight-averaged.
    """
    rgb, lab, weights = rgb.copy(), lab.copy(), weights.copy()

    def closest_pair():
        dist = pairwise_lab_distances(lab, lab)
        np.fill_diagonal(dist, np.inf)
        i, j = np.unravel_index(np.argmin(dist), dist.shape)
        return min(i, j), max(i, j), dist[i, j]

    def merge(i, j):
        total = weights[i] + weights[j]
        rgb[i] = (rgb[i] * weights[i] + rgb[j] * weights[j]) / total
        lab[i] = (lab[i] * weights[i] + lab[j] * weights[j]) / total
        weights[i] = total
        return np.delete(rgb, j, axis=0), np.delete(lab, j, axis=0), np.delete(weights, j)

    while len(weights) > max(1, min_colors):
        i, j, distance = closest_pair()
        if distance >= merge_radius:
            break
        rgb, lab, weights = merge(i, j)

    if max_colors is not None:
        while len(weights) > max(1, max_colors):
            i, j, _ = closest_pair()
            rgb, lab, weights = merge(i, j)

    return rgb, lab, weights


# =============================================================================
# Classification
# =============================================================================

def detect_background(lab: np.ndarray, weights: np.ndarray,
                      threshold: float = BACKGROUND_THRESHOLD,
                      max_backgrounds: int = 1,
                      min_percentage: float = MIN_BACKGROUND_PERCENTAGE) -> np.ndarray:
    """
    Flag the heaviest group of mutually similar colors as background.

    Builds a graph with an edge between colors less than `threshold` Delta-E
    apart and takes the connected component with the largest total weight. Its members
    (heaviest first, at most max_backgrounds) are flagged if the component
    covers at least min_percentage of the total weight.
    """
    n = len(weights)
    flags = np.zeros(n, dtype=bool)
    if n == 0 or max_backgrounds <= 0 or weights.sum() <= 0:
        return flags

    if n == 1:
        components = np.zeros(1, dtype=np.int64)
    else:
        # Edges join colors strictly closer than the threshold
        radius = np.nextafter(threshold, 0)
        graph = radius_neighbors_graph(lab, radius=radius, mode='connectivity')
        _, components = connected_components(graph, directed=False)

    component_weights = np.bincount(components, weights=weights)
    best = int(np.argmax(component_weights))
    share = component_weights[best] / weights.sum()
    if share < min_percentage:
        logger.debug(f"No background: largest similar group covers {share:.1%}")
        return flags

    members = np.flatnonzero(components == best)
    members = members[np.argsort(-weights[members], kind='stable')][:max_backgrounds]
    flags[members] = True
    return flags


def detect_hidden(lab: np.ndarray, weights: np.ndarray,
                  feature_threshold: float = FEATURE_THRESHOLD,
                  max_hidden: int = 3, min_percentage: float = 0.0,
                  policy: str = 'outlier',
                  background: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Flag perceptually isolated colors.

    Policies:
        outlier: mean Delta-E to all other colors above feature_threshold,
            most isolated first, independent of background status.
        smallest: among the max_hidden smallest colors (excluding the largest
            and background colors), those farther than feature_threshold from
            the largest color.

    Both honor the max_hidden cap and the min_percentage weight floor.
    """
    if policy not in HIDDEN_POLICIES:
        raise ValueError(f"Unknown hidden-color policy '{policy}', expected one of {HIDDEN_POLICIES}")

    n = len(weights)
    flags = np.zeros(n, dtype=bool)
    if n < 2 or max_hidden <= 0:
        return flags

    shares = weights / weights.sum()
    dist = pairwise_lab_distances(lab, lab)

    if policy == 'outlier':
        mean_dist = dist.sum(axis=1) / (n - 1)
        candidates = np.flatnonzero((mean_dist > feature_threshold) & (shares >= min_percentage))
        candidates = candidates[np.argsort(-mean_dist[candidates], kind='stable')][:max_hidden]
        flags[candidates] = True
        return flags

    if background is None:
        background = np.zeros(n, dtype=bool)
    largest = int(np.argmax(weights))
    smallest = [i for i in np.argsort(weights, kind='stable')
                if i != largest and not background[i]][:max_hidden]
    for i in smallest:
        if shares[i] < min_percentage:
            continue
        if dist[i, largest] > feature_threshold:
            flags[i] = True
    return flags


# =============================================================================
# Main entry point
# =============================================================================

def refine_palette(source: PixelSource, seeds, *,
                   palette_size: Optional[int] = None,
                   min_colors: int = 1,
                   merge_radius: float = MERGE_RADIUS,
                   use_delta_e: bool = True,
                   max_radius: Optional[float] = None,
                   max_iterations: int = MAX_ITERATIONS,
                   background_threshold: float = BACKGROUND_THRESHOLD,
                   background_variance_scale: float = 1.0,
                   max_backgrounds: int = 1,
                   min_background_percentage: float = MIN_BACKGROUND_PERCENTAGE,
                   feature_threshold: float = FEATURE_THRESHOLD,
                   max_hidden_colors: int = 3,
                   min_hidden_percentage: float = 0.0,
                   hidden_policy: str = 'outlier') -> list[PaletteColor]:
    """
    Cluster, merge and classify colors into the final palette.

    Returns:
        PaletteColor list sorted by L* ascending. Counts sum to the total
        sample weight.
    """
    samples = resolve_source(source)
    seeds = seed_array(seeds)
    if len(samples) == 0 or len(seeds) == 0:
        logger.warning(f"Nothing to refine: {len(samples)} samples, {len(seeds)} seeds")
        return []

    clusters = cluster_colors(samples, seeds, use_delta_e=use_delta_e,
                              max_radius=max_radius, max_iterations=max_iterations)

    surviving = clusters.weights > 0
    rgb, lab, weights = merge_close_clusters(
        clusters.rgb[surviving], clusters.lab[surviving], clusters.weights[surviving],
        merge_radius=merge_radius, min_colors=min_colors, max_colors=palette_size,
    )

    rgb_out = np.clip(np.floor(rgb + 0.5), 0, 255).astype(int)
    lab_out = np.array([rgb_to_lab(*color) for color in rgb_out]).reshape(-1, 3)
    counts = np.round(weights).astype(np.int64)
    total = int(counts.sum())

    background = detect_background(
        lab_out, weights,
        threshold=background_threshold * background_variance_scale,
        max_backgrounds=max_backgrounds,
        min_percentage=min_background_percentage,
    )
    hidden = detect_hidden(
        lab_out, weights,
        feature_threshold=feature_threshold,
        max_hidden=max_hidden_colors,
        min_percentage=min_hidden_percentage,
        policy=hidden_policy,
        background=background,
    )

    palette = [
        PaletteColor(
            rgb=tuple(int(c) for c in rgb_out[i]),
            lab=tuple(float(c) for c in lab_out[i]),
            count=int(counts[i]),
            percentage=float(counts[i] / total) if total else 0.0,
            is_background=bool(background[i]),
            is_hidden=bool(hidden[i]),
        )
        for i in range(len(counts))
    ]
    palette.sort(key=lambda color: color.lab[0])

    logger.debug(f"Refined {len(seeds)} seeds into {len(palette)} colors "
                 f"({int(background.sum())} background, {int(hidden.sum())} hidden)")
    return palette
