#!/usr/bin/env python3
"""
Color space conversions and perceptual distance.

sRGB (D65) <-> CIE Lab, RGB -> HSV, hex helpers and Delta-E76.
Scalar functions work on single colors; the *_array variants work on
(n, 3) numpy arrays and use the same constants.
"""

import math

import numpy as np
from loguru import logger
from scipy.spatial.distance import cdist


# D65 reference white (2 degree observer), XYZ scaled to 0-100
REF_X, REF_Y, REF_Z = 95.047, 100.000, 108.883

EPSILON = 0.008856  # (6/29)^3
KAPPA = 903.3  # (29/3)^3

# Linear sRGB -> XYZ
RGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])


# =============================================================================
# Scalar conversions
# =============================================================================

def rgb_to_hsv(r: float, g: float, b: float) -> tuple:
    """
    Convert an RGB color (0-255) to HSV.

    Returns:
        (h, s, v) each in [0, 1]. Hue is 0 for achromatic colors.
    """
    r, g, b = r / 255.0, g / 255.0, b / 255.0
    c_max = max(r, g, b)
    c_min = min(r, g, b)
    d = c_max - c_min

    v = c_max
    s = 0.0 if c_max == 0 else d / c_max

    if d == 0:
        return 0.0, s, v

    if c_max == r:
        h = (g - b) / d + (6 if g < b else 0)
    elif c_max == g:
        h = (b - r) / d + 2
    else:
        h = (r - g) / d + 4

    return (h / 6) % 1.0, s, v


def _srgb_to_linear(c: float) -> float:
    return ((c + 0.055) / 1.055) ** 2.4 if c > 0.04045 else c / 12.92


def _lab_f(t: float) -> float:
    return t ** (1 / 3) if t > EPSILON else (KAPPA * t + 16) / 116


def rgb_to_lab(r: float, g: float, b: float) -> tuple:
    """Convert an RGB color (0-255) to CIE Lab (D65)."""
    lin = [_srgb_to_linear(c / 255.0) * 100 for c in (r, g, b)]

    x = RGB_TO_XYZ[0, 0] * lin[0] + RGB_TO_XYZ[0, 1] * lin[1] + RGB_TO_XYZ[0, 2] * lin[2]
    y = RGB_TO_XYZ[1, 0] * lin[0] + RGB_TO_XYZ[1, 1] * lin[1] + RGB_TO_XYZ[1, 2] * lin[2]
    z = RGB_TO_XYZ[2, 0] * lin[0] + RGB_TO_XYZ[2, 1] * lin[1] + RGB_TO_XYZ[2, 2] * lin[2]

    fx = _lab_f(float(x) / REF_X)
    fy = _lab_f(float(y) / REF_Y)
    fz = _lab_f(float(z) / REF_Z)

    return 116 * fy - 16, 500 * (fx - fy), 200 * (fy - fz)


def lab_distance(lab1, lab2) -> float:
    """
    Delta-E 1976: Euclidean distance between two Lab colors.

    Returns math.inf for malformed input instead of raising, so the value can
    be used directly in minimization loops.
    """
    try:
        if lab1 is None or lab2 is None or len(lab1) < 3 or len(lab2) < 3:
            raise ValueError("expected three channels")
        dl = float(lab1[0]) - float(lab2[0])
        da = float(lab1[1]) - float(lab2[1])
        db = float(lab1[2]) - float(lab2[2])
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid input to lab_distance ({e}): {lab1!r}, {lab2!r}")
        return math.inf

    return math.sqrt(dl * dl + da * da + db * db)


# =============================================================================
# Array conversions
# =============================================================================

def rgb_array_to_lab(rgb: np.ndarray) -> np.ndarray:
    """Convert RGB array (n, 3) in 0-255 to LAB color space."""
    rgb_norm = np.asarray(rgb, dtype=np.float64).reshape(-1, 3) / 255.0

    # Apply gamma correction
    mask = rgb_norm > 0.04045
    rgb_linear = np.where(mask, ((rgb_norm + 0.055) / 1.055) ** 2.4, rgb_norm / 12.92) * 100

    xyz = rgb_linear @ RGB_TO_XYZ.T
    xyz /= np.array([REF_X, REF_Y, REF_Z])

    f = np.where(xyz > EPSILON, xyz ** (1 / 3), (KAPPA * xyz + 16) / 116)
    fx, fy, fz = f[:, 0], f[:, 1], f[:, 2]

    L = 116 * fy - 16
    a = 500 * (fx - fy)
    b_val = 200 * (fy - fz)

    return np.column_stack([L, a, b_val])


def rgb_array_to_hsv(rgb: np.ndarray) -> np.ndarray:
    """Convert RGB array (n, 3) in 0-255 to HSV, all channels in [0, 1]."""
    rgb_norm = np.asarray(rgb, dtype=np.float64).reshape(-1, 3) / 255.0
    r, g, b = rgb_norm[:, 0], rgb_norm[:, 1], rgb_norm[:, 2]

    c_max = rgb_norm.max(axis=1)
    c_min = rgb_norm.min(axis=1)
    d = c_max - c_min
    safe_d = np.where(d == 0, 1.0, d)

    s = np.where(c_max == 0, 0.0, d / np.where(c_max == 0, 1.0, c_max))

    h = np.where(
        c_max == r,
        (g - b) / safe_d + np.where(g < b, 6.0, 0.0),
        np.where(c_max == g, (b - r) / safe_d + 2, (r - g) / safe_d + 4),
    )
    h = np.where(d == 0, 0.0, (h / 6) % 1.0)

    return np.column_stack([h, s, c_max])


def lab_to_rgb(lab: np.ndarray) -> np.ndarray:
    """Convert LAB array to RGB (0-255)."""
    lab = np.asarray(lab, dtype=np.float64)
    if lab.ndim == 1:
        lab = lab.reshape(1, -1)

    L, a, b = lab[:, 0], lab[:, 1], lab[:, 2]

    fy = (L + 16) / 116
    fx = a / 500 + fy
    fz = fy - b / 200

    x = np.where(fx**3 > EPSILON, fx**3, (116 * fx - 16) / KAPPA)
    y = np.where(L > KAPPA * EPSILON, ((L + 16) / 116) ** 3, L / KAPPA)
    z = np.where(fz**3 > EPSILON, fz**3, (116 * fz - 16) / KAPPA)

    xyz = np.column_stack([x * REF_X, y * REF_Y, z * REF_Z]) / 100
    rgb_linear = xyz @ np.linalg.inv(RGB_TO_XYZ).T

    # Apply gamma correction
    mask = rgb_linear > 0.0031308
    rgb = np.where(mask, 1.055 * np.power(np.clip(rgb_linear, 0, None), 1/2.4) - 0.055, 12.92 * rgb_linear)

    return np.clip(np.round(rgb * 255), 0, 255).astype(np.uint8)


def pairwise_lab_distances(lab_a: np.ndarray, lab_b: np.ndarray) -> np.ndarray:
    """Delta-E76 matrix of shape (len(lab_a), len(lab_b))."""
    return cdist(np.asarray(lab_a, dtype=np.float64).reshape(-1, 3),
                 np.asarray(lab_b, dtype=np.float64).reshape(-1, 3))


# =============================================================================
# Hex helpers
# =============================================================================

def rgb_to_hex(rgb) -> str:
    """Convert an (r, g, b) sequence to '#RRGGBB'."""
    r, g, b = (max(0, min(255, int(math.floor(float(c) + 0.5)))) for c in rgb[:3])
    return f"#{r:02X}{g:02X}{b:02X}"


def hex_to_rgb(hex_color: str):
    """Parse '#RGB' or '#RRGGBB'. Returns None when the string is not a color."""
    value = hex_color.strip().lstrip('#')
    if len(value) == 3:
        value = ''.join(c * 2 for c in value)
    if len(value) != 6:
        return None
    try:
        return tuple(int(value[i:i + 2], 16) for i in (0, 2, 4))
    except ValueError:
        return None


def lab_to_hex(lab: np.ndarray) -> str:
    """Convert LAB to hex string."""
    return rgb_to_hex(lab_to_rgb(lab)[0])
