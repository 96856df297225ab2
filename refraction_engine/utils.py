"""
Utility functions and physical constants for the refraction engine.
"""

import math
import numpy as np
from typing import Iterable, Optional, Tuple


SOFTWARE_VERSION = "1.0.0"

# Visual acuity reference: 20/20 letter subtends 5 arcmin
REFERENCE_ANGLE_ARCMIN = 5.0

# Display defaults
DEFAULT_PPI = 401.0  # iPhone-class display
CM_PER_INCH = 2.54

# Calibration defaults (cm)
DEFAULT_CALIBRATION_DISTANCE_CM = 40.0
MIN_MANUAL_DISTANCE_CM = 20.0
MAX_MANUAL_DISTANCE_CM = 100.0

# Distance history: ~5 seconds @ 20Hz
DISTANCE_HISTORY_LENGTH = 100
STABILITY_WINDOW_MS = 1000
STABILITY_MIN_SAMPLES = 10
STABILITY_STD_THRESHOLD_CM = 2.0

# Beyond this, 1 / cos(yaw) blows up and the sample is rejected
MAX_POSE_CORRECTION_YAW_DEGREES = 60.0

# Chromatic aberration between blue stimulus and white light (D)
LCA_DIOPTERS = 0.70

# Far point protocol
REQUIRED_FAR_POINT_MEASUREMENTS = 3

# Plausible vergence range (D): high myopia .. high hyperopia
MIN_VERGENCE_D = -10.0
MAX_VERGENCE_D = 5.0


def round_half_up(value: float) -> int:
    """Round like JavaScript's Math.round (halves go towards +inf)."""
    return int(math.floor(value + 0.5))


def arcmin_to_radians(arcmin: float) -> float:
    """Convert arc minutes to radians."""
    return math.radians(arcmin / 60.0)


def radians_to_arcmin(radians: float) -> float:
    """Convert radians to arc minutes."""
    return math.degrees(radians) * 60.0


def cm_to_pixels(length_cm: float, ppi: float) -> float:
    """Convert a physical length on screen to pixels."""
    return (length_cm / CM_PER_INCH) * ppi


def pixels_to_cm(length_px: float, ppi: float) -> float:
    """Convert pixels on screen to a physical length."""
    return (length_px / ppi) * CM_PER_INCH


def distance_to_vergence(distance_cm: float) -> float:
    """
    Convert a far point distance to vergence.

    Formula: V = -100 / d_cm  (negative for a near far point, i.e. myopia)
    """
    return -100.0 / distance_cm


def sample_stats(values: Iterable[float]) -> Tuple[Optional[float], Optional[float], int]:
    """
    Mean and sample standard deviation (n-1 denominator).

    Returns:
        (mean, std, count). mean is None for an empty input, std is None
        when fewer than 2 values are available.
    """
    arr = np.asarray(list(values), dtype=np.float64)
    count = int(arr.size)

    if count == 0:
        return None, None, 0

    mean = float(np.mean(arr))
    if count < 2:
        return mean, None, count

    std = float(np.std(arr, ddof=1))
    return mean, std, count


def least_squares_fit(x: Iterable[float], y: Iterable[float]) -> Optional[Tuple[float, float]]:
    """
    Ordinary least squares line fit y = alpha + beta * x.

    beta = Cov(x, y) / Var(x), alpha = mean(y) - beta * mean(x)

    Returns:
        (alpha, beta), or None when fewer than 2 points are given or x has
        no variance.
    """
    x_arr = np.asarray(list(x), dtype=np.float64)
    y_arr = np.asarray(list(y), dtype=np.float64)

    if x_arr.size < 2 or x_arr.size != y_arr.size:
        return None

    covariance = np.cov(x_arr, y_arr, ddof=1)
    variance_x = covariance[0, 0]
    if variance_x <= 1e-12:
        return None

    beta = float(covariance[0, 1] / variance_x)
    alpha = float(np.mean(y_arr) - beta * np.mean(x_arr))
    return alpha, beta
