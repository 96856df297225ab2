"""
Distance Estimation Module - Single Camera Proportional Model

Converts the width of the face bounding box (pixels) into a viewing
distance (cm) using one calibration constant:

    k = d0 * s0              (calibration distance * pixel width)
    s_corr = s / cos(yaw)    (head rotation foreshortens the face)
    d = k / s_corr

True camera intrinsics are not modelled; k absorbs focal length and the
subject's face width.
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional

from .utils import (
    DISTANCE_HISTORY_LENGTH,
    MAX_MANUAL_DISTANCE_CM,
    MAX_POSE_CORRECTION_YAW_DEGREES,
    MIN_MANUAL_DISTANCE_CM,
    STABILITY_MIN_SAMPLES,
    STABILITY_STD_THRESHOLD_CM,
    STABILITY_WINDOW_MS,
    sample_stats,
)

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class HeadPose:
    """Head pose angles in degrees."""
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0


@dataclass(frozen=True)
class DistanceSample:
    """One accepted distance estimate."""
    timestamp_ms: float
    distance_cm: float
    raw_pixel_width: float
    corrected_pixel_width: float
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp_ms,
            "distance": self.distance_cm,
            "pixelWidth": self.raw_pixel_width,
            "correctedWidth": self.corrected_pixel_width,
            "yaw": self.yaw,
            "pitch": self.pitch,
            "roll": self.roll,
        }


@dataclass(frozen=True)
class DistanceStats:
    """Windowed distance statistics."""
    mean: Optional[float]
    std: Optional[float]
    count: int


def validate_manual_distance(distance_cm: float) -> Optional[str]:
    """
    Check a manually entered viewing distance.

    Returns:
        A user-facing message if the value is rejected, else None.
    """
    if distance_cm is None or not math.isfinite(distance_cm):
        return "Please enter a distance in centimeters."
    if distance_cm < MIN_MANUAL_DISTANCE_CM or distance_cm > MAX_MANUAL_DISTANCE_CM:
        return (
            f"Distance must be between {MIN_MANUAL_DISTANCE_CM:.0f} and "
            f"{MAX_MANUAL_DISTANCE_CM:.0f} cm (got {distance_cm:.1f} cm)."
        )
    return None


class DistanceEstimator:
    """
    Face-width based distance estimator with a rolling history.

    Usage:
        estimator = DistanceEstimator()
        estimator.calibrate(40.0, face_width_px)
        distance = estimator.estimate(face_width_px, yaw_deg=3.0)
        if estimator.is_stable():
            stats = estimator.average(1000)
    """

    def __init__(
        self,
        history_length: int = DISTANCE_HISTORY_LENGTH,
        max_yaw_degrees: float = MAX_POSE_CORRECTION_YAW_DEGREES,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the estimator.

        Args:
            history_length: Ring buffer capacity (samples)
            max_yaw_degrees: Samples with a larger |yaw| are rejected
            clock: Callable returning the current time in milliseconds
        """
        self.calibration_constant: Optional[float] = None  # k = d0 * s0
        self.calibration_distance_cm: Optional[float] = None  # d0
        self.max_yaw_degrees = max_yaw_degrees
        self._clock = clock or _now_ms
        self._history: deque = deque(maxlen=history_length)

    @property
    def is_calibrated(self) -> bool:
        return self.calibration_constant is not None

    def calibrate(self, reference_distance_cm: float, pixel_width: float) -> float:
        """
        Calibrate the proportional model.

        Re-calibration overwrites the previous constant.

        Args:
            reference_distance_cm: Known distance to the face (cm)
            pixel_width: Face width observed at that distance (px)

        Returns:
            The calibration constant k
        """
        if reference_distance_cm <= 0:
            raise ValueError(f"Reference distance must be positive, got {reference_distance_cm}")
        if pixel_width <= 0:
            raise ValueError(f"Pixel width must be positive, got {pixel_width}")

        self.calibration_distance_cm = float(reference_distance_cm)
        self.calibration_constant = float(reference_distance_cm) * float(pixel_width)
        logger.info("[DistanceEstimator] Calibrated: k=%.2f", self.calibration_constant)
        return self.calibration_constant

    def clear_calibration(self):
        """Forget the calibration constant."""
        self.calibration_constant = None
        self.calibration_distance_cm = None

    def apply_pose_correction(self, pixel_width: float, yaw_degrees: float) -> float:
        """
        Undo yaw foreshortening of the face width.

        Formula: s_corr = s / cos(yaw)
        """
        return pixel_width / math.cos(math.radians(yaw_degrees))

    def estimate(
        self,
        pixel_width: float,
        yaw_deg: float = 0.0,
        pitch_deg: float = 0.0,
        roll_deg: float = 0.0,
        timestamp_ms: Optional[float] = None
    ) -> Optional[float]:
        """
        Estimate the viewing distance for one frame.

        Args:
            pixel_width: Face bounding-box width (px)
            yaw_deg: Head yaw (degrees)
            pitch_deg: Head pitch, stored with the sample
            roll_deg: Head roll, stored with the sample
            timestamp_ms: Frame time, defaults to the clock

        Returns:
            Distance in cm, or None if uncalibrated or the sample is rejected
        """
        if self.calibration_constant is None:
            logger.warning("[DistanceEstimator] Not calibrated")
            return None

        if pixel_width is None or pixel_width <= 0:
            logger.warning("[DistanceEstimator] Rejected non-positive pixel width: %s", pixel_width)
            return None

        if abs(yaw_deg) > self.max_yaw_degrees:
            logger.warning(
                "[DistanceEstimator] Rejected sample: yaw %.1f° exceeds %.1f°",
                yaw_deg, self.max_yaw_degrees
            )
            return None

        corrected_width = self.apply_pose_correction(pixel_width, yaw_deg)
        distance = self.calibration_constant / corrected_width

        self._history.append(DistanceSample(
            timestamp_ms=self._clock() if timestamp_ms is None else float(timestamp_ms),
            distance_cm=distance,
            raw_pixel_width=float(pixel_width),
            corrected_pixel_width=corrected_width,
            yaw=float(yaw_deg),
            pitch=float(pitch_deg),
            roll=float(roll_deg),
        ))

        return distance

    def average(self, window_ms: float = STABILITY_WINDOW_MS) -> DistanceStats:
        """
        Mean and sample std of the distances within the trailing window.

        Args:
            window_ms: Window length in milliseconds

        Returns:
            DistanceStats(mean, std, count); std is None below 2 samples
        """
        now = self._clock()
        recent = [s.distance_cm for s in self._history if (now - s.timestamp_ms) <= window_ms]
        mean, std, count = sample_stats(recent)
        return DistanceStats(mean=mean, std=std, count=count)

    def is_stable(self, threshold_cm: float = STABILITY_STD_THRESHOLD_CM) -> bool:
        """Enough recent samples and a small spread over the last second."""
        stats = self.average(STABILITY_WINDOW_MS)
        return (
            stats.count >= STABILITY_MIN_SAMPLES
            and stats.std is not None
            and stats.std < threshold_cm
        )

    def latest(self) -> Optional[DistanceSample]:
        return self._history[-1] if self._history else None

    def history(self) -> List[DistanceSample]:
        """Copy of the ring buffer, oldest first."""
        return list(self._history)

    def reset(self):
        """Clear the history. The calibration constant is kept."""
        self._history.clear()
