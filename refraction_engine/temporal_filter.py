"""
Temporal Filtering Module - Kalman Filter for Viewing Distance

Smooths the per-frame distance used to size the optotype, so the rendered
symbol does not jitter with face-tracker noise between frames.
"""

import numpy as np
import cv2
from typing import Optional, List, Sequence, Tuple


class TemporalDistanceFilter:
    """
    Kalman filter for temporal smoothing of distance estimates.

    The state is the viewing distance in cm, modelled as constant plus
    process noise between frames.
    """

    def __init__(
        self,
        process_noise: float = 0.5,
        measurement_noise: float = 2.0,
        initial_distance: Optional[float] = None
    ):
        """
        Initialize temporal filter.

        Args:
            process_noise: How much the distance can drift between frames (cm^2)
            measurement_noise: Per-frame measurement noise (cm^2)
            initial_distance: Initial state (None to seed from the first update)
        """
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise

        self.kf = cv2.KalmanFilter(1, 1)
        self.kf.transitionMatrix = np.array([[1.0]], dtype=np.float32)
        self.kf.measurementMatrix = np.array([[1.0]], dtype=np.float32)
        self.kf.processNoiseCov = np.array([[process_noise]], dtype=np.float32)
        self.kf.measurementNoiseCov = np.array([[measurement_noise]], dtype=np.float32)

        self.reset(initial_distance)

    def _seed(self, value: float):
        self.kf.statePre = np.array([[value]], dtype=np.float32)
        self.kf.statePost = np.array([[value]], dtype=np.float32)

    def update(self, distance_cm: float, confidence: float = 1.0) -> float:
        """
        Update filter with a new distance estimate.

        Args:
            distance_cm: New distance measurement
            confidence: Tracking confidence (0-1); lower confidence means the
                measurement gets less weight

        Returns:
            Filtered distance in cm
        """
        if not self.initialized:
            self._seed(distance_cm)
            self.initialized = True
            self.measurement_count = 1
            return float(distance_cm)

        adjusted_noise = self.measurement_noise / max(confidence, 0.1)
        self.kf.measurementNoiseCov = np.array([[adjusted_noise]], dtype=np.float32)

        self.kf.predict()
        self.kf.correct(np.array([[distance_cm]], dtype=np.float32))
        self.measurement_count += 1

        return float(self.kf.statePost[0, 0])

    def reset(self, initial_distance: Optional[float] = None):
        """Reset filter to its initial state."""
        self._seed(initial_distance if initial_distance is not None else 0.0)
        self.kf.errorCovPost = np.array([[1.0]], dtype=np.float32)
        self.initialized = initial_distance is not None
        self.measurement_count = 0

    def get_uncertainty(self) -> float:
        """Current standard deviation of the filtered distance (cm)."""
        return float(np.sqrt(self.kf.errorCovPost[0, 0]))


def filter_distance_sequence(
    distances: Sequence[float],
    confidences: Optional[Sequence[float]] = None,
    process_noise: float = 0.5,
    measurement_noise: float = 2.0
) -> Tuple[List[float], List[float]]:
    """
    Apply temporal filtering to a sequence of distances.

    Returns:
        Tuple of (filtered_distances, uncertainties)
    """
    if confidences is None:
        confidences = [1.0] * len(distances)

    filter_obj = TemporalDistanceFilter(
        process_noise=process_noise,
        measurement_noise=measurement_noise
    )

    filtered_values = []
    uncertainties = []

    for distance, conf in zip(distances, confidences):
        filtered_values.append(filter_obj.update(distance, conf))
        uncertainties.append(filter_obj.get_uncertainty())

    return filtered_values, uncertainties
