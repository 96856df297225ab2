"""
Far Point Refraction Module

Turns repeated far point distance measurements into a spherical power.

Correction sequence:
1. Vergence:  V = -100 / d_cm for every measurement, then averaged
2. LCA:       V_white = V_blue - LCA  (only with the blue stimulus)
3. DoF:       Rx = alpha + beta * V_white  (linear clinical recalibration)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .utils import (
    LCA_DIOPTERS,
    MAX_VERGENCE_D,
    MIN_VERGENCE_D,
    REQUIRED_FAR_POINT_MEASUREMENTS,
    distance_to_vergence,
    least_squares_fit,
    sample_stats,
)

logger = logging.getLogger(__name__)

# Repeatability above this (D) is flagged
VERGENCE_STD_THRESHOLD_D = 0.50

INSUFFICIENT_MEASUREMENTS = "INSUFFICIENT_MEASUREMENTS"
HIGH_VARIABILITY = "HIGH_VARIABILITY"
OUT_OF_RANGE = "OUT_OF_RANGE"


@dataclass(frozen=True)
class FarPointMeasurement:
    """One far point capture."""
    timestamp_ms: float
    distance_cm: float
    vergence_d: float
    std_estimate: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp_ms,
            "farPointDistance": self.distance_cm,
            "vergence": self.vergence_d,
            "distanceStd": self.std_estimate,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class VergenceStats:
    mean: Optional[float]
    std: Optional[float]
    count: int


@dataclass(frozen=True)
class RefractionQuality:
    """Internal quality flags of the far point series."""
    score: int
    flags: List[str]
    repeatability: Optional[float]  # 95% interval half-width (D)

    def to_dict(self) -> dict:
        return {"score": self.score, "flags": list(self.flags), "repeatability": self.repeatability}


@dataclass
class RefractionResult:
    """Final spherical estimate and the statistics behind it."""
    spherical: Optional[float] = None
    vergence_mean: Optional[float] = None
    vergence_std: Optional[float] = None
    measurement_count: int = 0
    quality: Optional[RefractionQuality] = None
    lca_corrected: bool = False
    dof_corrected: bool = False
    calibration_params: Dict[str, float] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.spherical is not None

    def to_dict(self) -> dict:
        return {
            "spherical": self.spherical,
            "vergenceMean": self.vergence_mean,
            "vergenceStd": self.vergence_std,
            "measurementCount": self.measurement_count,
            "quality": self.quality.to_dict() if self.quality else None,
            "lcaCorrected": self.lca_corrected,
            "dofCorrected": self.dof_corrected,
            "calibrationParams": dict(self.calibration_params),
        }


CalibrationPair = Union[Tuple[float, float], Mapping[str, float]]


class RefractionCalculator:
    """
    Accumulates far point measurements and converts them to a refraction.

    Usage:
        calculator = RefractionCalculator()
        for d in (48.0, 50.0, 52.0):
            calculator.record_measurement(d)
        result = calculator.calculate_refraction(use_blue_light=True)
    """

    def __init__(
        self,
        lca: float = LCA_DIOPTERS,
        alpha: float = 0.0,
        beta: float = 1.0,
        clock=None
    ):
        """
        Args:
            lca: Longitudinal chromatic aberration blue vs white (D)
            alpha: DoF recalibration intercept
            beta: DoF recalibration slope
            clock: Callable returning the current time in milliseconds
        """
        self.lca = lca
        self.alpha = alpha
        self.beta = beta
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._measurements: List[FarPointMeasurement] = []

    def record_measurement(
        self,
        distance_cm: float,
        metadata: Optional[Mapping[str, Any]] = None,
        std_estimate: Optional[float] = None
    ) -> Optional[FarPointMeasurement]:
        """
        Store one far point distance.

        Args:
            distance_cm: Far point distance (cm)
            metadata: Extra values kept with the measurement (pose etc.)
            std_estimate: Distance std over the capture window (cm)

        Returns:
            The stored measurement, or None if the distance is invalid
        """
        if distance_cm is None or distance_cm <= 0:
            logger.warning("[RefractionCalculator] Rejected far point distance: %s", distance_cm)
            return None

        measurement = FarPointMeasurement(
            timestamp_ms=self._clock(),
            distance_cm=float(distance_cm),
            vergence_d=distance_to_vergence(distance_cm),
            std_estimate=std_estimate,
            metadata=dict(metadata or {}),
        )
        self._measurements.append(measurement)
        return measurement

    def vergence_stats(self) -> VergenceStats:
        """Mean and sample std (n-1) of all recorded vergences."""
        mean, std, count = sample_stats(m.vergence_d for m in self._measurements)
        if count == 1:
            std = 0.0
        return VergenceStats(mean=mean, std=std, count=count)

    def apply_lca_correction(self, vergence: float, use_blue_light: bool = True) -> float:
        """
        Shift a blue-light vergence to its white-light equivalent.

        Formula: V_white = V_blue - LCA
        """
        if not use_blue_light:
            return vergence
        return vergence - self.lca

    def apply_dof_correction(self, vergence: float) -> float:
        """
        Depth-of-focus linear recalibration.

        Formula: Rx = alpha + beta * V
        """
        return self.alpha + self.beta * vergence

    def calculate_refraction(self, use_blue_light: bool = True) -> RefractionResult:
        """
        Compute the spherical power from all recorded measurements.

        Args:
            use_blue_light: Whether the far point was found with the blue stimulus

        Returns:
            RefractionResult; spherical is None if nothing was recorded
        """
        stats = self.vergence_stats()

        if stats.mean is None:
            logger.warning("[RefractionCalculator] No measurements recorded")
            return RefractionResult(calibration_params=self.calibration_params)

        corrected = self.apply_lca_correction(stats.mean, use_blue_light)
        spherical = self.apply_dof_correction(corrected)

        return RefractionResult(
            spherical=spherical,
            vergence_mean=stats.mean,
            vergence_std=stats.std,
            measurement_count=stats.count,
            quality=self.assess_quality(stats),
            lca_corrected=use_blue_light,
            dof_corrected=True,
            calibration_params=self.calibration_params,
        )

    def assess_quality(self, stats: VergenceStats) -> RefractionQuality:
        """
        Flag insufficient, inconsistent or implausible far point series.

        Returns:
            RefractionQuality with a 0-100 score
        """
        flags = []
        score = 100

        if stats.count < REQUIRED_FAR_POINT_MEASUREMENTS:
            flags.append(INSUFFICIENT_MEASUREMENTS)
            score -= 30

        if stats.std is not None and stats.std > VERGENCE_STD_THRESHOLD_D:
            flags.append(HIGH_VARIABILITY)
            score -= 20

        if stats.mean is not None and (stats.mean < MIN_VERGENCE_D or stats.mean > MAX_VERGENCE_D):
            flags.append(OUT_OF_RANGE)
            score -= 30

        return RefractionQuality(
            score=max(0, score),
            flags=flags,
            repeatability=stats.std * 1.96 if stats.std is not None else None,
        )

    @property
    def calibration_params(self) -> Dict[str, float]:
        return {"alpha": self.alpha, "beta": self.beta}

    def set_calibration_params(self, alpha: float, beta: float):
        self.alpha = alpha
        self.beta = beta

    def estimate_calibration_params(self, calibration_data: Iterable[CalibrationPair]) -> bool:
        """
        Fit alpha/beta from clinical data by least squares.

        Args:
            calibration_data: (vergence_mean, clinical_rx) pairs, or mappings
                with "vergenceMean" and "clinicalRx" keys

        Returns:
            True if the parameters were updated
        """
        x, y = [], []
        for item in calibration_data:
            if isinstance(item, Mapping):
                x.append(float(item["vergenceMean"]))
                y.append(float(item["clinicalRx"]))
            else:
                vergence_mean, clinical_rx = item
                x.append(float(vergence_mean))
                y.append(float(clinical_rx))

        if len(x) < 2:
            logger.warning("[RefractionCalculator] Insufficient calibration data")
            return False

        fit = least_squares_fit(x, y)
        if fit is None:
            logger.warning("[RefractionCalculator] Calibration data has no vergence spread")
            return False

        self.alpha, self.beta = fit
        logger.info("[RefractionCalculator] Calibration: alpha=%.3f, beta=%.3f", self.alpha, self.beta)
        return True

    def measurements(self) -> List[FarPointMeasurement]:
        return list(self._measurements)

    def reset(self):
        """Clear recorded measurements. Calibration parameters are kept."""
        self._measurements = []
