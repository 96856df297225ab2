"""
Optotype Size Control Module

Keeps the visual angle of the Landolt C constant regardless of viewing
distance. For a target logMAR:

    alpha = 5 arcmin * 10^logMAR
    H_cm  = alpha_rad * d_cm           (small-angle approximation)
    H_px  = H_cm / 2.54 * PPI
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .utils import (
    DEFAULT_PPI,
    REFERENCE_ANGLE_ARCMIN,
    arcmin_to_radians,
    cm_to_pixels,
    pixels_to_cm,
    radians_to_arcmin,
    round_half_up,
)

logger = logging.getLogger(__name__)

# Landolt C: overall height is 5 units, gap and stroke are 1 unit each
LANDOLT_UNITS = 5


@dataclass(frozen=True)
class LandoltParams:
    """Landolt C geometry in pixels."""
    size: int
    gap: float
    stroke: float
    radius: float

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "gap": self.gap,
            "stroke": self.stroke,
            "radius": self.radius,
        }


def logmar_to_snellen(logmar: float) -> str:
    """logMAR to Snellen notation, e.g. 0.0 -> "20/20", 0.3 -> "20/40"."""
    denominator = 20 * 10 ** logmar
    return f"20/{round_half_up(denominator)}"


class OptotypeController:
    """Converts a target logMAR and a viewing distance into a symbol size."""

    def __init__(self, ppi: float = DEFAULT_PPI):
        """
        Args:
            ppi: Display pixels per inch
        """
        if ppi <= 0:
            raise ValueError(f"ppi must be positive, got {ppi}")
        self.ppi = ppi
        self.target_logmar: Optional[float] = None
        self.target_angle_arcmin: Optional[float] = None

    def set_target_logmar(self, logmar: float) -> float:
        """
        Set the target visual angle from a logMAR value.

        logMAR = log10(alpha / alpha_ref), alpha_ref = 5 arcmin (20/20)

        Returns:
            Target angle in arc minutes
        """
        self.target_logmar = logmar
        self.target_angle_arcmin = REFERENCE_ANGLE_ARCMIN * 10 ** logmar
        return self.target_angle_arcmin

    def physical_height_cm(self, distance_cm: Optional[float]) -> Optional[float]:
        """Optotype height on screen (cm) for the current target angle."""
        if self.target_angle_arcmin is None:
            logger.warning("[OptotypeController] Target angle not set")
            return None
        if distance_cm is None or distance_cm <= 0:
            return None

        # H = alpha * d, tan(alpha) ~ alpha at these angles
        return arcmin_to_radians(self.target_angle_arcmin) * distance_cm

    def pixel_height(
        self,
        distance_cm: Optional[float],
        round_result: bool = True
    ) -> Optional[Union[int, float]]:
        """
        Optotype height in pixels.

        Args:
            distance_cm: Viewing distance
            round_result: Round to whole pixels (for rendering)

        Returns:
            Height in pixels, or None if no target/distance is available
        """
        height_cm = self.physical_height_cm(distance_cm)
        if height_cm is None:
            return None

        height_px = cm_to_pixels(height_cm, self.ppi)
        return round_half_up(height_px) if round_result else height_px

    def landolt_params(self, distance_cm: Optional[float]) -> Optional[LandoltParams]:
        """Landolt C size, gap, stroke and radius in pixels."""
        total_height = self.pixel_height(distance_cm)
        if not total_height:
            return None

        unit = total_height / LANDOLT_UNITS
        return LandoltParams(
            size=total_height,
            gap=unit,
            stroke=unit,
            radius=total_height / 2,
        )

    def current_angle_arcmin(self, pixel_height: float, distance_cm: float) -> float:
        """Visual angle subtended by a symbol of the given pixel height."""
        height_cm = pixels_to_cm(pixel_height, self.ppi)
        return radians_to_arcmin(height_cm / distance_cm)

    @staticmethod
    def logmar_to_snellen(logmar: float) -> str:
        return logmar_to_snellen(logmar)
