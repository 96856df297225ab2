"""
Camera-Based Refraction Screening Engine

Estimates viewing distance from a face tracker, runs an adaptive Landolt C
acuity test, and derives a spherical refraction from far point distances.
"""

from .config import TestConfig
from .core import EyeTestSession, FaceObservation, Phase, SessionResult
from .distance import DistanceEstimator
from .optotype import OptotypeController
from .quality import QualityController
from .recorder import DataRecorder
from .refraction import RefractionCalculator
from .staircase import StaircaseProtocol
from .utils import SOFTWARE_VERSION

__version__ = SOFTWARE_VERSION
__all__ = [
    "DataRecorder",
    "DistanceEstimator",
    "EyeTestSession",
    "FaceObservation",
    "OptotypeController",
    "Phase",
    "QualityController",
    "RefractionCalculator",
    "SessionResult",
    "StaircaseProtocol",
    "TestConfig",
]
