"""
Test configuration for the refraction engine.

Every option recognised by a test record is listed on :class:`TestConfig`
with its default. Values can come from code, from a plain mapping (e.g. an
HTTP request body) or from the environment / a ``.env`` file.
"""

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .utils import (
    DEFAULT_CALIBRATION_DISTANCE_CM,
    DEFAULT_PPI,
    MAX_MANUAL_DISTANCE_CM,
    MIN_MANUAL_DISTANCE_CM,
)


class ConfigError(ValueError):
    """Raised when configuration values cannot be parsed or are unknown."""


@dataclass(frozen=True)
class TestConfig:
    """Per-record test parameters."""

    calibration_distance_cm: float = DEFAULT_CALIBRATION_DISTANCE_CM
    ppi: float = DEFAULT_PPI
    use_blue_light: bool = True

    # Not a test case class
    __test__ = False

    def __post_init__(self):
        if not (MIN_MANUAL_DISTANCE_CM <= self.calibration_distance_cm <= MAX_MANUAL_DISTANCE_CM):
            raise ValueError(
                f"calibration_distance_cm must be within "
                f"[{MIN_MANUAL_DISTANCE_CM:.0f}, {MAX_MANUAL_DISTANCE_CM:.0f}] cm, "
                f"got {self.calibration_distance_cm}"
            )
        if self.ppi <= 0:
            raise ValueError(f"ppi must be positive, got {self.ppi}")

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]] = None) -> "TestConfig":
        """
        Build a config from a mapping, merged over the defaults.

        Unknown keys are rejected rather than silently carried along.
        """
        if values is None:
            return cls()
        if isinstance(values, TestConfig):
            return values

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown config option(s): {', '.join(unknown)}")

        merged = asdict(cls())
        merged.update(values)
        return cls(
            calibration_distance_cm=float(merged["calibration_distance_cm"]),
            ppi=float(merged["ppi"]),
            use_blue_light=_coerce_bool("use_blue_light", merged["use_blue_light"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calibrationDistance": self.calibration_distance_cm,
            "ppi": self.ppi,
            "useBlueLight": self.use_blue_light,
        }


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid boolean value: {raw!r}")


def _coerce_bool(name: str, value: Any) -> bool:
    """Accept real booleans and the strings _parse_bool knows; nothing else."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _parse_bool(value)
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def load_config_from_env(dotenv_path: Optional[str] = None) -> TestConfig:
    """
    Build a TestConfig from environment variables.

    A ``.env`` file is loaded first (existing variables win). Recognised:
        REFRACTION_CALIBRATION_DISTANCE_CM
        REFRACTION_PPI
        REFRACTION_USE_BLUE_LIGHT
    """
    load_dotenv(dotenv_path)

    values: Dict[str, Any] = {}
    raw = os.getenv("REFRACTION_CALIBRATION_DISTANCE_CM")
    if raw:
        values["calibration_distance_cm"] = _parse_float("REFRACTION_CALIBRATION_DISTANCE_CM", raw)
    raw = os.getenv("REFRACTION_PPI")
    if raw:
        values["ppi"] = _parse_float("REFRACTION_PPI", raw)
    raw = os.getenv("REFRACTION_USE_BLUE_LIGHT")
    if raw:
        values["use_blue_light"] = _parse_bool(raw)

    return TestConfig.from_mapping(values)


def log_level_from_env(default: str = "INFO") -> str:
    """Log level for services, from REFRACTION_LOG_LEVEL."""
    load_dotenv()
    return os.getenv("REFRACTION_LOG_LEVEL", default)
