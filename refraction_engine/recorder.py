"""
Data Recording Module - Session Ledger

One TestRecord per (session, eye). Time series sections are append-only,
result sections are written once, and the whole record is frozen when the
final results are stamped with ``completedAt``.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .utils import SOFTWARE_VERSION
from .config import TestConfig
from .distance import DistanceSample, HeadPose
from .quality import QualityAssessment
from .refraction import FarPointMeasurement, RefractionResult
from .staircase import Reversal, StaircaseResponse

logger = logging.getLogger(__name__)

EYES = ("left", "right")


def _generate_session_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class VisualAcuityResult:
    """Outcome of the staircase for one eye."""
    logmar: Optional[float]
    snellen: Optional[str]
    threshold: Optional[float]
    trial_count: int
    responses: List[StaircaseResponse] = field(default_factory=list)
    reversals: List[Reversal] = field(default_factory=list)
    threshold_fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "logMAR": self.logmar,
            "snellen": self.snellen,
            "threshold": self.threshold,
            "thresholdFallback": self.threshold_fallback,
            "trialCount": self.trial_count,
            "responses": [r.to_dict() for r in self.responses],
            "reversals": [r.to_dict() for r in self.reversals],
        }


@dataclass
class TestRecord:
    """Aggregate root for one eye's test."""
    session_id: str
    record_id: str
    eye: str
    created_at: str
    config: TestConfig
    device_info: Optional[Dict[str, Any]] = None
    software_version: str = SOFTWARE_VERSION
    distance_time_series: List[dict] = field(default_factory=list)
    pose_time_series: List[dict] = field(default_factory=list)
    visual_acuity: Optional[dict] = None
    far_point_measurements: List[dict] = field(default_factory=list)
    quality_metrics: Optional[dict] = None
    results: Optional[dict] = None
    completed_at: Optional[str] = None
    abandoned_at: Optional[str] = None

    # Not a test case class
    __test__ = False

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @property
    def is_closed(self) -> bool:
        """Completed or abandoned; either way no further writes."""
        return self.completed_at is not None or self.abandoned_at is not None

    @property
    def has_data(self) -> bool:
        return bool(
            self.distance_time_series
            or self.pose_time_series
            or self.far_point_measurements
            or self.visual_acuity is not None
            or self.quality_metrics is not None
        )

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "recordId": self.record_id,
            "eye": self.eye,
            "timestamp": self.created_at,
            "softwareVersion": self.software_version,
            "deviceInfo": dict(self.device_info) if self.device_info is not None else None,
            "config": self.config.to_dict(),
            "data": {
                "distanceTimeSeries": list(self.distance_time_series),
                "poseTimeSeries": list(self.pose_time_series),
                "visualAcuity": self.visual_acuity,
                "farPointMeasurements": list(self.far_point_measurements),
                "qualityMetrics": self.quality_metrics,
                "results": self.results,
            },
            "completedAt": self.completed_at,
            "abandonedAt": self.abandoned_at,
        }


class DataRecorder:
    """
    Holds the records of one test session.

    Writes to a missing record are ignored (logged), never raised.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        device_info: Optional[Mapping[str, Any]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Args:
            session_id: Fixed session id (generated if omitted)
            device_info: Opaque device metadata copied into every record
            clock: Callable returning the current time in milliseconds
        """
        self.session_id = session_id or _generate_session_id()
        self.device_info: Optional[Dict[str, Any]] = dict(device_info) if device_info is not None else None
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._records: Dict[str, TestRecord] = {}

    def set_device_info(self, device_info: Optional[Mapping[str, Any]]):
        """Store device metadata for records created from now on."""
        self.device_info = dict(device_info) if device_info is not None else None

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    def create_record(
        self,
        eye: str,
        config: Optional[Union[TestConfig, Mapping[str, Any]]] = None
    ) -> TestRecord:
        """
        Create the record for ``eye`` in this session.

        An unfinished, still empty record for the same eye is returned as is.
        An unfinished record that already holds data is marked abandoned, and
        it and completed records both lead to a new retest record.
        """
        eye = eye.lower()
        if eye not in EYES:
            raise ValueError(f"eye must be one of {EYES}, got {eye!r}")

        test_config = TestConfig.from_mapping(config)

        record_id = f"{self.session_id}-{eye}"
        attempt = 1
        while record_id in self._records:
            existing = self._records[record_id]
            if not existing.is_closed:
                if not existing.has_data:
                    return existing
                existing.abandoned_at = _utc_now_iso()
                logger.warning("[DataRecorder] Record %s abandoned by a restart", record_id)
            attempt += 1
            record_id = f"{self.session_id}-{eye}-retest{attempt}"

        record = TestRecord(
            session_id=self.session_id,
            record_id=record_id,
            eye=eye,
            created_at=_utc_now_iso(),
            config=test_config,
            device_info=dict(self.device_info) if self.device_info is not None else None,
        )
        self._records[record_id] = record
        logger.info("[DataRecorder] Created record %s", record_id)
        return record

    def _writable(self, record_id: str) -> Optional[TestRecord]:
        record = self._records.get(record_id)
        if record is None:
            logger.warning("[DataRecorder] Unknown record: %s", record_id)
            return None
        if record.is_closed:
            logger.warning("[DataRecorder] Record %s is closed; write ignored", record_id)
            return None
        return record

    # ------------------------------------------------------------------
    # Append-only sections
    # ------------------------------------------------------------------

    def record_distance_point(self, record_id: str, sample: DistanceSample) -> bool:
        record = self._writable(record_id)
        if record is None:
            return False
        record.distance_time_series.append(sample.to_dict())
        return True

    def record_pose(
        self,
        record_id: str,
        pose: HeadPose,
        confidence: Optional[float] = None,
        timestamp_ms: Optional[float] = None
    ) -> bool:
        record = self._writable(record_id)
        if record is None:
            return False
        record.pose_time_series.append({
            "timestamp": self._clock() if timestamp_ms is None else timestamp_ms,
            "yaw": pose.yaw,
            "pitch": pose.pitch,
            "roll": pose.roll,
            "confidence": confidence,
        })
        return True

    def record_far_point_measurement(self, record_id: str, measurement: FarPointMeasurement) -> bool:
        record = self._writable(record_id)
        if record is None:
            return False
        record.far_point_measurements.append(measurement.to_dict())
        return True

    # ------------------------------------------------------------------
    # Single terminal writes
    # ------------------------------------------------------------------

    def record_visual_acuity(self, record_id: str, result: VisualAcuityResult) -> bool:
        record = self._writable(record_id)
        if record is None:
            return False
        if record.visual_acuity is not None:
            logger.warning("[DataRecorder] Visual acuity already recorded for %s", record_id)
            return False
        payload = result.to_dict()
        payload["timestamp"] = self._clock()
        record.visual_acuity = payload
        return True

    def record_quality_metrics(self, record_id: str, assessment: QualityAssessment) -> bool:
        record = self._writable(record_id)
        if record is None:
            return False
        if record.quality_metrics is not None:
            logger.warning("[DataRecorder] Quality metrics already recorded for %s", record_id)
            return False
        payload = assessment.to_dict()
        payload["timestamp"] = self._clock()
        record.quality_metrics = payload
        return True

    def record_final_results(
        self,
        record_id: str,
        result: RefractionResult,
        quality: Optional[QualityAssessment] = None
    ) -> bool:
        """Write the results section and mark the record complete."""
        record = self._writable(record_id)
        if record is None:
            return False
        if record.results is not None:
            logger.warning("[DataRecorder] Results already recorded for %s", record_id)
            return False

        payload = result.to_dict()
        payload["timestamp"] = self._clock()
        payload["qualityScore"] = quality.score if quality else None
        payload["qualityGrade"] = quality.grade.value if quality else None
        record.results = payload
        record.completed_at = _utc_now_iso()
        logger.info("[DataRecorder] Record %s completed", record_id)
        return True

    # ------------------------------------------------------------------
    # Read / export
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> Optional[TestRecord]:
        return self._records.get(record_id)

    def records(self) -> List[TestRecord]:
        return list(self._records.values())

    def export(self, record_id: str) -> Optional[str]:
        """Serialise one record to JSON with a stable key order."""
        record = self.get_record(record_id)
        if record is None:
            return None
        return json.dumps(record.to_dict(), sort_keys=True, indent=2, ensure_ascii=False)

    def export_all(self) -> str:
        return json.dumps({
            "sessionId": self.session_id,
            "exportedAt": _utc_now_iso(),
            "records": [record.to_dict() for record in self._records.values()],
        }, sort_keys=True, indent=2, ensure_ascii=False)

    def summary(self, record_id: str) -> Optional[dict]:
        """Condensed key metrics; missing sections come back as None."""
        record = self.get_record(record_id)
        if record is None:
            return None

        va = record.visual_acuity or {}
        results = record.results or {}
        quality = record.quality_metrics or {}
        device = record.device_info or {}

        return {
            "recordId": record.record_id,
            "eye": record.eye,
            "timestamp": record.created_at,
            "deviceModel": device.get("modelName"),
            "visualAcuity": va.get("logMAR"),
            "visualAcuitySnellen": va.get("snellen"),
            "spherical": results.get("spherical"),
            "measurementCount": results.get("measurementCount"),
            "qualityScore": quality.get("score"),
            "qualityGrade": quality.get("grade"),
            "issues": len(quality.get("issues") or []),
            "recommendation": quality.get("recommendation"),
            "completed": record.is_complete,
            "abandoned": record.abandoned_at is not None,
        }

    def clear_all(self):
        """Drop all records and start a new session id."""
        self._records = {}
        self.session_id = _generate_session_id()
