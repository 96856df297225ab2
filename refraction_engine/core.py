"""
Core Eye Test Engine

This module provides the EyeTestSession class that runs one subject's
test through all stages:

    calibration -> staircase acuity test -> far point captures -> results

Face tracking is external: callers feed one FaceObservation per camera
frame (or None when no face is found) and forward user input.
"""

import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .config import TestConfig
from .distance import DistanceEstimator, HeadPose, validate_manual_distance
from .optotype import LandoltParams, OptotypeController, logmar_to_snellen
from .quality import GeometrySnapshot, QualityAssessment, QualityController, QualityInputs
from .recorder import DataRecorder, TestRecord, VisualAcuityResult
from .refraction import RefractionCalculator, RefractionResult
from .staircase import (
    StaircaseConfig,
    StaircaseProtocol,
    StaircaseStep,
    generate_direction,
    rotation_angle,
)
from .temporal_filter import TemporalDistanceFilter
from .utils import (
    DISTANCE_HISTORY_LENGTH,
    REQUIRED_FAR_POINT_MEASUREMENTS,
    STABILITY_MIN_SAMPLES,
    STABILITY_STD_THRESHOLD_CM,
    STABILITY_WINDOW_MS,
    sample_stats,
)

logger = logging.getLogger(__name__)

# Calibration gating
CALIBRATION_MAX_YAW_DEGREES = 15.0
CALIBRATION_MAX_WIDTH_CV = 0.05  # Face width std / mean over the last second


class Phase(str, Enum):
    IDLE = "idle"
    CALIBRATION = "calibration"
    VISUAL_ACUITY = "visual_acuity"
    FAR_POINT = "far_point"
    RESULTS = "results"


@dataclass(frozen=True)
class FaceObservation:
    """
    Per-frame output of the external face tracker.

    Frames are stamped with the session clock on arrival; tracker-side
    timestamps use unrelated time bases and are not accepted.
    """
    face_pixel_width: float
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    confidence: float = 1.0

    @property
    def pose(self) -> HeadPose:
        return HeadPose(yaw=self.yaw, pitch=self.pitch, roll=self.roll)


@dataclass
class FrameResult:
    face_detected: bool = False
    distance_cm: Optional[float] = None
    smoothed_distance_cm: Optional[float] = None
    distance_std: Optional[float] = None
    is_stable: bool = False
    optotype: Optional[LandoltParams] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "face_detected": self.face_detected,
            "distance_cm": self.distance_cm,
            "smoothed_distance_cm": self.smoothed_distance_cm,
            "distance_std": self.distance_std,
            "is_stable": self.is_stable,
            "optotype": self.optotype.to_dict() if self.optotype else None,
            "warnings": list(self.warnings),
        }


@dataclass
class CalibrationOutcome:
    success: bool
    message: str
    calibration_constant: Optional[float] = None
    reference_distance_cm: Optional[float] = None
    reference_pixel_width: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "calibration_constant": self.calibration_constant,
            "reference_distance_cm": self.reference_distance_cm,
            "reference_pixel_width": self.reference_pixel_width,
        }


@dataclass
class Presentation:
    """One Landolt C to show."""
    direction: str
    rotation: int
    logmar: float
    snellen: str
    optotype: Optional[LandoltParams]

    def to_dict(self) -> dict:
        return {
            "direction": self.direction,
            "rotation": self.rotation,
            "logmar": self.logmar,
            "snellen": self.snellen,
            "optotype": self.optotype.to_dict() if self.optotype else None,
        }


@dataclass
class ResponseOutcome:
    correct: bool
    step: StaircaseStep
    visual_acuity: Optional[VisualAcuityResult] = None

    def to_dict(self) -> dict:
        return {
            "correct": self.correct,
            "step": self.step.to_dict(),
            "visual_acuity": self.visual_acuity.to_dict() if self.visual_acuity else None,
        }


@dataclass
class SessionResult:
    """Final per-eye result."""
    record_id: Optional[str]
    eye: Optional[str]
    visual_acuity: Optional[VisualAcuityResult]
    refraction: RefractionResult
    quality: QualityAssessment

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "eye": self.eye,
            "visual_acuity": self.visual_acuity.to_dict() if self.visual_acuity else None,
            "refraction": self.refraction.to_dict(),
            "quality": self.quality.to_dict(),
        }


@dataclass
class FarPointOutcome:
    success: bool
    message: str
    count: int
    required: int = REQUIRED_FAR_POINT_MEASUREMENTS
    distance_cm: Optional[float] = None
    vergence_d: Optional[float] = None
    result: Optional[SessionResult] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "count": self.count,
            "required": self.required,
            "distance_cm": self.distance_cm,
            "vergence_d": self.vergence_d,
            "result": self.result.to_dict() if self.result else None,
        }


class EyeTestSession:
    """
    Owns one set of pipeline components for a test session.

    Components are constructed per session and reset explicitly between
    eyes; nothing is shared between sessions. Every public method holds
    the session lock, so frame events and user input never interleave.

    Usage:
        session = EyeTestSession()
        session.start_eye("right")
        for obs in frames:
            session.process_frame(obs)
        session.calibrate()
        ...
    """

    def __init__(
        self,
        config: Optional[TestConfig] = None,
        recorder: Optional[DataRecorder] = None,
        staircase_config: Optional[StaircaseConfig] = None,
        refraction_calculator: Optional[RefractionCalculator] = None,
        quality_controller: Optional[QualityController] = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the session.

        Args:
            config: Test parameters (defaults if omitted)
            recorder: Ledger to write records into
            staircase_config: Staircase parameters
            refraction_calculator: Pre-configured calculator (e.g. fitted DoF)
            quality_controller: Pre-configured scorer
            clock: Callable returning the current time in milliseconds
            rng: Random source for optotype directions
        """
        self.config = config or TestConfig()
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._rng = rng or random.Random()
        self._lock = threading.RLock()

        self.recorder = recorder or DataRecorder(clock=self._clock)
        self.estimator = DistanceEstimator(clock=self._clock)
        self.optotype = OptotypeController(ppi=self.config.ppi)
        self.staircase = StaircaseProtocol(staircase_config)
        self.refraction = refraction_calculator or RefractionCalculator(clock=self._clock)
        self.quality = quality_controller or QualityController()
        self.distance_filter = TemporalDistanceFilter()

        self.phase = Phase.IDLE
        self.eye: Optional[str] = None
        self.record_id: Optional[str] = None

        self._width_history: deque = deque(maxlen=DISTANCE_HISTORY_LENGTH)
        self._confidence_history: deque = deque(maxlen=DISTANCE_HISTORY_LENGTH)
        self._last_observation: Optional[FaceObservation] = None
        self._smoothed_distance: Optional[float] = None
        self._current_direction: Optional[str] = None
        self._visual_acuity: Optional[VisualAcuityResult] = None
        self._result: Optional[SessionResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_eye(self, eye: str) -> TestRecord:
        """
        Reset per-eye state and open the eye's record.

        Calibration is kept across eyes of the same session.
        """
        with self._lock:
            record = self.recorder.create_record(eye, self.config)

            self.staircase.reset()
            self.refraction.reset()
            self.estimator.reset()
            self.quality.reset()
            self.distance_filter.reset()
            self._width_history.clear()
            self._confidence_history.clear()
            self._smoothed_distance = None
            self._current_direction = None
            self._visual_acuity = None
            self._result = None

            self.eye = record.eye
            self.record_id = record.record_id
            self.phase = Phase.VISUAL_ACUITY if self.estimator.is_calibrated else Phase.CALIBRATION
            logger.info("[EyeTestSession] Started %s eye (%s), phase=%s",
                        self.eye, self.record_id, self.phase.value)
            return record

    def reset(self):
        """Drop all state including calibration; records stay in the ledger."""
        with self._lock:
            self.staircase.reset()
            self.refraction.reset()
            self.estimator.reset()
            self.estimator.clear_calibration()
            self.quality.reset()
            self.distance_filter.reset()
            self._width_history.clear()
            self._confidence_history.clear()
            self._last_observation = None
            self._smoothed_distance = None
            self._current_direction = None
            self._visual_acuity = None
            self._result = None
            self.eye = None
            self.record_id = None
            self.phase = Phase.IDLE

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def process_frame(self, observation: Optional[FaceObservation]) -> FrameResult:
        """
        Handle one face tracker event.

        Args:
            observation: Tracker output, or None when no face was detected

        Returns:
            FrameResult with the distance and, during the acuity test, the
            optotype size for the current distance
        """
        with self._lock:
            if observation is None or observation.face_pixel_width <= 0:
                return FrameResult(face_detected=False, warnings=["No face detected"])

            timestamp = self._clock()
            self._last_observation = observation
            self._confidence_history.append((timestamp, observation.confidence))

            if abs(observation.yaw) <= self.estimator.max_yaw_degrees:
                corrected = self.estimator.apply_pose_correction(observation.face_pixel_width, observation.yaw)
                self._width_history.append((timestamp, corrected))

            if not self.estimator.is_calibrated:
                return FrameResult(face_detected=True, warnings=["Not calibrated"])

            distance = self.estimator.estimate(
                observation.face_pixel_width,
                yaw_deg=observation.yaw,
                pitch_deg=observation.pitch,
                roll_deg=observation.roll,
                timestamp_ms=timestamp,
            )
            if distance is None:
                return FrameResult(face_detected=True, warnings=["Head turned too far; frame ignored"])

            self._smoothed_distance = self.distance_filter.update(distance, observation.confidence)

            if self.record_id is not None and self.phase not in (Phase.IDLE, Phase.RESULTS):
                self.recorder.record_distance_point(self.record_id, self.estimator.latest())
                self.recorder.record_pose(self.record_id, observation.pose, observation.confidence, timestamp)

            stats = self.estimator.average(STABILITY_WINDOW_MS)
            result = FrameResult(
                face_detected=True,
                distance_cm=distance,
                smoothed_distance_cm=self._smoothed_distance,
                distance_std=stats.std,
                is_stable=self.estimator.is_stable(STABILITY_STD_THRESHOLD_CM),
            )

            if self.phase == Phase.VISUAL_ACUITY:
                self.optotype.set_target_logmar(self.staircase.current_logmar)
                result.optotype = self.optotype.landolt_params(self._smoothed_distance)

            return result

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def calibrate(self, manual_distance_cm: Optional[float] = None) -> CalibrationOutcome:
        """
        Calibrate the distance model from the last second of frames.

        Args:
            manual_distance_cm: Distance entered by the user; defaults to the
                configured calibration distance

        Returns:
            CalibrationOutcome; on failure the message says what to fix and
            no state is changed
        """
        with self._lock:
            if manual_distance_cm is not None:
                message = validate_manual_distance(manual_distance_cm)
                if message:
                    return CalibrationOutcome(success=False, message=message)
                reference_distance = float(manual_distance_cm)
            else:
                reference_distance = self.config.calibration_distance_cm

            observation = self._last_observation
            if observation is None:
                return CalibrationOutcome(success=False, message="Keep your face in the center of the frame.")

            if abs(observation.yaw) > CALIBRATION_MAX_YAW_DEGREES:
                return CalibrationOutcome(success=False, message="Face the screen directly (head turned too far).")

            now = self._clock()
            widths = [w for ts, w in self._width_history if (now - ts) <= STABILITY_WINDOW_MS]
            mean_width, std_width, count = sample_stats(widths)
            if count < STABILITY_MIN_SAMPLES or std_width is None:
                return CalibrationOutcome(success=False, message="Hold still for a moment.")
            if std_width / mean_width > CALIBRATION_MAX_WIDTH_CV:
                return CalibrationOutcome(success=False, message="Hold still (distance is fluctuating).")

            constant = self.estimator.calibrate(reference_distance, mean_width)
            self.estimator.reset()
            self.distance_filter.reset()
            self._smoothed_distance = None

            if self.phase == Phase.CALIBRATION:
                self.staircase.reset()
                self.phase = Phase.VISUAL_ACUITY

            return CalibrationOutcome(
                success=True,
                message=f"Calibrated at {reference_distance:.0f} cm (k={constant:.2f}).",
                calibration_constant=constant,
                reference_distance_cm=reference_distance,
                reference_pixel_width=mean_width,
            )

    # ------------------------------------------------------------------
    # Visual acuity
    # ------------------------------------------------------------------

    def next_optotype(self) -> Optional[Presentation]:
        """Pick the next gap direction and size it for the current distance."""
        with self._lock:
            if self.phase != Phase.VISUAL_ACUITY:
                return None

            direction = generate_direction(self._rng)
            self._current_direction = direction

            logmar = self.staircase.current_logmar
            self.optotype.set_target_logmar(logmar)
            return Presentation(
                direction=direction,
                rotation=rotation_angle(direction),
                logmar=logmar,
                snellen=logmar_to_snellen(logmar),
                optotype=self.optotype.landolt_params(self._smoothed_distance),
            )

    def submit_response(self, direction: str) -> Optional[ResponseOutcome]:
        """
        Score the user's answer for the presented optotype.

        Returns:
            ResponseOutcome, or None if no optotype is pending
        """
        with self._lock:
            if self.phase != Phase.VISUAL_ACUITY or self._current_direction is None:
                logger.warning("[EyeTestSession] Response without a presented optotype")
                return None

            correct = direction.strip().lower() == self._current_direction
            self._current_direction = None
            step = self.staircase.record_response(correct)

            outcome = ResponseOutcome(correct=correct, step=step)
            if not step.should_continue:
                outcome.visual_acuity = self._complete_visual_acuity()
            return outcome

    def _complete_visual_acuity(self) -> VisualAcuityResult:
        threshold = self.staircase.threshold
        logmar = threshold
        fallback = False
        if logmar is None and self.staircase.responses:
            # Too few reversals (e.g. pinned at a boundary): use the last level shown
            logmar = self.staircase.responses[-1].logmar
            fallback = True

        result = VisualAcuityResult(
            logmar=logmar,
            snellen=logmar_to_snellen(logmar) if logmar is not None else None,
            threshold=threshold,
            trial_count=self.staircase.trial_count,
            responses=list(self.staircase.responses),
            reversals=list(self.staircase.reversals),
            threshold_fallback=fallback,
        )
        self._visual_acuity = result
        if self.record_id is not None:
            self.recorder.record_visual_acuity(self.record_id, result)

        self.refraction.reset()
        self.phase = Phase.FAR_POINT
        logger.info("[EyeTestSession] Visual acuity %s (logMAR=%s)", result.snellen, result.logmar)
        return result

    # ------------------------------------------------------------------
    # Far point
    # ------------------------------------------------------------------

    def record_far_point(self) -> FarPointOutcome:
        """
        Capture the current (stable) distance as a far point.

        The final result is computed automatically after the required
        number of captures.
        """
        with self._lock:
            count = len(self.refraction.measurements())
            if self.phase != Phase.FAR_POINT:
                return FarPointOutcome(success=False, message="Far point capture is not active.", count=count)

            if not self.estimator.is_stable(STABILITY_STD_THRESHOLD_CM):
                return FarPointOutcome(success=False, message="Hold still before recording.", count=count)

            stats = self.estimator.average(STABILITY_WINDOW_MS)
            pose = self._last_observation.pose if self._last_observation else HeadPose()
            measurement = self.refraction.record_measurement(
                stats.mean,
                metadata={"yaw": pose.yaw, "pitch": pose.pitch, "roll": pose.roll},
                std_estimate=stats.std,
            )
            if measurement is None:
                return FarPointOutcome(success=False, message="Distance unavailable.", count=count)

            if self.record_id is not None:
                self.recorder.record_far_point_measurement(self.record_id, measurement)

            count += 1
            outcome = FarPointOutcome(
                success=True,
                message=f"Measurement {count}/{REQUIRED_FAR_POINT_MEASUREMENTS} recorded.",
                count=count,
                distance_cm=measurement.distance_cm,
                vergence_d=measurement.vergence_d,
            )
            if count >= REQUIRED_FAR_POINT_MEASUREMENTS:
                outcome.result = self.finalize()
            return outcome

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _geometry_snapshot(self) -> GeometrySnapshot:
        stats = self.estimator.average(STABILITY_WINDOW_MS)
        observation = self._last_observation

        now = self._clock()
        confidences = [c for ts, c in self._confidence_history if (now - ts) <= STABILITY_WINDOW_MS]
        if confidences:
            confidence = sum(confidences) / len(confidences)
        elif observation is not None:
            confidence = observation.confidence
        else:
            confidence = 0.0

        return GeometrySnapshot(
            distance_std=stats.std,
            yaw=observation.yaw if observation else 0.0,
            pitch=observation.pitch if observation else 0.0,
            roll=observation.roll if observation else 0.0,
            confidence=confidence,
        )

    def finalize(self) -> SessionResult:
        """
        Combine refraction, acuity and geometry into the final result.

        Always produces a result; missing pieces show up as quality issues.
        """
        with self._lock:
            if self.phase == Phase.RESULTS and self._result is not None:
                return self._result

            refraction = self.refraction.calculate_refraction(self.config.use_blue_light)
            va = self._visual_acuity

            inputs = QualityInputs(
                geometry=self._geometry_snapshot(),
                vergence_std=refraction.vergence_std,
                logmar=va.logmar if va else None,
                spherical=refraction.spherical,
                measurement_count=refraction.measurement_count,
            )
            quality = self.quality.assess(inputs)

            if self.record_id is not None:
                self.recorder.record_quality_metrics(self.record_id, quality)
                self.recorder.record_final_results(self.record_id, refraction, quality)

            self._result = SessionResult(
                record_id=self.record_id,
                eye=self.eye,
                visual_acuity=va,
                refraction=refraction,
                quality=quality,
            )
            self.phase = Phase.RESULTS
            logger.info("[EyeTestSession] Result: spherical=%s, quality=%d (%s)",
                        refraction.spherical, quality.score, quality.grade.value)
            return self._result

    def status(self) -> dict:
        """Snapshot of the session for UIs."""
        with self._lock:
            return {
                "phase": self.phase.value,
                "eye": self.eye,
                "record_id": self.record_id,
                "calibrated": self.estimator.is_calibrated,
                "calibration_constant": self.estimator.calibration_constant,
                "current_logmar": self.staircase.current_logmar,
                "trial_count": self.staircase.trial_count,
                "reversal_count": len(self.staircase.reversals),
                "far_point_count": len(self.refraction.measurements()),
                "is_stable": self.estimator.is_stable(STABILITY_STD_THRESHOLD_CM),
            }
