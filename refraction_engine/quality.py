"""
Quality Control Module - Composite Measurement Score

Starts from 100 and deducts for every independent failure sign:

1. Geometric stability - distance spread, head pose, tracking confidence
2. Retest consistency  - spread of the far point vergences
3. Reasonableness      - acuity predicted from the refraction vs measured
4. Sufficiency         - number of far point measurements

Deductions compound, so several weak signals push the result towards a
retest / referral.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .utils import REQUIRED_FAR_POINT_MEASUREMENTS

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Grade(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    UNRELIABLE = "UNRELIABLE"


SEVERITY_DEDUCTIONS = {
    Severity.HIGH: 20,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}
RETEST_DEDUCTION = 20
REASONABLENESS_DEDUCTION = 15
INSUFFICIENT_DEDUCTION = 30

RECOMMENDATION_ACCEPT = "Measurement quality is good; the result can be trusted."
RECOMMENDATION_RETEST = "Measurement quality is acceptable; a retest is suggested to improve accuracy."
RECOMMENDATION_STRONG_RETEST = "Measurement quality is poor; a retest is strongly recommended."


@dataclass(frozen=True)
class QualityThresholds:
    distance_std_cm: float = 2.0
    yaw_degrees: float = 15.0
    pitch_degrees: float = 15.0
    roll_degrees: float = 10.0
    face_confidence: float = 0.8
    vergence_std_d: float = 0.50
    va_refraction_gap_logmar: float = 0.5
    min_measurements: int = REQUIRED_FAR_POINT_MEASUREMENTS


@dataclass(frozen=True)
class ReasonablenessPolicy:
    """
    Empirical acuity prediction from spherical power.

    Roughly 0.3 logMAR of acuity loss per diopter of uncorrected myopia.
    Swap in another policy to change the heuristic.
    """
    logmar_per_diopter: float = 0.3

    def predict_logmar(self, spherical: float) -> float:
        return abs(spherical) * self.logmar_per_diopter


@dataclass(frozen=True)
class QualityIssue:
    kind: str
    severity: Severity
    message: str
    measured_value: Optional[float]
    threshold: float

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "severity": self.severity.value,
            "message": self.message,
            "value": self.measured_value,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class GeometrySnapshot:
    """Geometric signals over the measurement window."""
    distance_std: Optional[float] = None
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    confidence: float = 1.0


@dataclass(frozen=True)
class QualityInputs:
    """Everything the scorer looks at. None means "not available"."""
    geometry: Optional[GeometrySnapshot] = None
    vergence_std: Optional[float] = None
    logmar: Optional[float] = None
    spherical: Optional[float] = None
    measurement_count: Optional[int] = None


@dataclass
class QualityAssessment:
    score: int
    grade: Grade
    issues: List[QualityIssue] = field(default_factory=list)
    recommendation: str = ""
    geometric_stability: Optional[bool] = None
    retest_consistency: Optional[bool] = None
    reasonableness: Optional[bool] = None

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "grade": self.grade.value,
            "issues": [issue.to_dict() for issue in self.issues],
            "recommendation": self.recommendation,
            "geometricStability": self.geometric_stability,
            "retestConsistency": self.retest_consistency,
            "reasonableness": self.reasonableness,
        }


def grade_for_score(score: float) -> Grade:
    if score >= 90:
        return Grade.EXCELLENT
    if score >= 75:
        return Grade.GOOD
    if score >= 60:
        return Grade.FAIR
    if score >= 40:
        return Grade.POOR
    return Grade.UNRELIABLE


def recommendation_for_grade(grade: Grade) -> str:
    if grade in (Grade.EXCELLENT, Grade.GOOD):
        return RECOMMENDATION_ACCEPT
    if grade == Grade.FAIR:
        return RECOMMENDATION_RETEST
    return RECOMMENDATION_STRONG_RETEST


class QualityController:
    """Composite scorer; stateless apart from the assessment history."""

    def __init__(
        self,
        thresholds: Optional[QualityThresholds] = None,
        policy: Optional[ReasonablenessPolicy] = None
    ):
        self.thresholds = thresholds or QualityThresholds()
        self.policy = policy or ReasonablenessPolicy()
        self._log: List[dict] = []

    def check_geometric_stability(self, geometry: GeometrySnapshot) -> Tuple[bool, List[QualityIssue]]:
        """
        Returns:
            (pass, issues); pass is False only for HIGH severity issues
        """
        t = self.thresholds
        issues = []

        if geometry.distance_std is not None and geometry.distance_std > t.distance_std_cm:
            issues.append(QualityIssue(
                kind="DISTANCE_UNSTABLE",
                severity=Severity.HIGH,
                message=f"Distance unstable (σ={geometry.distance_std:.2f} cm)",
                measured_value=geometry.distance_std,
                threshold=t.distance_std_cm,
            ))

        if abs(geometry.yaw) > t.yaw_degrees:
            issues.append(QualityIssue(
                kind="YAW_ANGLE_EXCEEDED",
                severity=Severity.MEDIUM,
                message=f"Head yaw too large ({geometry.yaw:.1f}°)",
                measured_value=geometry.yaw,
                threshold=t.yaw_degrees,
            ))

        if abs(geometry.pitch) > t.pitch_degrees:
            issues.append(QualityIssue(
                kind="PITCH_ANGLE_EXCEEDED",
                severity=Severity.MEDIUM,
                message=f"Head pitch too large ({geometry.pitch:.1f}°)",
                measured_value=geometry.pitch,
                threshold=t.pitch_degrees,
            ))

        if abs(geometry.roll) > t.roll_degrees:
            issues.append(QualityIssue(
                kind="ROLL_ANGLE_EXCEEDED",
                severity=Severity.LOW,
                message=f"Head roll too large ({geometry.roll:.1f}°)",
                measured_value=geometry.roll,
                threshold=t.roll_degrees,
            ))

        if geometry.confidence < t.face_confidence:
            issues.append(QualityIssue(
                kind="LOW_FACE_CONFIDENCE",
                severity=Severity.HIGH,
                message=f"Face tracking confidence too low ({geometry.confidence * 100:.0f}%)",
                measured_value=geometry.confidence,
                threshold=t.face_confidence,
            ))

        passed = not any(issue.severity == Severity.HIGH for issue in issues)
        return passed, issues

    def check_retest_consistency(self, vergence_std: float) -> Tuple[bool, Optional[QualityIssue]]:
        threshold = self.thresholds.vergence_std_d
        if vergence_std < threshold:
            return True, None

        return False, QualityIssue(
            kind="RETEST_INCONSISTENT",
            severity=Severity.HIGH,
            message=f"Repeated measurements disagree (σ={vergence_std:.2f} D)",
            measured_value=vergence_std,
            threshold=threshold,
        )

    def check_reasonableness(self, logmar: float, spherical: float) -> Tuple[bool, Optional[QualityIssue]]:
        """Compare measured acuity with the acuity predicted from the refraction."""
        threshold = self.thresholds.va_refraction_gap_logmar
        gap = abs(logmar - self.policy.predict_logmar(spherical))
        if gap < threshold:
            return True, None

        return False, QualityIssue(
            kind="VA_REFRACTION_MISMATCH",
            severity=Severity.MEDIUM,
            message=f"Acuity and refraction disagree (gap={gap:.2f} logMAR)",
            measured_value=gap,
            threshold=threshold,
        )

    def assess(self, inputs: QualityInputs) -> QualityAssessment:
        """
        Score all available signals.

        Returns:
            QualityAssessment with score in [0, 100], grade and issues
        """
        score = 100
        issues: List[QualityIssue] = []
        geometric_ok = retest_ok = reasonable = None

        if inputs.geometry is not None:
            geometric_ok, geometry_issues = self.check_geometric_stability(inputs.geometry)
            issues.extend(geometry_issues)
            for issue in geometry_issues:
                score -= SEVERITY_DEDUCTIONS[issue.severity]

        if inputs.vergence_std is not None:
            retest_ok, issue = self.check_retest_consistency(inputs.vergence_std)
            if issue:
                issues.append(issue)
                score -= RETEST_DEDUCTION

        if inputs.logmar is not None and inputs.spherical is not None:
            reasonable, issue = self.check_reasonableness(inputs.logmar, inputs.spherical)
            if issue:
                issues.append(issue)
                score -= REASONABLENESS_DEDUCTION

        min_count = self.thresholds.min_measurements
        if inputs.measurement_count is not None and inputs.measurement_count < min_count:
            issues.append(QualityIssue(
                kind="INSUFFICIENT_MEASUREMENTS",
                severity=Severity.HIGH,
                message=f"Not enough measurements ({inputs.measurement_count}/{min_count})",
                measured_value=inputs.measurement_count,
                threshold=min_count,
            ))
            score -= INSUFFICIENT_DEDUCTION

        score = max(0, min(100, score))
        grade = grade_for_score(score)

        assessment = QualityAssessment(
            score=score,
            grade=grade,
            issues=issues,
            recommendation=recommendation_for_grade(grade),
            geometric_stability=geometric_ok,
            retest_consistency=retest_ok,
            reasonableness=reasonable,
        )

        self._log.append({
            "timestamp": time.time() * 1000.0,
            "score": score,
            "grade": grade.value,
            "issues": [issue.to_dict() for issue in issues],
        })
        if issues:
            logger.info("[QualityController] score=%d grade=%s issues=%s",
                        score, grade.value, [i.kind for i in issues])

        return assessment

    def report(self) -> List[dict]:
        """History of assessments since the last reset."""
        return list(self._log)

    def reset(self):
        self._log = []
