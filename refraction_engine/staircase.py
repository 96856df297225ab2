"""
Visual Acuity Module - Adaptive Staircase

1-up/1-down staircase on logMAR: a correct answer makes the next symbol
smaller (harder), a wrong answer makes it larger (easier). The test ends
after a number of direction reversals or a maximum number of trials, and
the threshold is the mean logMAR at the last reversals.

Boundary policy: the direction of a step is taken from the response, not
from the effective movement. Repeated correct answers while clamped at the
minimum logMAR all count as "harder", so they never create a reversal; the
first wrong answer afterwards does.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

HARDER = "harder"
EASIER = "easier"

DIRECTIONS = ("up", "down", "left", "right")

# Landolt C gap rotation (degrees clockwise from "right")
_ROTATIONS = {
    "right": 0,
    "down": 90,
    "left": 180,
    "up": 270,
}

# Guards against 0.1 + 0.2 style drift in the logMAR ladder
_LOGMAR_DECIMALS = 10


@dataclass(frozen=True)
class StaircaseConfig:
    """Staircase parameters (logMAR)."""
    start_logmar: float = 0.3    # 20/40
    min_logmar: float = -0.3     # 20/10
    max_logmar: float = 1.0      # 20/200
    step_size: float = 0.1
    reversals_needed: int = 4
    max_trials: int = 30

    def __post_init__(self):
        if self.min_logmar >= self.max_logmar:
            raise ValueError("min_logmar must be below max_logmar")
        if not (self.min_logmar <= self.start_logmar <= self.max_logmar):
            raise ValueError("start_logmar must lie within [min_logmar, max_logmar]")
        if self.step_size <= 0:
            raise ValueError("step_size must be positive")
        if self.reversals_needed < 1 or self.max_trials < 1:
            raise ValueError("reversals_needed and max_trials must be at least 1")


@dataclass(frozen=True)
class StaircaseResponse:
    logmar: float
    correct: bool
    trial: int

    def to_dict(self) -> dict:
        return {"logMAR": self.logmar, "correct": self.correct, "trial": self.trial}


@dataclass(frozen=True)
class Reversal:
    trial: int
    logmar: float

    def to_dict(self) -> dict:
        return {"trial": self.trial, "logMAR": self.logmar}


@dataclass(frozen=True)
class StaircaseStep:
    """Outcome of one recorded response."""
    should_continue: bool
    current_logmar: float
    threshold: Optional[float]
    reversal_count: int
    trial_count: int

    def to_dict(self) -> dict:
        return {
            "continue": self.should_continue,
            "currentLogMAR": self.current_logmar,
            "threshold": self.threshold,
            "reversalCount": self.reversal_count,
            "trialCount": self.trial_count,
        }


@dataclass
class StaircaseState:
    """Snapshot of the staircase."""
    current_logmar: float
    trial_count: int
    last_direction: Optional[str]
    responses: List[StaircaseResponse] = field(default_factory=list)
    reversals: List[Reversal] = field(default_factory=list)


class StaircaseProtocol:
    """Adaptive staircase state machine (IN_PROGRESS until done)."""

    def __init__(self, config: Optional[StaircaseConfig] = None):
        self.config = config or StaircaseConfig()
        self.reset()

    def reset(self):
        """Restart the test from the start logMAR."""
        self.current_logmar = self.config.start_logmar
        self.responses: List[StaircaseResponse] = []
        self.reversals: List[Reversal] = []
        self.trial_count = 0
        self.last_direction: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return (
            len(self.reversals) >= self.config.reversals_needed
            or self.trial_count >= self.config.max_trials
        )

    @property
    def threshold(self) -> Optional[float]:
        """Mean logMAR of the last (up to 4) reversals, once 2 exist."""
        if len(self.reversals) < 2:
            return None
        recent = self.reversals[-4:]
        return round(sum(r.logmar for r in recent) / len(recent), _LOGMAR_DECIMALS)

    def record_response(self, correct: bool) -> StaircaseStep:
        """
        Record one response and move the staircase.

        Args:
            correct: Whether the subject identified the gap direction

        Returns:
            StaircaseStep; callers must stop presenting once should_continue
            is False
        """
        if self.is_done:
            logger.warning("[StaircaseProtocol] Response ignored: test already finished")
            return self._step()

        presented = self.current_logmar
        self.responses.append(StaircaseResponse(logmar=presented, correct=bool(correct), trial=self.trial_count))
        self.trial_count += 1

        cfg = self.config
        if correct:
            direction = HARDER
            next_logmar = max(cfg.min_logmar, presented - cfg.step_size)
        else:
            direction = EASIER
            next_logmar = min(cfg.max_logmar, presented + cfg.step_size)
        self.current_logmar = round(next_logmar, _LOGMAR_DECIMALS)

        if self.last_direction is not None and self.last_direction != direction:
            self.reversals.append(Reversal(trial=self.trial_count - 1, logmar=presented))

        self.last_direction = direction

        step = self._step()
        if not step.should_continue:
            logger.info(
                "[StaircaseProtocol] Finished after %d trials, %d reversals, threshold=%s",
                self.trial_count, len(self.reversals), step.threshold
            )
        return step

    def _step(self) -> StaircaseStep:
        return StaircaseStep(
            should_continue=not self.is_done,
            current_logmar=self.current_logmar,
            threshold=self.threshold,
            reversal_count=len(self.reversals),
            trial_count=self.trial_count,
        )

    def state(self) -> StaircaseState:
        return StaircaseState(
            current_logmar=self.current_logmar,
            trial_count=self.trial_count,
            last_direction=self.last_direction,
            responses=list(self.responses),
            reversals=list(self.reversals),
        )


def generate_direction(rng: Optional[random.Random] = None) -> str:
    """Random Landolt C gap direction."""
    return (rng or random).choice(DIRECTIONS)


def rotation_angle(direction: str) -> int:
    """Rotation (degrees) that puts the Landolt C gap in ``direction``."""
    return _ROTATIONS.get(direction, 0)
