import random

import pytest

from refraction_engine.core import EyeTestSession, FaceObservation
from refraction_engine.distance import DistanceEstimator


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: float = 10_000.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def calibrated_estimator(clock: FakeClock) -> DistanceEstimator:
    estimator = DistanceEstimator(clock=clock)
    estimator.calibrate(40.0, 150.0)
    return estimator


@pytest.fixture()
def session(clock: FakeClock) -> EyeTestSession:
    return EyeTestSession(clock=clock, rng=random.Random(1234))


@pytest.fixture()
def feed(session: EyeTestSession, clock: FakeClock):
    """Send ``count`` identical frames 50 ms apart to the session."""

    def _feed(width: float, count: int = 20, **pose) -> None:
        for _ in range(count):
            clock.advance(50.0)
            session.process_frame(FaceObservation(face_pixel_width=width, **pose))

    return _feed
