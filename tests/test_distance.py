import math

import pytest

from refraction_engine.distance import DistanceEstimator, validate_manual_distance


def test_calibration_constant_and_identity(clock):
    estimator = DistanceEstimator(clock=clock)
    k = estimator.calibrate(40.0, 150.0)

    assert k == pytest.approx(6000.0)
    assert estimator.estimate(150.0, yaw_deg=0.0) == pytest.approx(40.0)


@pytest.mark.parametrize("d0,w", [(25.0, 310.0), (40.0, 150.0), (73.5, 88.2)])
def test_estimate_right_after_calibration_returns_reference(clock, d0, w):
    estimator = DistanceEstimator(clock=clock)
    estimator.calibrate(d0, w)
    assert estimator.estimate(w) == pytest.approx(d0)


def test_estimate_scales_inversely_with_width(calibrated_estimator):
    assert calibrated_estimator.estimate(300.0) == pytest.approx(20.0)
    assert calibrated_estimator.estimate(75.0) == pytest.approx(80.0)


def test_uncalibrated_estimate_is_unavailable(clock):
    estimator = DistanceEstimator(clock=clock)
    assert estimator.estimate(150.0) is None
    assert estimator.history() == []


@pytest.mark.parametrize("d0,w", [(0.0, 150.0), (-5.0, 150.0), (40.0, 0.0)])
def test_calibrate_rejects_non_positive_inputs(clock, d0, w):
    estimator = DistanceEstimator(clock=clock)
    with pytest.raises(ValueError):
        estimator.calibrate(d0, w)
    assert not estimator.is_calibrated


def test_pose_correction_widens_face(calibrated_estimator):
    # A face turned by 30 degrees appears cos(30) times narrower
    width = 150.0 * math.cos(math.radians(30.0))
    assert calibrated_estimator.estimate(width, yaw_deg=30.0) == pytest.approx(40.0)


def test_yaw_beyond_guard_is_rejected(calibrated_estimator):
    assert calibrated_estimator.estimate(150.0, yaw_deg=75.0) is None
    assert calibrated_estimator.estimate(150.0, yaw_deg=-89.9) is None
    assert calibrated_estimator.history() == []


def test_non_positive_width_is_rejected(calibrated_estimator):
    assert calibrated_estimator.estimate(0.0) is None
    assert calibrated_estimator.estimate(-10.0) is None


def test_average_uses_trailing_window(calibrated_estimator, clock):
    calibrated_estimator.estimate(100.0)  # 60 cm, will fall out of the window
    clock.advance(1500.0)
    calibrated_estimator.estimate(150.0)
    clock.advance(100.0)
    calibrated_estimator.estimate(120.0)

    stats = calibrated_estimator.average(1000)
    assert stats.count == 2
    assert stats.mean == pytest.approx(45.0)
    assert stats.std == pytest.approx(math.sqrt(50.0))


def test_average_single_and_empty(calibrated_estimator):
    empty = calibrated_estimator.average()
    assert (empty.mean, empty.std, empty.count) == (None, None, 0)

    calibrated_estimator.estimate(150.0)
    single = calibrated_estimator.average()
    assert single.mean == pytest.approx(40.0)
    assert single.std is None
    assert single.count == 1


def test_average_is_idempotent(calibrated_estimator, clock):
    for width in (148.0, 150.0, 152.0, 151.0):
        clock.advance(50.0)
        calibrated_estimator.estimate(width)

    assert calibrated_estimator.average(1000) == calibrated_estimator.average(1000)


def test_stability_needs_ten_samples_and_small_spread(calibrated_estimator, clock):
    for _ in range(9):
        clock.advance(50.0)
        calibrated_estimator.estimate(150.0)
    assert not calibrated_estimator.is_stable()

    clock.advance(50.0)
    calibrated_estimator.estimate(150.0)
    assert calibrated_estimator.is_stable()


def test_noisy_distance_is_not_stable(calibrated_estimator, clock):
    for i in range(20):
        clock.advance(50.0)
        calibrated_estimator.estimate(120.0 if i % 2 else 180.0)
    assert not calibrated_estimator.is_stable()


def test_ring_buffer_evicts_oldest(clock):
    estimator = DistanceEstimator(history_length=5, clock=clock)
    estimator.calibrate(40.0, 150.0)
    for i in range(8):
        clock.advance(10.0)
        estimator.estimate(100.0 + i)

    history = estimator.history()
    assert len(history) == 5
    assert history[0].raw_pixel_width == 103.0
    assert estimator.latest().raw_pixel_width == 107.0


def test_reset_keeps_calibration(calibrated_estimator):
    calibrated_estimator.estimate(150.0)
    calibrated_estimator.reset()

    assert calibrated_estimator.history() == []
    assert calibrated_estimator.is_calibrated
    assert calibrated_estimator.estimate(150.0) == pytest.approx(40.0)


def test_recalibration_overwrites(calibrated_estimator):
    calibrated_estimator.calibrate(50.0, 100.0)
    assert calibrated_estimator.calibration_constant == pytest.approx(5000.0)


@pytest.mark.parametrize("value", [19.9, 100.1, 0.0, float("nan")])
def test_manual_distance_outside_range_is_rejected(value):
    assert validate_manual_distance(value)


@pytest.mark.parametrize("value", [20.0, 40.0, 100.0])
def test_manual_distance_inside_range_is_accepted(value):
    assert validate_manual_distance(value) is None
