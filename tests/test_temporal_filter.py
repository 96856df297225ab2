import numpy as np
import pytest

from refraction_engine.temporal_filter import TemporalDistanceFilter, filter_distance_sequence


def test_first_update_seeds_state():
    kf = TemporalDistanceFilter()
    assert kf.update(42.0) == pytest.approx(42.0)
    assert kf.measurement_count == 1


def test_constant_input_stays_put():
    kf = TemporalDistanceFilter()
    values = [kf.update(40.0) for _ in range(20)]
    assert values[-1] == pytest.approx(40.0, abs=1e-3)


def test_noise_is_reduced():
    rng = np.random.default_rng(3)
    raw = 50.0 + rng.normal(0.0, 1.5, size=200)
    filtered, uncertainties = filter_distance_sequence(raw.tolist())

    assert len(filtered) == len(uncertainties) == 200
    assert np.std(filtered[50:]) < np.std(raw[50:])
    assert np.mean(filtered[50:]) == pytest.approx(50.0, abs=0.5)


def test_low_confidence_moves_less():
    trusting = TemporalDistanceFilter()
    sceptical = TemporalDistanceFilter()
    for kf in (trusting, sceptical):
        for _ in range(10):
            kf.update(40.0)

    assert abs(trusting.update(60.0, confidence=1.0) - 40.0) > abs(sceptical.update(60.0, confidence=0.1) - 40.0)


def test_reset_forgets_state():
    kf = TemporalDistanceFilter()
    kf.update(40.0)
    kf.update(41.0)
    kf.reset()

    assert not kf.initialized
    assert kf.measurement_count == 0
    assert kf.update(70.0) == pytest.approx(70.0)


def test_initial_distance_counts_as_seeded():
    kf = TemporalDistanceFilter(initial_distance=40.0)
    assert kf.initialized
    assert 40.0 < kf.update(44.0) < 44.0
