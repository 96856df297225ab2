import random

import pytest

from refraction_engine.core import EyeTestSession, FaceObservation, Phase
from refraction_engine.staircase import StaircaseConfig

K = 6000.0  # 150 px at 40 cm


def _width(distance_cm):
    return K / distance_cm


def _run_acuity(session, feed, sees):
    """Answer correctly whenever ``sees(logmar)`` is true."""
    outcome = None
    while session.phase == Phase.VISUAL_ACUITY:
        feed(150.0, 2)
        presentation = session.next_optotype()
        answer = presentation.direction if sees(presentation.logmar) else "wrong"
        outcome = session.submit_response(answer)
    return outcome


def test_full_session_for_one_eye(session, feed, clock):
    record = session.start_eye("right")
    assert session.phase == Phase.CALIBRATION
    assert record.record_id.endswith("-right")

    feed(150.0)
    outcome = session.calibrate()
    assert outcome.success
    assert outcome.calibration_constant == pytest.approx(K)
    assert session.phase == Phase.VISUAL_ACUITY

    clock.advance(50.0)
    frame = session.process_frame(FaceObservation(face_pixel_width=150.0))
    assert frame.distance_cm == pytest.approx(40.0)
    assert frame.optotype.size == 18  # logMAR 0.3 at 40 cm, 401 ppi

    last = _run_acuity(session, feed, lambda logmar: logmar >= 0.75)
    va = last.visual_acuity
    assert va.logmar == pytest.approx(0.75)
    assert va.snellen == "20/112"
    assert not va.threshold_fallback
    assert session.phase == Phase.FAR_POINT

    result = None
    for distance in (48.0, 50.0, 52.0):
        feed(_width(distance), 25)
        far_point = session.record_far_point()
        assert far_point.success
        assert far_point.distance_cm == pytest.approx(distance)
        result = far_point.result

    assert session.phase == Phase.RESULTS
    assert result.refraction.spherical == pytest.approx(-2.70, abs=0.01)
    assert result.quality.score == 100
    assert result.quality.issues == []

    stored = session.recorder.get_record(session.record_id)
    assert stored.is_complete
    assert len(stored.far_point_measurements) == 3
    assert stored.visual_acuity["logMAR"] == pytest.approx(0.75)
    assert stored.distance_time_series
    assert stored.pose_time_series
    assert stored.results["spherical"] == pytest.approx(result.refraction.spherical)

    # Finalising again returns the same result
    assert session.finalize() is result


def test_lost_face(session):
    frame = session.process_frame(None)
    assert not frame.face_detected
    assert frame.distance_cm is None


def test_calibration_requires_face_and_stillness(session, clock):
    session.start_eye("left")
    assert not session.calibrate().success

    for i in range(20):
        clock.advance(50.0)
        session.process_frame(FaceObservation(face_pixel_width=130.0 if i % 2 else 170.0))
    outcome = session.calibrate()
    assert not outcome.success
    assert not session.estimator.is_calibrated
    assert session.phase == Phase.CALIBRATION


def test_calibration_rejects_turned_head(session, feed):
    session.start_eye("left")
    feed(150.0, 20, yaw=25.0)
    outcome = session.calibrate()
    assert not outcome.success
    assert "head" in outcome.message


def test_manual_distance_calibration(session, feed):
    session.start_eye("left")
    feed(150.0)

    rejected = session.calibrate(manual_distance_cm=120.0)
    assert not rejected.success
    assert "between 20 and 100" in rejected.message
    assert not session.estimator.is_calibrated

    accepted = session.calibrate(manual_distance_cm=50.0)
    assert accepted.success
    assert session.estimator.calibration_constant == pytest.approx(50.0 * 150.0)


def test_frames_with_large_yaw_are_ignored(session, feed, clock):
    session.start_eye("right")
    feed(150.0)
    session.calibrate()

    clock.advance(50.0)
    frame = session.process_frame(FaceObservation(face_pixel_width=150.0, yaw=70.0))
    assert frame.face_detected
    assert frame.distance_cm is None
    assert frame.warnings


def test_out_of_phase_calls_are_unavailable(session):
    session.start_eye("right")
    assert session.next_optotype() is None
    assert session.submit_response("up") is None

    far_point = session.record_far_point()
    assert not far_point.success
    assert far_point.count == 0


def test_far_point_requires_stable_distance(session, feed, clock):
    session.start_eye("right")
    feed(150.0)
    session.calibrate()
    _run_acuity(session, feed, lambda logmar: logmar >= 0.25)

    for i in range(20):
        clock.advance(50.0)
        session.process_frame(FaceObservation(face_pixel_width=100.0 if i % 2 else 160.0))

    outcome = session.record_far_point()
    assert not outcome.success
    assert outcome.count == 0
    assert session.refraction.measurements() == []


def test_threshold_fallback_when_pinned_at_boundary(clock):
    session = EyeTestSession(
        staircase_config=StaircaseConfig(max_trials=8), clock=clock, rng=random.Random(5)
    )
    session.start_eye("right")
    for _ in range(20):
        clock.advance(50.0)
        session.process_frame(FaceObservation(face_pixel_width=150.0))
    session.calibrate()

    outcome = None
    while session.phase == Phase.VISUAL_ACUITY:
        presentation = session.next_optotype()
        outcome = session.submit_response(presentation.direction)

    va = outcome.visual_acuity
    assert va.threshold is None
    assert va.threshold_fallback
    assert va.logmar == pytest.approx(-0.3)
    assert va.trial_count == 8


def test_early_finalize_flags_missing_measurements(session, feed):
    session.start_eye("left")
    result = session.finalize()

    assert result.refraction.spherical is None
    assert "INSUFFICIENT_MEASUREMENTS" in [i.kind for i in result.quality.issues]
    assert session.recorder.get_record(session.record_id).is_complete


def test_second_eye_keeps_calibration(session, feed):
    session.start_eye("right")
    feed(150.0)
    session.calibrate()
    session.finalize()

    record = session.start_eye("left")
    assert record.record_id.endswith("-left")
    assert session.phase == Phase.VISUAL_ACUITY
    assert session.staircase.trial_count == 0

    retest = session.start_eye("right")
    assert retest.record_id.endswith("-right-retest2")


def test_restarting_an_eye_midway_opens_a_fresh_record(session, feed):
    first = session.start_eye("right")
    feed(150.0)
    session.calibrate()
    first_va = _run_acuity(session, feed, lambda logmar: False).visual_acuity
    for distance in (48.0, 50.0):
        feed(_width(distance), 25)
        assert session.record_far_point().success

    retest = session.start_eye("right")
    assert retest.record_id.endswith("-right-retest2")
    assert session.phase == Phase.VISUAL_ACUITY
    assert first.abandoned_at is not None

    second_va = _run_acuity(session, feed, lambda logmar: True).visual_acuity
    assert second_va.logmar != pytest.approx(first_va.logmar)
    result = None
    for distance in (48.0, 50.0, 52.0):
        feed(_width(distance), 25)
        result = session.record_far_point().result

    assert session.phase == Phase.RESULTS
    stored = session.recorder.get_record(retest.record_id)
    assert stored.is_complete
    assert stored.visual_acuity["logMAR"] == pytest.approx(second_va.logmar)
    assert len(stored.far_point_measurements) == 3
    assert stored.results["measurementCount"] == result.refraction.measurement_count == 3

    # The abandoned attempt keeps only what it had
    old = session.recorder.get_record(first.record_id)
    assert old.visual_acuity["logMAR"] == pytest.approx(first_va.logmar)
    assert len(old.far_point_measurements) == 2
    assert old.results is None


def test_reset_drops_calibration(session, feed):
    session.start_eye("right")
    feed(150.0)
    session.calibrate()
    session.reset()

    assert session.phase == Phase.IDLE
    assert not session.estimator.is_calibrated
    assert session.status()["record_id"] is None
