import json

import pytest

from refraction_engine.config import ConfigError, TestConfig
from refraction_engine.distance import DistanceSample, HeadPose
from refraction_engine.quality import QualityController, QualityInputs
from refraction_engine.recorder import DataRecorder, VisualAcuityResult
from refraction_engine.refraction import RefractionCalculator


@pytest.fixture()
def recorder(clock):
    return DataRecorder(session_id="s1", device_info={"modelName": "Pixel 8"}, clock=clock)


def _sample(ts, distance=40.0):
    return DistanceSample(
        timestamp_ms=ts, distance_cm=distance, raw_pixel_width=150.0, corrected_pixel_width=150.0,
    )


def _finish(recorder, record_id):
    calculator = RefractionCalculator()
    for distance in (48.0, 50.0, 52.0):
        measurement = calculator.record_measurement(distance)
        recorder.record_far_point_measurement(record_id, measurement)
    result = calculator.calculate_refraction()
    quality = QualityController().assess(QualityInputs(
        vergence_std=result.vergence_std, measurement_count=result.measurement_count,
    ))
    recorder.record_quality_metrics(record_id, quality)
    recorder.record_final_results(record_id, result, quality)
    return result, quality


def test_create_record_ids_and_config(recorder):
    record = recorder.create_record("right", {"ppi": 326.0})

    assert record.record_id == "s1-right"
    assert record.config == TestConfig(ppi=326.0)
    assert record.device_info == {"modelName": "Pixel 8"}
    assert not record.is_complete


def test_create_record_rejects_bad_input(recorder):
    with pytest.raises(ValueError):
        recorder.create_record("both")
    with pytest.raises(ConfigError):
        recorder.create_record("left", {"brightness": 1.0})


def test_incomplete_record_is_reused(recorder):
    first = recorder.create_record("left")
    assert recorder.create_record("left") is first


def test_completed_record_leads_to_retest(recorder):
    recorder.create_record("left")
    _finish(recorder, "s1-left")

    retest = recorder.create_record("left")
    assert retest.record_id == "s1-left-retest2"
    assert recorder.get_record("s1-left").is_complete


def test_restarting_a_partial_record_abandons_it(recorder):
    recorder.create_record("left")
    recorder.record_distance_point("s1-left", _sample(1.0))

    restarted = recorder.create_record("left")
    assert restarted.record_id == "s1-left-retest2"

    old = recorder.get_record("s1-left")
    assert old.abandoned_at is not None
    assert not old.is_complete
    assert not recorder.record_distance_point("s1-left", _sample(2.0))
    assert len(old.distance_time_series) == 1
    assert recorder.summary("s1-left")["abandoned"] is True
    assert json.loads(recorder.export("s1-left"))["abandonedAt"] == old.abandoned_at

    # The new attempt is still open and reused until it holds data
    assert recorder.create_record("left") is restarted
    assert recorder.summary("s1-left-retest2")["abandoned"] is False


def test_time_series_are_append_only(recorder):
    recorder.create_record("right")
    for ts in (1.0, 2.0, 3.0):
        assert recorder.record_distance_point("s1-right", _sample(ts))
    recorder.record_pose("s1-right", HeadPose(yaw=3.0), confidence=0.9, timestamp_ms=3.0)

    record = recorder.get_record("s1-right")
    assert [p["timestamp"] for p in record.distance_time_series] == [1.0, 2.0, 3.0]
    assert record.pose_time_series == [{"timestamp": 3.0, "yaw": 3.0, "pitch": 0.0, "roll": 0.0, "confidence": 0.9}]


def test_unknown_record_writes_are_ignored(recorder):
    assert not recorder.record_distance_point("nope", _sample(1.0))
    assert recorder.get_record("nope") is None


def test_terminal_sections_are_written_once(recorder):
    recorder.create_record("right")
    va = VisualAcuityResult(logmar=0.2, snellen="20/32", threshold=0.2, trial_count=12)
    assert recorder.record_visual_acuity("s1-right", va)

    again = VisualAcuityResult(logmar=0.5, snellen="20/63", threshold=0.5, trial_count=9)
    assert not recorder.record_visual_acuity("s1-right", again)
    assert recorder.get_record("s1-right").visual_acuity["logMAR"] == 0.2


def test_completed_record_is_frozen(recorder):
    recorder.create_record("right")
    result, quality = _finish(recorder, "s1-right")
    record = recorder.get_record("s1-right")
    assert record.is_complete
    assert record.results["spherical"] == pytest.approx(result.spherical)

    before = recorder.export("s1-right")
    assert not recorder.record_distance_point("s1-right", _sample(99.0))
    assert not recorder.record_final_results("s1-right", result, quality)
    assert not recorder.record_visual_acuity(
        "s1-right", VisualAcuityResult(logmar=0.0, snellen="20/20", threshold=0.0, trial_count=8)
    )
    assert recorder.export("s1-right") == before


def test_export_is_stable_sorted_json(recorder):
    recorder.create_record("left")
    recorder.record_distance_point("s1-left", _sample(5.0))

    exported = recorder.export("s1-left")
    assert exported == recorder.export("s1-left")

    payload = json.loads(exported)
    assert list(payload) == sorted(payload)
    assert payload["recordId"] == "s1-left"
    assert payload["config"] == {"calibrationDistance": 40.0, "ppi": 401.0, "useBlueLight": True}
    assert payload["data"]["distanceTimeSeries"][0]["distance"] == 40.0
    assert payload["completedAt"] is None

    assert recorder.export("missing") is None


def test_export_all_lists_every_record(recorder):
    recorder.create_record("left")
    recorder.create_record("right")
    payload = json.loads(recorder.export_all())
    assert payload["sessionId"] == "s1"
    assert sorted(r["eye"] for r in payload["records"]) == ["left", "right"]


def test_summary(recorder):
    recorder.create_record("right")
    recorder.record_visual_acuity(
        "s1-right", VisualAcuityResult(logmar=0.3, snellen="20/40", threshold=0.3, trial_count=14)
    )
    result, quality = _finish(recorder, "s1-right")

    summary = recorder.summary("s1-right")
    assert summary["deviceModel"] == "Pixel 8"
    assert summary["visualAcuity"] == 0.3
    assert summary["visualAcuitySnellen"] == "20/40"
    assert summary["spherical"] == pytest.approx(result.spherical)
    assert summary["measurementCount"] == 3
    assert summary["qualityScore"] == quality.score
    assert summary["qualityGrade"] == quality.grade.value
    assert summary["issues"] == len(quality.issues)
    assert summary["completed"] is True


def test_summary_of_empty_record_has_gaps(recorder):
    recorder.create_record("left")
    summary = recorder.summary("s1-left")
    assert summary["spherical"] is None
    assert summary["qualityScore"] is None
    assert summary["issues"] == 0
    assert summary["completed"] is False
    assert recorder.summary("missing") is None


def test_clear_all_starts_new_session(recorder):
    recorder.create_record("left")
    recorder.clear_all()
    assert recorder.records() == []
    assert recorder.session_id != "s1"
