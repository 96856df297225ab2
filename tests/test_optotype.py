import math

import pytest

from refraction_engine.optotype import OptotypeController, logmar_to_snellen


@pytest.mark.parametrize("logmar", [-0.3, 0.0, 0.3, 0.7, 1.0])
def test_visual_angle_is_constant_across_distances(logmar):
    controller = OptotypeController(ppi=401)
    controller.set_target_logmar(logmar)

    ratios = [controller.pixel_height(d, round_result=False) / d for d in (25.0, 40.0, 63.0, 100.0)]
    for ratio in ratios[1:]:
        assert ratio == pytest.approx(ratios[0], rel=1e-12)


def test_reference_angle_is_five_arcmin():
    controller = OptotypeController()
    assert controller.set_target_logmar(0.0) == pytest.approx(5.0)
    assert controller.set_target_logmar(1.0) == pytest.approx(50.0)


def test_pixel_height_at_forty_cm():
    controller = OptotypeController(ppi=401)
    controller.set_target_logmar(0.0)

    expected_cm = math.radians(5.0 / 60.0) * 40.0
    assert controller.physical_height_cm(40.0) == pytest.approx(expected_cm)
    assert controller.pixel_height(40.0, round_result=False) == pytest.approx(expected_cm / 2.54 * 401)
    assert controller.pixel_height(40.0) == 9


def test_round_trip_to_angle():
    controller = OptotypeController(ppi=326)
    controller.set_target_logmar(0.5)
    height = controller.pixel_height(55.0, round_result=False)
    assert controller.current_angle_arcmin(height, 55.0) == pytest.approx(5.0 * 10 ** 0.5)


def test_landolt_proportions():
    controller = OptotypeController(ppi=401)
    controller.set_target_logmar(1.0)
    params = controller.landolt_params(40.0)

    assert params.size == 92
    assert params.gap == pytest.approx(92 / 5)
    assert params.stroke == params.gap
    assert params.radius == pytest.approx(46.0)


def test_unavailable_without_target_or_distance():
    controller = OptotypeController()
    assert controller.pixel_height(40.0) is None

    controller.set_target_logmar(0.0)
    assert controller.pixel_height(None) is None
    assert controller.pixel_height(0.0) is None
    assert controller.landolt_params(-3.0) is None


def test_invalid_ppi():
    with pytest.raises(ValueError):
        OptotypeController(ppi=0)


@pytest.mark.parametrize("logmar,snellen", [
    (0.0, "20/20"),
    (0.1, "20/25"),
    (0.3, "20/40"),
    (1.0, "20/200"),
    (-0.3, "20/10"),
])
def test_logmar_to_snellen(logmar, snellen):
    assert logmar_to_snellen(logmar) == snellen
    assert OptotypeController.logmar_to_snellen(logmar) == snellen
