from __future__ import annotations

import pytest

from hearscreen.audio.calibration import (
    SCREENING_FREQUENCIES,
    CalibrationPoint,
    CalibrationProfile,
    apply_calibration,
    create_default_calibration,
    interpolate_calibration,
)


def _profile(points, gain=0.0):
    return CalibrationProfile(
        id="p1",
        device_label="Test headphones",
        points=tuple(CalibrationPoint(f, a) for f, a in points),
        output_gain=gain,
    )


@pytest.mark.parametrize("level", [-10, 0, 30.5, 100])
def test_apply_without_profile_is_passthrough(level):
    assert apply_calibration(level, 1000, None) == level


def test_apply_adds_gain_and_exact_point():
    profile = _profile([(1000, -3.0), (2000, 4.0)], gain=2.0)
    assert apply_calibration(40, 1000, profile) == 39.0
    assert apply_calibration(40, 2000, profile) == 46.0


def test_apply_without_matching_point_uses_gain_only():
    profile = _profile([(1000, -3.0), (2000, 4.0)], gain=2.0)
    # no interpolation in the direct path
    assert apply_calibration(40, 1500, profile) == 42.0


def test_apply_with_empty_profile_degrades_to_gain():
    assert apply_calibration(40, 1000, _profile([], gain=1.5)) == 41.5
    assert apply_calibration(40, 1000, _profile([])) == 40


def test_interpolate_exact_points():
    profile = _profile([(500, -2.0), (1000, 3.0), (4000, 7.5)])
    assert interpolate_calibration(500, profile) == -2.0
    assert interpolate_calibration(1000, profile) == 3.0
    assert interpolate_calibration(4000, profile) == 7.5


def test_interpolate_between_points():
    profile = _profile([(1000, 0.0), (2000, 10.0)])
    assert interpolate_calibration(1500, profile) == pytest.approx(5.0)
    assert interpolate_calibration(1250, profile) == pytest.approx(2.5)


def test_interpolate_clamps_outside_table():
    profile = _profile([(500, -2.0), (1000, 3.0), (4000, 7.5)])
    assert interpolate_calibration(125, profile) == -2.0
    assert interpolate_calibration(12000, profile) == 7.5


def test_interpolate_single_point_and_empty_table():
    assert interpolate_calibration(3000, _profile([(1000, 4.0)])) == 4.0
    assert interpolate_calibration(3000, _profile([])) == 0.0


def test_points_are_kept_sorted():
    profile = _profile([(4000, 1.0), (250, 2.0), (1000, 3.0)])
    assert [p.freq_hz for p in profile.points] == [250, 1000, 4000]
    assert interpolate_calibration(625, profile) == pytest.approx(2.5)


def test_default_profile_is_neutral():
    profile = create_default_calibration("Sony WH-1000XM5")
    assert profile.device_label == "Sony WH-1000XM5"
    assert [p.freq_hz for p in profile.points] == SCREENING_FREQUENCIES
    assert all(p.adjust_db == 0.0 for p in profile.points)
    assert profile.output_gain == 0.0
    assert profile.created_at
    assert create_default_calibration("x").id != profile.id
    assert apply_calibration(35, 3000, profile) == 35


def test_tuning_returns_new_profile():
    base = create_default_calibration("dev")
    tuned = base.with_adjustment(1000, -4.0).with_output_gain(1.0)
    assert base.adjustment_for(1000) == 0.0
    assert base.output_gain == 0.0
    assert tuned.adjustment_for(1000) == -4.0
    assert tuned.id == base.id
    assert len(tuned.points) == len(base.points)
    assert apply_calibration(30, 1000, tuned) == 27.0


def test_tuning_can_add_a_frequency():
    tuned = create_default_calibration("dev").with_adjustment(125, 6.0)
    assert tuned.points[0] == CalibrationPoint(125, 6.0)


def test_duplicate_frequencies_are_rejected():
    with pytest.raises(ValueError, match="1000 Hz"):
        _profile([(1000, 5.0), (2000, 0.0), (1000, -5.0)])
    with pytest.raises(ValueError):
        CalibrationProfile.from_dict({
            "id": "p1", "device_label": "dev",
            "points": [{"freq_hz": 1000, "adjust_db": 5}, {"freq_hz": 1000, "adjust_db": -5}],
        })
