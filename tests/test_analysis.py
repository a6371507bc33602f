from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hearscreen.analysis import audiogram_rows, calculate_pta, classify, summary_text
from hearscreen.models.session import LEFT, RIGHT, Session, Threshold


def _t(ear, freq, db):
    return Threshold(ear, freq, db)


@pytest.mark.parametrize("db, label", [
    (0, "Normal"), (25, "Normal"), (25.5, "Normal"), (26, "Mild"),
    (40, "Mild"), (40.5, "Mild"), (41, "Moderate"), (60, "Moderately Severe"),
    (90, "Severe"), (91, "Profound"), (130, "Profound"), (-10, "Normal"),
])
def test_classify(db, label):
    assert classify(db) == label


def test_pta_uses_speech_bands_only():
    thresholds = [_t(RIGHT, 500, 20), _t(RIGHT, 1000, 30), _t(RIGHT, 2000, 45), _t(RIGHT, 4000, 100),
                  _t(LEFT, 1000, 10)]
    right = calculate_pta(thresholds, RIGHT)
    assert right.pta == 32
    assert right.interpretation == "Mild"
    left = calculate_pta(thresholds, "L")
    assert (left.pta, left.interpretation) == (10, "Normal")


def test_pta_without_tested_bands():
    result = calculate_pta([_t(RIGHT, 4000, 80)], RIGHT)
    assert (result.pta, result.interpretation) == (0, "Normal")


def test_audiogram_rows():
    rows = audiogram_rows([_t(RIGHT, 2000, 20), _t(LEFT, 1000, 15), _t(RIGHT, 1000, 25)])
    assert rows == [
        {"frequency": 1000, "right": 25, "left": 15},
        {"frequency": 2000, "right": 20, "left": None},
    ]


def test_summary_flags_asymmetry():
    text = summary_text([_t(RIGHT, 1000, 20), _t(LEFT, 1000, 40), _t(RIGHT, 500, 20), _t(LEFT, 500, 25)])
    assert "Asymmetry >= 15 dB at 1000 Hz." in text
    assert "500 Hz" not in text
    assert text.endswith("not a diagnosis.")


def test_session_complete_fills_summary():
    start = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)
    session = Session(patient_id="p1", calibration_id=None, started_at=start.isoformat())
    for ear, db in ((RIGHT, 20), (LEFT, 50)):
        for freq in (500, 1000, 2000):
            session.add_threshold(_t(ear, freq, db))

    session.complete(start + timedelta(minutes=7, seconds=30))

    assert session.is_complete
    assert session.duration_sec == 450
    assert (session.pta_right, session.interpretation_right) == (20, "Normal")
    assert (session.pta_left, session.interpretation_left) == (50, "Moderate")
    assert len(session.thresholds_for("left")) == 3
