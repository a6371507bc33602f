from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .models.session import LEFT, RIGHT, Threshold, normalise_ear


HEARING_LOSS_RANGES = [
    (0, 25, "Normal"),
    (26, 40, "Mild"),
    (41, 55, "Moderate"),
    (56, 70, "Moderately Severe"),
    (71, 90, "Severe"),
    (91, 120, "Profound"),
]

PTA_FREQUENCIES = (500, 1000, 2000)


@dataclass(frozen=True)
class PTAResult:
    pta: float
    interpretation: str


def classify(db: float) -> str:
    # values between integer bands (25.5) fall in the lower one
    label = HEARING_LOSS_RANGES[0][2]
    for lo, _hi, lab in HEARING_LOSS_RANGES:
        if db >= lo:
            label = lab
    return label


def calculate_pta(thresholds: Iterable[Threshold], ear: str, bands=PTA_FREQUENCIES) -> PTAResult:
    """Average of the 500/1000/2000 Hz thresholds of one ear.

    Missing bands are left out of the average; with none of them tested the
    result is 0 dB, "Normal".
    """
    ear = normalise_ear(ear)
    by_freq = {t.freq_hz: t.threshold_db for t in thresholds if t.ear == ear}
    values = [by_freq[f] for f in bands if f in by_freq]
    if not values:
        return PTAResult(0, "Normal")
    pta = sum(values) / len(values)
    return PTAResult(round(pta), classify(pta))


def audiogram_rows(thresholds: Iterable[Threshold]) -> List[Dict[str, Optional[float]]]:
    """Rows {frequency, right, left} sorted by frequency (last measure wins)."""
    table: Dict[int, Dict[str, Optional[float]]] = {}
    for t in thresholds:
        row = table.setdefault(t.freq_hz, {"frequency": t.freq_hz, "right": None, "left": None})
        row["right" if t.ear == RIGHT else "left"] = t.threshold_db
    return [table[f] for f in sorted(table)]


def summary_text(thresholds: List[Threshold]) -> str:
    """Short non-diagnostic description of a finished screening."""
    right = calculate_pta(thresholds, RIGHT)
    left = calculate_pta(thresholds, LEFT)
    text = [
        f"PTA right {right.pta:.0f} dB ({right.interpretation}), "
        f"PTA left {left.pta:.0f} dB ({left.interpretation})."
    ]
    common = {t.freq_hz for t in thresholds if t.ear == RIGHT} & {t.freq_hz for t in thresholds if t.ear == LEFT}
    rows = {r["frequency"]: r for r in audiogram_rows(thresholds)}
    asymmetric = [f for f in sorted(common) if abs(rows[f]["right"] - rows[f]["left"]) >= 15]
    if asymmetric:
        text.append("Asymmetry >= 15 dB at " + ", ".join(f"{f} Hz" for f in asymmetric) + ".")
    text.append("Screening result only, not a diagnosis.")
    return " ".join(text)
