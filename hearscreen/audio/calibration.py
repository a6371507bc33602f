from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple
import uuid

SCREENING_FREQUENCIES = [250, 500, 1000, 2000, 3000, 4000, 6000, 8000]


@dataclass(frozen=True)
class CalibrationPoint:
    freq_hz: int
    adjust_db: float


@dataclass(frozen=True)
class CalibrationProfile:
    """Per-device level corrections.

    ``output_gain`` is a master trim added at every frequency, ``points`` hold
    the per-frequency adjustment. Both are in dB and are simply added to the
    requested level: out = level + output_gain + adjust[f].
    """

    id: str
    device_label: str
    points: Tuple[CalibrationPoint, ...] = ()
    output_gain: float = 0.0
    created_at: Optional[str] = None

    def __post_init__(self) -> None:
        # keep points ordered by frequency whatever order they were given in
        ordered = tuple(sorted(self.points, key=lambda p: p.freq_hz))
        for a, b in zip(ordered, ordered[1:]):
            if a.freq_hz == b.freq_hz:
                raise ValueError(f"Duplicate calibration point at {a.freq_hz} Hz")
        object.__setattr__(self, "points", ordered)

    def adjustment_for(self, freq_hz: float) -> Optional[float]:
        for p in self.points:
            if p.freq_hz == freq_hz:
                return p.adjust_db
        return None

    def with_adjustment(self, freq_hz: int, adjust_db: float) -> "CalibrationProfile":
        others = [p for p in self.points if p.freq_hz != int(freq_hz)]
        others.append(CalibrationPoint(int(freq_hz), float(adjust_db)))
        return replace(self, points=tuple(others))

    def with_output_gain(self, gain_db: float) -> "CalibrationProfile":
        return replace(self, output_gain=float(gain_db))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "device_label": self.device_label,
            "created_at": self.created_at,
            "output_gain": self.output_gain,
            "points": [{"freq_hz": p.freq_hz, "adjust_db": p.adjust_db} for p in self.points],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CalibrationProfile":
        return CalibrationProfile(
            id=str(d.get("id") or uuid.uuid4()),
            device_label=d.get("device_label", ""),
            points=tuple(
                CalibrationPoint(int(p["freq_hz"]), float(p.get("adjust_db", 0.0)))
                for p in (d.get("points") or [])
            ),
            output_gain=float(d.get("output_gain", 0.0)),
            created_at=d.get("created_at"),
        )


def create_default_calibration(device_label: str, frequencies: Iterable[int] = SCREENING_FREQUENCIES) -> CalibrationProfile:
    """Neutral profile (all zeros) for a device that was never tuned."""
    return CalibrationProfile(
        id=str(uuid.uuid4()),
        device_label=device_label,
        points=tuple(CalibrationPoint(int(f), 0.0) for f in frequencies),
        output_gain=0.0,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def apply_calibration(base_level_db: float, frequency_hz: float, profile: Optional[CalibrationProfile]) -> float:
    """Calibrated output level for ``base_level_db`` at ``frequency_hz``.

    Exact-match lookup only: a frequency without its own point gets no
    per-frequency adjustment (the master gain still applies).
    """
    if profile is None:
        return base_level_db
    adjust = profile.adjustment_for(frequency_hz)
    return base_level_db + profile.output_gain + (adjust or 0.0)


def interpolate_calibration(frequency_hz: float, profile: CalibrationProfile) -> float:
    """Adjustment at ``frequency_hz`` linearly interpolated between table points.

    Outside the table the nearest endpoint value is returned, no
    extrapolation. An empty table gives 0.0.
    """
    points = profile.points
    if not points:
        return 0.0
    if frequency_hz <= points[0].freq_hz:
        return points[0].adjust_db
    if frequency_hz >= points[-1].freq_hz:
        return points[-1].adjust_db

    lower, upper = points[0], points[-1]
    for a, b in zip(points, points[1:]):
        if a.freq_hz <= frequency_hz <= b.freq_hz:
            lower, upper = a, b
            break
    if lower.freq_hz == upper.freq_hz:
        return lower.adjust_db
    ratio = (frequency_hz - lower.freq_hz) / (upper.freq_hz - lower.freq_hz)
    return lower.adjust_db + ratio * (upper.adjust_db - lower.adjust_db)
