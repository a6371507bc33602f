from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import uuid

from ..screening.staircase import Trial

RIGHT = "Right"
LEFT = "Left"
EARS = (RIGHT, LEFT)

_EAR_ALIASES = {
    "R": RIGHT,
    "RIGHT": RIGHT,
    "OD": RIGHT,
    "DX": RIGHT,
    "L": LEFT,
    "LEFT": LEFT,
    "OS": LEFT,
    "SX": LEFT,
}


def normalise_ear(label: Any) -> str:
    ear = _EAR_ALIASES.get(str(label).strip().upper())
    if ear is None:
        raise ValueError(f"Unknown ear: {label!r} (expected 'Left' or 'Right').")
    return ear


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Threshold:
    ear: str
    freq_hz: int
    threshold_db: float
    trials: Tuple[Trial, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ear": self.ear,
            "freq_hz": self.freq_hz,
            "threshold_db": self.threshold_db,
            "trials": [t.to_dict() for t in self.trials],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Threshold":
        return Threshold(
            ear=normalise_ear(d.get("ear", RIGHT)),
            freq_hz=int(d.get("freq_hz", 0)),
            threshold_db=float(d.get("threshold_db", 0.0)),
            trials=tuple(Trial.from_dict(t) for t in (d.get("trials") or [])),
        )


@dataclass
class Session:
    """One screening: both ears, all frequencies of the configured order."""

    patient_id: str
    calibration_id: Optional[str]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    thresholds: List[Threshold] = field(default_factory=list)
    duration_sec: Optional[int] = None
    pta_left: Optional[float] = None
    pta_right: Optional[float] = None
    interpretation_left: Optional[str] = None
    interpretation_right: Optional[str] = None
    environment_notes: Optional[str] = None
    tester_name: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def add_threshold(self, threshold: Threshold) -> None:
        self.thresholds.append(threshold)

    def thresholds_for(self, ear: str) -> List[Threshold]:
        ear = normalise_ear(ear)
        return [t for t in self.thresholds if t.ear == ear]

    def complete(self, completed_at: Optional[datetime] = None) -> None:
        """Stamp completion time, duration and per-ear PTA summary."""
        from ..analysis import calculate_pta

        end = completed_at or datetime.now(timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        self.completed_at = end.isoformat()
        self.duration_sec = max(0, round((end - _parse_iso(self.started_at)).total_seconds()))
        left = calculate_pta(self.thresholds, LEFT)
        right = calculate_pta(self.thresholds, RIGHT)
        self.pta_left, self.interpretation_left = left.pta, left.interpretation
        self.pta_right, self.interpretation_right = right.pta, right.interpretation

    def started_datetime(self) -> datetime:
        return _parse_iso(self.started_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "calibration_id": self.calibration_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "thresholds": [t.to_dict() for t in self.thresholds],
            "duration_sec": self.duration_sec,
            "pta_left": self.pta_left,
            "pta_right": self.pta_right,
            "interpretation_left": self.interpretation_left,
            "interpretation_right": self.interpretation_right,
            "environment_notes": self.environment_notes,
            "tester_name": self.tester_name,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Session":
        return Session(
            id=d.get("id") or str(uuid.uuid4()),
            patient_id=d.get("patient_id", ""),
            calibration_id=d.get("calibration_id"),
            started_at=d.get("started_at") or datetime.now(timezone.utc).isoformat(),
            completed_at=d.get("completed_at"),
            thresholds=[Threshold.from_dict(t) for t in (d.get("thresholds") or [])],
            duration_sec=d.get("duration_sec"),
            pta_left=d.get("pta_left"),
            pta_right=d.get("pta_right"),
            interpretation_left=d.get("interpretation_left"),
            interpretation_right=d.get("interpretation_right"),
            environment_notes=d.get("environment_notes"),
            tester_name=d.get("tester_name"),
        )
