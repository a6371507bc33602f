from __future__ import annotations
from typing import Dict, Any, List
import json
import hashlib
import uuid
from pathlib import Path

import yaml

from .calibration import CalibrationPoint, CalibrationProfile


class CalibrationProfileError(ValueError):
    """Raised when a calibration profile file does not pass validation."""


def _load_raw_profile(path: Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    with path.open('r', encoding='utf-8') as handle:
        try:
            if ext in {'.yaml', '.yml'}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise CalibrationProfileError(f'Invalid profile: cannot parse {path.name}: {exc}') from exc
    if not isinstance(data, dict):
        raise CalibrationProfileError('Invalid profile: expected a JSON/YAML mapping at top level.')
    return data


def _validate_basic_fields(data: Dict[str, Any]) -> None:
    label = data.get('device_label')
    if not isinstance(label, str) or not label.strip():
        raise CalibrationProfileError("Invalid profile: field 'device_label' missing or empty.")
    gain = data.get('output_gain', 0.0)
    if isinstance(gain, bool) or not isinstance(gain, (int, float)):
        raise CalibrationProfileError("Invalid profile: 'output_gain' must be numeric.")


def _normalise_points(raw_points: Any) -> List[CalibrationPoint]:
    """Accepts either [{freq_hz, adjust_db}, ...] or {"<freq>": adjust}."""
    if raw_points is None:
        return []
    if isinstance(raw_points, dict):
        pairs = list(raw_points.items())
    elif isinstance(raw_points, list):
        pairs = []
        for item in raw_points:
            if not isinstance(item, dict) or 'freq_hz' not in item:
                raise CalibrationProfileError("Invalid profile: each point needs a 'freq_hz'.")
            pairs.append((item['freq_hz'], item.get('adjust_db', 0.0)))
    else:
        raise CalibrationProfileError("Invalid profile: 'points' must be a list or a frequency->value map.")

    points: List[CalibrationPoint] = []
    seen = set()
    for freq_key, value in pairs:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise CalibrationProfileError('Invalid profile: calibration values must be numeric.')
        try:
            freq = int(float(freq_key))
        except (TypeError, ValueError) as exc:
            raise CalibrationProfileError(f"Invalid frequency in profile: {freq_key!r}.") from exc
        if freq <= 0:
            raise CalibrationProfileError('Frequencies must be positive.')
        if freq in seen:
            raise CalibrationProfileError(f"Duplicate frequency in profile: {freq} Hz.")
        seen.add(freq)
        points.append(CalibrationPoint(freq, float(value)))
    return points


def load_profile(path: str | Path) -> CalibrationProfile:
    """Load and validate a .json/.yaml calibration profile."""
    profile_path = Path(path)
    data = _load_raw_profile(profile_path)
    _validate_basic_fields(data)
    return CalibrationProfile(
        id=str(data.get('id') or uuid.uuid4()),
        device_label=data['device_label'].strip(),
        points=tuple(_normalise_points(data.get('points'))),
        output_gain=float(data.get('output_gain', 0.0)),
        created_at=data.get('created_at'),
    )


def save_profile(profile: CalibrationProfile, path: str | Path) -> str:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = profile.to_dict()
    with target.open('w', encoding='utf-8') as handle:
        if target.suffix.lower() in {'.yaml', '.yml'}:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True)
        else:
            json.dump(data, handle, ensure_ascii=False, indent=2)
    return str(target)


def profile_hash(profile: CalibrationProfile) -> str:
    """Stable hash of the profile, for tracking which calibration a session used."""
    raw = json.dumps(profile.to_dict(), sort_keys=True).encode('utf-8')
    return hashlib.sha256(raw).hexdigest()
