"""JSON file storage for patients, sessions and calibration profiles.

Every record lives in its own file, ``<root>/<kind>/<id>.json``. Writes go
through a temporary file and ``os.replace`` so a crash never leaves a half
written record behind.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import re
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .audio.calibration import CalibrationProfile
from .models.patient import Patient
from .models.session import Session

log = logging.getLogger('hearscreen.storage')

T = TypeVar('T')

PATIENTS = 'patients'
SESSIONS = 'sessions'
CALIBRATIONS = 'calibrations'

_SAFE_ID = re.compile(r"^[-_.A-Za-z0-9]+$")


class StorageError(RuntimeError):
    """Raised when a stored record cannot be read back."""


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class JsonRecordStore:
    def __init__(self, root_dir: os.PathLike[str] | str):
        self.root = Path(root_dir)
        for kind in (PATIENTS, SESSIONS, CALIBRATIONS):
            (self.root / kind).mkdir(parents=True, exist_ok=True)

    # ---- low level ----
    def _path(self, kind: str, record_id: str) -> Path:
        if not record_id or not _SAFE_ID.match(record_id) or record_id.strip('.') == '':
            raise ValueError(f"Invalid record id: {record_id!r}")
        return self.root / kind / f"{record_id}.json"

    def _write(self, kind: str, record_id: str, data: Dict[str, Any]) -> str:
        path = self._path(kind, record_id)
        tmp_path = path.parent / (path.name + '.tmp')
        with tmp_path.open('w', encoding='utf-8') as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
        return str(path)

    def _read(self, kind: str, record_id: str, factory: Callable[[Dict[str, Any]], T]) -> Optional[T]:
        path = self._path(kind, record_id)
        if not path.is_file():
            return None
        try:
            with path.open('r', encoding='utf-8') as fh:
                return factory(json.load(fh))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"Cannot read {kind} record {record_id}: {exc}") from exc

    def _delete(self, kind: str, record_id: str) -> bool:
        path = self._path(kind, record_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def _list(self, kind: str, factory: Callable[[Dict[str, Any]], T]) -> List[T]:
        out: List[T] = []
        for path in sorted((self.root / kind).glob('*.json')):
            try:
                with path.open('r', encoding='utf-8') as fh:
                    out.append(factory(json.load(fh)))
            except (OSError, ValueError, KeyError, TypeError):
                log.warning("Skipping unreadable %s record %s", kind, path.name, exc_info=True)
        return out

    # ---- patients ----
    def save_patient(self, patient: Patient) -> str:
        return self._write(PATIENTS, patient.id, patient.to_dict())

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        return self._read(PATIENTS, patient_id, Patient.from_dict)

    def list_patients(self) -> List[Patient]:
        """Newest first."""
        return sorted(self._list(PATIENTS, Patient.from_dict), key=lambda p: p.created_at, reverse=True)

    def delete_patient(self, patient_id: str) -> bool:
        """Delete the patient together with all of their sessions."""
        for session in self.list_sessions(patient_id=patient_id):
            self._delete(SESSIONS, session.id)
        return self._delete(PATIENTS, patient_id)

    # ---- sessions ----
    def save_session(self, session: Session) -> str:
        return self._write(SESSIONS, session.id, session.to_dict())

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._read(SESSIONS, session_id, Session.from_dict)

    def delete_session(self, session_id: str) -> bool:
        return self._delete(SESSIONS, session_id)

    def list_sessions(self, patient_id: Optional[str] = None) -> List[Session]:
        """Sessions ordered by start time, newest first."""
        sessions = self._list(SESSIONS, Session.from_dict)
        if patient_id is not None:
            sessions = [s for s in sessions if s.patient_id == patient_id]
        return sorted(sessions, key=lambda s: s.started_datetime(), reverse=True)

    def sessions_between(self, start: datetime, end: datetime) -> List[Session]:
        """Sessions whose start time falls in [start, end]."""
        start, end = _as_utc(start), _as_utc(end)
        return [s for s in self.list_sessions() if start <= s.started_datetime() <= end]

    # ---- calibration profiles ----
    def save_calibration(self, profile: CalibrationProfile) -> str:
        return self._write(CALIBRATIONS, profile.id, profile.to_dict())

    def get_calibration(self, profile_id: str) -> Optional[CalibrationProfile]:
        return self._read(CALIBRATIONS, profile_id, CalibrationProfile.from_dict)

    def delete_calibration(self, profile_id: str) -> bool:
        return self._delete(CALIBRATIONS, profile_id)

    def list_calibrations(self) -> List[CalibrationProfile]:
        return sorted(self._list(CALIBRATIONS, CalibrationProfile.from_dict), key=lambda p: p.created_at or '')

    # ---- search / backup ----
    def search_sessions(self, query: str) -> List[Session]:
        """Sessions whose patient name, external id or start date contains ``query``.

        Case-insensitive; an empty query returns every session. Sessions whose
        patient no longer exists never match a non-empty query.
        """
        sessions = self.list_sessions()
        term = (query or '').strip().lower()
        if not term:
            return sessions
        patients = {p.id: p for p in self.list_patients()}
        out = []
        for s in sessions:
            patient = patients.get(s.patient_id)
            if patient is None:
                continue
            fields = (patient.first_name, patient.last_name, patient.patient_id or '',
                      s.started_datetime().date().isoformat())
            if any(term in f.lower() for f in fields):
                out.append(s)
        return out

    def export_all(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            PATIENTS: [p.to_dict() for p in self.list_patients()],
            SESSIONS: [s.to_dict() for s in self.list_sessions()],
            CALIBRATIONS: [c.to_dict() for c in self.list_calibrations()],
        }

    def import_data(self, data: Dict[str, Any]) -> Dict[str, int]:
        """Insert or overwrite every record of an ``export_all`` dump.

        All records are parsed before anything is written, so a malformed
        dump leaves the store unchanged. Missing sections are skipped.
        """
        if not isinstance(data, dict):
            raise StorageError("Import data must be a mapping of record lists")
        kinds = ((PATIENTS, Patient.from_dict), (SESSIONS, Session.from_dict),
                 (CALIBRATIONS, CalibrationProfile.from_dict))
        parsed: Dict[str, list] = {}
        for kind, factory in kinds:
            items = data.get(kind) or []
            if not isinstance(items, list):
                raise StorageError(f"Import section '{kind}' must be a list")
            try:
                records = [factory(item) for item in items]
                for record in records:
                    self._path(kind, record.id)
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                raise StorageError(f"Invalid {kind} record in import: {exc}") from exc
            parsed[kind] = records

        for kind, records in parsed.items():
            for record in records:
                self._write(kind, record.id, record.to_dict())
        counts = {kind: len(records) for kind, records in parsed.items()}
        log.info("Imported %s", counts)
        return counts
