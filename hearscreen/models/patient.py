from __future__ import annotations
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import uuid

SEX_CHOICES = ("Male", "Female", "Other", "Prefer not to say")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Patient:
    first_name: str
    last_name: str
    dob: str  # ISO YYYY-MM-DD
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sex: Optional[str] = None
    patient_id: Optional[str] = None  # external MRN
    notes: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)

    def __post_init__(self) -> None:
        if self.sex is not None and self.sex not in SEX_CHOICES:
            raise ValueError(f"sex must be one of {', '.join(SEX_CHOICES)}")

    @property
    def full_name(self) -> str:
        return f"{self.last_name} {self.first_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Patient":
        return Patient(
            id=d.get("id") or str(uuid.uuid4()),
            first_name=d.get("first_name", ""),
            last_name=d.get("last_name", ""),
            dob=d.get("dob", ""),
            sex=d.get("sex"),
            patient_id=d.get("patient_id"),
            notes=d.get("notes"),
            created_at=d.get("created_at") or _now_iso(),
        )
