# =============================================================================
# mymeds_core/domain/models.py
# Domain Records Served by the Offline Layer
# =============================================================================
"""
Prescriptions and medication reminders as held in the cache.

Every record converts to/from a JSON-safe dict so it can be persisted in the
cache layer and exchanged with the remote store.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class SyncStatus(Enum):
    """Display-only sync tag; merge is always remote-wins."""
    PENDING = "pending"     # Local change not yet confirmed
    SYNCING = "syncing"     # Waiting on a server-validated change
    SYNCED = "synced"       # Matches the remote
    FAILED = "failed"       # Gave up syncing


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        # Supabase returns "Z" suffixed timestamps
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"Not a timestamp: {value!r}")


def _parse_status(value: Any) -> SyncStatus:
    if value is None:
        return SyncStatus.SYNCED
    return SyncStatus(value)


# =============================================================================
# PRESCRIPTIONS
# =============================================================================

@dataclass(frozen=True)
class Prescription:
    id: str
    created_at: datetime
    diagnosis: str = ""
    doctor: str = ""
    active: bool = True
    medications: List[Dict[str, Any]] = field(default_factory=list)
    sync_status: SyncStatus = SyncStatus.SYNCED

    def with_changes(self, **changes) -> Prescription:
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "diagnosis": self.diagnosis,
            "doctor": self.doctor,
            "active": self.active,
            "medications": list(self.medications),
            "sync_status": self.sync_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Prescription:
        return cls(
            id=str(data["id"]),
            created_at=_parse_datetime(data["created_at"]),
            diagnosis=data.get("diagnosis") or "",
            doctor=data.get("doctor") or "",
            active=bool(data.get("active", True)),
            medications=list(data.get("medications") or []),
            sync_status=_parse_status(data.get("sync_status")),
        )


def prescription_sort_key(prescription: Prescription):
    """Active first, then newest first."""
    return (not prescription.active, -prescription.created_at.timestamp())


# =============================================================================
# REMINDERS
# =============================================================================

class RecurrenceType(Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    SPECIFIC_DAYS = "specificDays"


class DayOfWeek(Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def weekday(self) -> int:
        """0 = Monday, matching datetime.weekday()."""
        return list(DayOfWeek).index(self)


# A run-once reminder this far past its time can no longer be reactivated
ONCE_REMINDER_GRACE = timedelta(minutes=1)


@dataclass(frozen=True)
class MedicationReminder:
    id: str
    medicine_id: str
    medicine_name: str
    time: time
    recurrence: RecurrenceType = RecurrenceType.DAILY
    specific_days: FrozenSet[DayOfWeek] = frozenset()
    is_active: bool = True
    created_at: Optional[datetime] = None
    sync_status: SyncStatus = SyncStatus.SYNCED

    def with_changes(self, **changes) -> MedicationReminder:
        return replace(self, **changes)

    @property
    def minutes_of_day(self) -> int:
        return self.time.hour * 60 + self.time.minute

    def is_expired_once(self, now: datetime) -> bool:
        """True for a run-once reminder whose time today is over a minute past."""
        if self.recurrence is not RecurrenceType.ONCE:
            return False
        scheduled = now.replace(hour=self.time.hour, minute=self.time.minute, second=0, microsecond=0)
        return scheduled < now - ONCE_REMINDER_GRACE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "medicine_id": self.medicine_id,
            "medicine_name": self.medicine_name,
            "time": f"{self.time.hour:02d}:{self.time.minute:02d}",
            "recurrence": self.recurrence.value,
            "specific_days": sorted(day.value for day in self.specific_days),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sync_status": self.sync_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MedicationReminder:
        hour, minute = (int(part) for part in str(data["time"]).split(":")[:2])
        try:
            recurrence = RecurrenceType(data.get("recurrence") or RecurrenceType.DAILY.value)
        except ValueError:
            recurrence = RecurrenceType.DAILY
        created_at = data.get("created_at")
        return cls(
            id=str(data["id"]),
            medicine_id=str(data.get("medicine_id") or ""),
            medicine_name=data.get("medicine_name") or "",
            time=time(hour=hour, minute=minute),
            recurrence=recurrence,
            specific_days=frozenset(DayOfWeek(day) for day in data.get("specific_days") or []),
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_datetime(created_at) if created_at else None,
            sync_status=_parse_status(data.get("sync_status")),
        )


def reminder_sort_key(reminder: MedicationReminder):
    """Time of day ascending."""
    return reminder.minutes_of_day
