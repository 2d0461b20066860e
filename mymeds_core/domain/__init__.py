# =============================================================================
# mymeds_core/domain/__init__.py
# Record Types of the Medication Client
# =============================================================================
"""
Collections live in mymeds_core.domain.prescriptions and
mymeds_core.domain.reminders; they build on the offline package.
"""

from mymeds_core.domain.models import (
    SyncStatus,
    Prescription,
    RecurrenceType,
    DayOfWeek,
    MedicationReminder,
    prescription_sort_key,
    reminder_sort_key,
)

__all__ = [
    "SyncStatus",
    "Prescription",
    "RecurrenceType",
    "DayOfWeek",
    "MedicationReminder",
    "prescription_sort_key",
    "reminder_sort_key",
]
