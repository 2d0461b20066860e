# =============================================================================
# mymeds_core/domain/reminders.py
# Medication Reminders Collection
# =============================================================================
"""
Reminders of one user, ordered by time of day.

Toggling is optimistic except when it reactivates a run-once reminder: that
case needs the expiry check to pass first, so it is server-validated and the
record shows a syncing state until it is confirmed.
"""

from __future__ import annotations
import time
from typing import Any, Callable, List, Optional

from mymeds_core.config import EngineSettings
from mymeds_core.domain.models import MedicationReminder, RecurrenceType, reminder_sort_key
from mymeds_core.errors import RecordNotFoundError, ReminderExpiredError
from mymeds_core.offline.connection_manager import ConnectivityProbe
from mymeds_core.offline.local_database import LocalDatabase
from mymeds_core.offline.mutation_guard import (
    Mutation,
    MutationOperation,
    MutationOutcome,
    MutationQueue,
    MutationSafety,
)
from mymeds_core.offline.synced_collection import SyncedCollection
from mymeds_core.offline.ttl_cache import Clock, TtlCache
from mymeds_core.remote.repository import CollectionRepository

NAMESPACE = "reminders"


def encode_reminders(records: List[MedicationReminder]) -> List[dict]:
    return [r.to_dict() for r in records]


def decode_reminders(rows: List[dict]) -> List[MedicationReminder]:
    return [MedicationReminder.from_dict(row) for row in rows]


def toggle_safety(reminder: MedicationReminder) -> MutationSafety:
    """Safety class of flipping reminder.is_active."""
    if reminder.recurrence is RecurrenceType.ONCE and not reminder.is_active:
        return MutationSafety.SERVER_VALIDATED
    return MutationSafety.OPTIMISTIC


class RemindersCollection(SyncedCollection[MedicationReminder]):

    @classmethod
    def create(
        cls,
        repository: CollectionRepository,
        probe: ConnectivityProbe,
        settings: Optional[EngineSettings] = None,
        local_db: Optional[LocalDatabase] = None,
        queue: Optional[MutationQueue] = None,
        clock: Optional[Clock] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> RemindersCollection:
        settings = settings or EngineSettings()
        cache = TtlCache(
            NAMESPACE,
            settings.reminders_ttl,
            local_db=local_db,
            encoder=encode_reminders,
            decoder=decode_reminders,
            clock=clock,
        )
        return cls(
            cache,
            repository,
            probe,
            decode=MedicationReminder.from_dict,
            sort_key=reminder_sort_key,
            timeout=settings.timeout_for(NAMESPACE),
            inflight_cap=settings.inflight_cap,
            local_db=local_db,
            queue=queue,
            monotonic=monotonic,
        )

    def _require(self, owner_id: str, reminder_id: str, operation: str) -> MedicationReminder:
        reminder = self.find(owner_id, reminder_id)
        if reminder is None:
            raise RecordNotFoundError(
                f"Reminder {reminder_id} is not loaded",
                record_id=reminder_id,
                operation=operation,
            )
        return reminder

    async def toggle(self, owner_id: str, reminder_id: str) -> MutationOutcome:
        """
        Flip is_active.

        Raises:
            ReminderExpiredError: reactivating a run-once reminder whose time passed
            OfflineError: reactivating a run-once reminder while offline
            MutationError: any other remote failure (collection rolled back)
        """
        reminder = self._require(owner_id, reminder_id, "toggle")
        activate = not reminder.is_active
        patch = {"is_active": activate}

        async def remote_call() -> Any:
            if activate and reminder.is_expired_once(self.cache.now()):
                raise ReminderExpiredError(
                    "Run-once reminder time has already passed",
                    record_id=reminder_id,
                    operation="toggle",
                )
            if not await self.repository.mutate_record(owner_id, reminder_id, patch):
                raise RecordNotFoundError(
                    f"Reminder {reminder_id} not found remotely",
                    record_id=reminder_id,
                    operation="toggle",
                )

        return await self.apply(owner_id, Mutation(
            name="toggle",
            record_id=reminder_id,
            safety=toggle_safety(reminder),
            local_transform=lambda r: r.with_changes(is_active=activate),
            remote_call=remote_call,
            patch=patch,
        ))

    async def delete(self, owner_id: str, reminder_id: str) -> MutationOutcome:
        """Remove a reminder; the cache is invalidated once the remote confirms."""
        self._require(owner_id, reminder_id, "delete")

        async def remote_call() -> Any:
            await self.repository.delete_record(owner_id, reminder_id)

        return await self.apply(owner_id, Mutation(
            name="delete",
            record_id=reminder_id,
            safety=MutationSafety.OPTIMISTIC,
            local_transform=lambda r: None,
            remote_call=remote_call,
            operation=MutationOperation.DELETE,
        ))
