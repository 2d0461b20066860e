# =============================================================================
# tests/unit/test_reminders.py
# Unit Tests for Medication Reminders
# =============================================================================

import pytest
from datetime import datetime, time


@pytest.fixture
def reminders(reminders_repo, probe, clock, local_db):
    from mymeds_core.domain.reminders import RemindersCollection
    from mymeds_core.offline.mutation_guard import MutationQueue

    return RemindersCollection.create(
        reminders_repo,
        probe,
        local_db=local_db,
        queue=MutationQueue(local_db),
        clock=clock,
    )


def find(records, record_id):
    return next(r for r in records if (r["id"] if isinstance(r, dict) else r.id) == record_id)


class TestReminderModel:
    """Test record parsing and the run-once expiry rule"""

    def test_from_dict(self, sample_reminder_rows):
        from mymeds_core.domain.models import DayOfWeek, MedicationReminder, RecurrenceType, SyncStatus

        reminder = MedicationReminder.from_dict(sample_reminder_rows[2])

        assert reminder.time == time(12, 30)
        assert reminder.recurrence is RecurrenceType.SPECIFIC_DAYS
        assert reminder.specific_days == frozenset({DayOfWeek.MONDAY, DayOfWeek.THURSDAY})
        assert reminder.sync_status is SyncStatus.SYNCED

    def test_unknown_recurrence_falls_back_to_daily(self):
        from mymeds_core.domain.models import MedicationReminder, RecurrenceType

        reminder = MedicationReminder.from_dict({"id": "r9", "time": "07:15", "recurrence": "hourly"})

        assert reminder.recurrence is RecurrenceType.DAILY

    def test_to_dict_time_format(self, sample_reminder_rows):
        from mymeds_core.domain.models import MedicationReminder

        data = MedicationReminder.from_dict({**sample_reminder_rows[0], "time": "7:05"}).to_dict()

        assert data["time"] == "07:05"

    @pytest.mark.parametrize("now, expired", [
        (datetime(2026, 3, 10, 7, 30), False),
        (datetime(2026, 3, 10, 8, 0, 30), False),
        (datetime(2026, 3, 10, 8, 1, 0), False),
        (datetime(2026, 3, 10, 8, 1, 1), True),
        (datetime(2026, 3, 10, 23, 0), True),
    ])
    def test_once_expiry(self, now, expired):
        from mymeds_core.domain.models import MedicationReminder, RecurrenceType

        reminder = MedicationReminder(
            id="r2", medicine_id="m2", medicine_name="Ibuprofen",
            time=time(8, 0), recurrence=RecurrenceType.ONCE, is_active=False,
        )

        assert reminder.is_expired_once(now) is expired

    def test_recurring_never_expires(self):
        from mymeds_core.domain.models import MedicationReminder, RecurrenceType

        reminder = MedicationReminder(
            id="r1", medicine_id="m1", medicine_name="Lisinopril",
            time=time(8, 0), recurrence=RecurrenceType.DAILY,
        )

        assert not reminder.is_expired_once(datetime(2026, 3, 10, 23, 0))


class TestToggleSafety:
    """Test the safety class chosen per toggle"""

    def test_reactivating_once_is_server_validated(self, sample_reminder_rows):
        from mymeds_core.domain.models import MedicationReminder
        from mymeds_core.domain.reminders import toggle_safety
        from mymeds_core.offline.mutation_guard import MutationSafety

        once_inactive = MedicationReminder.from_dict(sample_reminder_rows[1])
        daily_active = MedicationReminder.from_dict(sample_reminder_rows[0])

        assert toggle_safety(once_inactive) is MutationSafety.SERVER_VALIDATED
        assert toggle_safety(once_inactive.with_changes(is_active=True)) is MutationSafety.OPTIMISTIC
        assert toggle_safety(daily_active) is MutationSafety.OPTIMISTIC


class TestRemindersCollection:
    """Test loading and toggling"""

    @pytest.mark.asyncio
    async def test_sorted_by_time_of_day(self, reminders):
        result = await reminders.load("u1")

        assert [r.id for r in result.records] == ["r2", "r3", "r1"]

    @pytest.mark.asyncio
    async def test_toggle_daily(self, reminders, reminders_repo):
        await reminders.load("u1")

        await reminders.toggle("u1", "r1")

        assert find(reminders.current("u1"), "r1").is_active is False
        assert find(reminders_repo.records_for("u1"), "r1")["is_active"] is False

    @pytest.mark.asyncio
    async def test_reactivate_expired_once_rejected(self, reminders, reminders_repo, recorder):
        """08:00 run-once reminder cannot be turned back on at 09:00"""
        from mymeds_core.errors import ReminderExpiredError

        await reminders.load("u1")
        reminders.subscribe("u1", recorder)

        with pytest.raises(ReminderExpiredError) as exc_info:
            await reminders.toggle("u1", "r2")

        assert exc_info.value.user_message == "This reminder's time has already passed. Create a new one."
        assert find(reminders.current("u1"), "r2").is_active is False
        assert reminders_repo.mutate_calls == 0
        assert all(find(s.records, "r2").is_active is False for s in recorder.snapshots)

    @pytest.mark.asyncio
    async def test_reactivate_future_once(self, reminders, reminders_repo, clock):
        from mymeds_core.domain.models import SyncStatus

        clock.now = datetime(2026, 3, 10, 7, 30)
        await reminders.load("u1")

        await reminders.toggle("u1", "r2")

        r2 = find(reminders.current("u1"), "r2")
        assert r2.is_active is True
        assert r2.sync_status is SyncStatus.SYNCED
        assert reminders_repo.mutate_calls == 1

    @pytest.mark.asyncio
    async def test_reactivate_once_offline_refused(self, reminders, probe, clock):
        from mymeds_core.errors import OfflineError

        clock.now = datetime(2026, 3, 10, 7, 30)
        await reminders.load("u1")
        probe.online = False

        with pytest.raises(OfflineError):
            await reminders.toggle("u1", "r2")

    @pytest.mark.asyncio
    async def test_other_failure_uses_generic_message(self, reminders, reminders_repo):
        from mymeds_core.errors import MutationError, ReminderExpiredError

        await reminders.load("u1")
        reminders_repo.fail_with = TimeoutError("gateway timeout")

        with pytest.raises(MutationError) as exc_info:
            await reminders.toggle("u1", "r1")

        assert not isinstance(exc_info.value, ReminderExpiredError)
        assert exc_info.value.user_message == "Error updating reminder"
        assert find(reminders.current("u1"), "r1").is_active is True

    @pytest.mark.asyncio
    async def test_delete(self, reminders, reminders_repo):
        await reminders.load("u1")

        await reminders.delete("u1", "r3")

        assert [r.id for r in reminders.current("u1")] == ["r2", "r1"]
        assert reminders_repo.delete_calls == 1
        assert [r["id"] for r in reminders_repo.records_for("u1")] == ["r1", "r2"]

    @pytest.mark.asyncio
    async def test_toggle_unknown_reminder(self, reminders):
        from mymeds_core.errors import RecordNotFoundError

        await reminders.load("u1")

        with pytest.raises(RecordNotFoundError):
            await reminders.toggle("u1", "r404")
