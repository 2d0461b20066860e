# =============================================================================
# tests/integration/test_offline_scenarios.py
# Integration Tests: Offline-First Behaviour End to End
# =============================================================================

import asyncio
import pytest
import pytest_asyncio
from datetime import timedelta


@pytest.fixture
def settings(tmp_path):
    from mymeds_core.config import EngineSettings

    return EngineSettings(data_dir=tmp_path / "data")


@pytest_asyncio.fixture
async def registry(settings, prescriptions_repo, reminders_repo, probe, clock):
    from mymeds_core.offline.registry import OfflineRegistry

    registry = OfflineRegistry.create(settings, prescriptions_repo, reminders_repo, probe=probe, clock=clock)
    await registry.start()
    yield registry
    await registry.close()


def find(records, record_id):
    return next(r for r in records if (r["id"] if isinstance(r, dict) else r.id) == record_id)


class TestReadPath:
    """Cache-first loading against the real SQLite cache"""

    @pytest.mark.asyncio
    async def test_first_launch_online(self, registry, recorder):
        """Empty cache, device online, remote has 3 records"""
        from mymeds_core.offline.fetch_coordinator import LoadOutcome

        registry.prescriptions.subscribe("u1", recorder)

        result = await registry.prescriptions.load("u1")

        assert result.outcome is LoadOutcome.REFRESHED
        assert recorder.sources == ["empty", "remote"]
        assert recorder.snapshots[0].records == ()
        assert [p.id for p in recorder.last.records] == ["p3", "p1", "p2"]
        assert registry.prescriptions.metadata("u1").record_count == 3

    @pytest.mark.asyncio
    async def test_expired_cache_while_offline(self, registry, probe, clock, recorder, sample_reminder_rows):
        """Two expired records cached, device offline: stale data, no error"""
        from mymeds_core.domain.models import MedicationReminder
        from mymeds_core.offline.fetch_coordinator import LoadOutcome

        cache = registry.reminders.cache
        records = registry.reminders.sort([MedicationReminder.from_dict(row) for row in sample_reminder_rows[:2]])
        cache.set(cache.key_for("u1"), records)
        clock.advance(hours=25)
        probe.online = False
        registry.reminders.subscribe("u1", recorder, on_error=recorder.on_error)

        result = await registry.reminders.load("u1")

        assert result.outcome is LoadOutcome.USING_CACHE
        assert recorder.sources == ["cache"]
        assert recorder.last.is_stale is True
        assert len(recorder.last.records) == 2
        assert recorder.errors == []
        assert registry.reminders.coordinator.fetch_count == 0

    @pytest.mark.asyncio
    async def test_cached_value_published_before_fetch_resolves(self, registry, prescriptions_repo, recorder):
        await registry.prescriptions.load("u1")
        prescriptions_repo.latency = 0.05
        registry.prescriptions.subscribe("u1", recorder)
        recorder.snapshots.clear()

        task = asyncio.ensure_future(registry.prescriptions.load("u1", force_refresh=True))
        await asyncio.sleep(0)

        assert recorder.sources == ["cache"]
        assert len(recorder.last.records) == 3
        await task
        assert recorder.sources == ["cache", "remote"]

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_fetch(self, registry, prescriptions_repo):
        prescriptions_repo.latency = 0.02

        results = await asyncio.gather(*(registry.prescriptions.load("u1") for _ in range(5)))

        assert prescriptions_repo.fetch_calls == 1
        assert all(len(r.records) == 3 for r in results)

    @pytest.mark.asyncio
    async def test_offline_never_fetches(self, registry, prescriptions_repo, probe):
        await registry.prescriptions.load("u1")
        probe.online = False
        prescriptions_repo.seed("u1", [])

        result = await registry.prescriptions.load("u1")

        assert prescriptions_repo.fetch_calls == 1
        assert len(result.records) == 3
        assert len(registry.prescriptions.current("u1")) == 3

    @pytest.mark.asyncio
    async def test_remaining_ttl_counts_down(self, registry, clock):
        cache = registry.prescriptions.cache
        key = cache.key_for("u9")

        cache.set(key, [], timedelta(hours=2))
        assert cache.get_remaining_ttl(key) == timedelta(hours=2)

        clock.advance(hours=2)
        assert cache.get_remaining_ttl(key) == timedelta(0)


class TestDraftsAcrossRestarts:
    """Drafts survive a process restart"""

    @pytest.mark.asyncio
    async def test_draft_survives_restart(self, settings, prescriptions_repo, reminders_repo, make_probe, clock):
        from mymeds_core.offline.registry import OfflineRegistry

        first = OfflineRegistry.create(settings, prescriptions_repo, reminders_repo, probe=make_probe(), clock=clock)
        await first.start()
        data = {"doctor": "Dr. Ruiz", "medications": [{"name": "Lisinopril", "dose": "10mg"}]}
        assert await first.drafts.save_draft("ocr_1741597200000", data, [])
        await first.close()

        second = OfflineRegistry.create(settings, prescriptions_repo, reminders_repo, probe=make_probe(), clock=clock)
        await second.start()

        assert second.drafts.get_all_draft_ids() == ["ocr_1741597200000"]
        draft = second.drafts.get_draft("ocr_1741597200000")
        assert draft.data == data
        assert draft.image_paths == []
        await second.close()

    @pytest.mark.asyncio
    async def test_week_old_draft_swept_at_start(self, settings, prescriptions_repo, reminders_repo, make_probe, clock):
        from mymeds_core.offline.registry import OfflineRegistry

        first = OfflineRegistry.create(settings, prescriptions_repo, reminders_repo, probe=make_probe(), clock=clock)
        await first.start()
        await first.drafts.save_draft("ocr_1", {"doctor": "Dr. Old"})
        clock.advance(days=6)
        await first.drafts.save_draft("nfc_2", {"prescription": {"doctor": "Dr. New"}})
        await first.close()

        clock.advance(days=1, minutes=1)
        second = OfflineRegistry.create(settings, prescriptions_repo, reminders_repo, probe=make_probe(), clock=clock)
        await second.start()

        assert second.drafts.get_all_draft_ids() == ["nfc_2"]
        await second.close()


class TestOptimisticWrites:
    """Mutations against the full stack"""

    @pytest.mark.asyncio
    async def test_failed_toggle_shows_server_state(self, registry, reminders_repo, recorder):
        from mymeds_core.errors import MutationError

        await registry.reminders.load("u1")
        registry.reminders.subscribe("u1", recorder)
        reminders_repo.fail_with = ConnectionError("reset by peer")

        with pytest.raises(MutationError):
            await registry.reminders.toggle("u1", "r1")

        assert "optimistic" in recorder.sources
        assert recorder.last.source.value == "cache"
        assert find(recorder.last.records, "r1").is_active is True
        assert find(registry.reminders.cache.get("reminders_u1"), "r1").is_active is True

    @pytest.mark.asyncio
    async def test_offline_toggle_no_flicker_on_reconnect(self, registry, reminders_repo, probe, recorder):
        """true -> false offline, then reconnect confirms false without flicking back"""
        from mymeds_core.domain.models import SyncStatus
        from mymeds_core.offline.fetch_coordinator import LoadOutcome

        await registry.reminders.load("u1")
        registry.reminders.subscribe("u1", recorder)
        recorder.snapshots.clear()
        probe.online = False

        await registry.reminders.toggle("u1", "r1")
        assert find(registry.reminders.current("u1"), "r1").is_active is False
        assert find(registry.reminders.current("u1"), "r1").sync_status is SyncStatus.PENDING

        # Screens keep reloading while the change is queued
        assert (await registry.reminders.load("u1")).outcome is LoadOutcome.USING_CACHE
        probe.online = True
        assert (await registry.reminders.load("u1")).outcome is LoadOutcome.USING_CACHE
        await registry.reminders.load("u1", force_refresh=True)
        assert find(registry.reminders.current("u1"), "r1").is_active is False

        assert await registry.sync_engine.sync_now() is True

        assert find(reminders_repo.records_for("u1"), "r1")["is_active"] is False
        assert recorder.last.source.value == "remote"
        assert find(recorder.last.records, "r1").sync_status is SyncStatus.SYNCED
        assert all(find(s.records, "r1").is_active is False for s in recorder.snapshots)
        assert not registry.reminders.coordinator.is_held("u1")

    @pytest.mark.asyncio
    async def test_online_toggle_before_replay_keeps_offline_change(self, registry, reminders_repo, probe, recorder):
        """Reconnected, replay not run yet, another reminder toggled"""
        await registry.reminders.load("u1")
        probe.online = False
        await registry.reminders.toggle("u1", "r1")
        registry.reminders.subscribe("u1", recorder)
        probe.online = True

        await registry.reminders.toggle("u1", "r3")

        assert [find(s.records, "r1").is_active for s in recorder.snapshots] == [False] * len(recorder.snapshots)
        assert recorder.last.source.value == "remote"
        assert find(reminders_repo.records_for("u1"), "r1")["is_active"] is False
        assert find(reminders_repo.records_for("u1"), "r3")["is_active"] is False
        assert registry.sync_engine.state.pending_count == 0

    @pytest.mark.asyncio
    async def test_queued_change_replayed_after_restart(
        self, settings, prescriptions_repo, reminders_repo, make_probe, clock
    ):
        from mymeds_core.offline.registry import OfflineRegistry

        probe = make_probe()
        first = OfflineRegistry.create(settings, prescriptions_repo, reminders_repo, probe=probe, clock=clock)
        await first.start()
        await first.prescriptions.load("u1")
        probe.online = False
        await first.prescriptions.set_active("u1", "p1", False)
        await first.close()
        assert prescriptions_repo.mutate_calls == 0

        second = OfflineRegistry.create(
            settings, prescriptions_repo, reminders_repo, probe=make_probe(online=True), clock=clock
        )
        await second.start()

        assert find(prescriptions_repo.records_for("u1"), "p1")["active"] is False
        assert find(second.prescriptions.current("u1"), "p1").active is False
        assert second.sync_engine.state.pending_count == 0
        await second.close()


class TestRegistry:
    """Composition root"""

    @pytest.mark.asyncio
    async def test_status_display(self, registry):
        await registry.prescriptions.load("u1")

        status = registry.get_status_display("u1")

        assert status["prescriptions"]["record_count"] == 3
        assert status["reminders"]["record_count"] == 0
        assert status["drafts"]["total_drafts"] == 0
        assert status["sync"]["pending_count"] == 0
        assert "connection" not in status
        assert registry.is_online is True

    @pytest.mark.asyncio
    async def test_files_created_under_data_dir(self, registry, settings):
        assert settings.db_path.exists()
        assert settings.drafts_dir.is_dir()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, registry):
        await registry.start()

        assert registry.started is True
