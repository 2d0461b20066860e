# =============================================================================
# tests/unit/test_local_database.py
# Unit Tests for the Local SQLite Database
# =============================================================================

import threading
import pytest
from datetime import datetime


class TestSchema:
    """Test database creation"""

    def test_initialize_creates_tables(self, tmp_path):
        from mymeds_core.offline.local_database import LocalDatabase

        db = LocalDatabase(tmp_path / "nested" / "mymeds.db")
        db.initialize()
        db.initialize()

        tables = {row["name"] for row in db.query("SELECT name FROM sqlite_master WHERE type = 'table'")}
        assert set(LocalDatabase.SCHEMA) <= tables
        assert db.db_path.exists()
        db.close()

    def test_transaction_rolls_back(self, local_db):
        with pytest.raises(RuntimeError):
            with local_db.transaction() as conn:
                conn.execute(
                    "INSERT INTO sync_metadata (cache_key, owner_id, last_sync_at, record_count) VALUES (?, ?, ?, ?)",
                    ["reminders_u1", "u1", "2026-03-10T09:00:00", 3],
                )
                raise RuntimeError("abort")

        assert local_db.load_sync_metadata("reminders_u1") is None


class TestCacheRecords:
    """Test cache persistence"""

    def test_save_and_load(self, local_db):
        created = datetime(2026, 3, 10, 9, 0)
        local_db.save_cache_record("reminders_u1", "reminders", [{"id": "r1"}], created, 86400)

        record = local_db.load_cache_record("reminders_u1")

        assert record == {"value": [{"id": "r1"}], "created_at": created, "ttl_seconds": 86400}

    def test_clear_by_namespace(self, local_db):
        created = datetime(2026, 3, 10, 9, 0)
        local_db.save_cache_record("reminders_u1", "reminders", [], created, 60)
        local_db.save_cache_record("prescriptions_u1", "prescriptions", [], created, 60)

        assert local_db.clear_cache_records("reminders") == 1
        assert local_db.load_cache_record("reminders_u1") is None
        assert local_db.load_cache_record("prescriptions_u1") is not None

    def test_visible_from_other_threads(self, local_db):
        local_db.save_cache_record("reminders_u1", "reminders", [1, 2], datetime(2026, 3, 10), 60)
        seen = []

        thread = threading.Thread(target=lambda: seen.append(local_db.load_cache_record("reminders_u1")))
        thread.start()
        thread.join()

        assert seen[0]["value"] == [1, 2]


class TestDraftRows:
    """Test draft persistence"""

    def test_upsert_keeps_created_at(self, local_db):
        first = datetime(2026, 3, 10, 9, 0)
        later = datetime(2026, 3, 10, 9, 5)
        local_db.upsert_draft("ocr_1", "ocr", {"doctor": "A"}, [], first, first)
        local_db.upsert_draft("ocr_1", "ocr", {"doctor": "B"}, ["a.jpg"], later, later)

        drafts = local_db.get_all_drafts()

        assert len(drafts) == 1
        assert drafts[0]["data"] == {"doctor": "B"}
        assert drafts[0]["image_paths"] == ["a.jpg"]
        assert drafts[0]["created_at"] == first
        assert drafts[0]["last_modified"] == later

    def test_delete(self, local_db):
        now = datetime(2026, 3, 10, 9, 0)
        local_db.upsert_draft("nfc_1", "nfc", {}, [], now, now)

        assert local_db.delete_draft("nfc_1") is True
        assert local_db.delete_draft("nfc_1") is False


class TestSyncQueue:
    """Test the mutation queue table"""

    def test_pending_oldest_first(self, local_db):
        first = local_db.queue_mutation("update", "reminders", "u1", "r1", {"is_active": False})
        second = local_db.queue_mutation("delete", "reminders", "u1", "r2", {})

        pending = local_db.get_pending_sync()

        assert [p["id"] for p in pending] == [first, second]
        assert pending[0]["data"] == {"is_active": False}
        assert len(local_db.get_pending_sync(limit=1)) == 1
        assert len(local_db.get_pending_sync(limit=-1)) == 2

    def test_failed_after_max_attempts(self, local_db):
        entry = local_db.queue_mutation("update", "reminders", "u1", "r1", {})

        assert local_db.mark_sync_failed(entry, "timeout", max_attempts=2) == "pending"
        assert local_db.mark_sync_failed(entry, "timeout", max_attempts=2) == "failed"
        assert local_db.get_sync_count("failed") == 1
        assert local_db.get_sync_count() == 0

    def test_synced_and_rejected(self, local_db):
        a = local_db.queue_mutation("update", "reminders", "u1", "r1", {})
        b = local_db.queue_mutation("update", "reminders", "u1", "r2", {})

        local_db.mark_synced(a)
        local_db.mark_sync_rejected(b, "expired")

        assert local_db.get_sync_count("synced") == 1
        assert local_db.get_sync_count("rejected") == 1
        assert local_db.get_pending_sync() == []
