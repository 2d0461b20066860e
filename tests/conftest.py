# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from datetime import datetime, timedelta
from typing import Callable, List
from unittest.mock import MagicMock

from mymeds_core.offline.connection_manager import ConnectionState, ConnectionType
from mymeds_core.offline.local_database import LocalDatabase
from mymeds_core.remote.repository import InMemoryRepository


OWNER = "u1"
START = datetime(2026, 3, 10, 9, 0, 0)


# =============================================================================
# CLOCKS AND PROBES
# =============================================================================

class FakeClock:
    """Settable wall clock"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Settable monotonic clock (seconds)"""

    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


class FakeProbe:
    """Connectivity probe with a switch; notifies like ConnectionManager"""

    def __init__(self, online: bool = True):
        self.online = online
        self.calls = 0
        self.fail_with = None
        self._callbacks: List[Callable[[ConnectionState], None]] = []

    async def check_connectivity(self) -> ConnectionType:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return ConnectionType.WIFI if self.online else ConnectionType.NONE

    def register_callback(self, callback) -> None:
        self._callbacks.append(callback)

    def unregister_callback(self, callback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def set_online(self, online: bool) -> None:
        self.online = online
        state = ConnectionState(
            connection_type=ConnectionType.WIFI if online else ConnectionType.NONE,
            checked=True,
        )
        for callback in list(self._callbacks):
            callback(state)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def probe():
    return FakeProbe(online=True)


@pytest.fixture
def make_probe():
    """Factory for extra probes (a second device, a restarted process)"""
    return FakeProbe


# =============================================================================
# STORAGE FIXTURES
# =============================================================================

@pytest.fixture
def local_db(tmp_path):
    """Initialized SQLite database in a temp directory"""
    db = LocalDatabase(tmp_path / "mymeds.db")
    db.initialize()
    yield db
    db.close()


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

@pytest.fixture
def sample_prescription_rows():
    """Prescriptions as the remote returns them"""
    return [
        {
            "id": "p1",
            "created_at": "2026-03-01T10:00:00",
            "diagnosis": "Hypertension",
            "doctor": "Dr. Ruiz",
            "active": True,
            "medications": [{"name": "Lisinopril", "dose": "10mg"}],
        },
        {
            "id": "p2",
            "created_at": "2026-03-05T10:00:00",
            "diagnosis": "Flu",
            "doctor": "Dr. Okafor",
            "active": False,
            "medications": [{"name": "Oseltamivir", "dose": "75mg"}],
        },
        {
            "id": "p3",
            "created_at": "2026-03-08T10:00:00",
            "diagnosis": "Migraine",
            "doctor": "Dr. Ruiz",
            "active": True,
            "medications": [],
        },
    ]


@pytest.fixture
def sample_reminder_rows():
    """Reminders as the remote returns them"""
    return [
        {
            "id": "r1",
            "medicine_id": "m1",
            "medicine_name": "Lisinopril",
            "time": "20:00",
            "recurrence": "daily",
            "is_active": True,
        },
        {
            "id": "r2",
            "medicine_id": "m2",
            "medicine_name": "Ibuprofen",
            "time": "08:00",
            "recurrence": "once",
            "is_active": False,
        },
        {
            "id": "r3",
            "medicine_id": "m3",
            "medicine_name": "Vitamin D",
            "time": "12:30",
            "recurrence": "specificDays",
            "specific_days": ["monday", "thursday"],
            "is_active": True,
        },
    ]


@pytest.fixture
def prescriptions_repo(sample_prescription_rows):
    return InMemoryRepository({OWNER: sample_prescription_rows})


@pytest.fixture
def reminders_repo(sample_reminder_rows):
    return InMemoryRepository({OWNER: sample_reminder_rows})


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    query = mock_client.table.return_value
    query.select.return_value.eq.return_value.order.return_value.range.return_value.execute.return_value.data = []
    query.update.return_value.eq.return_value.eq.return_value.execute.return_value.data = [{"id": "p1"}]
    query.delete.return_value.eq.return_value.eq.return_value.execute.return_value.data = [{"id": "p1"}]
    return mock_client


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

class SnapshotRecorder:
    """Subscriber callback that keeps every snapshot it receives"""

    def __init__(self):
        self.snapshots = []
        self.errors = []

    def __call__(self, snapshot) -> None:
        self.snapshots.append(snapshot)

    def on_error(self, error) -> None:
        self.errors.append(error)

    @property
    def sources(self):
        return [s.source.value for s in self.snapshots]

    @property
    def last(self):
        return self.snapshots[-1]


@pytest.fixture
def recorder():
    return SnapshotRecorder()
