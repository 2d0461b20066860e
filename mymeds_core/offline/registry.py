# =============================================================================
# mymeds_core/offline/registry.py
# Offline Data Layer - Composition Root
# =============================================================================
"""
OfflineRegistry - builds and owns one instance of every offline component.

There are no module-level singletons: the app creates one registry at
startup and hands its members to the screens that need them.

Usage:
------
from mymeds_core.config import load_settings
from mymeds_core.offline.registry import OfflineRegistry

registry = OfflineRegistry.create(load_settings(), prescriptions_repo, reminders_repo)
await registry.start()

result = await registry.prescriptions.load(user_id)
print(registry.is_online, registry.sync_engine.state.pending_count)

await registry.close()
"""

from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import logging

from mymeds_core.config import EngineSettings
from mymeds_core.domain.prescriptions import PrescriptionsCollection
from mymeds_core.domain.reminders import RemindersCollection
from mymeds_core.errors import error_boundary
from mymeds_core.logging import LogContext
from mymeds_core.offline.connection_manager import ConnectionManager, ConnectivityProbe
from mymeds_core.offline.draft_store import DraftStore
from mymeds_core.offline.local_database import LocalDatabase
from mymeds_core.offline.mutation_guard import MutationQueue
from mymeds_core.offline.sync_engine import SyncEngine
from mymeds_core.offline.ttl_cache import Clock
from mymeds_core.remote.repository import CollectionRepository

logger = logging.getLogger(__name__)


@dataclass
class OfflineRegistry:
    """Every component of the offline data layer, wired together."""
    settings: EngineSettings
    local_db: LocalDatabase
    probe: ConnectivityProbe
    queue: MutationQueue
    prescriptions: PrescriptionsCollection
    reminders: RemindersCollection
    drafts: DraftStore
    sync_engine: SyncEngine
    started: bool = False

    @classmethod
    def create(
        cls,
        settings: EngineSettings,
        prescriptions_repo: CollectionRepository,
        reminders_repo: CollectionRepository,
        probe: Optional[ConnectivityProbe] = None,
        clock: Optional[Clock] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> OfflineRegistry:
        """
        Build the components from settings.

        Args:
            settings: Engine settings (see load_settings)
            prescriptions_repo: Remote store of prescriptions
            reminders_repo: Remote store of reminders
            probe: Connectivity probe; a ConnectionManager when omitted
            clock: Wall clock for cache ages and draft expiry (tests)
            monotonic: Clock for in-flight fetch ages (tests)
        """
        local_db = LocalDatabase(settings.db_path)
        if probe is None:
            probe = ConnectionManager(
                supabase_url=settings.supabase_url,
                connection_timeout=settings.connection_timeout,
                check_interval_online=settings.check_interval_online,
                check_interval_offline=settings.check_interval_offline,
            )
        queue = MutationQueue(local_db, max_retries=settings.max_mutation_retries)

        prescriptions = PrescriptionsCollection.create(
            prescriptions_repo, probe, settings,
            local_db=local_db, queue=queue, clock=clock, monotonic=monotonic,
        )
        reminders = RemindersCollection.create(
            reminders_repo, probe, settings,
            local_db=local_db, queue=queue, clock=clock, monotonic=monotonic,
        )
        drafts = DraftStore(
            local_db,
            settings.drafts_dir,
            expiry=settings.draft_expiry,
            max_drafts=settings.max_drafts,
            clock=clock,
        )
        sync_engine = SyncEngine(probe, queue, [prescriptions, reminders])

        return cls(
            settings=settings,
            local_db=local_db,
            probe=probe,
            queue=queue,
            prescriptions=prescriptions,
            reminders=reminders,
            drafts=drafts,
            sync_engine=sync_engine,
        )

    async def start(self) -> None:
        """Open storage, sweep expired drafts, start monitoring and replay."""
        if self.started:
            return
        async with LogContext(logger, "Starting offline data layer"):
            await asyncio.to_thread(self.local_db.initialize)
            swept = await self._open_drafts()
            if swept:
                logger.info(f"Removed {swept} expired drafts")

            if isinstance(self.probe, ConnectionManager):
                self.probe.start_monitoring()
            for collection in (self.prescriptions, self.reminders):
                collection.coordinator.start_watchdog()

            await self.sync_engine.start()
        self.started = True

    @error_boundary(default_return=0)
    async def _open_drafts(self) -> int:
        """Load drafts and sweep expired ones; a failed sweep does not block startup."""
        return await self.drafts.init()

    async def close(self) -> None:
        """Stop background tasks and close the database."""
        await self.sync_engine.stop()
        for collection in (self.prescriptions, self.reminders):
            await collection.coordinator.stop_watchdog()
        if isinstance(self.probe, ConnectionManager):
            await self.probe.stop_monitoring()
        self.local_db.close()
        self.started = False
        logger.info("Offline data layer closed")

    @property
    def is_online(self) -> bool:
        """Last known status when the probe is a ConnectionManager."""
        return bool(getattr(self.probe, "is_online", True))

    def get_status_display(self, owner_id: str) -> Dict[str, Any]:
        """Combined status of every component for one user."""
        status: Dict[str, Any] = {
            "prescriptions": self.prescriptions.get_status_display(owner_id),
            "reminders": self.reminders.get_status_display(owner_id),
            "drafts": self.drafts.get_statistics(),
            "sync": self.sync_engine.get_status_display(),
        }
        if isinstance(self.probe, ConnectionManager):
            status["connection"] = self.probe.get_status_display()
        return status
