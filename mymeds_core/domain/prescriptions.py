# =============================================================================
# mymeds_core/domain/prescriptions.py
# Prescriptions Collection
# =============================================================================

from __future__ import annotations
import time
from datetime import timedelta
from typing import Any, Callable, List, Optional, Tuple

from mymeds_core.config import EngineSettings
from mymeds_core.domain.models import Prescription, prescription_sort_key
from mymeds_core.errors import RecordNotFoundError
from mymeds_core.offline.connection_manager import ConnectivityProbe
from mymeds_core.offline.local_database import LocalDatabase
from mymeds_core.offline.mutation_guard import Mutation, MutationOutcome, MutationQueue, MutationSafety
from mymeds_core.offline.synced_collection import SyncedCollection
from mymeds_core.offline.ttl_cache import Clock, TtlCache
from mymeds_core.remote.repository import CollectionRepository

NAMESPACE = "prescriptions"


def encode_prescriptions(records: List[Prescription]) -> List[dict]:
    return [r.to_dict() for r in records]


def decode_prescriptions(rows: List[dict]) -> List[Prescription]:
    return [Prescription.from_dict(row) for row in rows]


class PrescriptionsCollection(SyncedCollection[Prescription]):
    """Prescriptions of one user, active first then newest first."""

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
    ) -> PrescriptionsCollection:
        settings = settings or EngineSettings()
        cache = TtlCache(
            NAMESPACE,
            settings.prescriptions_ttl,
            local_db=local_db,
            encoder=encode_prescriptions,
            decoder=decode_prescriptions,
            clock=clock,
        )
        return cls(
            cache,
            repository,
            probe,
            decode=Prescription.from_dict,
            sort_key=prescription_sort_key,
            timeout=settings.timeout_for(NAMESPACE),
            inflight_cap=settings.inflight_cap,
            local_db=local_db,
            queue=queue,
            monotonic=monotonic,
        )

    def active(self, owner_id: str) -> Tuple[Prescription, ...]:
        return tuple(p for p in self.current(owner_id) if p.active)

    async def set_active(self, owner_id: str, prescription_id: str, active: bool) -> MutationOutcome:
        """Mark a prescription active/finished; shown immediately, rolled back on failure."""
        patch = {"active": active}

        async def remote_call() -> Any:
            if not await self.repository.mutate_record(owner_id, prescription_id, patch):
                raise RecordNotFoundError(
                    f"Prescription {prescription_id} not found remotely",
                    record_id=prescription_id,
                    operation="set_active",
                )

        return await self.apply(owner_id, Mutation(
            name="set_active",
            record_id=prescription_id,
            safety=MutationSafety.OPTIMISTIC,
            local_transform=lambda p: p.with_changes(active=active),
            remote_call=remote_call,
            patch=patch,
        ))
