# =============================================================================
# mymeds_core/offline/synced_collection.py
# One Domain Collection Bound to the Offline Engine
# =============================================================================
"""
SyncedCollection - composes TtlCache + BackgroundFetchCoordinator +
ConnectivityProbe + OptimisticMutationGuard for one record type.

Subclasses provide the namespace, the record codec and the sort policy, and
add their domain mutations on top of apply().
"""

from __future__ import annotations
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar
import logging

from mymeds_core.errors import FetchError
from mymeds_core.offline.connection_manager import ConnectivityProbe
from mymeds_core.offline.fetch_coordinator import (
    BackgroundFetchCoordinator,
    CancellationToken,
    ErrorCallback,
    LoadResult,
    SnapshotCallback,
    Subscription,
    SyncMetadata,
)
from mymeds_core.offline.local_database import LocalDatabase
from mymeds_core.offline.mutation_guard import Mutation, MutationOutcome, MutationQueue, OptimisticMutationGuard
from mymeds_core.offline.ttl_cache import TtlCache
from mymeds_core.remote.repository import CollectionRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncedCollection(Generic[T]):
    """
    Read/mutate contract the screens use for one collection.

    Usage:
        prescriptions.subscribe("u1", render, token=screen_token)
        result = await prescriptions.load("u1")
        if result.outcome is LoadOutcome.FAILED_NO_CACHE:
            show_retry(result.error.user_message)
    """

    def __init__(
        self,
        cache: TtlCache,
        repository: CollectionRepository,
        probe: ConnectivityProbe,
        decode: Callable[[Dict[str, Any]], T],
        sort_key: Optional[Callable[[T], Any]] = None,
        timeout: timedelta = timedelta(seconds=15),
        inflight_cap: timedelta = timedelta(minutes=2),
        local_db: Optional[LocalDatabase] = None,
        queue: Optional[MutationQueue] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.repository = repository
        self._decode = decode
        self._sort_key = sort_key
        self.coordinator: BackgroundFetchCoordinator[T] = BackgroundFetchCoordinator(
            cache,
            self._fetch_records,
            probe,
            merge=self.sort,
            timeout=timeout,
            inflight_cap=inflight_cap,
            local_db=local_db,
            monotonic=monotonic,
        )
        self.guard = OptimisticMutationGuard(self.coordinator, probe, queue=queue)

    @property
    def namespace(self) -> str:
        return self.cache.namespace

    def sort(self, records: Sequence[T]) -> List[T]:
        if self._sort_key is None:
            return list(records)
        return sorted(records, key=self._sort_key)

    async def _fetch_records(self, owner_id: str) -> List[T]:
        rows = await self.repository.fetch_collection(owner_id)
        try:
            return [self._decode(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(
                f"Remote returned a malformed {self.namespace} record: {e}",
                cache_key=self.cache.key_for(owner_id),
            ) from e

    # =========================================================================
    # READ CONTRACT
    # =========================================================================

    async def load(self, owner_id: str, force_refresh: bool = False) -> LoadResult[T]:
        return await self.coordinator.load(owner_id, force_refresh=force_refresh)

    def current(self, owner_id: str) -> Tuple[T, ...]:
        """Last published value (synchronous)."""
        return self.coordinator.current(owner_id)

    def subscribe(
        self,
        owner_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> Subscription:
        return self.coordinator.subscribe(owner_id, on_snapshot, on_error=on_error, token=token)

    def metadata(self, owner_id: str) -> SyncMetadata:
        return self.coordinator.metadata(owner_id)

    def find(self, owner_id: str, record_id: str) -> Optional[T]:
        for record in self.current(owner_id):
            if str(getattr(record, "id")) == record_id:
                return record
        return None

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def apply(self, owner_id: str, mutation: Mutation) -> MutationOutcome:
        return await self.guard.apply(owner_id, mutation)

    def get_status_display(self, owner_id: str) -> Dict[str, Any]:
        return self.coordinator.get_status_display(owner_id)
