# =============================================================================
# mymeds_core/offline/fetch_coordinator.py
# Cache-First Loading with Background Refresh
# =============================================================================
"""
BackgroundFetchCoordinator - the stampede-safe, cache-first read path of one
collection namespace.

load(owner_id, force_refresh):
1. publish the cached value (expired or not) before any network activity
2. offline and not forced: the cached value is final
3. a fetch already running for the key is joined, never duplicated
4. fetch with the collection timeout; sort/merge, write through to the cache,
   update SyncMetadata, publish
5. on failure keep a published cached value and swallow the error; surface it
   only when there was no cached value
6. the in-flight marker is cleared whatever happens

Features:
- Subscriptions guarded by cancellation tokens (no publish to torn-down screens)
- In-flight fetches survive the cancellation of the caller that started them
- Watchdog clearing in-flight markers older than a cap
- Single-writer helpers for optimistic mutations (apply_local / restore / hold)
"""

from __future__ import annotations
import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, Generic, List, Optional,
    Sequence, Tuple, TypeVar,
)
import logging

from mymeds_core.errors import FetchError, FetchTimeoutError, MyMedsError, OfflineError
from mymeds_core.logging import LogContext
from mymeds_core.offline.connection_manager import ConnectivityProbe, is_reachable
from mymeds_core.offline.local_database import LocalDatabase
from mymeds_core.offline.ttl_cache import TtlCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

FetchFunction = Callable[[str], Awaitable[Sequence[T]]]
MergeFunction = Callable[[Sequence[T]], List[T]]


class SnapshotSource(Enum):
    """Where a published value came from."""
    EMPTY = "empty"             # Nothing cached yet, provisional
    CACHE = "cache"             # Local copy, possibly expired
    REMOTE = "remote"           # Fresh fetch result
    OPTIMISTIC = "optimistic"   # Local change awaiting confirmation


@dataclass(frozen=True)
class CollectionSnapshot(Generic[T]):
    """One published value of a collection."""
    owner_id: str
    records: Tuple[T, ...]
    source: SnapshotSource
    is_stale: bool = False
    published_at: datetime = field(default_factory=datetime.now)


class LoadOutcome(Enum):
    """Simplified result handed to the UI boundary."""
    USING_CACHE = "using_cache"
    REFRESHED = "refreshed"
    FAILED_NO_CACHE = "failed_no_cache"


@dataclass(frozen=True)
class LoadResult(Generic[T]):
    outcome: LoadOutcome
    records: Tuple[T, ...] = ()
    error: Optional[MyMedsError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not LoadOutcome.FAILED_NO_CACHE


@dataclass
class SyncMetadata:
    """Display-only record of the last successful refresh."""
    owner_id: str
    last_sync_at: Optional[datetime] = None
    record_count: int = 0

    def describe_staleness(self, now: datetime) -> str:
        """Text for a "last updated ..." label."""
        if self.last_sync_at is None:
            return "never"
        age = now - self.last_sync_at
        minutes = int(age.total_seconds() // 60)
        if minutes < 1:
            return "just now"
        if minutes < 60:
            return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
        hours = minutes // 60
        if hours < 24:
            return f"{hours} hour{'s' if hours != 1 else ''} ago"
        days = hours // 24
        return f"{days} day{'s' if days != 1 else ''} ago"


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

class CancellationToken:
    """Liveness flag owned by a screen; checked before every publish."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


SnapshotCallback = Callable[[CollectionSnapshot], None]
ErrorCallback = Callable[[MyMedsError], None]


@dataclass
class Subscription:
    owner_id: str
    on_snapshot: SnapshotCallback
    on_error: Optional[ErrorCallback]
    token: CancellationToken

    @property
    def active(self) -> bool:
        return not self.token.is_cancelled

    def cancel(self) -> None:
        self.token.cancel()


@dataclass
class _InFlight:
    task: asyncio.Task
    started_at: float
    reconcile: bool


def _increment(counts: Dict[str, int], key: str) -> None:
    counts[key] = counts.get(key, 0) + 1


def _decrement(counts: Dict[str, int], key: str) -> None:
    remaining = counts.get(key, 0) - 1
    if remaining > 0:
        counts[key] = remaining
    else:
        counts.pop(key, None)


class BackgroundFetchCoordinator(Generic[T]):
    """
    Usage:
        coordinator = BackgroundFetchCoordinator(cache, fetch, probe, merge=sort_records)
        coordinator.subscribe("u1", screen.render, token=screen.token)
        result = await coordinator.load("u1")
    """

    def __init__(
        self,
        cache: TtlCache,
        fetch: FetchFunction,
        probe: ConnectivityProbe,
        merge: Optional[MergeFunction] = None,
        timeout: timedelta = timedelta(seconds=15),
        inflight_cap: timedelta = timedelta(minutes=2),
        local_db: Optional[LocalDatabase] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            cache: Cache of this namespace; the only store the coordinator writes
            fetch: Remote fetch for one owner
            probe: Connectivity probe
            merge: Sort/merge policy applied to fetched and locally changed records
            timeout: Fetch timeout for this collection
            inflight_cap: Age after which an in-flight marker is considered stuck
            local_db: Persists SyncMetadata when given
            monotonic: Clock for in-flight ages (injectable for tests)
        """
        if inflight_cap <= timeout:
            raise ValueError("inflight_cap must be longer than the fetch timeout")
        self.cache = cache
        self.namespace = cache.namespace
        self._fetch = fetch
        self._probe = probe
        self._merge: MergeFunction = merge or list
        self.timeout = timeout
        self.inflight_cap = inflight_cap
        self._local_db = local_db
        self._monotonic = monotonic

        self._inflight: Dict[str, _InFlight] = {}
        self._published: Dict[str, CollectionSnapshot] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._metadata: Dict[str, SyncMetadata] = {}
        self._holds: Dict[str, int] = {}       # scoped, one per running mutation
        self._queued: Dict[str, int] = {}      # one per mutation queued offline
        self._mutation_locks: Dict[str, asyncio.Lock] = {}
        self._watchdog_task: Optional[asyncio.Task] = None
        self._fetch_count = 0

    def key_for(self, owner_id: str) -> str:
        return self.cache.key_for(owner_id)

    @property
    def fetch_count(self) -> int:
        """Remote fetches started so far."""
        return self._fetch_count

    # =========================================================================
    # LOAD
    # =========================================================================

    async def load(self, owner_id: str, force_refresh: bool = False) -> LoadResult[T]:
        """Cache-first load; see the module docstring for the steps."""
        return await self._load(owner_id, force_refresh=force_refresh, reconcile=False)

    async def reconcile(self, owner_id: str) -> LoadResult[T]:
        """
        Forced load issued by a mutation or a replay.

        Publishes through the hold of the running mutation, but never over
        changes still queued for replay.
        """
        return await self._load(owner_id, force_refresh=True, reconcile=True)

    async def _load(self, owner_id: str, force_refresh: bool, reconcile: bool) -> LoadResult[T]:
        key = self.key_for(owner_id)
        self._clear_stale_marker(key)

        record = self.cache.get_record(key)
        if record is not None:
            self._publish(owner_id, record.value, SnapshotSource.CACHE, is_stale=record.is_expired(self.cache.now()))
        elif key not in self._published:
            self._publish(owner_id, [], SnapshotSource.EMPTY)
        has_cache = record is not None
        cached = tuple(record.value) if has_cache else ()

        if self._is_held_key(key) and not force_refresh:
            logger.debug(f"{key} is held by a mutation, serving cache only")
            return LoadResult(LoadOutcome.USING_CACHE, self.current(owner_id))

        if not force_refresh and not await is_reachable(self._probe):
            if has_cache:
                logger.debug(f"Offline, serving cached {key}")
                return LoadResult(LoadOutcome.USING_CACHE, cached)
            error = OfflineError(f"No cached {self.namespace} and device is offline", cache_key=key)
            logger.info(str(error))
            self._notify_error(owner_id, error)
            return LoadResult(LoadOutcome.FAILED_NO_CACHE, (), error)

        try:
            records = await self._join_or_start(owner_id, key, reconcile)
        except Exception as e:
            error = e if isinstance(e, MyMedsError) else FetchError(f"Fetch failed: {e}", cache_key=key)
            if has_cache:
                logger.warning(f"Refresh of {key} failed, keeping cached value: {error}")
                return LoadResult(LoadOutcome.USING_CACHE, self.current(owner_id) or cached)
            logger.error(f"Refresh of {key} failed with nothing cached: {error}")
            self._notify_error(owner_id, error)
            return LoadResult(LoadOutcome.FAILED_NO_CACHE, (), error)

        return LoadResult(LoadOutcome.REFRESHED, tuple(records))

    async def _join_or_start(self, owner_id: str, key: str, reconcile: bool) -> List[T]:
        entry = self._inflight.get(key)

        if entry is not None and reconcile and not entry.reconcile:
            # A fetch started before the mutation may carry pre-mutation data
            await asyncio.wait([entry.task])
            entry = self._inflight.get(key)
            if entry is not None and entry.task.done():
                entry = None

        if entry is None:
            task = asyncio.get_running_loop().create_task(
                self._fetch_and_publish(owner_id, key, reconcile),
                name=f"fetch:{key}",
            )
            entry = _InFlight(task=task, started_at=self._monotonic(), reconcile=reconcile)
            self._inflight[key] = entry
            self._fetch_count += 1
            task.add_done_callback(lambda t, k=key, e=entry: self._on_fetch_done(k, e))
        else:
            logger.debug(f"Joining in-flight fetch for {key}")

        # Shielded: a torn-down caller must not cancel a fetch others share
        return await asyncio.shield(entry.task)

    def _on_fetch_done(self, key: str, entry: _InFlight) -> None:
        if self._inflight.get(key) is entry:
            del self._inflight[key]
        if not entry.task.cancelled():
            # Consumed here so an unawaited failure is not reported as lost
            entry.task.exception()

    async def _fetch_and_publish(self, owner_id: str, key: str, reconcile: bool) -> List[T]:
        seconds = self.timeout.total_seconds()
        async with LogContext(logger, f"Fetching {key}"):
            try:
                fetched = await asyncio.wait_for(self._fetch(owner_id), timeout=seconds)
            except asyncio.TimeoutError as e:
                raise FetchTimeoutError(f"Fetch of {key} timed out", timeout=seconds, cache_key=key) from e

        records = self._merge(fetched)

        if self._queued.get(key) or (self._holds.get(key) and not reconcile):
            logger.debug(f"Discarding fetch result for {key}: local changes are not yet confirmed")
            return list(self.current(owner_id))

        self.cache.set(key, records)
        await self._record_sync(owner_id, key, len(records))
        self._publish(owner_id, records, SnapshotSource.REMOTE)
        return records

    # =========================================================================
    # WATCHDOG
    # =========================================================================

    def _clear_stale_marker(self, key: str) -> None:
        entry = self._inflight.get(key)
        if entry is not None and self._monotonic() - entry.started_at > self.inflight_cap.total_seconds():
            del self._inflight[key]
            logger.warning(f"Cleared stuck in-flight fetch for {key}")

    def sweep_stale_inflight(self) -> int:
        """Clear every in-flight marker older than the cap."""
        keys = list(self._inflight)
        for key in keys:
            self._clear_stale_marker(key)
        return len(keys) - len([key for key in keys if key in self._inflight])

    def start_watchdog(self, interval: Optional[float] = None) -> None:
        if self._watchdog_task is not None and not self._watchdog_task.done():
            return
        interval = interval or self.inflight_cap.total_seconds() / 2
        self._watchdog_task = asyncio.get_running_loop().create_task(
            self._watchdog_loop(interval), name=f"watchdog:{self.namespace}"
        )

    async def stop_watchdog(self) -> None:
        if self._watchdog_task is None:
            return
        self._watchdog_task.cancel()
        try:
            await self._watchdog_task
        except asyncio.CancelledError:
            pass
        self._watchdog_task = None

    async def _watchdog_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep_stale_inflight()

    def is_fetching(self, owner_id: str) -> bool:
        return self.key_for(owner_id) in self._inflight

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    def subscribe(
        self,
        owner_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        token: Optional[CancellationToken] = None,
        replay: bool = True,
    ) -> Subscription:
        """
        Observe one owner's collection.

        Args:
            owner_id: Collection owner
            on_snapshot: Called with every published CollectionSnapshot
            on_error: Called when a load fails with nothing cached
            token: Screen liveness; cancelled subscribers are never called again
            replay: Deliver the last published snapshot immediately
        """
        subscription = Subscription(owner_id, on_snapshot, on_error, token or CancellationToken())
        self._subscribers.setdefault(self.key_for(owner_id), []).append(subscription)

        snapshot = self._published.get(self.key_for(owner_id))
        if replay and snapshot is not None:
            self._deliver(subscription, snapshot)
        return subscription

    def subscriber_count(self, owner_id: str) -> int:
        return sum(1 for s in self._subscribers.get(self.key_for(owner_id), []) if s.active)

    def _publish(
        self,
        owner_id: str,
        records: Sequence[T],
        source: SnapshotSource,
        is_stale: bool = False,
    ) -> CollectionSnapshot:
        key = self.key_for(owner_id)
        snapshot = CollectionSnapshot(
            owner_id=owner_id,
            records=tuple(records),
            source=source,
            is_stale=is_stale,
            published_at=self.cache.now(),
        )
        self._published[key] = snapshot
        logger.debug(f"Publishing {key}: {len(snapshot.records)} records from {source.value}")

        for subscription in list(self._subscribers.get(key, [])):
            if subscription.active:
                self._deliver(subscription, snapshot)
        self._prune(key)
        return snapshot

    def _deliver(self, subscription: Subscription, snapshot: CollectionSnapshot) -> None:
        try:
            subscription.on_snapshot(snapshot)
        except Exception as e:
            logger.error(f"Error in {self.namespace} subscriber: {e}")

    def _notify_error(self, owner_id: str, error: MyMedsError) -> None:
        key = self.key_for(owner_id)
        for subscription in list(self._subscribers.get(key, [])):
            if subscription.active and subscription.on_error is not None:
                try:
                    subscription.on_error(error)
                except Exception as e:
                    logger.error(f"Error in {self.namespace} error callback: {e}")
        self._prune(key)

    def _prune(self, key: str) -> None:
        subscriptions = self._subscribers.get(key)
        if subscriptions:
            self._subscribers[key] = [s for s in subscriptions if s.active]

    def current(self, owner_id: str) -> Tuple[T, ...]:
        """Last published records (synchronous)."""
        snapshot = self._published.get(self.key_for(owner_id))
        return snapshot.records if snapshot is not None else ()

    def last_snapshot(self, owner_id: str) -> Optional[CollectionSnapshot]:
        return self._published.get(self.key_for(owner_id))

    # =========================================================================
    # SYNC METADATA
    # =========================================================================

    async def _record_sync(self, owner_id: str, key: str, count: int) -> None:
        metadata = SyncMetadata(owner_id=owner_id, last_sync_at=self.cache.now(), record_count=count)
        self._metadata[key] = metadata
        if self._local_db is None:
            return
        try:
            await asyncio.to_thread(
                self._local_db.save_sync_metadata, key, owner_id, metadata.last_sync_at, count
            )
        except Exception as e:
            logger.warning(f"Could not persist sync metadata for {key}: {e}")

    def metadata(self, owner_id: str) -> SyncMetadata:
        key = self.key_for(owner_id)
        if key not in self._metadata and self._local_db is not None:
            try:
                row = self._local_db.load_sync_metadata(key)
            except Exception as e:
                logger.warning(f"Could not read sync metadata for {key}: {e}")
                row = None
            if row is not None:
                self._metadata[key] = SyncMetadata(
                    owner_id=owner_id,
                    last_sync_at=row["last_sync_at"],
                    record_count=row["record_count"],
                )
        return self._metadata.get(key, SyncMetadata(owner_id=owner_id))

    # =========================================================================
    # SINGLE-WRITER HELPERS (mutations)
    # =========================================================================

    def mutation_lock(self, owner_id: str) -> asyncio.Lock:
        """Serializes mutations of one owner's collection."""
        return self._mutation_locks.setdefault(self.key_for(owner_id), asyncio.Lock())

    @asynccontextmanager
    async def hold(self, owner_id: str) -> AsyncIterator[None]:
        """
        Keep background fetches from publishing while a mutation runs.

        Entering waits for a fetch already in flight, so the mutation starts
        from the latest published value.
        """
        self.acquire_hold(owner_id)
        try:
            entry = self._inflight.get(self.key_for(owner_id))
            if entry is not None:
                await asyncio.wait([entry.task])
            yield
        finally:
            self.release_hold(owner_id)

    def acquire_hold(self, owner_id: str) -> None:
        _increment(self._holds, self.key_for(owner_id))

    def release_hold(self, owner_id: str) -> None:
        _decrement(self._holds, self.key_for(owner_id))

    def acquire_queued_hold(self, owner_id: str) -> None:
        """One per mutation queued offline; released once it is replayed or dropped."""
        _increment(self._queued, self.key_for(owner_id))

    def release_queued_hold(self, owner_id: str) -> None:
        _decrement(self._queued, self.key_for(owner_id))

    def queued_changes(self, owner_id: str) -> int:
        return self._queued.get(self.key_for(owner_id), 0)

    def is_held(self, owner_id: str) -> bool:
        return self._is_held_key(self.key_for(owner_id))

    def _is_held_key(self, key: str) -> bool:
        return bool(self._holds.get(key) or self._queued.get(key))

    def merge(self, records: Sequence[T]) -> List[T]:
        """Apply this collection's sort/merge policy."""
        return self._merge(records)

    def apply_local(self, owner_id: str, transform: Callable[[List[T]], List[T]]) -> CollectionSnapshot:
        """Write a local change through the cache (keeping its age) and publish it."""
        key = self.key_for(owner_id)
        record = self.cache.update(key, lambda value: self._merge(transform(list(value))))
        if record is None:
            record = self.cache.set(key, self._merge(transform(list(self.current(owner_id)))))
        return self._publish(owner_id, record.value, SnapshotSource.OPTIMISTIC)

    def restore(
        self,
        owner_id: str,
        records: Sequence[T],
        source: SnapshotSource = SnapshotSource.CACHE,
    ) -> CollectionSnapshot:
        """Put back a previously published value (rollback)."""
        key = self.key_for(owner_id)
        values = list(records)
        if self.cache.update(key, lambda _: values) is None:
            self.cache.set(key, values)
        return self._publish(owner_id, values, source)

    def invalidate(self, owner_id: str) -> bool:
        return self.cache.invalidate(self.key_for(owner_id))

    def get_status_display(self, owner_id: str) -> Dict[str, Any]:
        key = self.key_for(owner_id)
        snapshot = self._published.get(key)
        metadata = self.metadata(owner_id)
        return {
            "namespace": self.namespace,
            "cache_key": key,
            "records": len(snapshot.records) if snapshot else 0,
            "source": snapshot.source.value if snapshot else None,
            "is_stale": snapshot.is_stale if snapshot else None,
            "fetching": key in self._inflight,
            "held": self._is_held_key(key),
            "queued_changes": self._queued.get(key, 0),
            "remaining_ttl_seconds": self.cache.get_remaining_ttl(key).total_seconds(),
            "last_sync": metadata.last_sync_at.isoformat() if metadata.last_sync_at else None,
            "last_updated": metadata.describe_staleness(self.cache.now()),
            "record_count": metadata.record_count,
        }
