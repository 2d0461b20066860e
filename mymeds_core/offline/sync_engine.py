# =============================================================================
# mymeds_core/offline/sync_engine.py
# Replay of Mutations Made While Offline
# =============================================================================
"""
SyncEngine - pushes queued offline mutations to the remote once the device
is back online, then reconciles the affected collections.

Features:
- FIFO replay from the persistent MutationQueue, one collection at a time
  under its mutation lock
- Replay on demand ahead of a new online mutation of the same collection
- Replay triggered by the connection manager on reconnect
- Business-rule rejections dropped (the reconcile restores server truth)
- Transient failures retried up to max_retries
- Sync status tracking and callbacks
"""

from __future__ import annotations
import asyncio
import functools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from mymeds_core.errors import ErrorContext, MutationRejectedError, RecordNotFoundError
from mymeds_core.logging import LogContext
from mymeds_core.offline.connection_manager import ConnectionState, ConnectivityProbe, is_reachable
from mymeds_core.offline.mutation_guard import MutationOperation, MutationQueue, QueuedMutation
from mymeds_core.offline.synced_collection import SyncedCollection

logger = logging.getLogger(__name__)


@dataclass
class SyncState:
    """Current sync state."""
    is_syncing: bool = False
    last_sync: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    pending_count: int = 0
    failed_count: int = 0
    total_synced: int = 0


class SyncEngine:
    """
    Usage:
        engine = SyncEngine(probe, queue, [prescriptions, reminders])
        await engine.start()      # holds keys with queued changes, replays if online
        await engine.sync_now()   # force an immediate replay
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        queue: MutationQueue,
        collections: List[SyncedCollection],
    ):
        self._probe = probe
        self._queue = queue
        self._collections: Dict[str, SyncedCollection] = {c.namespace: c for c in collections}
        for collection in collections:
            collection.guard.set_replay_handler(functools.partial(self.replay_for_mutation, collection.namespace))
        self._state = SyncState()
        self._callbacks: List[Callable[[SyncState], None]] = []
        self._sync_lock = asyncio.Lock()
        self._pending_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state.is_syncing

    async def start(self) -> None:
        """
        Re-hold collections that still have queued changes from an earlier run
        and replay them if the remote is reachable.
        """
        if self._started:
            return
        self._started = True

        for entry in await self._queue.pending():
            collection = self._collections.get(entry.namespace)
            if collection is not None:
                collection.coordinator.acquire_queued_hold(entry.owner_id)

        if hasattr(self._probe, "register_callback"):
            self._probe.register_callback(self._on_connection_change)

        self._state.pending_count = await self._queue.pending_count()
        logger.info(f"SyncEngine started with {self._state.pending_count} queued mutations")
        await self.sync_now()

    async def stop(self) -> None:
        if hasattr(self._probe, "unregister_callback"):
            self._probe.unregister_callback(self._on_connection_change)
        if self._pending_task is not None:
            await asyncio.gather(self._pending_task, return_exceptions=True)
            self._pending_task = None
        self._started = False

    def _on_connection_change(self, state: ConnectionState) -> None:
        """Handle connection status changes."""
        if not state.is_online:
            return
        logger.info("Connection restored, replaying queued mutations")
        if self._pending_task is None or self._pending_task.done():
            self._pending_task = asyncio.get_running_loop().create_task(self.sync_now())

    async def sync_now(self) -> bool:
        """
        Replay queued mutations if online.

        Returns:
            True when nothing is left pending
        """
        if not await is_reachable(self._probe, fresh=True, if_unknown=False):
            logger.debug("Cannot sync: offline")
            return False
        return await self._perform_sync()

    async def _perform_sync(self) -> bool:
        if self._sync_lock.locked():
            return False

        async with self._sync_lock:
            self._state.is_syncing = True
            self._state.last_sync = datetime.now()
            self._notify_callbacks()

            success_count = 0
            fail_count = 0

            try:
                pending = await self._queue.pending()
                if pending:
                    logger.info(f"Replaying {len(pending)} queued mutations")

                # One collection at a time, in order of its oldest entry
                for namespace, owner_id in dict.fromkeys((e.namespace, e.owner_id) for e in pending):
                    synced, failed = await self._replay_collection(namespace, owner_id)
                    success_count += synced
                    fail_count += failed

                await self._refresh_counts(success_count)
                if fail_count == 0:
                    self._state.last_sync_success = datetime.now()

                if pending:
                    logger.info(f"Replay complete: {success_count} synced, {fail_count} failed")
                return self._state.pending_count == 0
            finally:
                self._state.is_syncing = False
                self._notify_callbacks()

    async def _replay_collection(self, namespace: str, owner_id: str) -> Tuple[int, int]:
        collection = self._collections.get(namespace)
        if collection is None:
            return await self._replay_entries(None, namespace, owner_id)
        async with collection.coordinator.mutation_lock(owner_id):
            return await self._replay_entries(collection, namespace, owner_id)

    async def replay_for_mutation(self, namespace: str, owner_id: str) -> None:
        """
        Replay one collection's queue ahead of a new online mutation.

        The guard calls this with the owner's mutation lock already held.
        """
        synced, _ = await self._replay_entries(self._collections[namespace], namespace, owner_id)
        await self._refresh_counts(synced)
        self._notify_callbacks()

    async def _replay_entries(
        self,
        collection: Optional[SyncedCollection],
        namespace: str,
        owner_id: str,
    ) -> Tuple[int, int]:
        """
        Push the pending entries of one collection, oldest first.

        Returns:
            (synced, failed) entry counts
        """
        entries = [e for e in await self._queue.pending() if e.namespace == namespace and e.owner_id == owner_id]
        synced = failed = settled = 0
        blocked = False

        for entry in entries:
            outcome = await self._replay(entry)
            if outcome == "retry":
                # Nothing overtakes an entry left for retry
                failed += 1
                blocked = True
                break
            if outcome == "synced":
                synced += 1
            else:
                failed += 1
            settled += 1

        if collection is not None and settled:
            await self._settle(collection, owner_id, settled, reconcile=not blocked)
        return synced, failed

    async def _refresh_counts(self, synced: int) -> None:
        self._state.total_synced += synced
        self._state.failed_count = await self._queue.failed_count()
        self._state.pending_count = await self._queue.pending_count()

    async def _replay(self, entry: QueuedMutation) -> str:
        """
        Push one queued mutation.

        Returns:
            "synced", "rejected", "given_up" or "retry"
        """
        collection = self._collections.get(entry.namespace)
        if collection is None:
            await self._queue.mark_rejected(entry.id, f"Unknown collection {entry.namespace}")
            return "rejected"

        repository = collection.repository
        try:
            async with LogContext(logger, f"Replaying {entry.operation.value} of {entry.namespace}/{entry.record_id}"):
                if entry.operation is MutationOperation.DELETE:
                    await repository.delete_record(entry.owner_id, entry.record_id)
                elif not await repository.mutate_record(entry.owner_id, entry.record_id, entry.patch):
                    raise RecordNotFoundError(
                        f"{entry.namespace} record {entry.record_id} no longer exists",
                        record_id=entry.record_id,
                        operation=entry.operation.value,
                    )
        except (MutationRejectedError, RecordNotFoundError) as e:
            await self._queue.mark_rejected(entry.id, str(e))
            return "rejected"
        except Exception as e:
            gave_up = await self._queue.mark_failed(entry.id, str(e))
            return "given_up" if gave_up else "retry"

        await self._queue.mark_synced(entry.id)
        return "synced"

    async def _settle(self, collection: SyncedCollection, owner_id: str, count: int, reconcile: bool) -> None:
        """Release the holds of finished entries, then reload server truth."""
        coordinator = collection.coordinator
        for _ in range(count):
            coordinator.release_queued_hold(owner_id)
        if reconcile:
            async with ErrorContext(f"Reconciling {collection.namespace} for {owner_id}"):
                await coordinator.reconcile(owner_id)

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncState], None]) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        return {
            "is_syncing": self._state.is_syncing,
            "last_sync": self._state.last_sync.isoformat() if self._state.last_sync else None,
            "last_success": self._state.last_sync_success.isoformat() if self._state.last_sync_success else None,
            "pending_count": self._state.pending_count,
            "failed_count": self._state.failed_count,
            "total_synced": self._state.total_synced,
        }
