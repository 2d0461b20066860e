# =============================================================================
# mymeds_core/offline/mutation_guard.py
# Optimistic Mutations with Rollback
# =============================================================================
"""
OptimisticMutationGuard - runs toggle/delete style changes through the
coordinator: local apply, remote confirmation, rollback on failure.

Every Mutation declares its safety class:
- OPTIMISTIC: the change is shown immediately (record tagged pending)
- SERVER_VALIDATED: nothing changes until the remote agrees; the record is
  tagged syncing so the UI can show a blocking state

While offline, optimistic mutations are applied locally and queued in the
MutationQueue for the SyncEngine to replay; server-validated ones fail with
OfflineError. Queued changes keep their order: once back online they are
replayed before the next mutation of the same collection goes out.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

from mymeds_core.domain.models import SyncStatus
from mymeds_core.errors import MutationError, MyMedsError, OfflineError, RecordNotFoundError
from mymeds_core.offline.connection_manager import ConnectivityProbe, is_reachable
from mymeds_core.offline.fetch_coordinator import BackgroundFetchCoordinator, LoadOutcome
from mymeds_core.offline.local_database import LocalDatabase

logger = logging.getLogger(__name__)


class MutationSafety(Enum):
    """Whether a mutation may be shown before the remote confirms it."""
    OPTIMISTIC = "optimistic"
    SERVER_VALIDATED = "server_validated"


class MutationOperation(Enum):
    UPDATE = "update"
    DELETE = "delete"


# Returns the changed record, or None to drop it from the collection
LocalTransform = Callable[[Any], Optional[Any]]
RemoteCall = Callable[[], Awaitable[Any]]
ReplayHandler = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class Mutation:
    """One state-changing intent against a single record."""
    name: str
    record_id: str
    safety: MutationSafety
    local_transform: LocalTransform
    remote_call: RemoteCall
    operation: MutationOperation = MutationOperation.UPDATE
    patch: Dict[str, Any] = field(default_factory=dict)  # replayed when queued offline


class MutationStatus(Enum):
    APPLIED = "applied"     # Remote confirmed
    QUEUED = "queued"       # Offline; waiting for replay


@dataclass(frozen=True)
class MutationOutcome:
    status: MutationStatus
    records: Tuple[Any, ...]


# =============================================================================
# OFFLINE QUEUE
# =============================================================================

@dataclass(frozen=True)
class QueuedMutation:
    id: int
    operation: MutationOperation
    namespace: str
    owner_id: str
    record_id: Optional[str]
    patch: Dict[str, Any]
    attempts: int = 0
    created_at: Optional[str] = None


class MutationQueue:
    """
    Persistent FIFO of mutations made while offline (sync_queue table).

    An entry stays pending until it is replayed, refused by the remote, or
    has failed max_retries times.
    """

    def __init__(self, local_db: LocalDatabase, max_retries: int = 3):
        self._local_db = local_db
        self.max_retries = max_retries

    async def enqueue(
        self,
        operation: MutationOperation,
        namespace: str,
        owner_id: str,
        record_id: Optional[str],
        patch: Dict[str, Any],
    ) -> int:
        entry_id = await asyncio.to_thread(
            self._local_db.queue_mutation, operation.value, namespace, owner_id, record_id, patch
        )
        logger.info(f"Queued {operation.value} of {namespace}/{record_id} for replay (entry {entry_id})")
        return entry_id

    async def pending(self, limit: Optional[int] = None) -> List[QueuedMutation]:
        """Pending entries, oldest first; every one of them when limit is None."""
        rows = await asyncio.to_thread(self._local_db.get_pending_sync, -1 if limit is None else limit)
        return [
            QueuedMutation(
                id=row["id"],
                operation=MutationOperation(row["operation"]),
                namespace=row["namespace"],
                owner_id=row["owner_id"],
                record_id=row["record_id"],
                patch=row["data"],
                attempts=row["attempts"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def mark_synced(self, entry_id: int) -> None:
        await asyncio.to_thread(self._local_db.mark_synced, entry_id)

    async def mark_failed(self, entry_id: int, error: str) -> bool:
        """
        Record a failed replay attempt.

        Returns:
            True when the entry has used up its retries
        """
        status = await asyncio.to_thread(self._local_db.mark_sync_failed, entry_id, error, self.max_retries)
        return status == "failed"

    async def mark_rejected(self, entry_id: int, error: str) -> None:
        await asyncio.to_thread(self._local_db.mark_sync_rejected, entry_id, error)

    async def pending_count(self) -> int:
        return await asyncio.to_thread(self._local_db.get_sync_count, "pending")

    async def failed_count(self) -> int:
        return await asyncio.to_thread(self._local_db.get_sync_count, "failed")


# =============================================================================
# GUARD
# =============================================================================

def _record_id(record: Any) -> str:
    return str(getattr(record, "id"))


def _tagged(record: Any, status: SyncStatus) -> Any:
    if hasattr(record, "with_changes"):
        return record.with_changes(sync_status=status)
    return record


class OptimisticMutationGuard:
    """
    Usage:
        outcome = await guard.apply("u1", Mutation(
            name="toggle",
            record_id=reminder.id,
            safety=MutationSafety.OPTIMISTIC,
            local_transform=lambda r: r.with_changes(is_active=not r.is_active),
            remote_call=lambda: repository.mutate_record("u1", reminder.id, patch),
            patch=patch,
        ))
    """

    def __init__(
        self,
        coordinator: BackgroundFetchCoordinator,
        probe: ConnectivityProbe,
        queue: Optional[MutationQueue] = None,
    ):
        self.coordinator = coordinator
        self._probe = probe
        self._queue = queue
        self._replay_handler: Optional[ReplayHandler] = None

    def set_replay_handler(self, handler: Optional[ReplayHandler]) -> None:
        """
        Install the replay run before an online mutation while changes made
        offline are still queued; called with the owner id while the
        owner's mutation lock is held.
        """
        self._replay_handler = handler

    async def apply(self, owner_id: str, mutation: Mutation) -> MutationOutcome:
        """
        Apply a mutation to one record of owner_id's collection.

        Changes queued offline go first: they are replayed before the new
        mutation, and an optimistic mutation is queued behind any that stay
        pending.

        Raises:
            RecordNotFoundError: the record is not in the published collection
            OfflineError: offline and the mutation cannot be queued
            MutationError: queued changes are still pending and the mutation
                needs the server
            MyMedsError: the remote failed; the collection was rolled back
        """
        if not isinstance(mutation.safety, MutationSafety):
            raise TypeError(f"Mutation '{mutation.name}' must declare a MutationSafety")

        async with self.coordinator.mutation_lock(owner_id):
            async with self.coordinator.hold(owner_id):
                online = await is_reachable(self._probe)
                if online and self.coordinator.queued_changes(owner_id):
                    await self._replay_queued(owner_id)

                before = self.coordinator.current(owner_id)
                if not any(_record_id(r) == mutation.record_id for r in before):
                    raise RecordNotFoundError(
                        f"{self.coordinator.namespace} record {mutation.record_id} is not loaded",
                        record_id=mutation.record_id,
                        operation=mutation.name,
                    )

                if not online:
                    return await self._apply_queued(owner_id, mutation)
                if self.coordinator.queued_changes(owner_id):
                    return await self._apply_behind_queue(owner_id, mutation)

                if mutation.safety is MutationSafety.OPTIMISTIC:
                    self.coordinator.apply_local(owner_id, self._transformer(mutation, SyncStatus.PENDING))
                else:
                    self.coordinator.apply_local(owner_id, self._tagger(mutation.record_id, SyncStatus.SYNCING))

                try:
                    await mutation.remote_call()
                except Exception as e:
                    error = e if isinstance(e, MyMedsError) else MutationError(
                        f"{mutation.name} failed: {e}",
                        record_id=mutation.record_id,
                        operation=mutation.name,
                    )
                    logger.warning(f"{mutation.name} of {mutation.record_id} failed, rolling back: {error}")
                    self.coordinator.restore(owner_id, before)
                    await self.coordinator.reconcile(owner_id)
                    if error is e:
                        raise
                    raise error from e

                if mutation.operation is MutationOperation.DELETE:
                    self.coordinator.invalidate(owner_id)

                result = await self.coordinator.reconcile(owner_id)
                if result.outcome is not LoadOutcome.REFRESHED:
                    # Confirmed remotely but not re-fetched; show the confirmed value
                    confirmed = self._transformer(mutation, SyncStatus.SYNCED)(list(before))
                    self.coordinator.restore(owner_id, self.coordinator.merge(confirmed))

                logger.info(f"{mutation.name} of {self.coordinator.namespace}/{mutation.record_id} confirmed")
                return MutationOutcome(MutationStatus.APPLIED, self.coordinator.current(owner_id))

    async def _replay_queued(self, owner_id: str) -> None:
        if self._replay_handler is None:
            return
        try:
            await self._replay_handler(owner_id)
        except Exception as e:
            logger.warning(f"Replay of queued {self.coordinator.namespace} changes failed: {e}")

    async def _apply_behind_queue(self, owner_id: str, mutation: Mutation) -> MutationOutcome:
        if mutation.safety is MutationSafety.SERVER_VALIDATED:
            raise MutationError(
                f"{mutation.name} must wait until queued {self.coordinator.namespace} changes are synced",
                record_id=mutation.record_id,
                operation=mutation.name,
            )
        logger.info(f"{mutation.name} of {mutation.record_id} queued behind unsynced changes")
        return await self._apply_queued(owner_id, mutation)

    async def _apply_queued(self, owner_id: str, mutation: Mutation) -> MutationOutcome:
        if mutation.safety is MutationSafety.SERVER_VALIDATED:
            raise OfflineError(
                f"{mutation.name} needs the server and the device is offline",
                details={"record_id": mutation.record_id, "operation": mutation.name},
            )
        if self._queue is None:
            raise OfflineError(f"{mutation.name} cannot be queued while offline")

        await self._queue.enqueue(
            mutation.operation,
            self.coordinator.namespace,
            owner_id,
            mutation.record_id,
            mutation.patch,
        )
        self.coordinator.acquire_queued_hold(owner_id)
        snapshot = self.coordinator.apply_local(owner_id, self._transformer(mutation, SyncStatus.PENDING))
        return MutationOutcome(MutationStatus.QUEUED, snapshot.records)

    @staticmethod
    def _transformer(mutation: Mutation, status: SyncStatus) -> Callable[[List[Any]], List[Any]]:
        def transform(records: List[Any]) -> List[Any]:
            result = []
            for record in records:
                if _record_id(record) != mutation.record_id:
                    result.append(record)
                    continue
                changed = mutation.local_transform(record)
                if changed is not None:
                    result.append(_tagged(changed, status))
            return result
        return transform

    @staticmethod
    def _tagger(record_id: str, status: SyncStatus) -> Callable[[List[Any]], List[Any]]:
        def transform(records: List[Any]) -> List[Any]:
            return [_tagged(r, status) if _record_id(r) == record_id else r for r in records]
        return transform
