# =============================================================================
# mymeds_core/offline/__init__.py
# Offline-First Data Layer for MyMeds
# =============================================================================
"""
Offline-First Data Layer

Screens read collections through a cache-first coordinator and write through
an optimistic mutation guard; unsubmitted forms live in the DraftStore.

Architecture:
------------

    screen ──subscribe/load──► SyncedCollection ──mutate──► OptimisticMutationGuard
                                     │                              │
                                     ▼                              ▼
                      BackgroundFetchCoordinator ◄──────── MutationQueue (offline)
                          │            │                            │
                          ▼            ▼                            ▼
                      TtlCache   ConnectivityProbe            SyncEngine (replay)
                          │
                          ▼
                    LocalDatabase (SQLite) ◄── DraftStore

Usage:
------
from mymeds_core.offline.registry import OfflineRegistry

registry = OfflineRegistry.create(settings, prescriptions_repo, reminders_repo)
await registry.start()
registry.prescriptions.subscribe(user_id, render, token=screen_token)
await registry.prescriptions.load(user_id)
"""

from mymeds_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionType,
    ConnectivityProbe,
    is_reachable,
)

from mymeds_core.offline.local_database import LocalDatabase

from mymeds_core.offline.ttl_cache import (
    CacheRecord,
    TtlCache,
    make_cache_key,
)

from mymeds_core.offline.draft_payloads import (
    DraftPayload,
    DraftType,
    NfcDraftPayload,
    OcrDraftPayload,
    parse_draft_payload,
)

from mymeds_core.offline.draft_store import (
    Draft,
    DraftSession,
    DraftStore,
    generate_draft_id,
)

from mymeds_core.offline.fetch_coordinator import (
    BackgroundFetchCoordinator,
    CancellationToken,
    CollectionSnapshot,
    LoadOutcome,
    LoadResult,
    SnapshotSource,
    Subscription,
    SyncMetadata,
)

from mymeds_core.offline.mutation_guard import (
    Mutation,
    MutationOperation,
    MutationOutcome,
    MutationQueue,
    MutationSafety,
    MutationStatus,
    OptimisticMutationGuard,
)

from mymeds_core.offline.synced_collection import SyncedCollection

from mymeds_core.offline.sync_engine import SyncEngine, SyncState

__all__ = [
    # Connectivity
    "ConnectionManager",
    "ConnectionState",
    "ConnectionType",
    "ConnectivityProbe",
    "is_reachable",
    # Storage
    "LocalDatabase",
    "CacheRecord",
    "TtlCache",
    "make_cache_key",
    # Drafts
    "DraftPayload",
    "DraftType",
    "NfcDraftPayload",
    "OcrDraftPayload",
    "parse_draft_payload",
    "Draft",
    "DraftSession",
    "DraftStore",
    "generate_draft_id",
    # Reads
    "BackgroundFetchCoordinator",
    "CancellationToken",
    "CollectionSnapshot",
    "LoadOutcome",
    "LoadResult",
    "SnapshotSource",
    "Subscription",
    "SyncMetadata",
    # Writes
    "Mutation",
    "MutationOperation",
    "MutationOutcome",
    "MutationQueue",
    "MutationSafety",
    "MutationStatus",
    "OptimisticMutationGuard",
    "SyncedCollection",
    "SyncEngine",
    "SyncState",
]
