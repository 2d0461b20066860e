# =============================================================================
# mymeds_core/offline/ttl_cache.py
# Keyed Store with Expiry
# =============================================================================
"""
TtlCache - generic keyed store mapping a cache key to a value plus expiry.

Features:
- Expired values are still returned (the caller decides if stale is acceptable)
- Linearizable writes per key (single lock, last write wins)
- Optional write-through to SQLite with lazy hydration after a restart
- Atomic read-modify-write that keeps the record's age (optimistic writes)
- Hit/miss statistics
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Generic, Optional, Set, TypeVar
import logging

from mymeds_core.errors import CacheError
from mymeds_core.offline.local_database import LocalDatabase

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def make_cache_key(namespace: str, owner_id: str) -> str:
    """
    Build the "<collection-name>_<ownerId>" key used by every collection.

    Args:
        namespace: Collection name, e.g. "prescriptions"
        owner_id: User id owning the collection

    Returns:
        Cache key, e.g. "prescriptions_u1"
    """
    if not namespace or not owner_id:
        raise ValueError("namespace and owner_id are required to build a cache key")
    return f"{namespace}_{owner_id}"


@dataclass(frozen=True)
class CacheRecord(Generic[T]):
    """Cached value with its creation time and time-to-live."""
    value: T
    created_at: datetime
    ttl: timedelta

    def remaining_ttl(self, now: datetime) -> timedelta:
        return max(timedelta(0), self.ttl - (now - self.created_at))

    def is_expired(self, now: datetime) -> bool:
        return self.remaining_ttl(now) == timedelta(0)


class TtlCache(Generic[T]):
    """
    One logical cache per collection namespace.

    Usage:
        cache = TtlCache("prescriptions", timedelta(hours=24))
        key = cache.key_for("u1")
        cache.set(key, records)
        records = cache.get(key)          # stale or not
        cache.get_remaining_ttl(key)      # timedelta(0) once expired
    """

    def __init__(
        self,
        namespace: str,
        default_ttl: timedelta,
        local_db: Optional[LocalDatabase] = None,
        encoder: Optional[Callable[[T], Any]] = None,
        decoder: Optional[Callable[[Any], T]] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            namespace: Collection name; prefixes every key
            default_ttl: TTL used when set() gets none
            local_db: Enables persistence when given
            encoder: Turns a value into JSON-safe data for persistence
            decoder: Inverse of encoder
            clock: Source of "now" (injectable for tests)
        """
        if default_ttl <= timedelta(0):
            raise ValueError("default_ttl must be positive")
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._local_db = local_db
        self._encode = encoder or (lambda value: value)
        self._decode = decoder or (lambda data: data)
        self._clock = clock or datetime.now
        self._records: Dict[str, CacheRecord[T]] = {}
        self._known_absent: Set[str] = set()
        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "invalidations": 0}

    def key_for(self, owner_id: str) -> str:
        return make_cache_key(self.namespace, owner_id)

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, key: str) -> Optional[T]:
        """Cached value regardless of expiry, or None when absent."""
        record = self.get_record(key)
        return record.value if record is not None else None

    def get_record(self, key: str) -> Optional[CacheRecord[T]]:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = self._hydrate(key)
            if record is None:
                self._stats["misses"] += 1
                logger.debug(f"Cache miss: {key}")
            else:
                self._stats["hits"] += 1
            return record

    def get_remaining_ttl(self, key: str) -> timedelta:
        """Zero if absent or expired."""
        record = self.get_record(key)
        if record is None:
            return timedelta(0)
        return record.remaining_ttl(self.now())

    def is_expired(self, key: str) -> bool:
        return self.get_remaining_ttl(key) == timedelta(0)

    def _hydrate(self, key: str) -> Optional[CacheRecord[T]]:
        """Load a record persisted by an earlier process run."""
        if self._local_db is None or key in self._known_absent:
            return None

        row = self._local_db.load_cache_record(key)
        if row is None:
            self._known_absent.add(key)
            return None

        try:
            record = CacheRecord(
                value=self._decode(row["value"]),
                created_at=row["created_at"],
                ttl=timedelta(seconds=row["ttl_seconds"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            error = CacheError(f"Dropping unreadable cache record: {e}", cache_key=key)
            logger.warning(str(error))
            self._local_db.delete_cache_record(key)
            self._known_absent.add(key)
            return None

        self._records[key] = record
        logger.debug(f"Cache hydrated from disk: {key}")
        return record

    # =========================================================================
    # WRITES
    # =========================================================================

    def set(self, key: str, value: T, ttl: Optional[timedelta] = None) -> CacheRecord[T]:
        """
        Overwrite the record for key; created_at resets to now.

        Raises:
            ValueError: ttl is negative (zero stores an already expired record)
        """
        if ttl is None:
            ttl = self.default_ttl
        elif ttl < timedelta(0):
            raise ValueError("ttl must not be negative")
        record = CacheRecord(value=value, created_at=self.now(), ttl=ttl)
        with self._lock:
            self._store(key, record)
        return record

    def update(self, key: str, transform: Callable[[T], T]) -> Optional[CacheRecord[T]]:
        """
        Atomically replace the value, keeping created_at and ttl.

        Returns:
            The new record, or None when key is absent (nothing to transform)
        """
        with self._lock:
            current = self._records.get(key) or self._hydrate(key)
            if current is None:
                return None
            record = replace(current, value=transform(current.value))
            self._store(key, record)
            return record

    def _store(self, key: str, record: CacheRecord[T]) -> None:
        self._records[key] = record
        self._known_absent.discard(key)
        self._stats["writes"] += 1
        if self._local_db is not None:
            self._local_db.save_cache_record(
                key,
                self.namespace,
                self._encode(record.value),
                record.created_at,
                record.ttl.total_seconds(),
            )

    def invalidate(self, key: str) -> bool:
        """Remove a record early; the next read misses."""
        with self._lock:
            existed = self._records.pop(key, None) is not None
            if self._local_db is not None:
                existed = self._local_db.delete_cache_record(key) or existed
            self._known_absent.add(key)
            if existed:
                self._stats["invalidations"] += 1
                logger.debug(f"Cache invalidated: {key}")
            return existed

    def cleanup_expired(self) -> int:
        """Drop expired in-memory records; persisted copies stay as offline fallback."""
        now = self.now()
        with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]
        if expired:
            logger.info(f"Evicted {len(expired)} expired records from {self.namespace} memory cache")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._known_absent.clear()
            if self._local_db is not None:
                self._local_db.clear_cache_records(self.namespace)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "namespace": self.namespace,
                "entries": len(self._records),
                "persistent": self._local_db is not None,
                **self._stats,
            }
