# =============================================================================
# mymeds_core/offline/local_database.py
# Local SQLite Database for Offline Operations
# =============================================================================
"""
LocalDatabase - SQLite storage backing the offline layer.

Features:
- Automatic schema creation
- Persistent cache records (survive restarts)
- Draft persistence
- Per-collection sync metadata
- Mutation queue for changes made while offline
- Thread-safe operations (one connection per thread)
"""

from __future__ import annotations
import sqlite3
import threading
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class LocalDatabase:
    """
    Local SQLite database for offline data storage.

    Blocking by nature: async callers go through asyncio.to_thread.
    """

    SCHEMA = {
        "cache_records": """
            CREATE TABLE IF NOT EXISTS cache_records (
                cache_key TEXT PRIMARY KEY,
                namespace TEXT NOT NULL,
                value_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                ttl_seconds REAL NOT NULL
            )
        """,
        "sync_metadata": """
            CREATE TABLE IF NOT EXISTS sync_metadata (
                cache_key TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                last_sync_at TEXT NOT NULL,
                record_count INTEGER NOT NULL
            )
        """,
        "drafts": """
            CREATE TABLE IF NOT EXISTS drafts (
                id TEXT PRIMARY KEY,
                draft_type TEXT NOT NULL,
                data_json TEXT NOT NULL,
                image_paths_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                last_modified TEXT NOT NULL
            )
        """,
        "sync_queue": """
            CREATE TABLE IF NOT EXISTS sync_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation TEXT NOT NULL,
                namespace TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                record_id TEXT,
                data_json TEXT,
                created_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                last_attempt TEXT,
                status TEXT DEFAULT 'pending',
                error_message TEXT
            )
        """,
    }

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            connection = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return self._local.connection

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> None:
        """Create the database file and schema."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")

        self._initialized = True
        logger.info(f"Local database initialized at: {self.db_path}")

    def query(self, sql: str, params: Optional[List] = None) -> List[sqlite3.Row]:
        """Execute a raw SQL query."""
        self.initialize()
        conn = self._get_connection()
        cursor = conn.execute(sql, params or [])
        return cursor.fetchall()

    def execute(self, sql: str, params: Optional[List] = None) -> int:
        """Execute a raw SQL statement."""
        self.initialize()
        with self.transaction() as conn:
            cursor = conn.execute(sql, params or [])
            return cursor.rowcount

    # =========================================================================
    # CACHE RECORDS
    # =========================================================================

    def save_cache_record(
        self,
        cache_key: str,
        namespace: str,
        value: Any,
        created_at: datetime,
        ttl_seconds: float,
    ) -> None:
        self.execute(
            """
            INSERT OR REPLACE INTO cache_records (cache_key, namespace, value_json, created_at, ttl_seconds)
            VALUES (?, ?, ?, ?, ?)
            """,
            [cache_key, namespace, json.dumps(value), created_at.isoformat(), ttl_seconds],
        )

    def load_cache_record(self, cache_key: str) -> Optional[Dict[str, Any]]:
        """
        Load one persisted cache record.

        Returns:
            Dict with value, created_at (datetime) and ttl_seconds, or None
        """
        rows = self.query("SELECT * FROM cache_records WHERE cache_key = ?", [cache_key])
        if not rows:
            return None
        row = rows[0]
        return {
            "value": json.loads(row["value_json"]),
            "created_at": datetime.fromisoformat(row["created_at"]),
            "ttl_seconds": row["ttl_seconds"],
        }

    def delete_cache_record(self, cache_key: str) -> bool:
        return self.execute("DELETE FROM cache_records WHERE cache_key = ?", [cache_key]) > 0

    def clear_cache_records(self, namespace: Optional[str] = None) -> int:
        if namespace is None:
            return self.execute("DELETE FROM cache_records")
        return self.execute("DELETE FROM cache_records WHERE namespace = ?", [namespace])

    # =========================================================================
    # SYNC METADATA
    # =========================================================================

    def save_sync_metadata(
        self,
        cache_key: str,
        owner_id: str,
        last_sync_at: datetime,
        record_count: int,
    ) -> None:
        self.execute(
            """
            INSERT OR REPLACE INTO sync_metadata (cache_key, owner_id, last_sync_at, record_count)
            VALUES (?, ?, ?, ?)
            """,
            [cache_key, owner_id, last_sync_at.isoformat(), record_count],
        )

    def load_sync_metadata(self, cache_key: str) -> Optional[Dict[str, Any]]:
        rows = self.query("SELECT * FROM sync_metadata WHERE cache_key = ?", [cache_key])
        if not rows:
            return None
        row = rows[0]
        return {
            "owner_id": row["owner_id"],
            "last_sync_at": datetime.fromisoformat(row["last_sync_at"]),
            "record_count": row["record_count"],
        }

    # =========================================================================
    # DRAFTS
    # =========================================================================

    def upsert_draft(
        self,
        draft_id: str,
        draft_type: str,
        data: Dict[str, Any],
        image_paths: List[str],
        created_at: datetime,
        last_modified: datetime,
    ) -> None:
        self.execute(
            """
            INSERT INTO drafts (id, draft_type, data_json, image_paths_json, created_at, last_modified)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data_json = excluded.data_json,
                image_paths_json = excluded.image_paths_json,
                last_modified = excluded.last_modified
            """,
            [
                draft_id,
                draft_type,
                json.dumps(data),
                json.dumps(list(image_paths)),
                created_at.isoformat(),
                last_modified.isoformat(),
            ],
        )

    def get_all_drafts(self) -> List[Dict[str, Any]]:
        """All persisted drafts, most recently modified first."""
        rows = self.query("SELECT * FROM drafts ORDER BY last_modified DESC")
        return [
            {
                "id": row["id"],
                "draft_type": row["draft_type"],
                "data": json.loads(row["data_json"]),
                "image_paths": json.loads(row["image_paths_json"]),
                "created_at": datetime.fromisoformat(row["created_at"]),
                "last_modified": datetime.fromisoformat(row["last_modified"]),
            }
            for row in rows
        ]

    def delete_draft(self, draft_id: str) -> bool:
        return self.execute("DELETE FROM drafts WHERE id = ?", [draft_id]) > 0

    # =========================================================================
    # SYNC QUEUE MANAGEMENT
    # =========================================================================

    def queue_mutation(
        self,
        operation: str,
        namespace: str,
        owner_id: str,
        record_id: Optional[str],
        data: Dict[str, Any],
    ) -> int:
        """Add a mutation to the sync queue; returns the queue entry id."""
        self.initialize()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_queue (operation, namespace, owner_id, record_id, data_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [operation, namespace, owner_id, record_id, json.dumps(data), datetime.now().isoformat()],
            )
            return cursor.lastrowid

    def get_pending_sync(self, limit: int = 100) -> List[Dict]:
        """Get pending sync operations, oldest first (limit -1: all)."""
        rows = self.query(
            """
            SELECT * FROM sync_queue
            WHERE status = 'pending'
            ORDER BY id ASC
            LIMIT ?
            """,
            [limit],
        )
        return [
            {
                "id": row["id"],
                "operation": row["operation"],
                "namespace": row["namespace"],
                "owner_id": row["owner_id"],
                "record_id": row["record_id"],
                "data": json.loads(row["data_json"]) if row["data_json"] else {},
                "created_at": row["created_at"],
                "attempts": row["attempts"],
            }
            for row in rows
        ]

    def mark_synced(self, sync_id: int) -> None:
        """Mark a sync operation as completed."""
        self.execute("UPDATE sync_queue SET status = 'synced' WHERE id = ?", [sync_id])

    def mark_sync_failed(self, sync_id: int, error: str, max_attempts: int) -> str:
        """
        Record a failed attempt.

        The entry stays pending until it has failed max_attempts times.

        Returns:
            The entry's new status
        """
        self.execute(
            """
            UPDATE sync_queue
            SET attempts = attempts + 1,
                last_attempt = ?,
                error_message = ?,
                status = CASE WHEN attempts + 1 >= ? THEN 'failed' ELSE 'pending' END
            WHERE id = ?
            """,
            [datetime.now().isoformat(), error, max_attempts, sync_id],
        )
        rows = self.query("SELECT status FROM sync_queue WHERE id = ?", [sync_id])
        return rows[0]["status"] if rows else "failed"

    def mark_sync_rejected(self, sync_id: int, error: str) -> None:
        """Drop an operation the remote refused on a business rule."""
        self.execute(
            """
            UPDATE sync_queue
            SET status = 'rejected', last_attempt = ?, error_message = ?
            WHERE id = ?
            """,
            [datetime.now().isoformat(), error, sync_id],
        )

    def get_sync_count(self, status: str = "pending") -> int:
        result = self.query("SELECT COUNT(*) AS count FROM sync_queue WHERE status = ?", [status])
        return result[0]["count"] if result else 0

    def close(self) -> None:
        """Close every connection opened by this instance."""
        with self._connections_lock:
            for connection in self._connections:
                connection.close()
            self._connections.clear()
        self._local = threading.local()
