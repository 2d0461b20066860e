# =============================================================================
# mymeds_core/remote/supabase_repository.py
# Supabase-backed Collection Repository
# =============================================================================
"""
SupabaseRepository - CollectionRepository over one Supabase table.

Table layout expected:
    id            text primary key
    <owner column> text (user id, default "user_id")
    ...record fields as produced by the domain to_dict()

The supabase client is synchronous; every call runs in a worker thread so
the event loop is never blocked.
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from mymeds_core.config import EngineSettings
from mymeds_core.errors import FetchError, MutationError, RecordNotFoundError
from mymeds_core.logging import get_logger

logger = get_logger(__name__)

# PostgREST caps a single response at 1000 rows
PAGE_SIZE = 1000

# Columns the table holds that are not part of the cached record
LOCAL_ONLY_FIELDS = ("sync_status",)


def create_supabase_client(settings: EngineSettings) -> Optional[Client]:
    """
    Build a Supabase client from settings.

    Returns:
        Client instance, or None when url/key are not configured
    """
    if not settings.supabase_configured:
        logger.info("Supabase credentials not configured; remote repositories disabled")
        return None
    return create_client(settings.supabase_url, settings.supabase_key)


class SupabaseRepository:
    """
    Usage:
        client = create_supabase_client(settings)
        prescriptions_repo = SupabaseRepository(client, "prescriptions")
        rows = await prescriptions_repo.fetch_collection("u1")
    """

    def __init__(self, client: Client, table: str, owner_column: str = "user_id"):
        self.client = client
        self.table = table
        self.owner_column = owner_column

    async def fetch_collection(self, owner_id: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_all, owner_id)

    def _fetch_all(self, owner_id: str) -> List[Dict[str, Any]]:
        """Fetch every row of one owner with pagination past the 1000 row limit."""
        all_records: List[Dict[str, Any]] = []
        offset = 0

        try:
            while True:
                response = (
                    self.client
                    .table(self.table)
                    .select("*")
                    .eq(self.owner_column, owner_id)
                    .order("id")
                    .range(offset, offset + PAGE_SIZE - 1)
                    .execute()
                )

                if not response.data:
                    break

                all_records.extend(response.data)

                if len(response.data) < PAGE_SIZE:
                    break

                offset += PAGE_SIZE
        except Exception as e:
            raise FetchError(f"Error fetching {self.table}: {e}", details={"table": self.table}) from e

        logger.debug(f"Fetched {len(all_records)} rows from {self.table} for {owner_id}")
        return [self._to_record(row) for row in all_records]

    def _to_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in row.items() if k != self.owner_column}

    async def mutate_record(self, owner_id: str, record_id: str, patch: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self._update, owner_id, record_id, patch)

    def _update(self, owner_id: str, record_id: str, patch: Dict[str, Any]) -> bool:
        data = {k: v for k, v in patch.items() if k not in LOCAL_ONLY_FIELDS and k != "id"}
        try:
            response = (
                self.client
                .table(self.table)
                .update(data)
                .eq("id", record_id)
                .eq(self.owner_column, owner_id)
                .execute()
            )
        except Exception as e:
            raise MutationError(
                f"Error updating {self.table}: {e}",
                record_id=record_id,
                operation="update",
            ) from e

        if not response.data:
            raise RecordNotFoundError(
                f"No {self.table} row {record_id} for this user",
                record_id=record_id,
                operation="update",
            )
        return True

    async def delete_record(self, owner_id: str, record_id: str) -> bool:
        return await asyncio.to_thread(self._delete, owner_id, record_id)

    def _delete(self, owner_id: str, record_id: str) -> bool:
        try:
            response = (
                self.client
                .table(self.table)
                .delete()
                .eq("id", record_id)
                .eq(self.owner_column, owner_id)
                .execute()
            )
        except Exception as e:
            raise MutationError(
                f"Error deleting from {self.table}: {e}",
                record_id=record_id,
                operation="delete",
            ) from e
        return bool(response.data)
