# =============================================================================
# mymeds_core/remote/repository.py
# Remote Repository Contract
# =============================================================================
"""
What the offline engine needs from the remote store. Records travel as
plain dicts; collections decode them.
"""

from __future__ import annotations
import asyncio
import copy
from typing import Any, Dict, List, Optional, Protocol


class CollectionRepository(Protocol):
    """Remote store of one collection type."""

    async def fetch_collection(self, owner_id: str) -> List[Dict[str, Any]]:
        ...

    async def mutate_record(self, owner_id: str, record_id: str, patch: Dict[str, Any]) -> bool:
        ...

    async def delete_record(self, owner_id: str, record_id: str) -> bool:
        ...


class InMemoryRepository:
    """
    Deterministic repository for tests and local demos.

    Attributes:
        fetch_calls / mutate_calls / delete_calls: invocation counters
        latency: seconds every call sleeps before answering
        fail_with: exception raised by the next calls while set
    """

    def __init__(self, records: Optional[Dict[str, List[Dict[str, Any]]]] = None, latency: float = 0.0):
        self._records: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(records or {})
        self.latency = latency
        self.fail_with: Optional[BaseException] = None
        self.fetch_calls = 0
        self.mutate_calls = 0
        self.delete_calls = 0

    def seed(self, owner_id: str, records: List[Dict[str, Any]]) -> None:
        self._records[owner_id] = copy.deepcopy(records)

    def records_for(self, owner_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._records.get(owner_id, []))

    async def _answer(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_with is not None:
            raise self.fail_with

    async def fetch_collection(self, owner_id: str) -> List[Dict[str, Any]]:
        self.fetch_calls += 1
        await self._answer()
        return self.records_for(owner_id)

    async def mutate_record(self, owner_id: str, record_id: str, patch: Dict[str, Any]) -> bool:
        self.mutate_calls += 1
        await self._answer()
        for record in self._records.get(owner_id, []):
            if str(record.get("id")) == record_id:
                record.update(copy.deepcopy(patch))
                return True
        return False

    async def delete_record(self, owner_id: str, record_id: str) -> bool:
        self.delete_calls += 1
        await self._answer()
        records = self._records.get(owner_id, [])
        remaining = [r for r in records if str(r.get("id")) != record_id]
        self._records[owner_id] = remaining
        return len(remaining) != len(records)
