# =============================================================================
# mymeds_core/offline/draft_store.py
# Persistent Store for Unsubmitted Forms
# =============================================================================
"""
DraftStore - durable staging area for prescription forms that have not been
confirmed by the remote yet.

Features:
- SQLite persistence (drafts survive process restarts)
- Age-based sweep (drafts untouched for 7 days are dropped)
- Capacity limit evicting the least recently modified draft
- Image staging directory owned by the store
- Storage failures reported as a failed ServiceResult, never raised
- DraftSession: debounced writer used by one form
"""

from __future__ import annotations
import asyncio
import json
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from mymeds_core.errors import DraftPersistenceError, safe_execute
from mymeds_core.offline.draft_payloads import DraftPayload, DraftType, parse_draft_payload
from mymeds_core.offline.local_database import LocalDatabase
from mymeds_core.services import ServiceResult

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_id_lock = threading.Lock()
_last_id_millis = 0


def generate_draft_id(prefix: Union[str, DraftType]) -> str:
    """
    Build "<prefix>_<epoch-millis>".

    Ids are strictly increasing within a process, so two drafts created in the
    same millisecond still get distinct ids.
    """
    global _last_id_millis
    if isinstance(prefix, DraftType):
        prefix = prefix.value
    with _id_lock:
        millis = max(int(time.time() * 1000), _last_id_millis + 1)
        _last_id_millis = millis
    return f"{prefix}_{millis}"


@dataclass
class Draft:
    """A persisted, not-yet-submitted form."""
    id: str
    data: Dict[str, Any]
    image_paths: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_modified: datetime = field(default_factory=datetime.now)

    @property
    def draft_type(self) -> str:
        return self.id.partition("_")[0]

    def age(self, now: datetime) -> timedelta:
        return now - self.last_modified


class DraftStore:
    """
    Draft persistence for one authoring user.

    Usage:
        store = DraftStore(local_db, settings.drafts_dir)
        await store.init()
        result = await store.save_draft("ocr_1718000000000", {"doctor": "Dr. Ruiz"})
        if not result:
            notify(result.error)   # non-fatal, keep going
    """

    def __init__(
        self,
        local_db: LocalDatabase,
        drafts_dir: Path,
        expiry: timedelta = timedelta(days=7),
        max_drafts: int = 10,
        clock: Optional[Clock] = None,
    ):
        self._local_db = local_db
        self.drafts_dir = Path(drafts_dir)
        self.expiry = expiry
        self.max_drafts = max_drafts
        self._clock = clock or datetime.now
        self._drafts: Dict[str, Draft] = {}
        self._write_lock = asyncio.Lock()
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def init(self) -> int:
        """
        Load persisted drafts and sweep expired ones.

        Returns:
            Number of drafts swept
        """
        await asyncio.to_thread(self.drafts_dir.mkdir, parents=True, exist_ok=True)
        if not self._loaded:
            rows = await asyncio.to_thread(self._local_db.get_all_drafts)
            self._drafts = {
                row["id"]: Draft(
                    id=row["id"],
                    data=row["data"],
                    image_paths=row["image_paths"],
                    created_at=row["created_at"],
                    last_modified=row["last_modified"],
                )
                for row in rows
            }
            self._loaded = True
            logger.info(f"DraftStore loaded {len(self._drafts)} drafts from {self._local_db.db_path}")
        return await self.cleanup_expired()

    async def cleanup_expired(self) -> int:
        """Drop drafts not modified within the expiry window."""
        now = self._clock()
        expired = [draft_id for draft_id, draft in self._drafts.items() if draft.age(now) > self.expiry]
        for draft_id in expired:
            await self.remove_draft(draft_id)
        if expired:
            logger.info(f"Swept {len(expired)} drafts older than {self.expiry.days} days")
        return len(expired)

    # =========================================================================
    # DRAFT OPERATIONS
    # =========================================================================

    async def save_draft(
        self,
        draft_id: str,
        data: Dict[str, Any],
        image_paths: Optional[List[str]] = None,
    ) -> ServiceResult:
        """
        Upsert a draft and persist it.

        Returns:
            ServiceResult.ok(Draft) or a failed result describing the storage error
        """
        try:
            async with self._write_lock:
                draft = await self._save(draft_id, data, image_paths)
        except DraftPersistenceError as e:
            logger.error(f"Failed to save draft {draft_id}: {e}")
            return ServiceResult.from_exception(e)

        logger.info(f"Saved draft {draft_id} ({len(draft.data)} fields, {len(draft.image_paths)} images)")
        return ServiceResult.ok(draft)

    async def _save(self, draft_id: str, data: Dict[str, Any], image_paths: Optional[List[str]]) -> Draft:
        try:
            # Detached JSON copy; later edits by the caller do not leak in
            snapshot = json.loads(json.dumps(data))
        except (TypeError, ValueError) as e:
            raise DraftPersistenceError(f"Draft data is not serializable: {e}", draft_id=draft_id) from e

        now = self._clock()
        existing = self._drafts.get(draft_id)
        draft = Draft(
            id=draft_id,
            data=snapshot,
            image_paths=[str(p) for p in (image_paths or [])],
            created_at=existing.created_at if existing else now,
            last_modified=now,
        )

        try:
            await asyncio.to_thread(
                self._local_db.upsert_draft,
                draft.id,
                draft.draft_type,
                draft.data,
                draft.image_paths,
                draft.created_at,
                draft.last_modified,
            )
        except Exception as e:
            raise DraftPersistenceError(f"Could not write draft: {e}", draft_id=draft_id) from e

        self._drafts[draft_id] = draft

        # Evict only once the new draft is stored
        if existing is None and len(self._drafts) > self.max_drafts:
            try:
                await self._evict_oldest(keep=draft_id)
            except DraftPersistenceError as e:
                logger.warning(f"Draft capacity ({self.max_drafts}) exceeded, eviction failed: {e}")
        return draft

    async def _evict_oldest(self, keep: str) -> None:
        oldest = min((d for d in self._drafts.values() if d.id != keep), key=lambda d: d.last_modified)
        logger.info(f"Draft capacity ({self.max_drafts}) reached, evicting {oldest.id}")
        await self.remove_draft(oldest.id)

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        return self._drafts.get(draft_id)

    def has_draft(self, draft_id: str) -> bool:
        return draft_id in self._drafts

    @property
    def draft_count(self) -> int:
        return len(self._drafts)

    def get_all_draft_ids(self) -> List[str]:
        """Most recently modified first."""
        drafts = sorted(self._drafts.values(), key=lambda d: d.last_modified, reverse=True)
        return [d.id for d in drafts]

    def get_payload(self, draft_id: str) -> Optional[DraftPayload]:
        """Typed view of a draft, validated for resuming into a form."""
        draft = self.get_draft(draft_id)
        return parse_draft_payload(draft) if draft is not None else None

    def list_payloads(self) -> List[DraftPayload]:
        """Resumable drafts, newest first; drafts that fail validation are left out."""
        payloads = []
        for draft_id in self.get_all_draft_ids():
            payload = safe_execute(
                parse_draft_payload,
                self._drafts[draft_id],
                error_message=f"Draft {draft_id} cannot be resumed",
            )
            if payload is not None:
                payloads.append(payload)
        return payloads

    async def remove_draft(self, draft_id: str) -> bool:
        """
        Delete a draft and the image files the store staged for it.

        Raises:
            DraftPersistenceError: the database row could not be deleted
        """
        draft = self._drafts.pop(draft_id, None)
        try:
            deleted = await asyncio.to_thread(self._local_db.delete_draft, draft_id)
        except Exception as e:
            if draft is not None:
                self._drafts[draft_id] = draft
            raise DraftPersistenceError(f"Could not delete draft: {e}", draft_id=draft_id) from e

        if draft is not None:
            await asyncio.to_thread(self._delete_images, draft.image_paths)
            logger.info(f"Removed draft {draft_id}")
        return deleted or draft is not None

    def _delete_images(self, image_paths: List[str]) -> None:
        root = self.drafts_dir.resolve()
        for image_path in image_paths:
            path = Path(image_path).resolve()
            # Only files staged by save_image belong to the store
            if root not in path.parents:
                continue
            try:
                path.unlink(missing_ok=True)
                logger.debug(f"Deleted draft image: {path}")
            except OSError as e:
                logger.warning(f"Could not delete draft image {path}: {e}")

    async def clear_all(self) -> int:
        draft_ids = list(self._drafts)
        for draft_id in draft_ids:
            await self.remove_draft(draft_id)
        logger.info(f"Cleared {len(draft_ids)} drafts")
        return len(draft_ids)

    # =========================================================================
    # IMAGES
    # =========================================================================

    async def save_image(self, draft_id: str, source_path: Union[str, Path]) -> str:
        """
        Copy a picture into the store's directory.

        Returns:
            Path of the staged copy, to pass in save_draft(image_paths=...)
        """
        source = Path(source_path)
        millis = int(self._clock().timestamp() * 1000)
        target = self.drafts_dir / f"{draft_id}_{millis}{source.suffix}"
        try:
            await asyncio.to_thread(self.drafts_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, source, target)
        except OSError as e:
            raise DraftPersistenceError(f"Could not stage image {source}: {e}", draft_id=draft_id) from e
        logger.debug(f"Staged image for {draft_id}: {target}")
        return str(target)

    def get_statistics(self) -> Dict[str, Any]:
        """Summary for the pending-prescriptions screen."""
        drafts = list(self._drafts.values())
        return {
            "total_drafts": len(drafts),
            "max_drafts": self.max_drafts,
            "total_images": sum(len(d.image_paths) for d in drafts),
            "oldest_draft": min((d.last_modified for d in drafts), default=None),
            "newest_draft": max((d.last_modified for d in drafts), default=None),
            "by_type": {
                draft_type: sum(1 for d in drafts if d.draft_type == draft_type)
                for draft_type in sorted({d.draft_type for d in drafts})
            },
            "directory": str(self.drafts_dir),
        }


# =============================================================================
# FORM SESSION
# =============================================================================

class DraftSession:
    """
    Debounced draft writer bound to one open form.

    Keystrokes only update memory; the draft is written on flush(), which the
    form calls on field blur and when the screen is disposed. Nothing is
    written until at least one field holds a meaningful value.

    Usage:
        session = DraftSession(store, DraftType.OCR)
        session.update_field("doctor", "Dr. Ruiz")
        await session.flush()          # on blur
        ...
        await session.complete()       # after the remote accepted the form
    """

    def __init__(
        self,
        store: DraftStore,
        draft_type: DraftType,
        draft_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        image_paths: Optional[List[str]] = None,
    ):
        self.store = store
        self.draft_type = draft_type
        self.draft_id = draft_id or generate_draft_id(draft_type)
        self._fields: Dict[str, Any] = {k: v for k, v in (data or {}).items() if k != "type"}
        self._image_paths: List[str] = list(image_paths or [])
        self._dirty = False
        self._closed = False

    @classmethod
    def resume(cls, store: DraftStore, draft_id: str) -> DraftSession:
        """
        Reopen a stored draft; its payload is validated first.

        Raises:
            KeyError: no such draft
            DraftValidationError: the data does not fit its draft type
        """
        draft = store.get_draft(draft_id)
        if draft is None:
            raise KeyError(draft_id)
        payload = parse_draft_payload(draft)
        return cls(store, payload.draft_type, draft_id=draft.id, data=payload.to_data(), image_paths=draft.image_paths)

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def data(self) -> Dict[str, Any]:
        return {**self._fields, "type": self.draft_type.value}

    @property
    def image_paths(self) -> List[str]:
        return list(self._image_paths)

    def update_field(self, name: str, value: Any) -> None:
        """
        Raises:
            ValueError: name is "type"; the draft type is fixed by the session
        """
        if name == "type":
            raise ValueError("The draft type cannot be changed through a form field")
        if self._fields.get(name) != value:
            self._fields[name] = value
            self._dirty = True

    def attach_image(self, path: str) -> None:
        self._image_paths.append(str(path))
        self._dirty = True

    def has_meaningful_content(self) -> bool:
        return bool(self._image_paths) or any(
            value not in (None, "", [], {}) for value in self._fields.values()
        )

    async def flush(self) -> Optional[ServiceResult]:
        """
        Write the draft if something changed.

        Returns:
            The save result, or None when nothing needed writing
        """
        if self._closed or not self._dirty or not self.has_meaningful_content():
            return None
        result = await self.store.save_draft(self.draft_id, self.data, self._image_paths)
        if result:
            self._dirty = False
        return result

    async def complete(self) -> None:
        """The form was submitted; the draft is no longer needed."""
        await self._close()

    async def discard(self) -> None:
        """User explicitly threw the draft away."""
        await self._close()

    async def _close(self) -> None:
        self._closed = True
        try:
            await self.store.remove_draft(self.draft_id)
        except DraftPersistenceError as e:
            # The submission already went through; the sweep drops the leftover
            logger.warning(f"Draft {self.draft_id} could not be removed: {e}")
