"""
Per-user history of recently accessed notes.

The history is stored as a JSON list on the user record. Every operation reads
the whole collection, turns it into a dict keyed by note id, applies one
change and writes the whole list back. Nothing is cached between calls.

Reads also migrate entries whose id is an old LZ-String compressed id to the
canonical base64url form. Migration is per entry and best effort: an id that
cannot be converted is kept as it is.

By default two concurrent writers for the same user race and the later write
wins. With ``serialize_writes=True`` each user's read-modify-write cycles are
queued behind a per-user asyncio lock instead.
"""

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from .codec import (LegacyIdError, check_note_id_valid, decompress_legacy_id, encode_note_id,
                    looks_legacy_encoded)
from .domain import BadRequestError, HistoryEntry, Note, NotFoundError, StorageError
from .note_info import parse_note_info
from .services import AuthService, Storage
from .utils import now_ms

logger = logging.getLogger(__name__)

History = Dict[str, HistoryEntry]


def entry_from_note(note: Note) -> HistoryEntry:
    return HistoryEntry(id=encode_note_id(note.id), text=note.title, time=int(note.updated_at), tags=note.tags)


def parse_history_blob(blob: str) -> List[HistoryEntry]:
    """Deserialize a stored history list, skipping items without an id."""
    try:
        items = json.loads(blob)
    except ValueError as e:
        logger.error("stored history is not valid JSON: %s", e)
        raise StorageError("Stored history is corrupt")
    if not isinstance(items, list):
        logger.error("stored history is not a list")
        raise StorageError("Stored history is corrupt")
    entries = []
    for item in items:
        if isinstance(item, dict) and item.get("id"):
            entries.append(HistoryEntry.from_dict(item))
        else:
            logger.warning("dropping malformed history item: %r", item)
    return entries


def migrate_legacy_ids(entries: Iterable[HistoryEntry]) -> None:
    """Rewrite LZ-String compressed ids to canonical ids in place."""
    for entry in entries:
        if not looks_legacy_encoded(entry.id):
            continue
        try:
            internal = decompress_legacy_id(entry.id).lower()
            if check_note_id_valid(internal):
                entry.id = encode_note_id(internal)
                entry.tags = list(entry.tags)
        except LegacyIdError:
            logger.warning("cannot decode legacy history id %r, keeping it", entry.id)
        except Exception:
            logger.exception("migrating history id %r failed", entry.id)


def to_map(entries: Iterable[HistoryEntry]) -> History:
    return {entry.id: entry for entry in entries}


def to_list(history: History) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in history.values()]


def parse_pinned(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    raise BadRequestError("pinned must be 'true' or 'false'")


class HistoryStore:
    """Reads and mutates a user's history collection."""

    def __init__(self, auth: AuthService, store: Storage, serialize_writes: bool = False):
        self.auth = auth
        self.store = store
        self.serialize_writes = serialize_writes
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiting: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _writing(self, user_id: str):
        if not self.serialize_writes:
            yield
            return
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiting[user_id] = self._waiting.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiting[user_id] -= 1
            if not self._waiting[user_id]:
                del self._waiting[user_id]
                del self._locks[user_id]

    async def _assemble(self, user_id: str, parent_id: Optional[str] = None) -> Optional[History]:
        """
        Build the keyed history for a user, or None if the user does not exist.

        A user whose history was never written gets one seeded from their notes.
        With parent_id, only entries for notes inside that folder are kept.
        """
        user = await asyncio.to_thread(self.auth.find_user, user_id)
        if user is None:
            return None

        scope = None
        if user.history is None:
            notes = await asyncio.to_thread(self.store.find_notes, user_id, parent_id)
            entries = [entry_from_note(note) for note in notes]
        else:
            entries = parse_history_blob(user.history)
            if parent_id is not None:
                notes = await asyncio.to_thread(self.store.find_notes, user_id, parent_id)
                scope = {encode_note_id(note.id) for note in notes}

        migrate_legacy_ids(entries)
        if scope is not None:
            entries = [entry for entry in entries if entry.id in scope]
        logger.debug("read history success: %s", user_id)
        return to_map(entries)

    async def _persist(self, user_id: str, history: History) -> int:
        blob = json.dumps(to_list(history))
        return await asyncio.to_thread(self.auth.set_history, user_id, blob)

    async def get(self, user_id: str, parent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        history = await self._assemble(user_id, parent_id)
        if history is None:
            raise NotFoundError("History not found")
        return to_list(history)

    async def replace_all(self, user_id: str, entries: Iterable[Union[HistoryEntry, Dict[str, Any]]]) -> int:
        """Overwrite the whole history with entries; prior state is discarded."""
        history = to_map(e if isinstance(e, HistoryEntry) else HistoryEntry.from_dict(e) for e in entries)
        async with self._writing(user_id):
            return await self._persist(user_id, history)

    async def upsert_on_access(self, user_id: Optional[str], note_id: Optional[str],
                               content: Optional[str], time: Optional[int] = None) -> None:
        """
        Record that a user opened or edited a note.

        Silently does nothing when an argument is missing. Storage failures
        are logged, never raised.
        """
        if not user_id or not note_id or content is None:
            return
        try:
            async with self._writing(user_id):
                history = await self._assemble(user_id)
                if history is None:
                    return
                entry = history.setdefault(note_id, HistoryEntry(note_id))
                info = parse_note_info(content)
                entry.text = info.title
                entry.tags = info.tags
                entry.time = time if time is not None else now_ms()
                await self._persist(user_id, history)
        except StorageError as e:
            logger.error("update history failed: %s", e)

    async def set_pinned(self, user_id: str, note_id: str, pinned: Any) -> None:
        async with self._writing(user_id):
            history = await self._assemble(user_id)
            if history is None or note_id not in history:
                raise NotFoundError("History entry not found")
            history[note_id].pinned = parse_pinned(pinned)
            await self._persist(user_id, history)

    async def delete_one(self, user_id: str, note_id: str) -> None:
        async with self._writing(user_id):
            history = await self._assemble(user_id)
            if history is None:
                raise NotFoundError("History not found")
            history.pop(note_id, None)
            await self._persist(user_id, history)

    async def delete_all(self, user_id: str) -> None:
        async with self._writing(user_id):
            await self._persist(user_id, {})
