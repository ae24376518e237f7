from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional

from .crypto import decrypt_text, encrypt_text, fingerprint
from .errors import AuthenticationError, InvalidInputError, PrivateNoteError, ReadOnlyStoreError, StoreUnavailableError
from .store import RecordStore, StoredNote

log = logging.getLogger("privatenote.repository")

MAX_TITLE_LENGTH = 1000


class SaveOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NOTHING_TO_DELETE = "nothing_to_delete"


@dataclass(frozen=True)
class LoadResult:
    found: bool
    content: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class SaveResult:
    outcome: SaveOutcome
    note_id: Optional[str] = None
    timestamp: Optional[int] = None


def now_ms() -> int:
    return int(time.time() * 1000)


def _is_encodable(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def validate_title(title: object) -> str:
    """Return the trimmed title, or raise InvalidInputError."""
    if not isinstance(title, str):
        raise InvalidInputError("Title must be a string")
    title = title.strip()
    if not title:
        raise InvalidInputError("Title is empty")
    if len(title) > MAX_TITLE_LENGTH:
        raise InvalidInputError(f"Title exceeds {MAX_TITLE_LENGTH} characters")
    if not _is_encodable(title):
        raise InvalidInputError("Title contains unpaired surrogate characters")
    return title


class FingerprintLocks:
    """One asyncio.Lock per fingerprint, dropped once nobody holds or awaits it.

    Must be used from a single event loop.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, fp: str) -> AsyncIterator[None]:
        lock = self._locks.get(fp)
        if lock is None:
            lock = self._locks[fp] = asyncio.Lock()
        self._users[fp] = self._users.get(fp, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[fp] -= 1
            if not self._users[fp]:
                del self._users[fp]
                del self._locks[fp]

    def __len__(self) -> int:
        return len(self._locks)


@contextmanager
def _store_errors(op: str) -> Iterator[None]:
    try:
        yield
    except PrivateNoteError:
        raise
    except Exception as e:
        log.error("Record store failed", exc_info=True, extra={"event": "store_error", "extra_data": {"op": op}})
        raise StoreUnavailableError(f"Record store failed during {op}") from e


def _newest(matches: List[StoredNote]) -> Optional[StoredNote]:
    if not matches:
        return None
    return max(matches, key=lambda n: (n.timestamp, n.id))


class NoteRepository:
    """Title-keyed note protocol over an injected RecordStore."""

    def __init__(self, store: RecordStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self._clock = clock
        self._locks = FingerprintLocks()

    async def _find(self, fp: str) -> List[StoredNote]:
        with _store_errors("find"):
            matches = await self.store.find_by_fingerprint(fp)
        if len(matches) > 1:
            log.warning(
                "Duplicate records for fingerprint",
                extra={"event": "duplicate_fingerprint", "extra_data": {"fp": fp[:12], "count": len(matches)}},
            )
        return matches

    async def load(self, title: str) -> LoadResult:
        title = validate_title(title)
        fp = fingerprint(title)
        async with self._locks.hold(fp):
            note = _newest(await self._find(fp))
        if note is None:
            log.info("Note not found", extra={"event": "note_not_found", "extra_data": {"fp": fp[:12]}})
            return LoadResult(found=False)
        try:
            content = await asyncio.to_thread(decrypt_text, note.content, title)
        except AuthenticationError:
            log.warning("Note failed authentication", extra={"event": "note_auth_failed", "extra_data": {"fp": fp[:12], "note_id": note.id}})
            raise
        log.info("Note loaded", extra={"event": "note_loaded", "extra_data": {"fp": fp[:12], "note_id": note.id}})
        return LoadResult(found=True, content=content, timestamp=note.timestamp)

    async def save(self, title: str, content: str) -> SaveResult:
        title = validate_title(title)
        if not isinstance(content, str):
            raise InvalidInputError("Content must be a string")
        if not _is_encodable(content):
            raise InvalidInputError("Content contains unpaired surrogate characters")
        if getattr(self.store, "read_only", False):
            raise ReadOnlyStoreError("Imported notes are read-only")
        fp = fingerprint(title)

        if not content:
            async with self._locks.hold(fp):
                matches = await self._find(fp)
                if not matches:
                    return SaveResult(SaveOutcome.NOTHING_TO_DELETE)
                with _store_errors("delete"):
                    for note in matches:
                        await self.store.delete(note.id)
            log.info("Note deleted", extra={"event": "note_deleted", "extra_data": {"fp": fp[:12], "count": len(matches)}})
            return SaveResult(SaveOutcome.DELETED, note_id=_newest(matches).id)

        record = await asyncio.to_thread(encrypt_text, content, title)
        async with self._locks.hold(fp):
            matches = await self._find(fp)
            current = _newest(matches)
            timestamp = self._clock()
            if current is None:
                with _store_errors("insert"):
                    note_id = await self.store.insert(record, fp, timestamp)
                outcome = SaveOutcome.CREATED
            else:
                note_id = current.id
                with _store_errors("update"):
                    await self.store.update(note_id, record, fp, timestamp)
                    for stale in matches:
                        if stale.id != note_id:
                            await self.store.delete(stale.id)
                outcome = SaveOutcome.UPDATED
        log.info("Note saved", extra={"event": f"note_{outcome.value}", "extra_data": {"fp": fp[:12], "note_id": note_id}})
        return SaveResult(outcome, note_id=note_id, timestamp=timestamp)

    async def export(self) -> Dict[str, Dict[str, Any]]:
        with _store_errors("export"):
            return await self.store.export()
