from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import math
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .errors import MalformedInputError, ReadOnlyStoreError, StoreUnavailableError

log = logging.getLogger("privatenote.store")

STORE_FILENAME = "notes.json"
STORE_VERSION = 1


@dataclass(frozen=True)
class StoredNote:
    id: str
    content: str
    hashed_title: str
    timestamp: int

    def to_record(self) -> Dict[str, Any]:
        return {"content": self.content, "hashedTitle": self.hashed_title, "timestamp": self.timestamp}

    @classmethod
    def from_record(cls, note_id: str, record: Dict[str, Any]) -> "StoredNote":
        return cls(
            id=note_id,
            content=record["content"],
            hashed_title=record["hashedTitle"],
            timestamp=int(record["timestamp"]),
        )


class RecordStore(Protocol):
    """Keyed record store the repository talks to.

    ``find_by_fingerprint`` returns every match so the caller can enforce
    one-record-per-fingerprint itself; backends do not.
    """

    read_only: bool

    async def find_by_fingerprint(self, fp: str) -> List[StoredNote]: ...

    async def insert(self, content: str, hashed_title: str, timestamp: int) -> str: ...

    async def update(self, note_id: str, content: str, hashed_title: str, timestamp: int) -> None: ...

    async def delete(self, note_id: str) -> None: ...

    async def export(self) -> Dict[str, Dict[str, Any]]: ...


def gen_id() -> str:
    return secrets.token_hex(8)  # 16 hex chars


def is_record(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    ts = value.get("timestamp")
    return (
        isinstance(value.get("content"), str)
        and isinstance(value.get("hashedTitle"), str)
        and isinstance(ts, (int, float))
        and not isinstance(ts, bool)
        and math.isfinite(ts)
    )


def _matches(records: Dict[str, Dict[str, Any]], fp: str) -> List[StoredNote]:
    return [StoredNote.from_record(k, r) for k, r in records.items() if is_record(r) and r["hashedTitle"] == fp]


def _allocate_id(records: Dict[str, Dict[str, Any]]) -> str:
    for _ in range(20):
        note_id = gen_id()
        if note_id not in records:
            return note_id
    raise StoreUnavailableError("Failed to allocate note id")


# ---------- Collection import ----------
def parse_collection(data: Any) -> Dict[str, Dict[str, Any]]:
    """Accept an exported collection, either ``{"notes": {...}}`` or a flat mapping.

    Entries that do not look like a persisted note are skipped.
    """
    if isinstance(data, dict) and isinstance(data.get("notes"), (dict, list)):
        data = data["notes"]
    if isinstance(data, list):
        data = {str(i): v for i, v in enumerate(data)}
    if not isinstance(data, dict):
        raise MalformedInputError("Collection must be a JSON object")

    records: Dict[str, Dict[str, Any]] = {}
    skipped = 0
    for key, value in data.items():
        if not is_record(value):
            skipped += 1
            continue
        records[str(key)] = {
            "content": value["content"],
            "hashedTitle": value["hashedTitle"],
            "timestamp": int(value["timestamp"]),
        }
    if skipped:
        log.warning("Skipped invalid collection entries", extra={"event": "import_skipped", "extra_data": {"skipped": skipped}})
    return records


class _Exportable(Protocol):
    async def export(self) -> Dict[str, Dict[str, Any]]: ...


async def export_collection(source: _Exportable) -> Dict[str, Any]:
    notes = await source.export()
    return {"version": STORE_VERSION, "exported": int(time.time() * 1000), "notes": notes}


# ---------- In-memory ----------
class MemoryRecordStore:
    read_only = False

    def __init__(self, records: Optional[Dict[str, Dict[str, Any]]] = None):
        self._records: Dict[str, Dict[str, Any]] = dict(records or {})

    async def find_by_fingerprint(self, fp: str) -> List[StoredNote]:
        return _matches(self._records, fp)

    async def insert(self, content: str, hashed_title: str, timestamp: int) -> str:
        note_id = _allocate_id(self._records)
        self._records[note_id] = {"content": content, "hashedTitle": hashed_title, "timestamp": timestamp}
        return note_id

    async def update(self, note_id: str, content: str, hashed_title: str, timestamp: int) -> None:
        if note_id not in self._records:
            raise StoreUnavailableError(f"Note {note_id} does not exist")
        self._records[note_id] = {"content": content, "hashedTitle": hashed_title, "timestamp": timestamp}

    async def delete(self, note_id: str) -> None:
        self._records.pop(note_id, None)

    async def export(self) -> Dict[str, Dict[str, Any]]:
        return {k: dict(v) for k, v in self._records.items()}


class SnapshotRecordStore(MemoryRecordStore):
    """Read-only view over an imported collection."""

    read_only = True

    async def insert(self, content: str, hashed_title: str, timestamp: int) -> str:
        raise ReadOnlyStoreError("Imported notes are read-only")

    async def update(self, note_id: str, content: str, hashed_title: str, timestamp: int) -> None:
        raise ReadOnlyStoreError("Imported notes are read-only")

    async def delete(self, note_id: str) -> None:
        raise ReadOnlyStoreError("Imported notes are read-only")


# ---------- JSON file ----------
def write_json_atomic(path: Path, payload: Dict[str, Any]) -> None:
    """Replace ``path`` with ``payload`` so readers see either the old or the new document."""
    data = (json.dumps(payload, ensure_ascii=False, indent=2) + "\n").encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    with NamedTemporaryFile("wb", dir=str(path.parent), prefix=f".{path.name}.", delete=False) as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


@contextmanager
def _exclusive(lock_path: Path) -> Iterator[None]:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    # Append mode so concurrent openers never truncate each other's lock file.
    with open(lock_path, "a") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class JsonFileRecordStore:
    """All notes in one JSON document: ``{"version": 1, "notes": {id: record}}``."""

    read_only = False

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / STORE_FILENAME
        self._lock_path = Path(data_dir) / ".notes.lock"

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StoreUnavailableError(f"Store file {self.path} is not valid UTF-8 JSON") from e
        notes = data.get("notes") if isinstance(data, dict) else None
        if not isinstance(notes, dict):
            raise StoreUnavailableError(f"Store file {self.path} has no notes mapping")
        return notes

    def _write(self, notes: Dict[str, Dict[str, Any]]) -> None:
        write_json_atomic(self.path, {"version": STORE_VERSION, "notes": notes})

    def _run(self, fn, *args):
        try:
            with _exclusive(self._lock_path):
                return fn(*args)
        except OSError as e:
            log.error("Store access failed", exc_info=True, extra={"event": "store_error", "extra_data": {"path": str(self.path)}})
            raise StoreUnavailableError(f"Store file {self.path} is not accessible") from e

    def _find(self, fp: str) -> List[StoredNote]:
        return _matches(self._read(), fp)

    def _insert(self, content: str, hashed_title: str, timestamp: int) -> str:
        notes = self._read()
        note_id = _allocate_id(notes)
        notes[note_id] = {"content": content, "hashedTitle": hashed_title, "timestamp": timestamp}
        self._write(notes)
        return note_id

    def _update(self, note_id: str, content: str, hashed_title: str, timestamp: int) -> None:
        notes = self._read()
        if note_id not in notes:
            raise StoreUnavailableError(f"Note {note_id} does not exist")
        notes[note_id] = {"content": content, "hashedTitle": hashed_title, "timestamp": timestamp}
        self._write(notes)

    def _delete(self, note_id: str) -> None:
        notes = self._read()
        if notes.pop(note_id, None) is not None:
            self._write(notes)

    async def find_by_fingerprint(self, fp: str) -> List[StoredNote]:
        return await asyncio.to_thread(self._run, self._find, fp)

    async def insert(self, content: str, hashed_title: str, timestamp: int) -> str:
        return await asyncio.to_thread(self._run, self._insert, content, hashed_title, timestamp)

    async def update(self, note_id: str, content: str, hashed_title: str, timestamp: int) -> None:
        await asyncio.to_thread(self._run, self._update, note_id, content, hashed_title, timestamp)

    async def delete(self, note_id: str) -> None:
        await asyncio.to_thread(self._run, self._delete, note_id)

    async def export(self) -> Dict[str, Dict[str, Any]]:
        return await asyncio.to_thread(self._run, self._read)
