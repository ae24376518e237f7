"""Shared fixtures for privatenote tests."""

from __future__ import annotations

import pytest

from privatenote.config import Settings
from privatenote.repository import NoteRepository
from privatenote.server import create_app
from privatenote.store import MemoryRecordStore


class RecordingStore(MemoryRecordStore):
    """MemoryRecordStore that logs every call for assertions."""

    def __init__(self, records=None):
        super().__init__(records)
        self.calls = []

    async def find_by_fingerprint(self, fp):
        self.calls.append(("find", fp))
        return await super().find_by_fingerprint(fp)

    async def insert(self, content, hashed_title, timestamp):
        self.calls.append(("insert", hashed_title))
        return await super().insert(content, hashed_title, timestamp)

    async def update(self, note_id, content, hashed_title, timestamp):
        self.calls.append(("update", note_id))
        await super().update(note_id, content, hashed_title, timestamp)

    async def delete(self, note_id):
        self.calls.append(("delete", note_id))
        await super().delete(note_id)


class Clock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.current = start

    def __call__(self) -> int:
        self.current += 1
        return self.current


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def repo(store, clock):
    return NoteRepository(store, clock=clock)


@pytest.fixture
def app(repo, tmp_path):
    app = create_app(repository=repo, settings=Settings(data_dir=tmp_path))
    app.config["TESTING"] = True
    try:
        yield app
    finally:
        app.extensions["privatenote"]["runner"].close()


@pytest.fixture
def client(app):
    return app.test_client()
