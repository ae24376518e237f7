"""Find/insert/update/delete protocol keyed by title fingerprint."""

from __future__ import annotations

import asyncio

import pytest

from privatenote.crypto import encrypt_text, fingerprint
from privatenote.errors import (
    AuthenticationError,
    InvalidInputError,
    MalformedInputError,
    ReadOnlyStoreError,
    StoreUnavailableError,
)
from privatenote.repository import NoteRepository, SaveOutcome, validate_title
from privatenote.store import MemoryRecordStore, SnapshotRecordStore, parse_collection


class TestValidateTitle:
    def test_trims_whitespace(self):
        assert validate_title("  groceries \n") == "groceries"

    @pytest.mark.parametrize("title", ["", "   ", "\t\n"])
    def test_rejects_empty(self, title):
        with pytest.raises(InvalidInputError):
            validate_title(title)

    def test_accepts_1000_characters(self):
        assert validate_title("x" * 1000) == "x" * 1000

    def test_rejects_1001_characters(self):
        with pytest.raises(InvalidInputError):
            validate_title("x" * 1001)

    def test_rejects_non_string(self):
        with pytest.raises(InvalidInputError):
            validate_title(None)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_save_then_load(self, repo):
        result = await repo.save("groceries", "milk, eggs")
        assert result.outcome is SaveOutcome.CREATED

        loaded = await repo.load("groceries")
        assert loaded.found is True
        assert loaded.content == "milk, eggs"
        assert loaded.timestamp == result.timestamp

    @pytest.mark.asyncio
    async def test_load_missing_is_not_an_error(self, repo):
        loaded = await repo.load("nonexistent-title-xyz")
        assert loaded.found is False
        assert loaded.content is None

    @pytest.mark.asyncio
    async def test_overlong_title_never_touches_store(self, repo, store):
        with pytest.raises(InvalidInputError):
            await repo.save("x" * 1001, "content")
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_second_save_updates_in_place(self, repo, store):
        first = await repo.save("t", "a")
        second = await repo.save("t", "b")

        assert second.outcome is SaveOutcome.UPDATED
        assert second.note_id == first.note_id
        records = await store.export()
        assert len(records) == 1
        assert (await repo.load("t")).content == "b"

    @pytest.mark.asyncio
    async def test_empty_content_deletes(self, repo, store):
        await repo.save("t", "a")
        result = await repo.save("t", "")

        assert result.outcome is SaveOutcome.DELETED
        assert await store.export() == {}
        assert (await repo.load("t")).found is False

    @pytest.mark.asyncio
    async def test_empty_content_without_note_is_nothing_to_delete(self, repo, store):
        result = await repo.save("t", "")
        assert result.outcome is SaveOutcome.NOTHING_TO_DELETE
        assert [c[0] for c in store.calls] == ["find"]

    @pytest.mark.asyncio
    async def test_whitespace_content_is_saved(self, repo):
        await repo.save("t", "   ")
        assert (await repo.load("t")).content == "   "


class TestProtocol:
    @pytest.mark.asyncio
    async def test_title_is_trimmed_before_hashing(self, repo):
        await repo.save("  groceries  ", "milk")
        assert (await repo.load("groceries")).content == "milk"

    @pytest.mark.asyncio
    async def test_composed_and_decomposed_titles_match(self, repo):
        await repo.save("cafe\u0301", "espresso")
        assert (await repo.load("caf\u00e9")).content == "espresso"

    @pytest.mark.asyncio
    async def test_stored_record_shape(self, repo, store, clock):
        await repo.save("groceries", "milk, eggs")
        [record] = (await store.export()).values()

        assert set(record) == {"content", "hashedTitle", "timestamp"}
        assert record["hashedTitle"] == fingerprint("groceries")
        assert record["timestamp"] == clock.current
        assert "milk" not in record["content"]
        assert "groceries" not in record["content"]

    @pytest.mark.asyncio
    async def test_tampered_record_raises_authentication_error(self):
        fp = fingerprint("t")
        record = encrypt_text("secret", "other title")
        store = MemoryRecordStore({"n1": {"content": record, "hashedTitle": fp, "timestamp": 1}})
        repo = NoteRepository(store)

        with pytest.raises(AuthenticationError):
            await repo.load("t")

    @pytest.mark.asyncio
    async def test_malformed_record_raises(self):
        store = MemoryRecordStore({"n1": {"content": "%%%", "hashedTitle": fingerprint("t"), "timestamp": 1}})
        with pytest.raises(MalformedInputError):
            await NoteRepository(store).load("t")

    @pytest.mark.asyncio
    async def test_concurrent_saves_keep_one_record(self, repo, store):
        results = await asyncio.gather(*(repo.save("shared", f"v{i}") for i in range(5)))

        outcomes = [r.outcome for r in results]
        assert outcomes.count(SaveOutcome.CREATED) == 1
        assert outcomes.count(SaveOutcome.UPDATED) == 4
        assert len(await store.export()) == 1
        assert (await repo.load("shared")).content in {f"v{i}" for i in range(5)}

    @pytest.mark.asyncio
    async def test_locks_are_released(self, repo):
        await asyncio.gather(repo.save("a", "1"), repo.save("b", "2"), repo.load("a"))
        assert len(repo._locks) == 0


class TestDuplicates:
    @pytest.fixture
    def duplicated(self):
        fp = fingerprint("t")
        return MemoryRecordStore({
            "old": {"content": encrypt_text("old", "t"), "hashedTitle": fp, "timestamp": 1},
            "new": {"content": encrypt_text("new", "t"), "hashedTitle": fp, "timestamp": 2},
        })

    @pytest.mark.asyncio
    async def test_load_uses_newest(self, duplicated):
        loaded = await NoteRepository(duplicated).load("t")
        assert loaded.content == "new"
        assert loaded.timestamp == 2

    @pytest.mark.asyncio
    async def test_save_merges_into_newest(self, duplicated):
        result = await NoteRepository(duplicated).save("t", "merged")
        records = await duplicated.export()

        assert result.outcome is SaveOutcome.UPDATED
        assert list(records) == ["new"]

    @pytest.mark.asyncio
    async def test_empty_save_deletes_all(self, duplicated):
        result = await NoteRepository(duplicated).save("t", "")
        assert result.outcome is SaveOutcome.DELETED
        assert await duplicated.export() == {}


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_unexpected_store_error_is_wrapped(self):
        class BrokenStore(MemoryRecordStore):
            async def find_by_fingerprint(self, fp):
                raise RuntimeError("connection reset")

        with pytest.raises(StoreUnavailableError):
            await NoteRepository(BrokenStore()).load("t")

    @pytest.mark.asyncio
    async def test_snapshot_is_read_only(self):
        data = {"notes": {"n1": {"content": encrypt_text("milk", "groceries"), "hashedTitle": fingerprint("groceries"), "timestamp": 5}}}
        repo = NoteRepository(SnapshotRecordStore(parse_collection(data)))

        assert (await repo.load("groceries")).content == "milk"
        with pytest.raises(ReadOnlyStoreError):
            await repo.save("groceries", "bread")
        with pytest.raises(ReadOnlyStoreError):
            await repo.save("groceries", "")


class TestInputEncoding:
    def test_title_with_unpaired_surrogate_is_rejected(self):
        with pytest.raises(InvalidInputError):
            validate_title("note \ud800")

    @pytest.mark.asyncio
    async def test_load_with_unpaired_surrogate_never_touches_store(self, repo, store):
        with pytest.raises(InvalidInputError):
            await repo.load("\ud800")
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_content_with_unpaired_surrogate_is_rejected(self, repo, store):
        with pytest.raises(InvalidInputError):
            await repo.save("t", "milk \udfff")
        assert store.calls == []


class TestReadOnly:
    @pytest.mark.asyncio
    async def test_empty_save_against_empty_snapshot_raises(self):
        repo = NoteRepository(SnapshotRecordStore({}))
        with pytest.raises(ReadOnlyStoreError):
            await repo.save("t", "")

    @pytest.mark.asyncio
    async def test_read_only_check_precedes_store_access(self):
        class RecordingSnapshot(SnapshotRecordStore):
            def __init__(self):
                super().__init__()
                self.finds = 0

            async def find_by_fingerprint(self, fp):
                self.finds += 1
                return await super().find_by_fingerprint(fp)

        store = RecordingSnapshot()
        with pytest.raises(ReadOnlyStoreError):
            await NoteRepository(store).save("t", "milk")
        assert store.finds == 0


class TestExport:
    @pytest.mark.asyncio
    async def test_export_returns_records(self, repo):
        await repo.save("t", "a")
        [record] = (await repo.export()).values()
        assert record["hashedTitle"] == fingerprint("t")

    @pytest.mark.asyncio
    async def test_export_wraps_store_errors(self):
        class BrokenStore(MemoryRecordStore):
            async def export(self):
                raise ValueError("bad bytes")

        with pytest.raises(StoreUnavailableError):
            await NoteRepository(BrokenStore()).export()
