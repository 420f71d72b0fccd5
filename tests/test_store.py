"""Tests for the cache store backends and fingerprints."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from conftest import make_record
from tokscan.config import Config
from tokscan.data.blob_store import BlobStore
from tokscan.data.db import Database
from tokscan.data.fingerprint import content_fingerprint, fingerprint, stat_fingerprint
from tokscan.data.protocols import CacheStore
from tokscan.data.sqlite_store import SqliteStore
from tokscan.data.store import open_store
from tokscan.errors import FileAccessError
from tokscan.models.records import FileFingerprint, UsageRecord

WHEN = datetime(2026, 2, 1, 12, tzinfo=UTC)


def _records(count: int, prefix: str = "m") -> list[UsageRecord]:
    return [
        make_record(WHEN, message_id=f"{prefix}{i}", input_tokens=10 + i, output_tokens=i + 1)
        for i in range(count)
    ]


class TestFingerprint:
    def test_stat_policy(self, tmp_path: Path) -> None:
        path = tmp_path / "a.jsonl"
        path.write_bytes(b"hello")
        fp = stat_fingerprint(path)
        assert fp.size == 5
        assert fp.digest == ""
        assert fingerprint(path) == fp

    def test_content_policy_detects_same_size_rewrite(self, tmp_path: Path) -> None:
        path = tmp_path / "a.jsonl"
        path.write_bytes(b"hello")
        before = content_fingerprint(path)
        stat = path.stat()
        path.write_bytes(b"jello")
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))
        after = fingerprint(path, "content")
        assert before.size == after.size
        assert before.mtime_ns == after.mtime_ns
        assert not before.same_state(after)

    def test_mtime_change_is_a_change(self) -> None:
        a = FileFingerprint(size=5, mtime_ns=1)
        assert not a.same_state(FileFingerprint(size=5, mtime_ns=2))
        assert not a.same_state(FileFingerprint(size=6, mtime_ns=1))
        assert a.same_state(FileFingerprint(size=5, mtime_ns=1))

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileAccessError):
            stat_fingerprint(tmp_path / "gone.jsonl")


class TestCacheStore:
    @pytest.mark.asyncio
    async def test_put_get_round_trip(self, store: CacheStore) -> None:
        fp = FileFingerprint(size=10, mtime_ns=5)
        records = _records(3)
        await store.put("claude", "/a.jsonl", fp, records)
        cached = await store.get("claude", "/a.jsonl")
        assert cached is not None
        assert cached[0] == fp
        assert cached[1] == records
        assert await store.get("claude", "/missing.jsonl") is None

    @pytest.mark.asyncio
    async def test_put_replaces_whole_entry(self, store: CacheStore) -> None:
        await store.put("claude", "/a.jsonl", FileFingerprint(size=1, mtime_ns=1), _records(3))
        await store.put(
            "claude", "/a.jsonl", FileFingerprint(size=2, mtime_ns=2), _records(1, "new")
        )
        cached = await store.get("claude", "/a.jsonl")
        assert cached is not None
        assert cached[0].size == 2
        assert [record.message_id for record in cached[1]] == ["new0"]

    @pytest.mark.asyncio
    async def test_empty_record_list_is_cached(self, store: CacheStore) -> None:
        await store.put("claude", "/empty.jsonl", FileFingerprint(size=0, mtime_ns=1), [])
        assert await store.get("claude", "/empty.jsonl") == (
            FileFingerprint(size=0, mtime_ns=1),
            [],
        )

    @pytest.mark.asyncio
    async def test_evict_and_paths(self, store: CacheStore) -> None:
        fp = FileFingerprint(size=1, mtime_ns=1)
        await store.put("claude", "/a.jsonl", fp, _records(1))
        await store.put("claude", "/b.jsonl", fp, _records(1, "b"))
        await store.put("codex", "/c.jsonl", fp, _records(1, "c"))
        assert await store.paths("claude") == {"/a.jsonl", "/b.jsonl"}

        await store.evict("claude", "/a.jsonl")
        await store.evict("claude", "/never-cached.jsonl")
        assert await store.paths("claude") == {"/b.jsonl"}
        ids = sorted([record.message_id async for record in store.all_records()])
        assert ids == ["b0", "c0"]

    @pytest.mark.asyncio
    async def test_persists_across_reopen(self, store: CacheStore, backend_config: Config) -> None:
        await store.put("claude", "/a.jsonl", FileFingerprint(size=1, mtime_ns=1), _records(2))
        await store.commit()

        async with open_store(backend_config) as reopened:
            assert not reopened.requires_full_rescan
            cached = await reopened.get("claude", "/a.jsonl")
        assert cached is not None
        assert len(cached[1]) == 2


class TestSchemaInvalidation:
    @pytest.mark.asyncio
    async def test_blob_version_mismatch(self, tmp_path: Path) -> None:
        directory = tmp_path / "blobs"
        async with BlobStore(directory) as store:
            await store.put("claude", "/a.jsonl", FileFingerprint(size=1, mtime_ns=1), _records(1))

        (directory / "VERSION").write_text("0")
        async with BlobStore(directory) as store:
            assert store.requires_full_rescan
            assert await store.paths("claude") == set()

    @pytest.mark.asyncio
    async def test_malformed_blob_is_discarded(self, tmp_path: Path) -> None:
        directory = tmp_path / "blobs"
        async with BlobStore(directory) as store:
            await store.put("claude", "/a.jsonl", FileFingerprint(size=1, mtime_ns=1), _records(1))
        (directory / "claude.json").write_text('{"version": 1, "entries": "oops"}')

        async with BlobStore(directory) as store:
            assert await store.get("claude", "/a.jsonl") is None

    @pytest.mark.asyncio
    async def test_sqlite_schema_version_mismatch(self, tmp_path: Path) -> None:
        db_path = tmp_path / "records.db"
        async with SqliteStore.at(db_path) as store:
            await store.put("claude", "/a.jsonl", FileFingerprint(size=1, mtime_ns=1), _records(1))

        async with Database(db_path) as db:
            await db.execute("UPDATE app_meta SET value = '1' WHERE key = 'schema_version'")
            await db.commit()

        async with SqliteStore.at(db_path) as store:
            assert store.requires_full_rescan
            assert await store.paths("claude") == set()

    @pytest.mark.asyncio
    async def test_fresh_sqlite_cache_needs_no_rescan(self, tmp_path: Path) -> None:
        async with SqliteStore.at(tmp_path / "records.db") as store:
            assert not store.requires_full_rescan
