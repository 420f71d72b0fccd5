"""Relational cache backend on top of the shared SQLite database."""

from __future__ import annotations

import itertools
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from pydantic import ValidationError

from tokscan.data.db import Database
from tokscan.errors import CacheSchemaError
from tokscan.models.records import FileFingerprint, UsageRecord

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "tool",
    "session_id",
    "timestamp",
    "project",
    "model",
    "message_id",
    "request_id",
    "input_tokens",
    "output_tokens",
    "cache_write_tokens",
    "cache_read_tokens",
    "cost",
)
_RECORD_SELECT = ", ".join(f"r.{column}" for column in _RECORD_COLUMNS)


class SqliteStore:
    """Cache store with one row per file and one row per record.

    Every ``put``/``evict`` runs inside its own SAVEPOINT, so a failed write
    leaves the previous entry in place; ``commit()`` makes changes durable.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._savepoints = itertools.count()

    @classmethod
    def at(cls, db_path: Path) -> SqliteStore:
        return cls(Database(db_path))

    @property
    def requires_full_rescan(self) -> bool:
        return self._db.requires_full_rescan

    async def __aenter__(self) -> SqliteStore:
        await self._db.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._db.connected:
            await self._db.commit()
        await self._db.close()

    async def get(
        self, provider: str, path: str
    ) -> tuple[FileFingerprint, list[UsageRecord]] | None:
        row = await self._db.fetch_one(
            "SELECT file_id, size, mtime_ns, digest, warning FROM files"
            " WHERE provider = ? AND path = ?",
            (provider, path),
        )
        if row is None:
            return None
        fingerprint = FileFingerprint(
            size=int(row["size"]),
            mtime_ns=int(row["mtime_ns"]),
            digest=str(row["digest"]),
            warning=str(row["warning"]),
        )
        rows = await self._db.fetch_all(
            f"SELECT {_RECORD_SELECT} FROM records r WHERE r.file_id = ? ORDER BY r.idx",
            (row["file_id"],),
        )
        return fingerprint, [_record_from_row(record_row) for record_row in rows]

    async def put(
        self,
        provider: str,
        path: str,
        fingerprint: FileFingerprint,
        records: list[UsageRecord],
    ) -> None:
        savepoint = f"put_{next(self._savepoints)}"
        await self._db.execute(f"SAVEPOINT {savepoint}")
        try:
            await self._db.execute(
                "DELETE FROM files WHERE provider = ? AND path = ?", (provider, path)
            )
            cursor = await self._db.execute(
                """INSERT INTO files (provider, path, size, mtime_ns, digest, warning, cached_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    provider,
                    path,
                    fingerprint.size,
                    fingerprint.mtime_ns,
                    fingerprint.digest,
                    fingerprint.warning,
                    datetime.now(UTC).isoformat(),
                ),
            )
            file_id = cursor.lastrowid
            if records:
                await self._db.execute_many(
                    f"""INSERT INTO records (file_id, idx, {", ".join(_RECORD_COLUMNS)})
                    VALUES (?, ?, {", ".join("?" for _ in _RECORD_COLUMNS)})""",
                    [_record_row(file_id, idx, record) for idx, record in enumerate(records)],
                )
            await self._db.execute(f"RELEASE {savepoint}")
        except Exception:
            await self._db.execute(f"ROLLBACK TO {savepoint}")
            await self._db.execute(f"RELEASE {savepoint}")
            raise

    async def evict(self, provider: str, path: str) -> None:
        savepoint = f"evict_{next(self._savepoints)}"
        await self._db.execute(f"SAVEPOINT {savepoint}")
        try:
            await self._db.execute(
                "DELETE FROM files WHERE provider = ? AND path = ?", (provider, path)
            )
            await self._db.execute(f"RELEASE {savepoint}")
        except Exception:
            await self._db.execute(f"ROLLBACK TO {savepoint}")
            await self._db.execute(f"RELEASE {savepoint}")
            raise

    async def paths(self, provider: str) -> set[str]:
        rows = await self._db.fetch_all("SELECT path FROM files WHERE provider = ?", (provider,))
        return {str(row["path"]) for row in rows}

    async def all_records(self) -> AsyncIterator[UsageRecord]:
        rows = await self._db.fetch_all(
            f"""SELECT {_RECORD_SELECT} FROM records r
            JOIN files f ON f.file_id = r.file_id
            ORDER BY f.provider, f.path, r.idx"""
        )
        for row in rows:
            try:
                record = _record_from_row(row)
            except CacheSchemaError as exc:
                logger.warning("Skipping cached record: %s", exc)
                continue
            yield record

    async def commit(self) -> None:
        await self._db.commit()


def _record_row(file_id: int | None, idx: int, record: UsageRecord) -> tuple[object, ...]:
    return (
        file_id,
        idx,
        record.tool,
        record.session_id,
        record.timestamp.isoformat(),
        record.project,
        record.model,
        record.message_id,
        record.request_id,
        record.input_tokens,
        record.output_tokens,
        record.cache_write_tokens,
        record.cache_read_tokens,
        record.cost,
    )


def _record_from_row(row: object) -> UsageRecord:
    try:
        values = {column: row[column] for column in _RECORD_COLUMNS}  # type: ignore[index]
        return UsageRecord.model_validate(values)
    except ValidationError as exc:
        raise CacheSchemaError(f"malformed cached record: {exc.error_count()} error(s)") from exc
