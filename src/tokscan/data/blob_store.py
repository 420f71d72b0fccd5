"""Single-blob cache backend: one JSON document per provider."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from types import TracebackType

from pydantic import BaseModel, Field, ValidationError

from tokscan.errors import CacheSchemaError
from tokscan.models.records import FileFingerprint, UsageRecord

logger = logging.getLogger(__name__)

BLOB_VERSION = 1
_VERSION_FILE = "VERSION"


class _BlobEntry(BaseModel):
    fingerprint: FileFingerprint
    records: list[UsageRecord] = Field(default_factory=list)


class _BlobDocument(BaseModel):
    version: int
    provider: str
    entries: dict[str, _BlobEntry] = Field(default_factory=dict)


class BlobStore:
    """Cache store keeping every entry of a provider in one JSON file.

    A provider's blob is loaded whole on first access and rewritten whole
    on ``commit()`` when it changed. Rewrites go through a temp file in the
    same directory and ``os.replace`` so readers only ever see a complete
    document.
    """

    def __init__(self, directory: Path) -> None:
        self._dir = directory
        self._entries: dict[str, dict[str, _BlobEntry]] = {}
        self._dirty: set[str] = set()
        self._lock = asyncio.Lock()
        self.requires_full_rescan = False

    async def __aenter__(self) -> BlobStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def open(self) -> BlobStore:
        """Create the cache directory and validate its version marker."""
        await asyncio.to_thread(self._check_version)
        return self

    async def close(self) -> None:
        await self.commit()
        self._entries.clear()

    async def get(
        self, provider: str, path: str
    ) -> tuple[FileFingerprint, list[UsageRecord]] | None:
        entries = await self._provider_entries(provider)
        entry = entries.get(path)
        if entry is None:
            return None
        return entry.fingerprint, list(entry.records)

    async def put(
        self,
        provider: str,
        path: str,
        fingerprint: FileFingerprint,
        records: list[UsageRecord],
    ) -> None:
        entries = await self._provider_entries(provider)
        entries[path] = _BlobEntry(fingerprint=fingerprint, records=list(records))
        self._dirty.add(provider)

    async def evict(self, provider: str, path: str) -> None:
        entries = await self._provider_entries(provider)
        if entries.pop(path, None) is not None:
            self._dirty.add(provider)

    async def paths(self, provider: str) -> set[str]:
        return set(await self._provider_entries(provider))

    async def all_records(self) -> AsyncIterator[UsageRecord]:
        for provider in sorted(set(self._entries) | self._blob_providers()):
            entries = await self._provider_entries(provider)
            for entry in list(entries.values()):
                for record in entry.records:
                    yield record

    async def commit(self) -> None:
        """Persist every changed provider blob."""
        async with self._lock:
            for provider in sorted(self._dirty):
                document = _BlobDocument(
                    version=BLOB_VERSION,
                    provider=provider,
                    entries=self._entries.get(provider, {}),
                )
                payload = document.model_dump_json().encode("utf-8")
                await asyncio.to_thread(_atomic_write, self._blob_path(provider), payload)
            self._dirty.clear()

    async def _provider_entries(self, provider: str) -> dict[str, _BlobEntry]:
        entries = self._entries.get(provider)
        if entries is None:
            try:
                entries = await asyncio.to_thread(self._read_blob, provider)
            except CacheSchemaError as exc:
                logger.warning("Discarding cache for %s: %s", provider, exc)
                entries = {}
            self._entries[provider] = entries
        return entries

    def _read_blob(self, provider: str) -> dict[str, _BlobEntry]:
        path = self._blob_path(provider)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise CacheSchemaError(f"cannot read {path}: {exc}") from exc
        try:
            document = _BlobDocument.model_validate_json(data)
        except ValidationError as exc:
            raise CacheSchemaError(f"malformed blob {path.name}") from exc
        if document.version != BLOB_VERSION or document.provider != provider:
            raise CacheSchemaError(
                f"blob {path.name} has version {document.version}, expected {BLOB_VERSION}"
            )
        return document.entries

    def _blob_providers(self) -> set[str]:
        if not self._dir.is_dir():
            return set()
        return {path.stem for path in self._dir.glob("*.json")}

    def _blob_path(self, provider: str) -> Path:
        return self._dir / f"{provider}.json"

    def _check_version(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        marker = self._dir / _VERSION_FILE
        try:
            current = marker.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            current = ""
        if current == str(BLOB_VERSION):
            return

        stale = list(self._dir.glob("*.json"))
        self.requires_full_rescan = bool(current or stale)
        if self.requires_full_rescan:
            logger.info(
                "Cache version %s does not match %s, discarding blobs",
                current or "<none>",
                BLOB_VERSION,
            )
        for path in stale:
            path.unlink(missing_ok=True)
        _atomic_write(marker, str(BLOB_VERSION).encode("ascii"))


def _atomic_write(path: Path, payload: bytes) -> None:
    """Write ``payload`` to a temp file beside ``path`` and move it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as file:
            file.write(payload)
            file.flush()
            os.fsync(file.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
