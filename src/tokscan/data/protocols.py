"""Protocol definitions for data access."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol, Self

from tokscan.models.records import FileFingerprint, UsageRecord


class Normalizer(Protocol):
    """Turns the raw bytes of one session file into usage records."""

    tool: str

    def parse(self, data: bytes, path: Path) -> list[UsageRecord]: ...


class CacheStore(Protocol):
    """Per-file cache of parsed records, keyed by (provider, path)."""

    requires_full_rescan: bool

    async def __aenter__(self) -> Self: ...

    async def __aexit__(self, *exc_info: object) -> None: ...

    async def get(
        self, provider: str, path: str
    ) -> tuple[FileFingerprint, list[UsageRecord]] | None: ...

    async def put(
        self,
        provider: str,
        path: str,
        fingerprint: FileFingerprint,
        records: list[UsageRecord],
    ) -> None: ...

    async def evict(self, provider: str, path: str) -> None: ...

    async def paths(self, provider: str) -> set[str]: ...

    def all_records(self) -> AsyncIterator[UsageRecord]: ...

    async def commit(self) -> None: ...

    async def close(self) -> None: ...


class ProgressCallback(Protocol):
    """Callback for scan progress updates."""

    def __call__(self, current: int, total: int, message: str) -> None: ...


class ChangeNotifier(Protocol):
    """Source of filesystem change batches under the provider roots."""

    def changes(self) -> AsyncIterator[set[str]]: ...

    def close(self) -> None: ...
