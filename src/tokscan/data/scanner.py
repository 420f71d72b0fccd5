"""Change-aware scanner: re-parses only files whose fingerprint changed."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from tokscan.data.fingerprint import fingerprint
from tokscan.data.providers import PROVIDERS, Provider
from tokscan.errors import CacheSchemaError, FileAccessError, ParseError
from tokscan.models.records import FileFingerprint, UsageRecord
from tokscan.models.scanning import ScanResult

if TYPE_CHECKING:
    from tokscan.config import Config
    from tokscan.data.protocols import CacheStore, Normalizer, ProgressCallback

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _FileOutcome:
    """What happened to one candidate file."""

    path: Path
    fingerprint: FileFingerprint | None = None
    records: list[UsageRecord] = field(default_factory=list)
    reused: bool = False
    warning: str = ""
    failed: bool = False


class Scanner:
    """Incremental scanner feeding a cache store from provider session files."""

    def __init__(
        self,
        store: CacheStore,
        config: Config,
        providers: Sequence[Provider] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._providers = list(providers) if providers is not None else list(PROVIDERS)
        self._semaphore = asyncio.Semaphore(max(config.workers, 1))
        self._rescan_pending: bool | None = None

    async def scan(
        self,
        progress_callback: ProgressCallback | None = None,
        force: bool = False,
    ) -> ScanResult:
        """Bring the cache in line with every provider's files on disk.

        Args:
            progress_callback: Optional callback for progress updates.
            force: If True, re-parse every file regardless of fingerprint.

        Returns:
            ScanResult with counts of parsed/reused/evicted/failed files.
        """
        if self._rescan_pending is None:
            self._rescan_pending = self._store.requires_full_rescan
        if self._rescan_pending:
            logger.info("Cache was invalidated, re-parsing every file")
            force = True

        result = ScanResult()
        for provider in self._providers:
            result.merge(await self._scan_provider(provider, force, progress_callback))
            await self._store.commit()
        self._rescan_pending = False
        logger.debug("Scan finished: %s", result)
        return result

    async def _scan_provider(
        self,
        provider: Provider,
        force: bool,
        progress_callback: ProgressCallback | None,
    ) -> ScanResult:
        result = ScanResult()
        candidates = await asyncio.to_thread(provider.candidates, self._config)
        cached_paths = await self._store.paths(provider.name)

        for stale in cached_paths - {str(path) for path in candidates}:
            await self._store.evict(provider.name, stale)
            result.files_evicted += 1

        if not candidates:
            return result

        normalizer = await asyncio.to_thread(provider.normalizer, self._config)
        tasks = [
            asyncio.ensure_future(self._process(provider.name, normalizer, path, force))
            for path in candidates
        ]
        total = len(tasks)
        try:
            for done, next_outcome in enumerate(asyncio.as_completed(tasks), 1):
                outcome = await next_outcome
                await self._apply(provider.name, outcome, result)
                if progress_callback:
                    progress_callback(done, total, f"Scanning {provider.name}...")
        finally:
            for task in tasks:
                task.cancel()
        return result

    async def _process(
        self, provider: str, normalizer: Normalizer, path: Path, force: bool
    ) -> _FileOutcome:
        """Fingerprint, compare and (if needed) parse one file on a worker thread."""
        async with self._semaphore:
            try:
                current = await self._bounded(path, fingerprint, path, self._config.fingerprint)
                if not force:
                    cached = await self._cached(provider, path)
                    if cached is not None and cached[0].same_state(current):
                        return _FileOutcome(
                            path=path,
                            fingerprint=current,
                            reused=True,
                            warning=cached[0].warning,
                        )
                data = await self._bounded(path, path.read_bytes)
            except FileAccessError as exc:
                logger.warning("Skipping %s: %s", path, exc.reason)
                return _FileOutcome(path=path, warning=str(exc), failed=True)

            try:
                records = await asyncio.to_thread(normalizer.parse, data, path)
            except ParseError as exc:
                logger.warning("%s", exc)
                return _FileOutcome(
                    path=path,
                    fingerprint=current.model_copy(update={"warning": str(exc)}),
                    warning=str(exc),
                    failed=True,
                )
            except Exception:
                logger.exception("Failed to parse %s", path)
                return _FileOutcome(path=path, warning=f"Failed to parse {path}", failed=True)
            return _FileOutcome(path=path, fingerprint=current, records=records)

    async def _bounded(self, path: Path, func: Callable[..., T], *args: object) -> T:
        """Run blocking file I/O on a thread, bounded by the configured timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self._config.io_timeout
            )
        except TimeoutError as exc:
            raise FileAccessError(path, f"timed out after {self._config.io_timeout:g}s") from exc
        except OSError as exc:
            raise FileAccessError(path, exc.strerror or type(exc).__name__) from exc

    async def _cached(
        self, provider: str, path: Path
    ) -> tuple[FileFingerprint, list[UsageRecord]] | None:
        try:
            return await self._store.get(provider, str(path))
        except CacheSchemaError as exc:
            logger.warning("Ignoring cached entry for %s: %s", path, exc)
            return None

    async def _apply(self, provider: str, outcome: _FileOutcome, result: ScanResult) -> None:
        """Record one outcome in the store; the only place scans write."""
        if outcome.warning:
            result.warnings.append(outcome.warning)
        if outcome.reused:
            result.files_reused += 1
            return
        if outcome.failed:
            result.files_failed += 1
        if outcome.fingerprint is None:
            return
        await self._store.put(provider, str(outcome.path), outcome.fingerprint, outcome.records)
        if not outcome.failed:
            result.files_parsed += 1
            result.records_parsed += len(outcome.records)
