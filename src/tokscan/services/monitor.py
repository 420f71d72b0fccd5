"""Live monitor: debounced refresh driven by filesystem change notifications."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import watchfiles
from result import Err, Ok

from tokscan.models.reports import Report

if TYPE_CHECKING:
    from tokscan.data.protocols import ChangeNotifier
    from tokscan.services.engine import ReportRequest
    from tokscan.services.protocols import ReportEngineProtocol

logger = logging.getLogger(__name__)


class WatchfilesNotifier:
    """Change notifications for every existing provider root, via watchfiles."""

    def __init__(self, roots: Sequence[Path], debounce_ms: int = 200) -> None:
        self._roots = list(roots)
        self._debounce_ms = debounce_ms
        self._stop = asyncio.Event()

    async def changes(self) -> AsyncIterator[set[str]]:
        if not self._roots:
            logger.warning("No provider directories to watch, refreshing on the interval only")
            return
        async for batch in watchfiles.awatch(
            *self._roots,
            stop_event=self._stop,
            debounce=self._debounce_ms,
            recursive=True,
        ):
            yield {path for _, path in batch}

    def close(self) -> None:
        self._stop.set()


class LiveMonitor:
    """Re-runs the engine whenever the watched files settle after a change.

    Change batches are queued by a consumer task. The control loop waits for
    a change (or ``max_interval`` as a safety net), then waits until no new
    change has arrived for ``interval`` seconds before refreshing. Changes
    that arrive during a refresh drive the next cycle. ``stop()`` takes
    effect between cycles only.
    """

    def __init__(
        self,
        engine: ReportEngineProtocol,
        request: ReportRequest,
        render: Callable[[Report], None],
        notifier: ChangeNotifier,
        *,
        interval: float = 2.0,
        max_interval: float = 300.0,
    ) -> None:
        self._engine = engine
        self._request = request
        self._render = render
        self._notifier = notifier
        self._interval = interval
        self._max_interval = max_interval
        self._queue: asyncio.Queue[set[str]] = asyncio.Queue()
        self._stop = asyncio.Event()
        self.cycles = 0
        self.failures = 0

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._stop.set()
        self._notifier.close()

    async def run(self) -> None:
        consumer = asyncio.create_task(self._consume())
        try:
            await self._refresh()
            while not self._stop.is_set():
                changed = await self._next_change(self._max_interval)
                if self._stop.is_set():
                    break
                if changed:
                    while await self._next_change(self._interval):
                        pass
                    if self._stop.is_set():
                        break
                else:
                    logger.debug("No changes for %gs, refreshing anyway", self._max_interval)
                await self._refresh()
        finally:
            self._notifier.close()
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
            await self._engine.commit()
            logger.debug("Monitor stopped after %d cycles", self.cycles)

    async def _consume(self) -> None:
        try:
            async for batch in self._notifier.changes():
                logger.debug("Change notification: %d path(s)", len(batch))
                await self._queue.put(batch)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Change notifications stopped")

    async def _next_change(self, timeout: float) -> bool:
        """Wait for one queued change; False on timeout or stop."""
        get = asyncio.ensure_future(self._queue.get())
        stopped = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait(
                {get, stopped}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            get.cancel()
            stopped.cancel()
        return get in done and not get.cancelled()

    async def _refresh(self) -> None:
        task = asyncio.ensure_future(self._cycle())
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise

    async def _cycle(self) -> None:
        self.cycles += 1
        try:
            match await self._engine.report(self._request):
                case Ok(report):
                    self._render(report)
                case Err(error):
                    self.failures += 1
                    logger.warning("Refresh %d failed: %s", self.cycles, error)
        except Exception:
            self.failures += 1
            logger.exception("Refresh %d failed", self.cycles)
