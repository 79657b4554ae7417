"""Debounced coalescing of file change notifications.

Bursts of change events across many transcripts collapse into a single
batch: every :meth:`DebouncedCoalescer.add` resets one shared timer, and
when it finally fires the whole pending set is handed to ``process_batch``.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from cccontext import config

logger = logging.getLogger("cccontext.coalescer")

BatchProcessor = Callable[[list[Path]], Awaitable[None]]


class DebouncedCoalescer:
    def __init__(self, process_batch: BatchProcessor, delay_seconds: float = config.DEBOUNCE_MS / 1000):
        self._process_batch = process_batch
        self.delay_seconds = delay_seconds
        self._pending: set[Path] = set()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self.batches_fired = 0

    @property
    def pending(self) -> frozenset[Path]:
        return frozenset(self._pending)

    def add(self, path: Path | str) -> None:
        """Queue ``path`` and restart the delay timer."""
        self._pending.add(Path(path))
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay_seconds, self._fire)

    def _drain(self) -> list[Path]:
        batch = sorted(self._pending)
        self._pending.clear()
        return batch

    def _fire(self) -> None:
        self._timer = None
        batch = self._drain()
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self._run(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, batch: list[Path]) -> None:
        self.batches_fired += 1
        logger.debug("Processing %d changed session file(s)", len(batch))
        try:
            await self._process_batch(batch)
        except Exception:
            logger.exception("Failed to process change batch")

    async def flush(self) -> None:
        """Process whatever is pending now, without waiting for the timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch = self._drain()
        if batch:
            await self._run(batch)

    def cancel(self) -> None:
        """Drop the pending batch and its timer. Safe to call repeatedly."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()

    async def aclose(self) -> None:
        """Cancel the timer and wait for batches that are already running."""
        self.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
