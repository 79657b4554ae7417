"""Bounded ownership of live session records.

The manager holds at most ``max_sessions`` records. Sessions idle longer
than the TTL are swept periodically, and if the collection is still over
capacity the least recently accessed sessions go next. Registration never
silently drops a session: when a sweep cannot free a slot,
:class:`SessionCapacityError` is raised to the caller.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from cccontext import config
from cccontext.monitor.events import EventHub, SessionStarted, SessionStopped
from cccontext.monitor.session_cache import SessionCache
from cccontext.monitor.state import SessionRecord, SessionState

logger = logging.getLogger("cccontext.lifecycle")

# Rough per-item footprints used by memory_stats(), in KB.
SESSION_MEMORY_KB = 10
WATCHER_MEMORY_KB = 1
CACHE_ENTRY_MEMORY_KB = 0.1


class SessionCapacityError(RuntimeError):
    """Raised when a new session cannot be tracked because capacity is exhausted."""

    def __init__(self, session_id: str, max_sessions: int):
        super().__init__(f"Cannot track session {session_id}: {max_sessions} sessions already active")
        self.session_id = session_id
        self.max_sessions = max_sessions


class WatchHandle(Protocol):
    def close(self) -> None: ...


WatchFactory = Callable[[str, Path], WatchHandle]


class SessionLifecycleManager:
    def __init__(
        self,
        max_sessions: int = config.MAX_SESSIONS,
        ttl_seconds: float = config.SESSION_TTL_MS / 1000,
        cleanup_interval_seconds: float = config.CLEANUP_INTERVAL_MS / 1000,
        watch_factory: Optional[WatchFactory] = None,
        cache: Optional[SessionCache] = None,
        hub: Optional[EventHub] = None,
        clock: Callable[[], float] = time.monotonic,
        on_stop: Optional[Callable[[str], None]] = None,
    ):
        self.max_sessions = max_sessions
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._watch_factory = watch_factory
        self._cache = cache
        self._hub = hub
        self._clock = clock
        self._on_stop = on_stop

        self._records: dict[str, SessionRecord] = {}
        # Least recently accessed first.
        self._last_access: OrderedDict[str, float] = OrderedDict()
        self._watchers: dict[str, WatchHandle] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def records(self) -> list[SessionRecord]:
        return list(self._records.values())

    def session_ids(self) -> list[str]:
        return list(self._records)

    def touch(self, session_id: str) -> None:
        if session_id in self._records:
            self._last_access[session_id] = self._clock()
            self._last_access.move_to_end(session_id)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._records

    def get_session_data(self, session_id: str) -> Optional[SessionRecord]:
        """Return the live record and count the read as activity."""
        record = self._records.get(session_id)
        if record is not None:
            self.touch(session_id)
        return record

    def peek(self, session_id: str) -> Optional[SessionRecord]:
        """Like :meth:`get_session_data` without refreshing last access."""
        return self._records.get(session_id)

    def watch_session(self, session_id: str, path: Path) -> SessionRecord:
        """Start tracking ``session_id``; a no-op touch if already tracked.

        The capacity check and the insert happen without yielding to the
        event loop.
        """
        existing = self._records.get(session_id)
        if existing is not None:
            self.touch(session_id)
            return existing

        if len(self._records) >= self.max_sessions:
            self.sweep()
            if len(self._records) >= self.max_sessions:
                raise SessionCapacityError(session_id, self.max_sessions)

        record = SessionRecord(session_id=session_id, file_path=Path(path), state=SessionState.INITIAL_LOAD)
        self._records[session_id] = record
        self._last_access[session_id] = self._clock()
        self._last_access.move_to_end(session_id)
        if self._watch_factory is not None:
            self._watchers[session_id] = self._watch_factory(session_id, record.file_path)
        logger.debug("Tracking session %s (%d/%d)", session_id, len(self._records), self.max_sessions)
        if self._hub is not None:
            self._hub.publish(SessionStarted(session_id, record.file_path))
        return record

    def stop_session(self, session_id: str, reason: str = "stopped") -> bool:
        """Tear down everything held for ``session_id``."""
        record = self._records.pop(session_id, None)
        self._last_access.pop(session_id, None)
        handle = self._watchers.pop(session_id, None)
        if handle is not None:
            try:
                handle.close()
            except Exception:
                logger.exception("Failed to close watch handle for %s", session_id)
        if record is None:
            return False

        record.state = SessionState.STOPPED
        record.pending = b""
        if self._cache is not None:
            self._cache.invalidate(record.file_path)
        logger.debug("Stopped session %s (%s)", session_id, reason)
        if self._on_stop is not None:
            self._on_stop(session_id)
        if self._hub is not None:
            self._hub.publish(SessionStopped(session_id, reason))
        return True

    def sweep(self, now: Optional[float] = None) -> list[str]:
        """Drop idle sessions, then the least recently used ones over capacity."""
        now = self._clock() if now is None else now
        removed: list[str] = []

        expired = [sid for sid, accessed in self._last_access.items() if now - accessed > self.ttl_seconds]
        for session_id in expired:
            self.stop_session(session_id, reason="expired")
            removed.append(session_id)

        while len(self._records) > self.max_sessions and self._last_access:
            session_id = next(iter(self._last_access))
            self.stop_session(session_id, reason="evicted")
            removed.append(session_id)

        if removed:
            logger.info("Swept %d session(s); %d active", len(removed), len(self._records))
        return removed

    def start(self) -> None:
        """Start the periodic sweep task on the running loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    async def stop_all(self) -> None:
        """Cancel the sweep task and stop every session. Idempotent."""
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for session_id in list(self._records):
            self.stop_session(session_id, reason="shutdown")

    def memory_stats(self) -> dict[str, Any]:
        now = self._clock()
        oldest_idle = None
        if self._last_access:
            oldest_idle = now - next(iter(self._last_access.values()))
        cached_files = len(self._cache) if self._cache is not None else 0
        estimated_kb = (
            len(self._records) * SESSION_MEMORY_KB
            + len(self._watchers) * WATCHER_MEMORY_KB
            + cached_files * CACHE_ENTRY_MEMORY_KB
        )
        return {
            "activeSessions": len(self._records),
            "maxSessions": self.max_sessions,
            "watchedFiles": len(self._watchers),
            "cachedFiles": cached_files,
            "oldestIdleSeconds": oldest_idle,
            "estimatedMemoryMB": estimated_kb / 1024,
        }
