"""Live session monitor.

Wires discovery, the change coalescer, the parse cache, the incremental
tailer and the lifecycle manager into one service with explicit
``start``/``stop``. Every batch of changes ends in exactly one
:class:`SessionsChanged` event carrying the current session list.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from cccontext.config import MonitorSettings
from cccontext.model_config import calculate_message_cost
from cccontext.models import SessionErrorInfo, SessionSnapshot
from cccontext.monitor.coalescer import DebouncedCoalescer
from cccontext.monitor.discovery import FileWatchHandle, SessionDiscovery
from cccontext.monitor.events import (
    CompactDetected,
    DiscoveryEvent,
    EventHub,
    MonitorObserver,
    RecordsAppended,
    SessionAdded,
    SessionError,
    SessionRemoved,
    SessionsChanged,
)
from cccontext.monitor.lifecycle import SessionCapacityError, SessionLifecycleManager
from cccontext.monitor.session_cache import SessionCache
from cccontext.monitor.state import SessionRecord
from cccontext.monitor.tailer import ChangeKind, IncrementalTailer, TailResult
from cccontext.observability import record_ingestion, record_parser_failure, record_token_cost, start_span
from cccontext.prediction import DEFAULT_CONSTANTS, AutoCompactConstants, build_snapshot

logger = logging.getLogger("cccontext.monitor")


def _mtime_to_datetime(mtime: float) -> datetime:
    return datetime.fromtimestamp(mtime, tz=timezone.utc)


class LiveSessionMonitor:
    """Owns all live session state for one projects root."""

    def __init__(
        self,
        settings: Optional[MonitorSettings] = None,
        *observers: MonitorObserver,
        discovery: Optional[SessionDiscovery] = None,
        cache: Optional[SessionCache] = None,
        constants: AutoCompactConstants = DEFAULT_CONSTANTS,
    ):
        self.settings = settings or MonitorSettings.from_env()
        self.constants = constants
        self.hub = EventHub()
        for observer in observers:
            self.hub.subscribe(observer)

        self.cache = cache or SessionCache()
        self.discovery = discovery or SessionDiscovery(self.settings.projects_dir)
        self.tailer = IncrementalTailer(
            rewrite_size_threshold=self.settings.rewrite_size_threshold,
            rewrite_time_threshold_seconds=self.settings.rewrite_time_threshold_seconds,
        )
        self.lifecycle = SessionLifecycleManager(
            max_sessions=self.settings.max_sessions,
            ttl_seconds=self.settings.session_ttl_seconds,
            cleanup_interval_seconds=self.settings.cleanup_interval_seconds,
            watch_factory=self._open_watch,
            cache=self.cache,
            hub=self.hub,
            on_stop=self._forget_session,
        )
        self.coalescer = DebouncedCoalescer(self.process_batch, self.settings.debounce_seconds)

        self._locks: dict[str, asyncio.Lock] = {}
        self._errors: dict[str, SessionErrorInfo] = {}
        self._running = False

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, observer: MonitorObserver) -> None:
        self.hub.subscribe(observer)

    def unsubscribe(self, observer: MonitorObserver) -> None:
        self.hub.unsubscribe(observer)

    async def start(self) -> None:
        """Validate the root and begin watching.

        Raises ``MonitorConfigError`` if the root exists but cannot be
        watched. A missing root is tolerated.
        """
        if self._running:
            return
        self.discovery.validate_root()
        self.lifecycle.start()
        await self.discovery.start(self.handle_discovery_events)
        self._running = True
        logger.info("Live session monitor started for %s", self.settings.projects_dir)

    async def stop(self) -> None:
        """Stop watching and release every session. Safe to call repeatedly."""
        await self.discovery.stop()
        await self.coalescer.aclose()
        await self.lifecycle.stop_all()
        self._locks.clear()
        if self._running:
            logger.info("Live session monitor stopped")
        self._running = False

    def _open_watch(self, session_id: str, path: Path) -> FileWatchHandle:
        return self.discovery.watch(path, self.coalescer.add)

    def _forget_session(self, session_id: str) -> None:
        self._locks.pop(session_id, None)
        self._errors.pop(session_id, None)

    # ── Change handling ───────────────────────────────────────────────

    async def handle_discovery_events(self, events: Iterable[DiscoveryEvent]) -> None:
        for event in events:
            self.hub.publish(event)
            if isinstance(event, SessionRemoved):
                self.lifecycle.stop_session(event.session_id, reason="removed")
                self.cache.invalidate(event.path)
                self._forget_session(event.session_id)
                self.coalescer.add(event.path)
                continue
            if not (isinstance(event, SessionAdded) and event.initial):
                self._activate(event.session_id, event.path)
            self.coalescer.add(event.path)

    def _activate(self, session_id: str, path: Path) -> Optional[SessionRecord]:
        try:
            return self.lifecycle.watch_session(session_id, path)
        except SessionCapacityError as exc:
            self._report_error(session_id, path, exc)
            return None

    async def track_session(self, session_id: str, path: Path | str) -> Optional[SessionSnapshot]:
        """Register a session for live tailing and perform its initial read.

        ``SessionCapacityError`` propagates to the caller.
        """
        path = Path(path)
        self.lifecycle.watch_session(session_id, path)
        await self.process_path(path)
        return await self.get_session(session_id)

    async def process_batch(self, paths: list[Path]) -> None:
        """Re-read every path concurrently, then publish one SessionsChanged."""
        with start_span("cccontext.process_batch", {"paths": len(paths)}):
            results = await asyncio.gather(*(self.process_path(path) for path in paths), return_exceptions=True)
        for path, result in zip(paths, results):
            if isinstance(result, BaseException):
                logger.error("Unexpected error processing %s: %s", path, result)
                self._report_error(Path(path).stem, Path(path), result)

        sessions = await self.get_all_sessions()
        self.hub.publish(SessionsChanged(tuple(sessions), tuple(paths)))

    async def process_path(self, path: Path | str) -> Optional[SessionRecord]:
        """Bring one file's state up to date.

        Tracked sessions are tailed incrementally; anything else goes
        through the parse cache. Read and parse failures are reported as
        :class:`SessionError` and leave existing state untouched.
        """
        path = Path(path)
        session_id = path.stem
        record = self.lifecycle.get_session_data(session_id)
        if record is None or record.file_path != path:
            if not path.exists():
                return None
            try:
                aggregate = await asyncio.to_thread(self.cache.parse_and_cache, path, session_id)
            except Exception as exc:
                self._report_error(session_id, path, exc)
                return None
            self._errors.pop(session_id, None)
            return aggregate

        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            started = time.monotonic()
            try:
                result = await asyncio.to_thread(self.tailer.read_since, record)
            except Exception as exc:
                record_ingestion("session", "error", (time.monotonic() - started) * 1000, session_id=session_id)
                self._report_error(session_id, path, exc)
                return None

            if self.lifecycle.peek(session_id) is not record:
                logger.debug("Discarding read for %s: session stopped during read", session_id)
                return None
            if result.kind is ChangeKind.UNCHANGED:
                return record

            self.tailer.apply(record, result)
            self.cache.store(path, record)
            self._errors.pop(session_id, None)
            record_ingestion("session", result.kind.value, (time.monotonic() - started) * 1000, session_id=session_id)
            if result.malformed_lines:
                record_parser_failure("jsonl", session_id=session_id, count=result.malformed_lines)
            self._publish_read(record, result)
        return record

    def _publish_read(self, record: SessionRecord, result: TailResult) -> None:
        for usage_record in result.records:
            if usage_record.has_usage:
                model = usage_record.model or record.model
                record_token_cost(
                    model=model,
                    token_input=usage_record.input_tokens,
                    token_output=usage_record.output_tokens,
                    cost_usd=calculate_message_cost(model, usage_record.usage_dict()),
                )

        if result.is_rewrite:
            logger.info("Transcript rewrite detected for %s; counters reset", record.session_id)
            self.hub.publish(CompactDetected(record.session_id, record.file_path))
        if result.records and result.kind is not ChangeKind.INITIAL:
            self.hub.publish(
                RecordsAppended(record.session_id, tuple(result.records), self._snapshot(record))
            )

    def _report_error(self, session_id: str, path: Optional[Path], exc: BaseException) -> None:
        logger.warning("Session %s: %s", session_id, exc)
        self._errors[session_id] = SessionErrorInfo(
            sessionId=session_id,
            filePath=str(path) if path else "",
            error=str(exc),
        )
        self.hub.publish(SessionError(session_id, str(exc), path, exc))

    # ── Queries ───────────────────────────────────────────────────────

    def _snapshot(self, record: SessionRecord, last_modified: Optional[datetime] = None) -> SessionSnapshot:
        if last_modified is None and record.fingerprint is not None:
            last_modified = _mtime_to_datetime(record.fingerprint.mtime)
        return build_snapshot(
            record,
            auto_compact_enabled=self.settings.auto_compact_enabled,
            context_window_override=self.settings.context_window_override,
            last_modified=last_modified,
            constants=self.constants,
        )

    def _recent_paths(self, limit: Optional[int]) -> list[tuple[Path, float]]:
        paths = set(self.discovery.list_session_files())
        paths.update(record.file_path for record in self.lifecycle.records())
        stamped: list[tuple[Path, float]] = []
        for path in paths:
            try:
                stamped.append((path, path.stat().st_mtime))
            except OSError:
                continue
        stamped.sort(key=lambda item: item[1], reverse=True)
        return stamped[:limit] if limit is not None else stamped

    async def _snapshot_for(self, path: Path, mtime: float) -> Optional[SessionSnapshot]:
        record = self.lifecycle.peek(path.stem)
        if record is not None and record.file_path == path and record.fingerprint is not None:
            return self._snapshot(record, _mtime_to_datetime(mtime))
        try:
            aggregate = await asyncio.to_thread(self.cache.parse_and_cache, path, path.stem)
        except Exception as exc:
            self._report_error(path.stem, path, exc)
            return None
        return self._snapshot(aggregate, _mtime_to_datetime(mtime))

    async def get_all_sessions(self, limit: Optional[int] = None) -> list[SessionSnapshot]:
        """Snapshots of the most recently modified sessions, newest first."""
        stamped = await asyncio.to_thread(self._recent_paths, limit)
        snapshots = await asyncio.gather(
            *(self._snapshot_for(path, mtime) for path, mtime in stamped), return_exceptions=True
        )
        results: list[SessionSnapshot] = []
        for (path, _), snapshot in zip(stamped, snapshots):
            if isinstance(snapshot, BaseException):
                self._report_error(path.stem, path, snapshot)
            elif snapshot is not None:
                results.append(snapshot)
        return results

    async def get_session(self, session_id: str) -> Optional[SessionSnapshot]:
        record = self.lifecycle.get_session_data(session_id)
        if record is not None and record.fingerprint is not None:
            return self._snapshot(record)
        for path in self.discovery.list_session_files():
            if self.discovery.session_id_for(path) == session_id:
                try:
                    mtime = path.stat().st_mtime
                except OSError as exc:
                    self._report_error(session_id, path, exc)
                    return None
                return await self._snapshot_for(path, mtime)
        return None

    async def get_active_session(self) -> Optional[SessionSnapshot]:
        """Track and return the most recently modified session."""
        path = await asyncio.to_thread(self.discovery.find_active_session)
        if path is None:
            return None
        session_id = self.discovery.session_id_for(path)
        if self._activate(session_id, path) is not None:
            await self.process_path(path)
        return await self.get_session(session_id)

    def errors(self) -> list[SessionErrorInfo]:
        return list(self._errors.values())

    def clear_cache(self) -> None:
        self.cache.clear()
        self.discovery.invalidate()

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "projectsDir": str(self.settings.projects_dir),
            "cache": self.cache.stats(),
            "memory": self.lifecycle.memory_stats(),
            "pendingChanges": len(self.coalescer.pending),
            "errors": [error.model_dump() for error in self._errors.values()],
        }
