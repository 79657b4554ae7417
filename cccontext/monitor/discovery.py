"""Session transcript discovery using watchfiles.

Enumerates ``*.jsonl`` transcripts under the projects root and republishes
filesystem changes as typed discovery events.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Union

from watchfiles import Change, awatch

from cccontext import config
from cccontext.monitor.events import DiscoveryEvent, SessionAdded, SessionRemoved, SessionUpdated

logger = logging.getLogger("cccontext.watcher")

DiscoveryCallback = Callable[[list[DiscoveryEvent]], Union[Awaitable[None], None]]

# How often to look for a projects root that does not exist yet.
ROOT_POLL_SECONDS = 5.0


class MonitorConfigError(Exception):
    """The configured projects root cannot be watched."""


async def _invoke(callback: Callable, *args) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class SessionDiscovery:
    """Finds session transcripts under ``root`` and watches the tree for changes."""

    def __init__(self, root: Path = config.PROJECTS_DIR, suffix: str = config.SESSION_FILE_SUFFIX):
        self.root = Path(root).expanduser()
        self.suffix = suffix
        self._files: Optional[set[Path]] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._missing_warned = False
        self._subscriptions: dict[Path, FileWatchHandle] = {}

    def validate_root(self) -> bool:
        """Return True when the root can be watched right now.

        A missing root is not an error: the monitor runs with zero sessions
        until it appears. A root that exists but is not a readable directory
        raises :class:`MonitorConfigError`.
        """
        if not self.root.exists():
            if not self._missing_warned:
                logger.warning(f"Projects directory {self.root} does not exist; no sessions to monitor")
                self._missing_warned = True
            return False
        if not self.root.is_dir():
            raise MonitorConfigError(f"Projects path {self.root} is not a directory")
        if not os.access(self.root, os.R_OK | os.X_OK):
            raise MonitorConfigError(f"Projects directory {self.root} is not readable")
        self._missing_warned = False
        return True

    def _resolved_root(self) -> Path:
        return self.root.resolve()

    def _inside_root(self, path: Path, resolved_root: Path) -> bool:
        try:
            path.resolve().relative_to(resolved_root)
        except (OSError, ValueError):
            return False
        return True

    def is_session_file(self, path: Path) -> bool:
        if path.suffix != self.suffix or path.is_symlink():
            return False
        return self._inside_root(path, self._resolved_root())

    def session_id_for(self, path: Path) -> str:
        return Path(path).stem

    def list_session_files(self) -> list[Path]:
        """All transcripts under the root, skipping symlinks and escapes.

        The listing is cached until :meth:`invalidate` is called or a watched
        change updates it.
        """
        if self._files is None:
            self._files = set(self._scan())
        return sorted(self._files)

    def _scan(self) -> Iterable[Path]:
        if not self.validate_root():
            return
        resolved_root = self._resolved_root()
        for dirpath, dirnames, filenames in os.walk(self.root, followlinks=False):
            current = Path(dirpath)
            dirnames[:] = [name for name in dirnames if not (current / name).is_symlink()]
            for name in filenames:
                if not name.endswith(self.suffix):
                    continue
                path = current / name
                if path.is_symlink() or not self._inside_root(path, resolved_root):
                    continue
                yield path

    def invalidate(self) -> None:
        self._files = None

    def find_active_session(self) -> Optional[Path]:
        """The most recently modified transcript, if any."""
        newest: Optional[Path] = None
        newest_mtime = float("-inf")
        for path in self.list_session_files():
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if mtime > newest_mtime:
                newest, newest_mtime = path, mtime
        return newest

    def classify_changes(self, changes: Iterable[tuple[Change, str]]) -> list[DiscoveryEvent]:
        """Turn raw watchfiles changes into discovery events.

        A delete followed by an add of the same path (atomic replace) in one
        batch is reported as an update.
        """
        known = set(self.list_session_files())
        by_path: dict[Path, set[Change]] = {}
        for change_type, path_str in changes:
            path = Path(path_str)
            if path.suffix != self.suffix:
                continue
            by_path.setdefault(path, set()).add(change_type)

        events: list[DiscoveryEvent] = []
        for path, kinds in sorted(by_path.items()):
            session_id = self.session_id_for(path)
            if not path.exists():
                if path in known:
                    known.discard(path)
                    events.append(SessionRemoved(session_id, path))
                continue
            if not self.is_session_file(path):
                continue
            if path in known:
                events.append(SessionUpdated(session_id, path))
            else:
                known.add(path)
                events.append(SessionAdded(session_id, path))

        self._files = known
        return events

    async def start(self, callback: DiscoveryCallback) -> None:
        """Start watching the root in a background task."""
        if self._running:
            logger.warning("Session discovery already running")
            return
        self.validate_root()
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(callback, self._stop_event))
        logger.info(f"Session discovery started for {self.root}")

    async def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._stop_event = None
        logger.info("Session discovery stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _wait_for_root(self, stop_event: asyncio.Event) -> bool:
        while not self.validate_root():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=ROOT_POLL_SECONDS)
                return False
            except asyncio.TimeoutError:
                continue
        return True

    def watch(self, path: Path, callback: Callable[[Path], Union[Awaitable[None], None]]) -> "FileWatchHandle":
        """Subscribe ``callback`` to changes of one transcript.

        Updates for a subscribed path are delivered to its handle instead of
        the discovery callback. Deletions still reach the discovery callback.
        """
        key = Path(path)
        previous = self._subscriptions.get(key)
        if previous is not None:
            previous.close()
        handle = FileWatchHandle(key, callback, self._unsubscribe)
        self._subscriptions[key] = handle
        return handle

    def _unsubscribe(self, handle: "FileWatchHandle") -> None:
        if self._subscriptions.get(handle.path) is handle:
            del self._subscriptions[handle.path]

    @property
    def watched_paths(self) -> list[Path]:
        return sorted(self._subscriptions)

    async def dispatch(self, events: list[DiscoveryEvent], callback: DiscoveryCallback) -> None:
        """Deliver updates to subscribed handles, then every event to ``callback``."""
        for event in events:
            handle = self._subscriptions.get(event.path)
            if isinstance(event, SessionUpdated) and handle is not None:
                await handle.deliver()
        if events:
            await _invoke(callback, list(events))

    async def _watch_loop(self, callback: DiscoveryCallback, stop_event: asyncio.Event) -> None:
        """Main watching loop. Watches the whole projects tree."""
        try:
            if not await self._wait_for_root(stop_event):
                return
            self.invalidate()
            initial = [
                SessionAdded(self.session_id_for(path), path, initial=True) for path in self.list_session_files()
            ]
            if initial:
                await _invoke(callback, initial)

            logger.info(f"Watching {self.root} for session changes")
            async for changes in awatch(self.root, stop_event=stop_event, recursive=True):
                if not self._running:
                    break
                events = self.classify_changes(changes)
                if not events:
                    continue
                logger.debug(f"Detected {len(events)} session change(s)")
                try:
                    await self.dispatch(events, callback)
                except Exception as e:
                    logger.error(f"Error handling session changes: {e}")
        except asyncio.CancelledError:
            logger.info("Session discovery task cancelled")
        except Exception as e:
            logger.error(f"Session discovery error: {e}")
        finally:
            self._running = False


class FileWatchHandle:
    """Live subscription for one transcript path.

    Created by :meth:`SessionDiscovery.watch`. ``close()`` detaches it and
    is safe to call more than once.
    """

    def __init__(
        self,
        path: Path,
        callback: Callable[[Path], Union[Awaitable[None], None]],
        on_close: Optional[Callable[["FileWatchHandle"], None]] = None,
    ):
        self.path = Path(path)
        self._callback = callback
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def deliver(self) -> None:
        if self._closed:
            return
        try:
            await _invoke(self._callback, self.path)
        except Exception as e:
            logger.error(f"Error handling change to {self.path.name}: {e}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)
