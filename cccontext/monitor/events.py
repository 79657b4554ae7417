"""Typed monitor events and the observer fan-out."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Union

from cccontext.models import SessionSnapshot
from cccontext.parsers.records import UsageRecord

logger = logging.getLogger("cccontext.monitor")


@dataclass(frozen=True)
class SessionAdded:
    session_id: str
    path: Path
    # True for files already present when watching began.
    initial: bool = False


@dataclass(frozen=True)
class SessionRemoved:
    session_id: str
    path: Path


@dataclass(frozen=True)
class SessionUpdated:
    session_id: str
    path: Path


@dataclass(frozen=True)
class SessionStarted:
    session_id: str
    path: Path


@dataclass(frozen=True)
class SessionStopped:
    session_id: str
    reason: str = "stopped"


@dataclass(frozen=True)
class CompactDetected:
    session_id: str
    path: Path


@dataclass(frozen=True)
class RecordsAppended:
    session_id: str
    records: tuple[UsageRecord, ...]
    snapshot: Optional[SessionSnapshot] = None


@dataclass(frozen=True)
class SessionError:
    session_id: str
    error: str
    path: Optional[Path] = None
    exception: Optional[BaseException] = field(default=None, compare=False)


@dataclass(frozen=True)
class SessionsChanged:
    sessions: tuple[SessionSnapshot, ...]
    changed_paths: tuple[Path, ...] = ()


DiscoveryEvent = Union[SessionAdded, SessionRemoved, SessionUpdated]
MonitorEvent = Union[
    SessionAdded,
    SessionRemoved,
    SessionUpdated,
    SessionStarted,
    SessionStopped,
    CompactDetected,
    RecordsAppended,
    SessionError,
    SessionsChanged,
]


class MonitorObserver(Protocol):
    def notify(self, event: MonitorEvent) -> None: ...


class EventHub:
    """Delivers every event to every subscribed observer, in subscription order.

    A failing observer is logged and skipped so the remaining observers (and
    the monitor itself) keep running.
    """

    def __init__(self) -> None:
        self._observers: list[MonitorObserver] = []

    def subscribe(self, observer: MonitorObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: MonitorObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def publish(self, event: MonitorEvent) -> None:
        for observer in list(self._observers):
            try:
                observer.notify(event)
            except Exception:
                logger.exception("Observer %r failed on %s", observer, type(event).__name__)

    def clear(self) -> None:
        self._observers.clear()


class QueueObserver:
    """Observer that buffers events on an ``asyncio.Queue`` for a consumer task."""

    def __init__(self, maxsize: int = 0, kinds: Optional[tuple[type, ...]] = None) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._kinds = kinds

    def notify(self, event: MonitorEvent) -> None:
        if self._kinds is not None and not isinstance(event, self._kinds):
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # Keep the freshest state: drop the oldest pending event.
            self.queue.get_nowait()
            self.queue.put_nowait(event)

    async def get(self) -> MonitorEvent:
        return await self.queue.get()
