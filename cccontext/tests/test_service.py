import asyncio
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from cccontext.config import MonitorSettings
from cccontext.monitor.discovery import MonitorConfigError
from cccontext.monitor.events import (
    CompactDetected,
    RecordsAppended,
    SessionAdded,
    SessionError,
    SessionRemoved,
    SessionsChanged,
    SessionStopped,
    SessionUpdated,
)
from cccontext.monitor.lifecycle import SessionCapacityError
from cccontext.monitor.service import LiveSessionMonitor
from cccontext.monitor.state import SessionState


def _assistant(input_tokens: int, output_tokens: int, cache_read: int = 0) -> str:
    return json.dumps(
        {
            "type": "assistant",
            "timestamp": "2025-01-01T10:00:00Z",
            "message": {
                "role": "assistant",
                "model": "claude-sonnet-4-20250514",
                "content": [{"type": "text", "text": "ok"}],
                "usage": {
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "cache_read_input_tokens": cache_read,
                    "cache_creation_input_tokens": 0,
                },
            },
        }
    ) + "\n"


def _user(text: str) -> str:
    return json.dumps({"type": "user", "timestamp": "2025-01-01T09:59:00Z", "message": {"role": "user", "content": text}}) + "\n"


class _Recorder:
    def __init__(self) -> None:
        self.events: list = []

    def notify(self, event) -> None:
        self.events.append(event)

    def of(self, kind) -> list:
        return [event for event in self.events if isinstance(event, kind)]


class LiveSessionMonitorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "projects"
        (self.root / "proj").mkdir(parents=True)
        self.recorder = _Recorder()
        self.monitor = self._monitor()

    async def asyncTearDown(self) -> None:
        await self.monitor.stop()
        self._tmp.cleanup()

    def _monitor(self, **overrides) -> LiveSessionMonitor:
        settings = MonitorSettings(projects_dir=self.root, debounce_seconds=0.01, **overrides)
        return LiveSessionMonitor(settings, self.recorder)

    def _write(self, session_id: str, text: str) -> Path:
        path = self.root / "proj" / f"{session_id}.jsonl"
        path.write_text(text, encoding="utf-8")
        return path

    def _append(self, path: Path, text: str) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text)

    async def test_track_then_append_publishes_one_change(self) -> None:
        path = self._write("s1", _user("hello") + _assistant(100, 50, cache_read=1_000))
        snapshot = await self.monitor.track_session("s1", path)
        self.assertEqual(snapshot.totalTokens, 1_150)
        self.assertEqual(snapshot.latestPrompt, "hello")
        self.assertEqual(self.recorder.of(RecordsAppended), [])

        self._append(path, _assistant(10, 5, cache_read=1_200))
        await self.monitor.process_batch([path])

        appended = self.recorder.of(RecordsAppended)
        self.assertEqual(len(appended), 1)
        self.assertEqual(len(appended[0].records), 1)
        self.assertEqual(appended[0].snapshot.totalTokens, 10 + 5 + 1_200)
        self.assertEqual(appended[0].snapshot.tokens.inputTokens, 110)
        changed = self.recorder.of(SessionsChanged)
        self.assertEqual(len(changed), 1)
        self.assertEqual([s.sessionId for s in changed[0].sessions], ["s1"])
        self.assertEqual(changed[0].changed_paths, (path,))

    async def test_rewrite_emits_compact_detected(self) -> None:
        path = self._write("s1", _user("a") + _assistant(500, 50) + _assistant(500, 50))
        await self.monitor.track_session("s1", path)
        path.write_text(_user("[Previous conversation summary]: recap") + _assistant(5, 1), encoding="utf-8")

        record = await self.monitor.process_path(path)

        self.assertEqual(len(self.recorder.of(CompactDetected)), 1)
        self.assertEqual(record.state, SessionState.REWRITE_DETECTED)
        self.assertEqual(record.input_tokens, 5)
        snapshot = await self.monitor.get_session("s1")
        self.assertTrue(snapshot.isCompacted)

    async def test_unreadable_session_does_not_block_others(self) -> None:
        good = self._write("good", _assistant(10, 1))
        bad = self._write("bad", _assistant(20, 2))
        await self.monitor.track_session("good", good)
        await self.monitor.track_session("bad", bad)
        self._append(good, _assistant(1, 1))
        self._append(bad, _assistant(1, 1))

        original = self.monitor.tailer.read_since

        def flaky(record):
            if record.session_id == "bad":
                raise PermissionError("denied")
            return original(record)

        with patch.object(self.monitor.tailer, "read_since", side_effect=flaky):
            await self.monitor.process_batch([good, bad])

        errors = self.recorder.of(SessionError)
        self.assertEqual([e.session_id for e in errors], ["bad"])
        self.assertIn("denied", errors[0].error)
        changed = self.recorder.of(SessionsChanged)
        self.assertEqual(len(changed), 1)
        totals = {s.sessionId: s.totalTokens for s in changed[0].sessions}
        self.assertEqual(totals, {"good": 2, "bad": 22})
        self.assertEqual([e.sessionId for e in self.monitor.errors()], ["bad"])

        await self.monitor.process_batch([bad])
        self.assertEqual(self.monitor.errors(), [])
        snapshot = await self.monitor.get_session("bad")
        self.assertEqual(snapshot.totalTokens, 2)
        self.assertEqual(snapshot.tokens.inputTokens, 21)

    async def test_untracked_files_go_through_the_cache(self) -> None:
        path = self._write("cold", _assistant(10, 1))
        await self.monitor.process_path(path)
        await self.monitor.process_path(path)
        self.assertEqual(self.monitor.cache.parse_count, 1)
        self.assertFalse(self.monitor.lifecycle.has_session("cold"))

    async def test_discovery_burst_is_coalesced(self) -> None:
        paths = [self._write(f"s{index}", _assistant(10, 1)) for index in range(3)]
        events = [SessionUpdated(paths[index % 3].stem, paths[index % 3]) for index in range(10)]

        await self.monitor.handle_discovery_events(events)
        self.assertEqual(len(self.monitor.coalescer.pending), 3)
        await self.monitor.coalescer.flush()

        changed = self.recorder.of(SessionsChanged)
        self.assertEqual(len(changed), 1)
        self.assertEqual(len(changed[0].sessions), 3)
        self.assertEqual(len(self.monitor.lifecycle), 3)
        self.assertEqual(sorted(self.monitor.discovery.watched_paths), sorted(paths))

    async def test_debounce_timer_fires_single_batch(self) -> None:
        paths = [self._write(f"t{index}", _assistant(10, 1)) for index in range(3)]
        await self.monitor.handle_discovery_events([SessionUpdated(p.stem, p) for p in paths * 3])
        await asyncio.sleep(0.5)
        self.assertEqual(len(self.recorder.of(SessionsChanged)), 1)

    async def test_initial_listing_is_not_tracked(self) -> None:
        path = self._write("old", _assistant(10, 1))
        await self.monitor.handle_discovery_events([SessionAdded("old", path, initial=True)])
        await self.monitor.coalescer.flush()
        self.assertFalse(self.monitor.lifecycle.has_session("old"))
        self.assertEqual(len(self.recorder.of(SessionsChanged)[0].sessions), 1)

    async def test_capacity_exhaustion_is_reported_not_fatal(self) -> None:
        monitor = self._monitor(max_sessions=1)
        first = self._write("first", _assistant(10, 1))
        second = self._write("second", _assistant(20, 1))

        await monitor.handle_discovery_events([SessionAdded("first", first), SessionAdded("second", second)])
        await monitor.coalescer.flush()

        errors = self.recorder.of(SessionError)
        self.assertEqual([e.session_id for e in errors], ["second"])
        self.assertIsInstance(errors[0].exception, SessionCapacityError)
        self.assertEqual(len(monitor.lifecycle), 1)
        self.assertEqual(len(self.recorder.of(SessionsChanged)[0].sessions), 2)
        with self.assertRaises(SessionCapacityError):
            await monitor.track_session("second", second)
        await monitor.stop()

    async def test_removed_file_stops_session(self) -> None:
        path = self._write("bye", _assistant(10, 1))
        await self.monitor.track_session("bye", path)
        path.unlink()

        await self.monitor.handle_discovery_events([SessionRemoved("bye", path)])
        await self.monitor.coalescer.flush()

        self.assertFalse(self.monitor.lifecycle.has_session("bye"))
        self.assertEqual(self.recorder.of(SessionStopped)[0].reason, "removed")
        self.assertEqual(self.recorder.of(SessionsChanged)[-1].sessions, ())

    async def test_get_all_sessions_orders_by_mtime(self) -> None:
        for session_id, mtime in (("old", 100), ("new", 300), ("mid", 200)):
            path = self._write(session_id, _assistant(10, 1))
            os.utime(path, (mtime, mtime))

        sessions = await self.monitor.get_all_sessions(limit=2)

        self.assertEqual([s.sessionId for s in sessions], ["new", "mid"])
        self.assertEqual(sessions[0].lastModified, "1970-01-01T00:05:00Z")

    async def test_get_active_session_tracks_newest_file(self) -> None:
        old = self._write("old", _assistant(10, 1))
        self._write("new", _assistant(20, 1))
        os.utime(old, (100, 100))

        snapshot = await self.monitor.get_active_session()

        self.assertEqual(snapshot.sessionId, "new")
        self.assertTrue(self.monitor.lifecycle.has_session("new"))
        self.assertIsNone(await self.monitor.get_session("missing"))

    async def test_stats_and_clear_cache(self) -> None:
        self._write("s", _assistant(10, 1))
        await self.monitor.get_all_sessions()
        stats = self.monitor.stats()
        self.assertEqual(stats["cache"]["cachedSessions"], 1)
        self.assertEqual(stats["memory"]["activeSessions"], 0)
        self.monitor.clear_cache()
        self.assertEqual(len(self.monitor.cache), 0)

    async def test_start_rejects_root_that_is_a_file(self) -> None:
        not_a_dir = Path(self._tmp.name) / "file.txt"
        not_a_dir.write_text("x", encoding="utf-8")
        monitor = LiveSessionMonitor(MonitorSettings(projects_dir=not_a_dir))
        with self.assertRaises(MonitorConfigError):
            await monitor.start()

    async def test_start_with_missing_root_then_stop_twice(self) -> None:
        monitor = LiveSessionMonitor(MonitorSettings(projects_dir=self.root / "missing"))
        await monitor.start()
        self.assertTrue(monitor.is_running)
        await monitor.stop()
        await monitor.stop()
        self.assertFalse(monitor.is_running)

    async def test_corrupt_session_does_not_break_others(self) -> None:
        good = self._write("good", _assistant(10, 1))
        infinite = '{"message": {"role": "assistant", "usage": {"input_tokens": Infinity}}}\n'
        self._write("broken", _assistant(1, 1) + infinite + _assistant(2, 2))

        await self.monitor.process_batch([good])

        changed = self.recorder.of(SessionsChanged)
        self.assertEqual(len(changed), 1)
        self.assertEqual(sorted(s.sessionId for s in changed[0].sessions), ["broken", "good"])
        self.assertEqual((await self.monitor.get_session("broken")).turns, 3)

        original = self.monitor.cache.parse_and_cache

        def explode(path, session_id=None):
            if Path(path).stem == "broken":
                raise RuntimeError("parser bug")
            return original(path, session_id)

        self.monitor.clear_cache()
        with patch.object(self.monitor.cache, "parse_and_cache", side_effect=explode):
            await self.monitor.process_batch([good])

        changed = self.recorder.of(SessionsChanged)
        self.assertEqual(len(changed), 2)
        self.assertEqual([s.sessionId for s in changed[-1].sessions], ["good"])
        self.assertEqual([e.session_id for e in self.recorder.of(SessionError)], ["broken"])
        self.assertEqual([e.sessionId for e in self.monitor.errors()], ["broken"])

    async def test_stopped_sessions_release_locks_and_errors(self) -> None:
        first = self._write("a", _assistant(10, 1))
        second = self._write("b", _assistant(10, 1))
        await self.monitor.track_session("a", first)
        await self.monitor.track_session("b", second)
        self._append(second, _assistant(1, 1))
        with patch.object(self.monitor.tailer, "read_since", side_effect=PermissionError("denied")):
            await self.monitor.process_path(second)
        self.assertEqual(sorted(self.monitor._locks), ["a", "b"])
        self.assertEqual(len(self.monitor.errors()), 1)

        removed = self.monitor.lifecycle.sweep(now=1e12)

        self.assertEqual(sorted(removed), ["a", "b"])
        self.assertEqual(self.monitor._locks, {})
        self.assertEqual(self.monitor.errors(), [])

    async def test_updates_for_tracked_sessions_are_published(self) -> None:
        path = self._write("live", _assistant(10, 1))
        await self.monitor.track_session("live", path)
        self._append(path, _assistant(1, 1))

        await self.monitor.discovery.dispatch([SessionUpdated("live", path)], self.monitor.handle_discovery_events)

        self.assertEqual(self.recorder.of(SessionUpdated), [SessionUpdated("live", path)])
        self.assertEqual(self.monitor.coalescer.pending, frozenset({path}))

    async def test_read_finishing_after_stop_is_discarded(self) -> None:
        path = self._write("s1", _assistant(10, 1))
        await self.monitor.track_session("s1", path)
        record = self.monitor.lifecycle.peek("s1")
        self._append(path, _assistant(5, 5))

        loop = asyncio.get_running_loop()
        original = self.monitor.tailer.read_since

        def stop_midway(current):
            result = original(current)
            loop.call_soon_threadsafe(self.monitor.lifecycle.stop_session, "s1")
            return result

        with patch.object(self.monitor.tailer, "read_since", side_effect=stop_midway):
            outcome = await self.monitor.process_path(path)

        self.assertIsNone(outcome)
        self.assertEqual((record.turns, record.input_tokens), (1, 10))
        self.assertEqual(record.state, SessionState.STOPPED)
        self.assertEqual(self.recorder.of(RecordsAppended), [])
        self.assertNotIn(path, self.monitor.cache)
        self.assertEqual(len(self.recorder.of(SessionStopped)), 1)


if __name__ == "__main__":
    unittest.main()
