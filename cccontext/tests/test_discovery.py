import os
import tempfile
import unittest
from pathlib import Path

from watchfiles import Change

from cccontext.monitor.discovery import MonitorConfigError, SessionDiscovery
from cccontext.monitor.events import SessionAdded, SessionRemoved, SessionUpdated


class SessionDiscoveryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.root = base / "projects"
        self.outside = base / "outside"
        (self.root / "proj-a").mkdir(parents=True)
        (self.root / "proj-b" / "nested").mkdir(parents=True)
        self.outside.mkdir()
        self.discovery = SessionDiscovery(self.root)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _touch(self, path: Path, text: str = "{}\n") -> Path:
        path.write_text(text, encoding="utf-8")
        return path

    def test_lists_jsonl_files_recursively(self) -> None:
        a = self._touch(self.root / "proj-a" / "one.jsonl")
        b = self._touch(self.root / "proj-b" / "nested" / "two.jsonl")
        self._touch(self.root / "proj-a" / "notes.md")
        self.assertEqual(self.discovery.list_session_files(), sorted([a, b]))

    def test_skips_symlinks_and_paths_outside_root(self) -> None:
        real = self._touch(self.root / "proj-a" / "real.jsonl")
        outside_file = self._touch(self.outside / "escaped.jsonl")
        os.symlink(outside_file, self.root / "proj-a" / "link.jsonl")
        os.symlink(self.outside, self.root / "linked-dir")

        self.assertEqual(self.discovery.list_session_files(), [real])
        self.assertFalse(self.discovery.is_session_file(self.root / "proj-a" / "link.jsonl"))
        self.assertFalse(self.discovery.is_session_file(outside_file))

    def test_listing_is_cached_until_invalidated(self) -> None:
        self._touch(self.root / "proj-a" / "one.jsonl")
        self.assertEqual(len(self.discovery.list_session_files()), 1)
        self._touch(self.root / "proj-a" / "two.jsonl")
        self.assertEqual(len(self.discovery.list_session_files()), 1)
        self.discovery.invalidate()
        self.assertEqual(len(self.discovery.list_session_files()), 2)

    def test_missing_root_warns_once(self) -> None:
        discovery = SessionDiscovery(self.root / "does-not-exist")
        with self.assertLogs("cccontext.watcher", level="WARNING") as logs:
            self.assertFalse(discovery.validate_root())
            self.assertEqual(discovery.list_session_files(), [])
        self.assertEqual(len(logs.records), 1)

    def test_root_that_is_a_file_is_a_config_error(self) -> None:
        not_a_dir = self._touch(self.outside / "file.txt")
        with self.assertRaises(MonitorConfigError):
            SessionDiscovery(not_a_dir).validate_root()

    def test_find_active_session_uses_mtime(self) -> None:
        old = self._touch(self.root / "proj-a" / "old.jsonl")
        new = self._touch(self.root / "proj-b" / "new.jsonl")
        os.utime(old, (2_000, 2_000))
        os.utime(new, (1_000, 1_000))
        self.assertEqual(self.discovery.find_active_session(), old)
        self.assertIsNone(SessionDiscovery(self.outside).find_active_session())

    def test_classify_changes(self) -> None:
        existing = self._touch(self.root / "proj-a" / "existing.jsonl")
        gone = self._touch(self.root / "proj-a" / "gone.jsonl")
        self.discovery.list_session_files()
        created = self._touch(self.root / "proj-b" / "created.jsonl")
        gone.unlink()

        events = self.discovery.classify_changes(
            {
                (Change.modified, str(existing)),
                (Change.added, str(created)),
                (Change.deleted, str(gone)),
                (Change.modified, str(self.root / "proj-a" / "notes.md")),
            }
        )

        by_type = {type(event): event for event in events}
        self.assertEqual(len(events), 3)
        self.assertEqual(by_type[SessionUpdated].path, existing)
        self.assertEqual(by_type[SessionAdded].session_id, "created")
        self.assertFalse(by_type[SessionAdded].initial)
        self.assertEqual(by_type[SessionRemoved].session_id, "gone")
        self.assertIn(created, self.discovery.list_session_files())
        self.assertNotIn(gone, self.discovery.list_session_files())

    def test_atomic_replace_is_reported_as_update(self) -> None:
        path = self._touch(self.root / "proj-a" / "swap.jsonl")
        self.discovery.list_session_files()
        events = self.discovery.classify_changes({(Change.deleted, str(path)), (Change.added, str(path))})
        self.assertEqual(events, [SessionUpdated("swap", path)])

    def test_delete_of_unknown_file_is_ignored(self) -> None:
        events = self.discovery.classify_changes({(Change.deleted, str(self.root / "proj-a" / "never.jsonl"))})
        self.assertEqual(events, [])

    async def test_updates_reach_handles_and_callback(self) -> None:
        path = self._touch(self.root / "proj-a" / "watched.jsonl")
        other = self._touch(self.root / "proj-a" / "other.jsonl")
        delivered: list[Path] = []
        forwarded: list = []
        handle = self.discovery.watch(path, delivered.append)

        await self.discovery.dispatch(
            [SessionUpdated("watched", path), SessionUpdated("other", other), SessionRemoved("watched", path)],
            forwarded.extend,
        )
        self.assertEqual(delivered, [path])
        self.assertEqual(
            [(type(event), event.session_id) for event in forwarded],
            [(SessionUpdated, "watched"), (SessionUpdated, "other"), (SessionRemoved, "watched")],
        )
        self.assertEqual(self.discovery.watched_paths, [path])

        handle.close()
        handle.close()
        self.assertTrue(handle.closed)
        self.assertEqual(self.discovery.watched_paths, [])
        await self.discovery.dispatch([SessionUpdated("watched", path)], forwarded.extend)
        self.assertEqual(delivered, [path])
        self.assertEqual(len(forwarded), 4)

    async def test_start_and_stop_with_missing_root(self) -> None:
        discovery = SessionDiscovery(self.root / "later")
        with self.assertLogs("cccontext.watcher", level="INFO"):
            await discovery.start(lambda events: None)
        self.assertTrue(discovery.is_running)
        await discovery.stop()
        self.assertFalse(discovery.is_running)


if __name__ == "__main__":
    unittest.main()
