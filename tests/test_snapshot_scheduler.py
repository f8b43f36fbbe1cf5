import sys
import threading
import unittest
from pathlib import Path
from unittest import mock

TESTS_ROOT = Path(__file__).resolve().parent
SRC_ROOT = TESTS_ROOT.parent / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from dashvault.snapshot_scheduler import SnapshotScheduler


class SnapshotSchedulerTests(unittest.TestCase):

    def test_take_snapshot_runs_the_tool(self):
        tool = mock.Mock()
        tool.make_snapshot.return_value = True
        self.assertTrue(SnapshotScheduler(tool).take_snapshot())
        tool.make_snapshot.assert_called_once_with()

    def test_disabled_scheduler_does_nothing(self):
        tool = mock.Mock()
        scheduler = SnapshotScheduler(tool, enabled=False)
        scheduler.start()
        self.assertFalse(scheduler.take_snapshot())
        scheduler.stop()
        tool.make_snapshot.assert_not_called()

    def test_concurrent_request_is_skipped(self):
        release = threading.Event()
        started = threading.Event()
        tool = mock.Mock()

        def slow_snapshot():
            started.set()
            release.wait(5)
            return True

        tool.make_snapshot.side_effect = slow_snapshot
        scheduler = SnapshotScheduler(tool)
        worker = threading.Thread(target=scheduler.take_snapshot)
        worker.start()
        self.assertTrue(started.wait(5))

        self.assertFalse(scheduler.take_snapshot())
        release.set()
        worker.join(5)
        self.assertEqual(tool.make_snapshot.call_count, 1)

    def test_tool_error_is_reported_as_failure(self):
        tool = mock.Mock()
        tool.make_snapshot.side_effect = OSError("no space left")
        scheduler = SnapshotScheduler(tool)
        self.assertFalse(scheduler.take_snapshot())
        tool.make_snapshot.side_effect = None
        tool.make_snapshot.return_value = True
        self.assertTrue(scheduler.take_snapshot())

    def test_background_thread_waits_for_idle_then_snapshots(self):
        done = threading.Event()
        tool = mock.Mock()
        tool.wait_for_idle.return_value = False

        def snapshot():
            done.set()
            return True

        tool.make_snapshot.side_effect = snapshot
        scheduler = SnapshotScheduler(tool, interval=0.01)
        scheduler.start()
        try:
            self.assertTrue(done.wait(5))
        finally:
            scheduler.stop()
        tool.wait_for_idle.assert_called()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
