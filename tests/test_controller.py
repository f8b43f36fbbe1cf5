import sys
import tempfile
import types
import unittest
from pathlib import Path
from unittest import mock

TESTS_ROOT = Path(__file__).resolve().parent
SRC_ROOT = TESTS_ROOT.parent / "src"
for p in (SRC_ROOT, TESTS_ROOT):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from dashvault import controller, mount_manager, usb_gadget
from dashvault.archiver import Archiver
from dashvault.controller import Controller, LoopPhase
from dashvault.mount_manager import MountManager, RetryBudget
from dashvault.usb_gadget import GadgetManager
from dashvault.volumes import BackingVolume, OwnershipLedger

from fakes import FakeSystem


class ControllerTestCase(unittest.TestCase):
    """Runs the controller against a simulated kernel that flags any moment
    the gadget and a local mount hold the same image."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        root = Path(self.tmp.name)
        (root / "cam").mkdir()
        self.camera = BackingVolume("camera", Path("/backingfiles/cam_disk.bin"), root / "cam")
        self.music = BackingVolume("music", Path("/backingfiles/music_disk.bin"), Path("/mnt/music"))
        self.lun = root / "lun0"

        module_dir = root / "module" / "g_mass_storage"
        self.system = FakeSystem([self.camera, self.music], lun_path=self.lun, module_dir=module_dir)
        for p in (
            mock.patch.object(mount_manager, "run_command", self.system),
            mock.patch.object(mount_manager, "is_mounted", self.system.is_mounted),
            mock.patch.object(usb_gadget, "run_command", self.system),
            mock.patch.object(controller.Utils, "health_summary", return_value="cpu 1%"),
        ):
            p.start()
            self.addCleanup(p.stop)

        self.ledger = OwnershipLedger([self.camera, self.music], self.system.is_mounted)
        self.mm = MountManager(self.ledger, RetryBudget(attempts=10, delay=0))
        self.gadget = GadgetManager(self.ledger, self.mm, lun_glob=str(self.lun), module_dir=module_dir)

        self.reachability = mock.Mock()
        self.reachability.is_reachable.return_value = True
        self.reachability.wait_until_reachable.return_value = True
        self.reachability.wait_until_unreachable.return_value = True

        self.transport = mock.Mock()
        self.transport.connect.return_value = True
        self.transport.archive_clips.return_value = True
        self.transport.sync_music.return_value = True
        self.transport.music_reachable.return_value = True
        keep_awake = mock.Mock()
        keep_awake.is_enabled.return_value = True
        self.archiver = Archiver(self.mm, self.transport, keep_awake, mock.Mock(),
                                 self.camera, self.music)

        self.snapshots = mock.Mock()
        self.indicator = mock.Mock()
        config = types.SimpleNamespace(
            display_off_command=(),
            clock_command=(),
            timing=types.SimpleNamespace(settle_delay=0),
            log_file=root / "archiveloop.log",
            log_max_lines=10000,
        )
        self.controller = Controller(config, self.ledger, self.mm, self.gadget, self.reachability,
                                     self.archiver, self.snapshots, self.indicator)

    def add_clips(self):
        event = self.camera.mount_point / "TeslaCam" / "SentryClips" / "2026-10-18_08-00-00"
        event.mkdir(parents=True)
        (event / "front.mp4").write_bytes(b"\0")

    def assert_exclusive(self):
        self.assertEqual(self.system.violations, [])


class BootTests(ControllerTestCase):

    def test_reachable_at_boot_without_clips(self):
        self.assertEqual(self.controller.run(max_cycles=0), 0)

        self.transport.archive_clips.assert_not_called()
        self.assertTrue(self.system.gadget_loaded)
        self.assertTrue(self.ledger.host_attached())
        self.reachability.wait_until_unreachable.assert_called_once_with()
        self.reachability.wait_until_reachable.assert_not_called()
        self.snapshots.start.assert_called_once_with()
        self.snapshots.stop.assert_called_once_with()
        self.assert_exclusive()

    def test_boot_repairs_before_anything_is_attached(self):
        self.reachability.is_reachable.return_value = False
        self.controller.run(max_cycles=0)

        self.assertEqual(len(self.system.commands("losetup", "-Pf")), 2)
        self.assertEqual(self.controller.phase, LoopPhase.WAITING)
        self.indicator.set.assert_called_with("slow")
        self.assertTrue(self.system.gadget_loaded)
        self.reachability.wait_until_unreachable.assert_not_called()
        self.assert_exclusive()

    def test_boot_repairs_when_gadget_module_was_never_loaded(self):
        self.reachability.is_reachable.return_value = False
        self.controller.boot()

        self.assertEqual(self.system.commands("modprobe", "-r"), [])
        self.assertEqual(len(self.system.commands("losetup", "-Pf")), 2)
        self.assertEqual(len(self.system.commands("fsck")), 2)

    def test_startup_error_still_attaches_gadget(self):
        self.reachability.is_reachable.return_value = False
        with mock.patch.object(self.mm, "repair_all", side_effect=UnicodeDecodeError(
                "utf-8", b"\xff", 0, 1, "invalid start byte")):
            self.assertEqual(self.controller.run(max_cycles=0), 0)
        self.assertTrue(self.system.gadget_loaded)
        self.assertTrue(self.ledger.host_attached())
        self.snapshots.stop.assert_called_once_with()
        self.assert_exclusive()

    def test_mount_failing_every_attempt_still_reattaches(self):
        self.system.mount_failures = 1000
        self.controller.run(max_cycles=0)

        self.assertEqual(self.system.mount_attempts[str(self.camera.mount_point)], 10)
        self.transport.archive_clips.assert_not_called()
        self.assertTrue(self.system.gadget_loaded)
        self.assert_exclusive()


class SteadyCycleTests(ControllerTestCase):

    def setUp(self):
        super().setUp()
        self.reachability.is_reachable.return_value = False
        self.controller.boot()
        self.controller.initial_branch()
        self.system.calls.clear()

    def test_clips_archived_with_strict_ordering(self):
        self.add_clips()
        self.assertTrue(self.controller.steady_cycle())

        self.transport.archive_clips.assert_called_once_with()
        names = [" ".join(c[:2]) for c in self.system.calls]
        detach = names.index("modprobe -r")
        first_mount = next(i for i, c in enumerate(self.system.calls) if c[0] == "mount")
        last_umount = max(i for i, c in enumerate(self.system.calls) if c[0] == "umount")
        attach = names.index("modprobe g_mass_storage")
        self.assertLess(detach, first_mount)
        self.assertLess(last_umount, attach)
        self.assertEqual(self.system.mounted, set())
        self.snapshots.take_snapshot.assert_called()
        self.assert_exclusive()

    def test_missing_gadget_gets_exactly_one_extra_cycle(self):
        self.system.lun_path = None
        self.lun.unlink()
        self.controller.steady_cycle()

        self.assertEqual(len(self.system.commands("modprobe", "-r")), 2)
        self.assertEqual(len(self.system.commands("modprobe", "g_mass_storage")), 2)
        self.assertEqual(self.controller.phase, LoopPhase.HEALING)
        self.assert_exclusive()

    def test_stop_while_waiting_ends_the_cycle(self):
        self.reachability.wait_until_reachable.return_value = False
        self.assertFalse(self.controller.steady_cycle())
        self.assertEqual(self.system.calls, [])

    def test_unexpected_error_reattaches_and_continues(self):
        with mock.patch.object(controller, "truncate_log", side_effect=RuntimeError("disk full")):
            self.assertEqual(self.controller.run(max_cycles=1), 0)
        self.assertTrue(self.system.gadget_loaded)
        self.assertTrue(self.ledger.host_attached())
        self.assert_exclusive()

    def test_maintenance_error_does_not_leave_gadget_unloaded(self):
        self.transport.connect.side_effect = RuntimeError("vpn down")
        self.assertTrue(self.controller.steady_cycle())
        self.assertTrue(self.system.gadget_loaded)
        self.assert_exclusive()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
