import sys
import types
import unittest
from pathlib import Path
from unittest import mock

TESTS_ROOT = Path(__file__).resolve().parent
SRC_ROOT = TESTS_ROOT.parent / "src"
for p in (SRC_ROOT, TESTS_ROOT):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from dashvault import mount_manager
from dashvault.mount_manager import MountManager, RetryBudget
from dashvault.volumes import BackingVolume, OwnershipError, OwnershipLedger

from fakes import FakeRunner, FakeSystem, completed

CAM = BackingVolume("camera", Path("/backingfiles/cam_disk.bin"), Path("/mnt/cam"))


class RetryBudgetTests(unittest.TestCase):

    def test_gives_up_after_ten_attempts_one_second_apart(self):
        attempt = mock.Mock(return_value=False)
        with mock.patch.object(mount_manager.time, "sleep") as sleep:
            ok = RetryBudget().run(attempt, what="mounting /mnt/cam")

        self.assertFalse(ok)
        self.assertEqual(attempt.call_count, 10)
        self.assertEqual(sleep.call_count, 9)
        sleep.assert_called_with(1.0)

    def test_stops_at_first_success(self):
        attempt = mock.Mock(side_effect=[False, False, True])
        with mock.patch.object(mount_manager.time, "sleep"):
            self.assertTrue(RetryBudget().run(attempt))
        self.assertEqual(attempt.call_count, 3)


class MountTests(unittest.TestCase):

    def setUp(self):
        self.system = FakeSystem([CAM])
        patches = [
            mock.patch.object(mount_manager, "run_command", self.system),
            mock.patch.object(mount_manager, "is_mounted", self.system.is_mounted),
            mock.patch.object(mount_manager.time, "sleep"),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.mm = MountManager()

    def test_ensure_mounted_is_noop_when_already_mounted(self):
        self.system.mounted.add("/mnt/cam")
        self.assertTrue(self.mm.ensure_mounted(CAM))
        self.assertEqual(self.system.commands("mount"), [])

    def test_ensure_mounted_with_retry_surfaces_failure_after_ten_attempts(self):
        self.system.mount_failures = 100
        self.assertFalse(self.mm.ensure_mounted_with_retry(CAM))
        self.assertEqual(self.system.mount_attempts["/mnt/cam"], 10)

    def test_ensure_mounted_with_retry_recovers(self):
        self.system.mount_failures = 2
        self.assertTrue(self.mm.ensure_mounted_with_retry(CAM))
        self.assertEqual(self.system.mount_attempts["/mnt/cam"], 3)
        self.assertTrue(self.system.is_mounted("/mnt/cam"))

    def test_unmount_twice_is_harmless(self):
        self.system.mounted.add("/mnt/cam")
        self.mm.unmount(CAM)
        self.mm.unmount(CAM)
        self.assertEqual(len(self.system.commands("umount")), 1)
        self.assertFalse(self.system.is_mounted("/mnt/cam"))

    def test_refuses_to_mount_host_attached_volume(self):
        ledger = OwnershipLedger([CAM], self.system.is_mounted)
        ledger.mark_host_attached()
        mm = MountManager(ledger)
        with self.assertRaises(OwnershipError):
            mm.mount(CAM)
        self.assertEqual(self.system.commands("mount"), [])


class UnmountFallbackTests(unittest.TestCase):

    def test_falls_back_to_lazy_unmount(self):
        runner = FakeRunner({("umount", "/mnt/cam"): (32, "")})
        with mock.patch.object(mount_manager, "run_command", runner), \
             mock.patch.object(mount_manager, "is_mounted", return_value=True):
            MountManager().unmount(CAM)
        self.assertEqual(runner.calls, [["umount", "/mnt/cam"], ["umount", "-l", "/mnt/cam"]])

    def test_never_raises(self):
        with mock.patch.object(mount_manager, "run_command", side_effect=RuntimeError("boom")), \
             mock.patch.object(mount_manager, "is_mounted", return_value=True):
            MountManager().unmount(CAM)


class RepairTests(unittest.TestCase):

    def test_fsck_runs_on_first_partition_and_loop_is_detached(self):
        runner = FakeRunner({("losetup", "-Pf"): (0, "/dev/loop3\n")})
        with mock.patch.object(mount_manager, "run_command", runner):
            self.assertTrue(MountManager().repair_image(CAM))
        self.assertEqual(runner.calls, [
            ["losetup", "-Pf", "--show", "/backingfiles/cam_disk.bin"],
            ["fsck", "/dev/loop3p1", "--", "-a"],
            ["losetup", "-d", "/dev/loop3"],
        ])

    def test_loop_is_detached_even_when_fsck_fails(self):
        runner = FakeRunner({
            ("losetup", "-Pf"): (0, "/dev/loop0\n"),
            ("fsck",): (8, "operational error"),
        })
        with mock.patch.object(mount_manager, "run_command", runner):
            self.assertFalse(MountManager().repair_image(CAM))
        self.assertEqual(runner.commands("losetup", "-d"), [["losetup", "-d", "/dev/loop0"]])

    def test_no_fsck_when_losetup_fails(self):
        runner = FakeRunner({("losetup", "-Pf"): (1, "")})
        with mock.patch.object(mount_manager, "run_command", runner):
            self.assertFalse(MountManager().repair_image(CAM))
        self.assertEqual(runner.commands("fsck"), [])

    def test_repair_all_skips_absent_volumes(self):
        music = BackingVolume("music", Path("/backingfiles/music_disk.bin"), Path("/mnt/music"), present=False)
        mm = MountManager()
        with mock.patch.object(mm, "repair_image") as repair:
            mm.repair_all([CAM, music])
        repair.assert_called_once_with(CAM)


class TrimTests(unittest.TestCase):

    def test_not_mounted_is_a_logged_noop(self):
        runner = FakeRunner()
        with mock.patch.object(mount_manager, "run_command", runner), \
             mock.patch.object(mount_manager, "is_mounted", return_value=False):
            MountManager().trim_free_space(CAM)
        self.assertEqual(runner.calls, [])

    def test_trim_resolves_backing_image_and_counts_extents(self):
        runner = FakeRunner({
            ("findmnt",): (0, "/dev/loop0p1\n"),
            ("losetup", "-n"): (0, "/backingfiles/cam_disk.bin\n"),
            ("filefrag",): (0, "/backingfiles/cam_disk.bin: 42 extents found\n"),
        })
        with mock.patch.object(mount_manager, "run_command", runner), \
             mock.patch.object(mount_manager, "is_mounted", return_value=True):
            MountManager().trim_free_space(CAM)

        self.assertEqual(runner.commands("losetup"), [["losetup", "-n", "-O", "BACK-FILE", "/dev/loop0"]])
        self.assertEqual(runner.commands("fstrim"), [["fstrim", "/mnt/cam"]])
        self.assertEqual(len(runner.commands("filefrag")), 2)

    def test_trim_failure_does_not_raise(self):
        runner = FakeRunner({("fstrim",): (1, "")})
        with mock.patch.object(mount_manager, "run_command", runner), \
             mock.patch.object(mount_manager, "is_mounted", return_value=True):
            MountManager().trim_free_space(CAM)
        self.assertEqual(len(runner.commands("fstrim")), 1)


class MountTableTests(unittest.TestCase):

    def test_is_mounted_reads_psutil_partitions(self):
        parts = [types.SimpleNamespace(mountpoint="/"), types.SimpleNamespace(mountpoint="/mnt/cam")]
        with mock.patch.object(mount_manager.psutil, "disk_partitions", return_value=parts) as dp:
            self.assertTrue(mount_manager.is_mounted("/mnt/cam"))
            self.assertFalse(mount_manager.is_mounted("/mnt/music"))
        dp.assert_called_with(all=True)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
