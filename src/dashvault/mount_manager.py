"""
mount_manager.py
Mount, repair and trim the backing images while they are owned locally.

Mount points are pre-configured in /etc/fstab, so mounting is just
``mount <mount_point>``. Repair runs fsck on the first partition of a
partition-mapped loop device. Nothing in here raises on a failed system
command: every failure is logged and reported through the return value.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import psutil

from dashvault.utils import run_command
from dashvault.volumes import BackingVolume, OwnershipLedger

FSCK_TIMEOUT = 30 * 60


@dataclass(frozen=True)
class RetryBudget:
    attempts: int = 10
    delay: float = 1.0

    def run(self, attempt: Callable[[], bool], what: str = "operation") -> bool:
        """Call *attempt* until it returns True or the budget is spent."""
        for n in range(1, self.attempts + 1):
            if attempt():
                return True
            if n < self.attempts:
                logging.debug(f"{what} failed (attempt {n}/{self.attempts}), retrying in {self.delay}s")
                time.sleep(self.delay)
        logging.warning(f"{what} failed after {self.attempts} attempts")
        return False


def is_mounted(mount_point: Path | str) -> bool:
    target = os.path.realpath(str(mount_point))
    try:
        partitions = psutil.disk_partitions(all=True)
    except OSError as e:
        logging.warning(f"Could not read mount table: {e}")
        return os.path.ismount(target)
    return any(os.path.realpath(p.mountpoint) == target for p in partitions)


class MountManager:
    """Mount reliability layer for the backing volumes."""

    def __init__(self, ledger: Optional[OwnershipLedger] = None,
                 retry: RetryBudget = RetryBudget()):
        self.ledger = ledger
        self.retry = retry

    # ------------------------------------------------------------------
    # mounting
    # ------------------------------------------------------------------
    def is_mounted(self, mount_point: Path | str) -> bool:
        return is_mounted(mount_point)

    def mount(self, volume: BackingVolume) -> bool:
        self._require_local(volume)
        res = run_command(["mount", volume.mount_point])
        if res.returncode != 0:
            logging.error(f"Failed to mount {volume.mount_point}: {(res.stderr or '').strip()}")
            return False
        logging.info(f"Mounted {volume.mount_point}")
        return True

    def ensure_mounted(self, volume: BackingVolume) -> bool:
        if self.is_mounted(volume.mount_point):
            logging.debug(f"{volume.mount_point} already mounted")
            return True
        return self.mount(volume)

    def ensure_mounted_with_retry(self, volume: BackingVolume) -> bool:
        return self.retry.run(lambda: self.ensure_mounted(volume),
                              what=f"mounting {volume.mount_point}")

    def unmount(self, volume: BackingVolume) -> None:
        """Best-effort unmount; falls back to a lazy unmount. Never raises."""
        mount_point = volume.mount_point
        try:
            if not self.is_mounted(mount_point):
                logging.debug(f"{mount_point} not mounted, nothing to unmount")
                return
            res = run_command(["umount", mount_point])
            if res.returncode == 0:
                logging.info(f"Unmounted {mount_point}")
                return
            logging.warning(f"umount {mount_point} failed ({(res.stderr or '').strip()}), trying lazy unmount")
            res = run_command(["umount", "-l", mount_point])
            if res.returncode == 0:
                logging.info(f"Lazily unmounted {mount_point}")
            else:
                logging.error(f"Lazy unmount of {mount_point} failed: {(res.stderr or '').strip()}")
        except Exception as e:
            logging.error(f"Unexpected error unmounting {mount_point}: {e}")

    # ------------------------------------------------------------------
    # repair
    # ------------------------------------------------------------------
    def repair_image(self, volume: BackingVolume) -> bool:
        """Attach the image as a loop device, fsck -a its first partition, detach."""
        self._require_local(volume)
        image = volume.image
        res = run_command(["losetup", "-Pf", "--show", image])
        if res.returncode != 0 or not res.stdout.strip():
            logging.error(f"losetup failed for {image}: {(res.stderr or '').strip()}")
            return False

        loop_dev = res.stdout.strip()
        partition = f"{loop_dev}p1"
        try:
            logging.info(f"Running fsck on {image} ({partition})")
            res = run_command(["fsck", partition, "--", "-a"], timeout=FSCK_TIMEOUT)
            # 0 = clean, 1 = errors corrected
            if res.returncode in (0, 1):
                logging.info(f"fsck of {image} finished (status {res.returncode})")
                return True
            logging.warning(f"fsck of {image} returned {res.returncode}: {(res.stdout or '').strip()}")
            return False
        finally:
            res = run_command(["losetup", "-d", loop_dev])
            if res.returncode != 0:
                logging.warning(f"losetup -d {loop_dev} failed: {(res.stderr or '').strip()}")

    def repair_all(self, volumes) -> None:
        for volume in volumes:
            if volume.present:
                self.repair_image(volume)

    # ------------------------------------------------------------------
    # trim
    # ------------------------------------------------------------------
    def trim_free_space(self, volume: BackingVolume) -> None:
        mount_point = volume.mount_point
        try:
            if not self.is_mounted(mount_point):
                logging.info(f"{mount_point} not mounted, skipping trim")
                return
            self._require_local(volume)
            image = self._backing_image(mount_point)
            before = self._extents(image)
            logging.info(f"Trimming free space in {mount_point}, which has {before} extents")
            res = run_command(["fstrim", mount_point])
            if res.returncode != 0:
                logging.warning(f"fstrim {mount_point} failed: {(res.stderr or '').strip()}")
                return
            after = self._extents(image)
            logging.info(f"Trim complete, image now has {after} extents")
        except Exception as e:
            logging.error(f"Trim of {mount_point} failed: {e}")

    def _backing_image(self, mount_point: Path) -> Optional[str]:
        res = run_command(["findmnt", "-n", "-o", "SOURCE", mount_point])
        source = res.stdout.strip() if res.returncode == 0 else ""
        if not source:
            return None
        loop_dev = source[:-2] if source.endswith("p1") else source
        res = run_command(["losetup", "-n", "-O", "BACK-FILE", loop_dev])
        image = res.stdout.strip() if res.returncode == 0 else ""
        return image or None

    @staticmethod
    def _extents(image: Optional[str]) -> str:
        if not image:
            return "unknown"
        res = run_command(["filefrag", image])
        # "/backingfiles/cam_disk.bin: 1234 extents found"
        parts = res.stdout.split(":", 1)
        if res.returncode != 0 or len(parts) < 2 or not parts[1].split():
            return "unknown"
        return parts[1].split()[0]

    def _require_local(self, volume: BackingVolume) -> None:
        if self.ledger is not None:
            self.ledger.require_local(volume)
