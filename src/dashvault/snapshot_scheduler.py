"""Periodic snapshot trigger, independent of the main loop's cadence.

The scheduler thread sleeps for the interval, waits (best effort) for the
host to go idle, then takes a snapshot. The main loop also asks for a
snapshot at start and right before each maintenance cycle; a request that
arrives while another snapshot is running is skipped instead of queued.
"""
from __future__ import annotations

import logging
import threading


class SnapshotScheduler:

    def __init__(self, snapshot_tool, *, interval: float = 3480, enabled: bool = True):
        self.snapshot_tool = snapshot_tool
        self.interval = interval
        self.enabled = enabled
        self._snapshot_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="SnapshotScheduler", daemon=True)

    # ------------------------------------------------------------------
    def start(self) -> None:
        if not self.enabled:
            logging.info("Snapshots disabled")
            return
        if self._thread.is_alive():
            return
        logging.info(f"Snapshot scheduler started (every {self.interval:.0f}s)")
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=1.0)
        logging.info("Snapshot scheduler stopped")

    # ------------------------------------------------------------------
    def take_snapshot(self) -> bool:
        """Take one snapshot now. Returns False when skipped or failed."""
        if not self.enabled:
            return False
        if not self._snapshot_lock.acquire(blocking=False):
            logging.info("Snapshot already in progress, skipping")
            return False
        try:
            logging.info("Taking snapshot")
            ok = self.snapshot_tool.make_snapshot()
            if ok:
                logging.info("Snapshot complete")
            return ok
        except Exception:
            logging.exception("Snapshot failed")
            return False
        finally:
            self._snapshot_lock.release()

    # ------------------------------------------------------------------
    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                if not self.snapshot_tool.wait_for_idle():
                    logging.info("Could not confirm host is idle, taking snapshot anyway")
            except Exception as e:
                logging.warning(f"Idle check failed: {e}")
            if self._stop_event.is_set():
                break
            self.take_snapshot()
