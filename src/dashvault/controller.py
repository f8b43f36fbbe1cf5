"""Main control loop.

    Booting ─▶ initial branch ─▶ (Waiting-Unreachable) ─▶ steady cycle ─┐
                                         ▲                               │
                                         └───────────────────────────────┘

A single thread makes every ownership transition, so ordering alone keeps
the gadget and the local mounts apart: detach before mount, unmount before
attach. Nothing in the steady state is allowed to end the process.
"""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Optional

from dashvault.collaborators import display_off, sync_clock
from dashvault.logger import truncate_log
from dashvault.status_store import NullStatus, StatusKey
from dashvault.utils import Utils
from dashvault.volumes import OwnershipError


class LoopPhase(Enum):
    BOOTING = "booting"
    WAITING = "waiting"
    ARCHIVING = "archiving"
    ATTACHED = "attached"
    HEALING = "healing"


PHASE_PATTERNS = {
    LoopPhase.BOOTING: "fast",
    LoopPhase.WAITING: "slow",
    LoopPhase.ARCHIVING: "fast",
    LoopPhase.ATTACHED: "double",
    LoopPhase.HEALING: "fast",
}


class Controller:

    def __init__(self, config, ledger, mount_manager, gadget, reachability,
                 archiver, snapshots, indicator, status=None):
        self.config = config
        self.ledger = ledger
        self.mount_manager = mount_manager
        self.gadget = gadget
        self.reachability = reachability
        self.archiver = archiver
        self.snapshots = snapshots
        self.indicator = indicator
        self.status = status or NullStatus()
        self.phase: Optional[LoopPhase] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    def stop(self) -> None:
        self._stop_event.set()
        self.reachability.stop()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _enter(self, phase: LoopPhase, led: bool = True) -> None:
        self.phase = phase
        logging.debug(f"Phase -> {phase.value}")
        if led:
            self.indicator.set(PHASE_PATTERNS[phase])
        self.status.set_value(StatusKey.PHASE, phase.value)

    # ------------------------------------------------------------------
    # ownership transitions
    # ------------------------------------------------------------------
    def _attach(self) -> bool:
        try:
            ok = self.gadget.attach_to_host()
        except OwnershipError as e:
            logging.error(f"Cannot attach yet ({e}), unmounting and retrying")
            for volume in self.ledger.volumes:
                self.mount_manager.unmount(volume)
            try:
                ok = self.gadget.attach_to_host()
            except OwnershipError as e:
                logging.error(f"Giving up on attach this cycle: {e}")
                ok = False
        self.status.set_value(StatusKey.GADGET_ATTACHED, int(self.ledger.host_attached()))
        return ok

    def _maintain(self) -> None:
        """Repair and archive; the volumes must already be owned locally."""
        self.mount_manager.repair_all(self.ledger.volumes)
        ok = self.archiver.run_archive_cycle()
        self.status.record_archive(ok)

    # ------------------------------------------------------------------
    # states
    # ------------------------------------------------------------------
    def boot(self) -> None:
        self._enter(LoopPhase.BOOTING)
        logging.info("Starting")
        display_off(self.config.display_off_command)

        if not self.gadget.detach_from_host():
            logging.error("Could not unload the gadget at boot")
        self.mount_manager.repair_all(self.ledger.volumes)

        self.snapshots.take_snapshot()
        self.snapshots.start()

    def initial_branch(self) -> bool:
        """Archive right away when the archive is in range. True if it was."""
        if self.reachability.is_reachable():
            self._enter(LoopPhase.ARCHIVING)
            sync_clock(self.config.clock_command)
            if self.ledger.host_attached():
                logging.error("Volumes unexpectedly host-attached at boot, skipping archive")
            else:
                self._maintain()
            self._enter(LoopPhase.ATTACHED)
            self._attach()
            return True
        self._enter(LoopPhase.WAITING)
        self._attach()
        return False

    def wait_unreachable(self) -> bool:
        return self.reachability.wait_until_unreachable()

    def steady_cycle(self) -> bool:
        """One pass of the steady loop. False when the controller was stopped."""
        self._enter(LoopPhase.WAITING)
        if not self.reachability.wait_until_reachable():
            return False

        self._enter(LoopPhase.ARCHIVING)
        logging.info(f"Archive reachable ({Utils.health_summary()})")
        sync_clock(self.config.clock_command)
        if self._stop_event.wait(self.config.timing.settle_delay):
            return False
        self.snapshots.take_snapshot()

        try:
            if self.gadget.detach_from_host():
                self._maintain()
            else:
                logging.error("Could not detach from host, skipping maintenance this cycle")
        except Exception:
            logging.exception("Maintenance failed")

        truncate_log(self.config.log_file, self.config.log_max_lines)
        self._enter(LoopPhase.ATTACHED)
        self._attach()

        if not self.wait_unreachable():
            return False

        self._enter(LoopPhase.HEALING, led=False)
        self.gadget.verify_present()
        return True

    # ------------------------------------------------------------------
    def run(self, max_cycles: Optional[int] = None) -> int:
        self.reachability.start()
        try:
            try:
                self.boot()
                reached = self.initial_branch()
            except Exception:
                logging.exception("Unexpected error during start-up, re-attaching and continuing")
                self._attach()
                reached = False
            if reached and not self.wait_unreachable():
                return 0
            cycles = 0
            while not self.stopped and (max_cycles is None or cycles < max_cycles):
                try:
                    if not self.steady_cycle():
                        break
                except Exception:
                    logging.exception("Unexpected error in control loop, re-attaching and continuing")
                    self._attach()
                cycles += 1
            return 0
        finally:
            self.snapshots.stop()
