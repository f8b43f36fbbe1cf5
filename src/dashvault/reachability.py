"""Archive reachability monitor.

Reachability gates both the start and the end of maintenance: the gadget is
only detached while the archive can actually be reached, so the vehicle
loses its drive for as short a time as possible.

Two sentinel marker files let a tester force-complete the waits without
touching the network. Each marker is consumed (deleted) when it completes a
wait, so it fires exactly once.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from dashvault.utils import run_command


# ----------------------------------------------------------------------
# waiters
# ----------------------------------------------------------------------
class Waiter:
    """Interface for sleeping between reachability probes."""

    def start(self) -> None:
        pass

    def stop(self) -> None:
        self.wake()

    def wake(self) -> None:
        pass

    def wait(self, interval: float) -> bool:
        """Sleep up to *interval* seconds. True when woken early."""
        raise NotImplementedError


class PollWaiter(Waiter):
    """Fixed-increment sleeps; markers are noticed at the next poll."""

    def __init__(self) -> None:
        self._wake = threading.Event()

    def wake(self) -> None:
        self._wake.set()

    def wait(self, interval: float) -> bool:
        woken = self._wake.wait(interval)
        self._wake.clear()
        return woken


class _MarkerHandler(FileSystemEventHandler):
    def __init__(self, markers, wake):
        super().__init__()
        self._markers = {str(m) for m in markers}
        self._wake = wake

    def on_any_event(self, event):
        paths = {str(getattr(event, "src_path", "")), str(getattr(event, "dest_path", ""))}
        if paths & self._markers:
            logging.debug(f"Marker event {event.event_type} on {event.src_path}")
            self._wake()


class WatchWaiter(PollWaiter):
    """Wakes as soon as a sentinel marker appears, using a watchdog observer."""

    def __init__(self, markers) -> None:
        super().__init__()
        self._markers = [Path(m) for m in markers]
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        handler = _MarkerHandler(self._markers, self.wake)
        for directory in sorted({m.parent for m in self._markers}):
            if directory.is_dir():
                observer.schedule(handler, str(directory), recursive=False)
            else:
                logging.warning(f"Marker directory {directory} missing, falling back to polling for it")
        observer.daemon = True
        observer.start()
        self._observer = observer
        logging.info("Marker watcher started")

    def stop(self) -> None:
        super().stop()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None


# ----------------------------------------------------------------------
# monitor
# ----------------------------------------------------------------------
class ReachabilityMonitor:

    def __init__(self, archive, reachable_marker, unreachable_marker, *,
                 waiter: Optional[Waiter] = None,
                 poll_interval: float = 1.0,
                 unreachable_attempts: int = 10):
        self.archive = archive
        self.reachable_marker = Path(reachable_marker)
        self.unreachable_marker = Path(unreachable_marker)
        self.waiter = waiter or PollWaiter()
        self.poll_interval = poll_interval
        self.unreachable_attempts = unreachable_attempts
        self._stop_event = threading.Event()
        self._unremovable = set()

    def start(self) -> None:
        self.waiter.start()

    def stop(self) -> None:
        self._stop_event.set()
        self.waiter.stop()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def is_reachable(self) -> bool:
        if self.archive.kind == "disabled" or not self.archive.target:
            return False
        res = run_command(
            ["ping", "-q", "-c", "1", "-w", str(self.archive.probe_timeout), self.archive.target],
            timeout=self.archive.probe_timeout + 5,
        )
        return res.returncode == 0

    def wait_until_reachable(self) -> bool:
        """Block until the archive answers. No timeout: the vehicle may stay
        out of network range for days.

        Returns False only when the monitor was stopped.
        """
        logging.info(f"Waiting for archive {self.archive.target} to be reachable...")
        while not self.stopped:
            if self._consume(self.reachable_marker):
                logging.info("Simulating archive is reachable")
                return True
            if self.is_reachable():
                logging.info("Archive is reachable")
                return True
            self.waiter.wait(self.poll_interval)
        return False

    def wait_until_unreachable(self) -> bool:
        """Block until the archive fails every probe of a bounded check.

        Returns False only when the monitor was stopped.
        """
        logging.info(f"Waiting for archive {self.archive.target} to be unreachable...")
        failures = 0
        while not self.stopped:
            if self._consume(self.unreachable_marker):
                logging.info("Simulating archive being unreachable")
                return True
            if self.is_reachable():
                failures = 0
            else:
                failures += 1
                if failures >= self.unreachable_attempts:
                    logging.info("Archive is unreachable")
                    return True
            self.waiter.wait(self.poll_interval)
        return False

    def _consume(self, marker: Path) -> bool:
        try:
            marker.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            # an undeletable marker is ignored; say so once, not every poll
            if marker not in self._unremovable:
                self._unremovable.add(marker)
                logging.warning(f"Could not remove marker {marker}, ignoring it: {e}")
            return False
        self._unremovable.discard(marker)
        return True
