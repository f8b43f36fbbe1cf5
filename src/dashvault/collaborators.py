"""collaborators.py
~~~~~~~~~~~~~~~~~~~

Thin wrappers around the external programs the appliance drives but does
not implement: the archive copier scripts, the vehicle keep-awake API,
push notifications, snapshot creation and the clock.

Every wrapper reports failure through its return value; none of them
raise on a failed command.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from dashvault.utils import run_command

__all__ = [
    "ScriptArchive",
    "CommandKeepAwake",
    "NullKeepAwake",
    "Notifier",
    "SnapshotTool",
    "sync_clock",
    "display_off",
]

TRANSFER_TIMEOUT = None        # copies may legitimately take hours


class ScriptArchive:
    """Archive transport backed by the scripts in ``archive.script_dir``."""

    CONNECT = "connect-archive.sh"
    DISCONNECT = "disconnect-archive.sh"
    ARCHIVE_CLIPS = "archive-clips.sh"
    COPY_MUSIC = "copy-music.sh"
    VERIFY_MUSIC = "verify-music-location.sh"

    def __init__(self, archive, camera_mount: Path, music_mount: Path):
        self.archive = archive
        self.script_dir = Path(archive.script_dir)
        self.camera_mount = Path(camera_mount)
        self.music_mount = Path(music_mount)

    def _script(self, name: str, *args, timeout=TRANSFER_TIMEOUT) -> bool:
        res = run_command([self.script_dir / name, *args], timeout=timeout)
        if res.returncode != 0:
            logging.warning(f"{name} exited with {res.returncode}: {(res.stderr or '').strip()}")
        return res.returncode == 0

    def connect(self) -> bool:
        return self._script(self.CONNECT, self.archive.kind, timeout=120)

    def disconnect(self) -> None:
        self._script(self.DISCONNECT, self.archive.kind, timeout=120)

    def archive_clips(self) -> bool:
        return self._script(self.ARCHIVE_CLIPS, self.camera_mount)

    def sync_music(self) -> bool:
        return self._script(self.COPY_MUSIC, self.music_mount, self.archive.music_location or "")

    def music_reachable(self, timeout: float = 5) -> bool:
        if not self.archive.music_location:
            return False
        return self._script(self.VERIFY_MUSIC, self.archive.music_location, timeout=timeout)


class NullKeepAwake:
    """Used when no keep-awake API is configured."""

    def is_enabled(self) -> bool:
        return True

    def enable(self) -> bool:
        return True

    def disable(self) -> bool:
        return True


class CommandKeepAwake:
    """Vehicle keep-awake (sentry) mode driven by external commands."""

    def __init__(self, status_command: Sequence[str], enable_command: Sequence[str],
                 disable_command: Sequence[str]):
        self.status_command = list(status_command)
        self.enable_command = list(enable_command)
        self.disable_command = list(disable_command)

    def is_enabled(self) -> bool:
        res = run_command(self.status_command, timeout=60)
        return res.returncode == 0 and res.stdout.strip().lower() in ("true", "1", "on", "yes")

    def enable(self) -> bool:
        res = run_command(self.enable_command, timeout=60)
        if res.returncode != 0:
            logging.warning(f"Failed to enable keep-awake: {(res.stderr or '').strip()}")
        return res.returncode == 0

    def disable(self) -> bool:
        res = run_command(self.disable_command, timeout=60)
        if res.returncode != 0:
            logging.warning(f"Failed to disable keep-awake: {(res.stderr or '').strip()}")
        return res.returncode == 0


class Notifier:
    def __init__(self, command: Sequence[str] = ()):
        self.command = list(command)

    def send(self, message: str) -> None:
        if not self.command:
            logging.debug(f"No notification command, not sending: {message}")
            return
        res = run_command([*self.command, message], timeout=30)
        if res.returncode != 0:
            logging.warning(f"Notification failed: {(res.stderr or '').strip()}")


class SnapshotTool:
    def __init__(self, make_command: Sequence[str], idle_command: Sequence[str] = ()):
        self.make_command = list(make_command)
        self.idle_command = list(idle_command)

    def wait_for_idle(self) -> bool:
        if not self.idle_command:
            return False
        return run_command(self.idle_command, timeout=3600).returncode == 0

    def make_snapshot(self) -> bool:
        if not self.make_command:
            logging.warning("No snapshot command configured")
            return False
        res = run_command(self.make_command, timeout=3600)
        if res.returncode != 0:
            logging.error(f"Snapshot failed ({res.returncode}): {(res.stderr or '').strip()}")
        return res.returncode == 0


def sync_clock(command: Sequence[str]) -> bool:
    if not command:
        return False
    res = run_command(list(command), timeout=60)
    if res.returncode == 0:
        logging.info("Clock synchronised")
    else:
        logging.warning(f"Clock sync failed: {(res.stderr or '').strip()}")
    return res.returncode == 0


def display_off(command: Sequence[str]) -> None:
    """Power saving: the appliance never drives a display."""
    if command:
        run_command(list(command), timeout=10)
