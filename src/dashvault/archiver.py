"""
archiver.py
One maintenance pass over the backing volumes while they are owned locally:
  - camera: mount -> count pending events -> notify -> keep-awake bracket
            -> external copier -> trim -> unmount
  - music:  mount -> external sync -> trim -> unmount
The two volumes are isolated from each other: a failure in one never keeps
the other from being trimmed and unmounted.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple

EVENT_DIRS = ("TeslaCam/SavedClips", "TeslaCam/SentryClips")


def count_pending_events(mount_point: Path) -> Tuple[int, int]:
    """Return (event folders, files) waiting under the known event directories."""
    folders = 0
    files = 0
    for rel in EVENT_DIRS:
        base = Path(mount_point) / rel
        if not base.is_dir():
            continue
        for event in base.iterdir():
            if not event.is_dir():
                continue
            folders += 1
            files += sum(1 for p in event.rglob("*") if p.is_file())
    return folders, files


class Archiver:

    def __init__(self, mount_manager, transport, keep_awake, notifier,
                 camera, music, music_check_timeout: float = 5):
        self.mount_manager = mount_manager
        self.transport = transport
        self.keep_awake = keep_awake
        self.notifier = notifier
        self.camera = camera
        self.music = music
        self.music_check_timeout = music_check_timeout

    # ------------------------------------------------------------------
    def run_archive_cycle(self) -> bool:
        if not self.transport.connect():
            logging.error("Could not connect to archive, skipping archive cycle")
            return False

        results = []
        try:
            for step in (self.archive_camera_clips, self.archive_music):
                try:
                    results.append(step())
                except Exception:
                    logging.exception(f"{step.__name__} failed")
                    results.append(False)
        finally:
            try:
                self.transport.disconnect()
            except Exception:
                logging.exception("Disconnecting from archive failed")
        return all(results)

    # ------------------------------------------------------------------
    def archive_camera_clips(self) -> bool:
        cam = self.camera
        if not self.mount_manager.ensure_mounted_with_retry(cam):
            logging.error(f"Could not mount {cam.mount_point}, skipping clip archiving")
            return False

        try:
            folders, files = count_pending_events(cam.mount_point)
            if folders == 0:
                logging.info("No event folders to archive")
                return True

            message = f"Archiving {folders} event folder(s) with {files} file(s)"
            logging.info(message)
            self.notifier.send(message)

            ok = self._with_keep_awake(self.transport.archive_clips)
            if ok:
                logging.info("Finished archiving clips")
            else:
                logging.error("Archiving clips failed")
            return ok
        finally:
            self.mount_manager.trim_free_space(cam)
            self.mount_manager.unmount(cam)

    def _with_keep_awake(self, work):
        """Keep the vehicle awake while *work* runs.

        The mode is only switched back off when this call switched it on; if
        enabling failed there is nothing to restore.
        """
        enabled_here = False
        try:
            if not self.keep_awake.is_enabled():
                enabled_here = self.keep_awake.enable()
                if enabled_here:
                    logging.info("Enabled keep-awake for the transfer")
        except Exception as e:
            logging.warning(f"Keep-awake check failed: {e}")
        try:
            return work()
        finally:
            if enabled_here:
                try:
                    self.keep_awake.disable()
                    logging.info("Restored keep-awake to off")
                except Exception as e:
                    logging.warning(f"Could not restore keep-awake: {e}")

    # ------------------------------------------------------------------
    def archive_music(self) -> bool:
        music = self.music
        if music is None or not music.present:
            logging.debug("No music volume, skipping music sync")
            return True
        if not self.transport.music_reachable(timeout=self.music_check_timeout):
            logging.info("Music archive not configured or not reachable, skipping music sync")
            return True

        if not self.mount_manager.ensure_mounted_with_retry(music):
            logging.error(f"Could not mount {music.mount_point}, skipping music sync")
            return False

        try:
            ok = self.transport.sync_music()
            if ok:
                logging.info("Music synced from archive")
            else:
                logging.error("Music sync failed")
            return ok
        finally:
            self.mount_manager.trim_free_space(music)
            self.mount_manager.unmount(music)
