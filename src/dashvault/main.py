import argparse
import atexit
import logging
import signal
import sys

from dashvault.archiver import Archiver
from dashvault.collaborators import (
    CommandKeepAwake,
    Notifier,
    NullKeepAwake,
    ScriptArchive,
    SnapshotTool,
)
from dashvault.config_loader import ConfigError, build_config, load_settings, settings_path
from dashvault.controller import Controller
from dashvault.logger import configure_logging
from dashvault.mount_manager import MountManager, RetryBudget, is_mounted
from dashvault.reachability import PollWaiter, ReachabilityMonitor, WatchWaiter
from dashvault.singleton import EXIT_ALREADY_RUNNING, acquire_singleton
from dashvault.snapshot_scheduler import SnapshotScheduler
from dashvault.status_led import StatusIndicator
from dashvault.status_store import RedisStatus
from dashvault.usb_gadget import GadgetManager
from dashvault.volumes import BackingVolume, OwnershipLedger

EXIT_CONFIG_ERROR = 2


def build_controller(config, watch_markers=False):
    """Wire every component from one immutable Config."""
    camera = BackingVolume.from_settings(config.camera)
    music = BackingVolume.from_settings(config.music)

    ledger = OwnershipLedger([camera, music], is_mounted)
    retry = RetryBudget(attempts=config.timing.retry_attempts, delay=config.timing.retry_delay)
    mount_manager = MountManager(ledger, retry)
    gadget = GadgetManager(ledger, mount_manager,
                           module=config.gadget.module, lun_glob=config.gadget.lun_glob)

    markers = (config.reachable_marker, config.unreachable_marker)
    waiter = WatchWaiter(markers) if watch_markers else PollWaiter()
    reachability = ReachabilityMonitor(
        config.archive, *markers,
        waiter=waiter,
        poll_interval=config.timing.poll_interval,
        unreachable_attempts=config.timing.retry_attempts,
    )

    if config.keep_awake.enabled:
        keep_awake = CommandKeepAwake(config.keep_awake.status_command,
                                      config.keep_awake.enable_command,
                                      config.keep_awake.disable_command)
    else:
        keep_awake = NullKeepAwake()

    archiver = Archiver(
        mount_manager,
        ScriptArchive(config.archive, camera.mount_point, music.mount_point),
        keep_awake,
        Notifier(config.notify_command),
        camera,
        music,
        music_check_timeout=config.archive.music_check_timeout,
    )

    snapshots = SnapshotScheduler(
        SnapshotTool(config.snapshots.make_command, config.snapshots.idle_command),
        interval=config.snapshots.interval,
        enabled=config.snapshots.enabled,
    )

    return Controller(
        config, ledger, mount_manager, gadget, reachability, archiver, snapshots,
        StatusIndicator.from_settings(config.led),
        RedisStatus.from_settings(config.redis),
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the dashcam/music archive loop.")
    parser.add_argument("-debug", action="store_true", help="Enable debug logging level.")
    parser.add_argument("--settings", default=None, help="Path to settings.json.")
    parser.add_argument("--watch-markers", action="store_true",
                        help="Wake waits on sentinel markers immediately instead of at the next poll.")
    args = parser.parse_args(argv)

    settings = load_settings(settings_path(args.settings))
    try:
        config = build_config(settings)
    except ConfigError as e:
        configure_logging(None)
        logging.critical(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    configure_logging(config.log_file, logging.DEBUG if args.debug else logging.INFO)

    lock = acquire_singleton(config.lock_file)
    if lock is None:
        logging.error("Already running")
        return EXIT_ALREADY_RUNNING
    atexit.register(lock.release)

    controller = build_controller(config, watch_markers=args.watch_markers)

    cleanup_called = False

    def cleanup():
        nonlocal cleanup_called
        if cleanup_called:
            return
        cleanup_called = True
        logging.info("Shutting down...")
        controller.stop()
        controller.indicator.close()

    atexit.register(cleanup)

    def handle_exit(sig, frame):
        logging.info("Graceful shutdown initiated.")
        cleanup()

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    return controller.run()


if __name__ == "__main__":
    sys.exit(main())
