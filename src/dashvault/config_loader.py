import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_SETTINGS_FILE = "/etc/dashvault/settings.json"

ARCHIVE_KINDS = ("sync-to-server", "sync-to-cloud", "disabled")


class ConfigError(Exception):
    """Raised when the settings cannot describe a runnable appliance."""


@dataclass(frozen=True)
class VolumeSettings:
    name: str
    image: Path
    mount_point: Path
    enabled: bool


@dataclass(frozen=True)
class ArchiveSettings:
    kind: str
    target: Optional[str]
    probe_timeout: int
    script_dir: Path
    music_location: Optional[str]
    music_check_timeout: int


@dataclass(frozen=True)
class GadgetSettings:
    module: str
    lun_glob: str


@dataclass(frozen=True)
class TimingSettings:
    settle_delay: float
    poll_interval: float
    retry_attempts: int
    retry_delay: float


@dataclass(frozen=True)
class SnapshotSettings:
    enabled: bool
    interval: float
    make_command: tuple
    idle_command: tuple


@dataclass(frozen=True)
class KeepAwakeSettings:
    enabled: bool
    status_command: tuple
    enable_command: tuple
    disable_command: tuple


@dataclass(frozen=True)
class LedSettings:
    backend: str
    name: str
    gpio_pin: Optional[int]
    inverted: bool


@dataclass(frozen=True)
class RedisSettings:
    enabled: bool
    host: str
    port: int
    db: int
    channel: str


@dataclass(frozen=True)
class Config:
    camera: VolumeSettings
    music: VolumeSettings
    archive: ArchiveSettings
    gadget: GadgetSettings
    timing: TimingSettings
    snapshots: SnapshotSettings
    keep_awake: KeepAwakeSettings
    notify_command: tuple
    led: LedSettings
    redis: RedisSettings
    log_file: Path
    log_max_lines: int
    lock_file: Path
    reachable_marker: Path
    unreachable_marker: Path
    clock_command: tuple
    display_off_command: tuple


def settings_path(explicit: Optional[str] = None) -> Path:
    """--settings wins, then $DASHVAULT_SETTINGS, then the system default."""
    return Path(explicit or os.environ.get("DASHVAULT_SETTINGS") or DEFAULT_SETTINGS_FILE)


def load_settings(filename: str | Path) -> dict:
    """
    Load the JSON settings *and* guarantee that every section the code relies
    on is present with safe defaults.

    Return an always-valid settings dict – never None.
    """
    filename = Path(filename)
    try:
        with filename.open("r", encoding="utf-8") as fp:
            settings = json.load(fp)
    except FileNotFoundError:
        logging.warning("Settings file %s not found – using built-in defaults", filename)
        settings = {}
    except Exception as e:
        logging.error("Failed to load settings %s: %s – using built-in defaults", filename, e)
        settings = {}

    # ── backing volumes ──────────────────────────────────────────────────
    volume_defaults = {
        "camera": {
            "image": "/backingfiles/cam_disk.bin",
            "mount_point": "/mnt/cam",
            "enabled": True,
        },
        "music": {
            "image": "/backingfiles/music_disk.bin",
            "mount_point": "/mnt/music",
            "enabled": None,          # None → present when the image exists
        },
    }
    volumes_cfg = settings.setdefault("volumes", {})
    for name, defaults in volume_defaults.items():
        vol_cfg = volumes_cfg.setdefault(name, {})
        for k, v in defaults.items():
            vol_cfg.setdefault(k, v)

    # ── archive endpoint ─────────────────────────────────────────────────
    archive_defaults = {
        "kind": "disabled",
        "target": None,
        "server": None,
        "probe_timeout": 1,
        "script_dir": "/root/bin",
        "music_location": None,
        "music_check_timeout": 5,
    }
    archive_cfg = settings.setdefault("archive", {})
    for k, v in archive_defaults.items():
        archive_cfg.setdefault(k, v)

    gadget_cfg = settings.setdefault("gadget", {})
    gadget_cfg.setdefault("module", "g_mass_storage")
    gadget_cfg.setdefault("lun_glob", "/sys/devices/platform/soc/*.usb/gadget*/lun0")

    timing_defaults = {
        "settle_delay": 20,
        "poll_interval": 1,
        "retry_attempts": 10,
        "retry_delay": 1,
    }
    timing_cfg = settings.setdefault("timing", {})
    for k, v in timing_defaults.items():
        timing_cfg.setdefault(k, v)

    snapshot_defaults = {
        "enabled": True,
        "interval": 3480,
        "make_command": ["/root/bin/make_snapshot.sh"],
        "idle_command": ["/root/bin/waitforidle"],
    }
    snap_cfg = settings.setdefault("snapshots", {})
    for k, v in snapshot_defaults.items():
        snap_cfg.setdefault(k, v)

    keep_awake_defaults = {
        "enabled": False,
        "status_command": ["/root/bin/tesla_api.py", "is_sentry_mode_enabled"],
        "enable_command": ["/root/bin/tesla_api.py", "set_sentry_mode", "true"],
        "disable_command": ["/root/bin/tesla_api.py", "set_sentry_mode", "false"],
    }
    awake_cfg = settings.setdefault("keep_awake", {})
    for k, v in keep_awake_defaults.items():
        awake_cfg.setdefault(k, v)

    notify_cfg = settings.setdefault("notifications", {})
    notify_cfg.setdefault("command", None)

    led_defaults = {
        "backend": "sysfs",
        "name": "led0",
        "gpio_pin": None,
        "inverted": False,
    }
    led_cfg = settings.setdefault("led", {})
    for k, v in led_defaults.items():
        led_cfg.setdefault(k, v)

    redis_defaults = {
        "enabled": False,
        "host": "localhost",
        "port": 6379,
        "db": 0,
        "channel": "dashvault",
    }
    redis_cfg = settings.setdefault("redis", {})
    for k, v in redis_defaults.items():
        redis_cfg.setdefault(k, v)

    logging_cfg = settings.setdefault("logging", {})
    logging_cfg.setdefault("file", "/mutable/archiveloop.log")
    logging_cfg.setdefault("max_lines", 10000)

    # test-only sentinel markers that force-complete the reachability waits
    sim_cfg = settings.setdefault("simulation", {})
    sim_cfg.setdefault("reachable_marker", "/tmp/archive_is_reachable")
    sim_cfg.setdefault("unreachable_marker", "/tmp/archive_is_unreachable")

    commands_cfg = settings.setdefault("commands", {})
    commands_cfg.setdefault("clock", ["/usr/sbin/chronyc", "makestep"])
    commands_cfg.setdefault("display_off", ["/usr/bin/tvservice", "-o"])

    settings.setdefault("lock_file", "/var/lock/dashvault.lock")

    return settings


def _command(value) -> tuple:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    return tuple(str(part) for part in value)


def _volume(name: str, cfg: dict) -> VolumeSettings:
    image = Path(cfg["image"])
    enabled = cfg["enabled"]
    if enabled is None:
        enabled = image.exists()
    return VolumeSettings(
        name=name,
        image=image,
        mount_point=Path(cfg["mount_point"]),
        enabled=bool(enabled),
    )


def _archive(cfg: dict) -> ArchiveSettings:
    kind = cfg["kind"]
    if kind not in ARCHIVE_KINDS:
        raise ConfigError(f"archive.kind must be one of {', '.join(ARCHIVE_KINDS)}, got {kind!r}")

    # explicit target override → server host → public resolver for cloud sync
    target = cfg["target"] or cfg["server"]
    if not target and kind == "sync-to-cloud":
        target = "8.8.8.8"
    if kind != "disabled" and not target:
        raise ConfigError(f"archive.kind is {kind!r} but no reachability target could be resolved")

    return ArchiveSettings(
        kind=kind,
        target=target,
        probe_timeout=int(cfg["probe_timeout"]),
        script_dir=Path(cfg["script_dir"]),
        music_location=cfg["music_location"],
        music_check_timeout=int(cfg["music_check_timeout"]),
    )


def build_config(settings: dict) -> Config:
    """Freeze a settings dict (as returned by load_settings) into a Config."""
    volumes = settings["volumes"]
    timing = settings["timing"]
    snaps = settings["snapshots"]
    awake = settings["keep_awake"]
    led = settings["led"]
    rds = settings["redis"]
    sim = settings["simulation"]
    commands = settings["commands"]

    if int(timing["retry_attempts"]) < 1:
        raise ConfigError("timing.retry_attempts must be at least 1")

    return Config(
        camera=_volume("camera", volumes["camera"]),
        music=_volume("music", volumes["music"]),
        archive=_archive(settings["archive"]),
        gadget=GadgetSettings(
            module=settings["gadget"]["module"],
            lun_glob=settings["gadget"]["lun_glob"],
        ),
        timing=TimingSettings(
            settle_delay=float(timing["settle_delay"]),
            poll_interval=float(timing["poll_interval"]),
            retry_attempts=int(timing["retry_attempts"]),
            retry_delay=float(timing["retry_delay"]),
        ),
        snapshots=SnapshotSettings(
            enabled=bool(snaps["enabled"]),
            interval=float(snaps["interval"]),
            make_command=_command(snaps["make_command"]),
            idle_command=_command(snaps["idle_command"]),
        ),
        keep_awake=KeepAwakeSettings(
            enabled=bool(awake["enabled"]),
            status_command=_command(awake["status_command"]),
            enable_command=_command(awake["enable_command"]),
            disable_command=_command(awake["disable_command"]),
        ),
        notify_command=_command(settings["notifications"]["command"]),
        led=LedSettings(
            backend=led["backend"],
            name=led["name"],
            gpio_pin=led["gpio_pin"],
            inverted=bool(led["inverted"]),
        ),
        redis=RedisSettings(
            enabled=bool(rds["enabled"]),
            host=rds["host"],
            port=int(rds["port"]),
            db=int(rds["db"]),
            channel=rds["channel"],
        ),
        log_file=Path(settings["logging"]["file"]),
        log_max_lines=int(settings["logging"]["max_lines"]),
        lock_file=Path(settings["lock_file"]),
        reachable_marker=Path(sim["reachable_marker"]),
        unreachable_marker=Path(sim["unreachable_marker"]),
        clock_command=_command(commands["clock"]),
        display_off_command=_command(commands["display_off"]),
    )
