"""Backing volumes and the host/local ownership they move between.

A volume is either exposed to the vehicle through the USB gadget
(``HOST_ATTACHED``) or owned by the local maintenance code (``LOCAL``).
The ledger is the only place that records the transition, so any code path
that mounts, repairs or trims a host-attached image fails loudly instead of
corrupting it.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable


class Ownership(Enum):
    HOST_ATTACHED = "host_attached"
    LOCAL = "local"


class OwnershipError(RuntimeError):
    """A volume was used by the wrong owner."""


@dataclass(frozen=True)
class BackingVolume:
    name: str
    image: Path
    mount_point: Path
    present: bool = True

    @classmethod
    def from_settings(cls, settings) -> "BackingVolume":
        return cls(
            name=settings.name,
            image=settings.image,
            mount_point=settings.mount_point,
            present=settings.enabled,
        )


class OwnershipLedger:
    """Tracks which side owns each present volume.

    Volumes start out ``LOCAL``: at boot the gadget module is not loaded yet.
    """

    def __init__(self, volumes: Iterable[BackingVolume],
                 is_mounted: Callable[[Path], bool]):
        self._volumes = [v for v in volumes if v.present]
        self._is_mounted = is_mounted
        self._state = {v.name: Ownership.LOCAL for v in self._volumes}
        self._lock = threading.Lock()

    @property
    def volumes(self) -> list[BackingVolume]:
        return list(self._volumes)

    def state(self, volume: BackingVolume) -> Ownership:
        with self._lock:
            return self._state[volume.name]

    def require_local(self, volume: BackingVolume) -> None:
        if self.state(volume) is not Ownership.LOCAL:
            raise OwnershipError(f"{volume.name} volume is attached to the host")

    def require_releasable(self) -> None:
        """Every volume must be unmounted before the host may take it."""
        mounted = [v.name for v in self._volumes if self._is_mounted(v.mount_point)]
        if mounted:
            raise OwnershipError(f"still mounted locally: {', '.join(mounted)}")

    def mark_host_attached(self) -> None:
        self.require_releasable()
        with self._lock:
            for name in self._state:
                self._state[name] = Ownership.HOST_ATTACHED
        logging.debug("Volumes handed to host")

    def mark_local(self) -> None:
        with self._lock:
            for name in self._state:
                self._state[name] = Ownership.LOCAL
        logging.debug("Volumes handed to local maintenance")

    def host_attached(self) -> bool:
        with self._lock:
            return any(s is Ownership.HOST_ATTACHED for s in self._state.values())
