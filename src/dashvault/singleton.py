"""Single-instance guard built on an exclusive, non-blocking flock."""
from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

EXIT_ALREADY_RUNNING = 3


class SingletonLock:
    """Holds the lock file open; the lock lives as long as the descriptor."""

    def __init__(self, path: Path, fd: int):
        self.path = path
        self.fd = fd

    def release(self) -> None:
        if self.fd < 0:
            return
        try:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
        finally:
            os.close(self.fd)
            self.fd = -1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def acquire_singleton(path) -> Optional[SingletonLock]:
    """Return the held lock, or None when another instance holds it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        logging.error(f"Another instance holds {path}")
        return None
    except OSError:
        os.close(fd)
        raise
    os.ftruncate(fd, 0)
    os.write(fd, f"{os.getpid()}\n".encode())
    return SingletonLock(path, fd)
