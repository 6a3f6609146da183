"""Advisory per-device lock held for the whole pipeline run."""

from __future__ import annotations

import fcntl
import os

from .errors import ValidationError
from .executil import trace


class DeviceLock:
    def __init__(self, path: str, device: str):
        self.path = path
        self.device = device
        self._fd: int | None = None

    def acquire(self) -> "DeviceLock":
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as exc:
            raise ValidationError("base_path", f"cannot create lock file {self.path}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise ValidationError("device", f"{self.device} is in use by another cryptarch run ({self.path})") from exc
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        trace("lock.acquired", path=self.path, device=self.device)
        return self

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        trace("lock.released", path=self.path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "DeviceLock":
        return self.acquire()

    def __exit__(self, *exc) -> None:
        self.release()
