"""
Per-DomainSet advisory lock.

At most one writer may issue, renew or install for a DomainSet at a time, so
a scheduled run and a manual run cannot interleave.  The lock is an
fcntl.flock on <store>/.locks/<primary>.lock; the kernel drops it when the
process dies, so a killed run never leaves a stale lock behind.
"""
from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional

from lifecycle.errors import LockHeldError

logger = logging.getLogger(__name__)


class DomainLock:
    def __init__(self, lock_dir: Path, name: str, timeout: float = 0.0, poll_interval: float = 0.2) -> None:
        self.path = Path(lock_dir) / f"{name}.lock"
        self.name = name
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> "DomainLock":
        if self._fd is not None:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockHeldError(f"another run holds {self.path}", domain=self.name)
                time.sleep(self.poll_interval)

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Acquired lock %s", self.path)
        return self

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> "DomainLock":
        return self.acquire()

    def __exit__(self, *exc) -> None:
        self.release()
