"""
Named cross-process advisory lock backed by fcntl.flock.

    with FileLock("cert_renewal_process", locks_dir, timeout=30) as acquired:
        if not acquired:
            return  # another process holds it

The kernel drops the lock when the holding process exits, so a crashed
holder never leaves a stale lock behind.  Each FileLock opens its own file
description, so two instances with the same name exclude each other even
inside one process.
"""
from __future__ import annotations

import fcntl
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_LOCK_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_POLL_INTERVAL = 0.1


class FileLock:
    def __init__(self, name: str, locks_dir: str | Path, timeout: float = 30.0) -> None:
        if not _LOCK_NAME_RE.match(name):
            raise ValueError(f"Invalid lock name: {name!r}")
        self.name = name
        self.timeout = timeout
        self.path = Path(locks_dir) / f"{name}.lock"
        self._fd: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Try to take the lock, polling until *timeout* seconds have passed.

        Returns True on success and False on timeout; never raises for
        contention.
        """
        if self._fd is not None:
            raise RuntimeError(f"Lock {self.name} is already held by this instance")

        timeout = self.timeout if timeout is None else timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        deadline = time.monotonic() + timeout

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    logger.info("Lock %s not acquired within %.1fs", self.name, timeout)
                    return False
                time.sleep(_POLL_INTERVAL)
                continue
            except OSError:
                os.close(fd)
                raise
            break

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Lock %s acquired (pid %d)", self.name, os.getpid())
        return True

    def release(self) -> None:
        """Release the lock.  Safe to call when not held."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Lock %s released", self.name)

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
