"""Run lock: one orchestrator per host.

Guards the State Store and Package Registry against two concurrent
invocations.  Uses ``fcntl.flock`` on ``<state_dir>/run.lock``; the
kernel drops the lock when the holding process dies, so a crashed run
never leaves a stale lock behind.  The file stores the owner PID for
diagnostics only.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from provisioner.errors import RunLockError, StateCorruption

logger = logging.getLogger(__name__)

LOCK_FILENAME = "run.lock"


class RunLock:
    """Non-blocking exclusive lock held for the duration of a run.

    Usage::

        with RunLock(state_dir / "run.lock"):
            runner.run(...)
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock or raise :class:`RunLockError` if another run holds it."""
        if self._fd is not None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise StateCorruption(
                f"Cannot open run lock ({exc.strerror})", path=str(self.path),
            ) from exc

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            owner = self._read_owner_pid(fd)
            os.close(fd)
            raise RunLockError(str(self.path), owner)

        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug("Acquired run lock %s", self.path)

    def release(self) -> None:
        """Drop the lock.  Safe to call when not held."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released run lock %s", self.path)

    @staticmethod
    def _read_owner_pid(fd: int) -> Optional[int]:
        try:
            os.lseek(fd, 0, os.SEEK_SET)
            raw = os.read(fd, 32).decode().strip()
        except OSError:
            return None
        return int(raw) if raw.isdigit() else None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
