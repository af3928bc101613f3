"""
Run exclusivity: in-process guard plus a cross-process lock file.

The in-process guard is a module-level lock shared by every trigger (CLI,
daemon tick) so overlapping triggers collapse to one execution. The lock
file is held with ``fcntl.flock`` for the whole pass, so a second instance
on the same host or volume refuses to start; the kernel drops the lock if
the holder dies, so a crash never leaves it stuck.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

LOCK_FILENAME = "vaultwarden-sync-operation.lock"
LOCK_WAIT_SECONDS = 0.1

_guard = threading.Lock()
_holder: str | None = None


class SyncAlreadyRunningError(Exception):
    """Another pass holds the in-process guard or the lock file."""


# ─── In-process guard ─────────────────────────────────────────────────


def try_acquire(owner: str, blocking: bool = False, timeout: float = -1) -> bool:
    """Attempt to take the guard. Returns True if acquired."""
    global _holder
    if not _guard.acquire(blocking, timeout if blocking else -1):
        logger.debug("Guard held by %s, %s refused", _holder, owner)
        return False
    _holder = owner
    return True


def release() -> None:
    """Release the guard (no-op if not held)."""
    global _holder
    _holder = None
    if _guard.locked():
        _guard.release()


def current_holder() -> str | None:
    return _holder


def clear() -> None:
    """Drop the guard. Only for testing."""
    release()


# ─── Cross-process lock file ──────────────────────────────────────────


class FileLock:
    """Exclusive advisory lock on a file, recording the holder's PID."""

    def __init__(self, path: Path, wait_seconds: float = LOCK_WAIT_SECONDS):
        self.path = Path(path)
        self.wait_seconds = wait_seconds
        self._fh: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> bool:
        if self._fh is not None:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+")
        deadline = time.monotonic() + self.wait_seconds
        while True:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    fh.close()
                    return False
                time.sleep(0.01)
        fh.seek(0)
        fh.truncate()
        fh.write(f"PID={os.getpid()}\nStarted={datetime.now(UTC).isoformat()}\n")
        fh.flush()
        self._fh = fh
        return True

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.seek(0)
            self._fh.truncate()
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None

    def holder_info(self) -> str:
        """Contents of the lock file (PID/start time of the last holder)."""
        try:
            return self.path.read_text().strip()
        except FileNotFoundError:
            return ""

    def __enter__(self) -> FileLock:
        if not self.acquire():
            info = self.holder_info().replace("\n", ", ")
            raise SyncAlreadyRunningError(
                f"Another sync holds {self.path}" + (f" ({info})" if info else "")
            )
        return self

    def __exit__(self, *exc) -> None:
        self.release()


@contextmanager
def exclusive(lock_dir: Path, owner: str, wait: bool = False) -> Generator[None, None, None]:
    """Hold both layers for the duration of a pass.

    With ``wait`` the caller blocks until an in-process holder finishes;
    otherwise SyncAlreadyRunningError is raised immediately.
    """
    if not try_acquire(owner, blocking=wait):
        raise SyncAlreadyRunningError(f"Sync already running ({current_holder()})")
    try:
        with FileLock(Path(lock_dir) / LOCK_FILENAME):
            yield
    finally:
        release()
