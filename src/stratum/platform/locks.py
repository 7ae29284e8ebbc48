"""
Inter-process locks on sidecar ``.lock`` files.

fcntl.flock on Unix, msvcrt.locking on Windows. Both are used in
non-blocking mode and retried until a deadline.
"""

import os
import time
from contextlib import contextmanager
from typing import IO, Iterator, Optional

from . import IS_WINDOWS

if IS_WINDOWS:
    import msvcrt

    def _try_lock(handle: IO[str]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)

    def _unlock(handle: IO[str]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
else:
    import fcntl

    def _try_lock(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class LockError(Exception):
    """The lock was still held by someone else when the timeout ran out."""


class FileLock:
    """Exclusive lock on ``path``; ``timeout=None`` waits indefinitely."""

    def __init__(self, path: str, timeout: Optional[float] = None, poll_interval: float = 0.05):
        self.path = path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._handle: Optional[IO[str]] = None

    @property
    def is_locked(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        handle = open(self.path, "a+")
        started = time.monotonic()
        while self._handle is None:
            try:
                _try_lock(handle)
            except OSError:
                if self.timeout is not None and time.monotonic() - started >= self.timeout:
                    handle.close()
                    raise LockError(f"Timeout waiting for lock: {self.path}")
                time.sleep(self.poll_interval)
            else:
                self._handle = handle

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _unlock(handle)
        finally:
            handle.close()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


@contextmanager
def file_lock(path: str, timeout: Optional[float] = None) -> Iterator[FileLock]:
    """Hold a FileLock on ``path`` for the duration of a ``with`` block."""
    with FileLock(path, timeout) as lock:
        yield lock
