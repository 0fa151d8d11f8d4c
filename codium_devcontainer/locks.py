# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Advisory file locks serializing work on shared host state.

Two things are guarded:

- Reconciliation of one workspace (``<state>/locks/<slug>.lock``) so two
  triggers never interleave engine commands for the same container.
- Read-modify-write of the SSH client config (``<config>.lock``).

``fcntl.flock`` locks belong to the open file description, so separate
``FileLock`` instances exclude each other across processes and across
threads of one process alike.  Locks are released automatically when
the process exits.

Usage:
    with FileLock(lock_dir / f"{slug}.lock", timeout=300):
        reconcile()
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from types import TracebackType

from codium_devcontainer.errors import DevcontainerError


logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class LockTimeoutError(DevcontainerError):
    """Raised when a lock could not be acquired within the timeout."""


class FileLock:
    """Advisory exclusive file lock.

    Thread safety: a single instance must not be shared between threads;
    give each thread its own instance for the same path.

    Attributes:
        lock_path: Path to the lock file.
        timeout: Seconds the context manager waits before giving up.
    """

    def __init__(self, lock_path: Path, timeout: float = 300.0) -> None:
        self.lock_path = lock_path
        self.timeout = timeout
        self._fd: int | None = None

    def try_acquire(self) -> bool:
        """Try to acquire the lock without blocking.

        Returns:
            True if the lock was acquired, False if it is held elsewhere.

        Raises:
            OSError: If the lock file cannot be created or opened.
        """
        if self._fd is not None:
            return True

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        self._fd = fd
        logger.debug("Acquired lock: %s", self.lock_path)
        return True

    def acquire(self, timeout: float | None = None) -> None:
        """Block until the lock is acquired.

        Args:
            timeout: Maximum seconds to wait; defaults to ``self.timeout``.

        Raises:
            LockTimeoutError: If the lock is still held after *timeout*.
        """
        limit = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + limit
        waited = False
        while not self.try_acquire():
            if not waited:
                logger.info("Waiting for lock: %s", self.lock_path)
                waited = True
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out after {limit:.0f}s waiting for "
                    f"{self.lock_path}"
                )
            time.sleep(_POLL_INTERVAL)

    def release(self) -> None:
        """Release the lock if held.  Safe to call when not held."""
        if self._fd is None:
            return

        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            logger.debug("Released lock: %s", self.lock_path)
        finally:
            os.close(self._fd)
            self._fd = None

    def is_held(self) -> bool:
        """True if THIS instance holds the lock."""
        return self._fd is not None

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()

    def __del__(self) -> None:
        self.release()
