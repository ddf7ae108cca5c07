"""Per-project mutation locks.

Writes to a project's build storage and pointer set are serialized by a
lock that is independent of the workspace lock. Inside one process a
re-entrant thread lock is used; across processes an fcntl lock file in
the lock directory guards the same project.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class MutationLocks:
    """Registry of re-entrant per-project mutation locks.

    Args:
        lock_dir: Directory for lock files.
        poll_interval: Seconds between attempts when a timeout is used.
    """

    def __init__(self, lock_dir: Path, poll_interval: float = 0.1) -> None:
        self.lock_dir = lock_dir
        self.poll_interval = poll_interval
        self._guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}
        self._fds: dict[int, int] = {}
        self._depth: dict[int, int] = {}

    def _thread_lock(self, project_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[project_id] = lock
            return lock

    def _lock_file(self, project_id: int) -> Path:
        return self.lock_dir / f"project_{project_id}.lock"

    def _flock(self, project_id: int, timeout: float | None) -> int:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._lock_file(project_id)), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            if timeout is None:
                fcntl.flock(fd, fcntl.LOCK_EX)
                return fd

            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return fd
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for mutation lock on project {project_id}"
                        ) from None
                    time.sleep(self.poll_interval)
        except BaseException:
            os.close(fd)
            raise

    @contextmanager
    def hold(self, project_id: int, timeout: float | None = None) -> Iterator[None]:
        """Hold the mutation lock for a project.

        Nested use from the same thread does not block.

        Args:
            project_id: Database ID of the project.
            timeout: Acquisition timeout in seconds (None = blocking).

        Yields:
            None when the lock is held.

        Raises:
            TimeoutError: If the lock cannot be acquired within timeout.
        """
        lock = self._thread_lock(project_id)
        if timeout is None:
            acquired = lock.acquire()
        else:
            acquired = lock.acquire(timeout=timeout)
        if not acquired:
            raise TimeoutError(
                f"Timeout waiting for mutation lock on project {project_id}"
            )

        try:
            depth = self._depth.get(project_id, 0)
            if depth == 0:
                self._fds[project_id] = self._flock(project_id, timeout)
                logger.debug("Mutation lock acquired for project %d", project_id)
            self._depth[project_id] = depth + 1
            try:
                yield
            finally:
                self._depth[project_id] -= 1
                if self._depth[project_id] == 0:
                    fd = self._fds.pop(project_id)
                    fcntl.flock(fd, fcntl.LOCK_UN)
                    os.close(fd)
                    logger.debug("Mutation lock released for project %d", project_id)
        finally:
            lock.release()


__all__ = ["MutationLocks"]
