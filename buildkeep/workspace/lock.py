"""Workspace lock arbitrating polling and builds.

A project without concurrent builds has a single workspace. Polls that
need it and builds take turns on it in first-come order. Projects with
concurrent builds give every build its own workspace lease instead and
only polls (and wipe-outs) queue on the lock.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from buildkeep.types import ConcurrentPolling, Requester

logger = logging.getLogger(__name__)


class LockCancelledError(Exception):
    """Raised when a pending acquisition is cancelled."""

    def __init__(self, message: str, code: str = "lock_cancelled") -> None:
        super().__init__(message)
        self.code = code


class LockStateError(Exception):
    """Raised when a lease is released twice or does not belong to the lock."""

    def __init__(self, message: str, code: str = "lock_state") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class WorkspaceLease:
    """Grant of a workspace to a requester.

    Attributes:
        requester: Who asked for the workspace.
        workspace: Workspace directory pinned by this lease.
        exclusive: Whether the lease holds the FIFO lock (False for
            concurrent builds).
        ticket: Sequence number of the request.
    """

    requester: Requester
    workspace: Path
    exclusive: bool
    ticket: int
    released: bool = False


class WorkspaceLock:
    """Lock guarding one project's workspace.

    Args:
        workspace: The project's main workspace directory.
        concurrent_build: Whether builds may run side by side.
        concurrent_polling: Whether polls requiring the workspace wait for
            concurrent builds to leave the main workspace.
        poll_interval: Seconds between cancellation checks while waiting.
    """

    def __init__(
        self,
        workspace: Path,
        concurrent_build: bool = False,
        concurrent_polling: ConcurrentPolling = ConcurrentPolling.EXCLUSIVE,
        poll_interval: float = 0.1,
    ) -> None:
        self.workspace = workspace
        self.concurrent_build = concurrent_build
        self.concurrent_polling = concurrent_polling
        self.poll_interval = poll_interval
        self._cond = threading.Condition()
        self._tickets = itertools.count(1)
        self._queue: deque[int] = deque()
        self._holder: WorkspaceLease | None = None
        self._leased: dict[Path, WorkspaceLease] = {}
        self._queued_wipes: set[int] = set()

    @property
    def holder(self) -> Requester | None:
        """Requester currently holding the exclusive lock, if any."""
        with self._cond:
            return self._holder.requester if self._holder else None

    @property
    def queue_length(self) -> int:
        """Number of requests waiting for the exclusive lock."""
        with self._cond:
            return len(self._queue)

    @property
    def leased_workspaces(self) -> list[Path]:
        """Workspaces currently leased to concurrent builds."""
        with self._cond:
            return sorted(self._leased)

    @property
    def in_use(self) -> bool:
        """Whether any poll, build or wipe holds or waits for the workspace."""
        with self._cond:
            return self._holder is not None or bool(self._queue or self._leased)

    def _workspace_for(self, index: int) -> Path:
        if index == 1:
            return self.workspace
        return self.workspace.with_name(f"{self.workspace.name}@{index}")

    def _lease_concurrent(self, ticket: int) -> WorkspaceLease:
        # Caller holds self._cond. Leave the main workspace to a poll that
        # holds or waits for it.
        reserve_main = (
            self.concurrent_polling is ConcurrentPolling.EXCLUSIVE
            and (self._holder is not None or bool(self._queue))
        )
        for index in itertools.count(1):
            path = self._workspace_for(index)
            if path in self._leased or (index == 1 and reserve_main):
                continue
            lease = WorkspaceLease(
                Requester.BUILD, path, exclusive=False, ticket=ticket
            )
            self._leased[path] = lease
            return lease
        raise AssertionError("unreachable")

    def reconfigure(self, workspace: Path, concurrent_build: bool) -> None:
        """Update the workspace path and concurrency flag."""
        with self._cond:
            self.workspace = workspace
            self.concurrent_build = concurrent_build
            self._cond.notify_all()

    def _can_grant(self, requester: Requester, ticket: int) -> bool:
        if self._holder is not None or not self._queue or self._queue[0] != ticket:
            return False
        if not self.concurrent_build:
            return not self._leased
        if requester is Requester.WIPE:
            return not self._leased
        if self.concurrent_polling is ConcurrentPolling.EXCLUSIVE:
            return self.workspace not in self._leased
        return True

    def _wait(
        self,
        ready: Callable[[], bool],
        requester: Requester,
        cancel: threading.Event | None,
        deadline: float | None,
    ) -> None:
        # Caller holds self._cond
        while not ready():
            if cancel is not None and cancel.is_set():
                raise LockCancelledError(
                    f"{requester.value} request cancelled for {self.workspace}"
                )
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(
                        f"Timeout waiting for workspace lock on {self.workspace}"
                    )
                wait = min(wait, remaining)
            self._cond.wait(wait)

    def acquire(
        self,
        requester: Requester,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> WorkspaceLease:
        """Acquire the workspace, blocking until granted.

        Args:
            requester: Kind of activity asking for the workspace.
            cancel: Event that aborts a pending acquisition when set.
            timeout: Maximum seconds to wait (None = no limit).

        Returns:
            WorkspaceLease to pass to release().

        Raises:
            LockCancelledError: If cancel was set before the lock was granted.
            TimeoutError: If the timeout expired before the lock was granted.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            ticket = next(self._tickets)

            if requester is Requester.BUILD and self.concurrent_build:
                # Concurrent builds only wait out a wipe-out, held or queued
                self._wait(
                    lambda: not self._queued_wipes
                    and (
                        self._holder is None
                        or self._holder.requester is not Requester.WIPE
                    ),
                    requester,
                    cancel,
                    deadline,
                )
                lease = self._lease_concurrent(ticket)
                logger.debug("Leased concurrent workspace %s", lease.workspace)
                return lease

            self._queue.append(ticket)
            if requester is Requester.WIPE:
                self._queued_wipes.add(ticket)
            logger.debug(
                "%s request %d queued for %s", requester.value, ticket, self.workspace
            )
            try:
                self._wait(
                    lambda: self._can_grant(requester, ticket),
                    requester,
                    cancel,
                    deadline,
                )
            except BaseException:
                self._queue.remove(ticket)
                self._queued_wipes.discard(ticket)
                self._cond.notify_all()
                raise

            self._queue.popleft()
            self._queued_wipes.discard(ticket)
            lease = WorkspaceLease(
                requester, self.workspace, exclusive=True, ticket=ticket
            )
            self._holder = lease
            logger.debug(
                "%s request %d holds %s", requester.value, ticket, self.workspace
            )
            return lease

    def release(self, lease: WorkspaceLease) -> None:
        """Release a lease obtained from acquire().

        Raises:
            LockStateError: If the lease was already released or is unknown.
        """
        with self._cond:
            if lease.released:
                raise LockStateError(f"Lease {lease.ticket} already released")
            if lease.exclusive:
                if self._holder is not lease:
                    raise LockStateError(f"Lease {lease.ticket} does not hold the lock")
                self._holder = None
            else:
                if self._leased.get(lease.workspace) is not lease:
                    raise LockStateError(f"Lease {lease.ticket} is not active")
                del self._leased[lease.workspace]
            lease.released = True
            self._cond.notify_all()
            logger.debug("%s lease %d released", lease.requester.value, lease.ticket)

    @contextmanager
    def hold(
        self,
        requester: Requester,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> Iterator[WorkspaceLease]:
        """Context manager around acquire() and release()."""
        lease = self.acquire(requester, cancel=cancel, timeout=timeout)
        try:
            yield lease
        finally:
            self.release(lease)


class WorkspaceLockRegistry:
    """Per-project workspace locks shared by pollers and builders.

    Args:
        concurrent_polling: Policy applied to every lock created.
        poll_interval: Seconds between cancellation checks while waiting.
    """

    def __init__(
        self,
        concurrent_polling: ConcurrentPolling = ConcurrentPolling.EXCLUSIVE,
        poll_interval: float = 0.1,
    ) -> None:
        self.concurrent_polling = concurrent_polling
        self.poll_interval = poll_interval
        self._guard = threading.Lock()
        self._locks: dict[int, WorkspaceLock] = {}

    def for_project(
        self, project_id: int, workspace: Path, concurrent_build: bool
    ) -> WorkspaceLock:
        """Return the lock for a project, refreshing its configuration.

        Args:
            project_id: Database ID of the project.
            workspace: Current main workspace of the project.
            concurrent_build: Current value of the project's concurrency flag.

        Returns:
            The project's WorkspaceLock.
        """
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = WorkspaceLock(
                    workspace,
                    concurrent_build=concurrent_build,
                    concurrent_polling=self.concurrent_polling,
                    poll_interval=self.poll_interval,
                )
                self._locks[project_id] = lock
            else:
                lock.reconfigure(workspace, concurrent_build)
            return lock

    def in_use(self, project_id: int) -> bool:
        """Whether a project's workspace is held or awaited."""
        with self._guard:
            lock = self._locks.get(project_id)
        return lock is not None and lock.in_use

    def forget(self, project_id: int) -> None:
        """Drop the lock of a deleted project."""
        with self._guard:
            self._locks.pop(project_id, None)


__all__ = [
    "LockCancelledError",
    "LockStateError",
    "WorkspaceLease",
    "WorkspaceLock",
    "WorkspaceLockRegistry",
]
