"""Shared runtime components.

The build scheduler and the cascade coordinator must agree on the lock
registries, the build cache and the permission checker. Runtime bundles
one instance of each so both sides are wired to the same objects.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from buildkeep.builds.pointers import PointerLinkManager
from buildkeep.builds.store import BuildStore
from buildkeep.config import Settings, get_settings
from buildkeep.db import create_all_tables, get_engine, get_session_factory
from buildkeep.locks import MutationLocks
from buildkeep.projects.paths import ProjectPathResolver
from buildkeep.security import PermissionChecker, PolicyAuthorizer
from buildkeep.workspace.lock import LockCancelledError, WorkspaceLockRegistry

logger = logging.getLogger(__name__)


class RunningBuilds:
    """Builds currently executing, per project."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._running: dict[int, set[int]] = {}

    def started(self, project_id: int, number: int) -> None:
        with self._cond:
            self._running.setdefault(project_id, set()).add(number)

    def finished(self, project_id: int, number: int) -> None:
        with self._cond:
            numbers = self._running.get(project_id, set())
            numbers.discard(number)
            if not numbers:
                self._running.pop(project_id, None)
            self._cond.notify_all()

    def is_building(self, project_id: int, number: int | None = None) -> bool:
        """Whether a project (or one specific build of it) is running."""
        with self._cond:
            numbers = self._running.get(project_id, set())
            return bool(numbers) if number is None else number in numbers

    def wait_until_idle(
        self,
        project_ids: Iterable[int],
        cancel: threading.Event | None = None,
        timeout: float | None = None,
        poll_interval: float = 0.1,
    ) -> None:
        """Block until none of the given projects is building.

        Raises:
            LockCancelledError: If cancel is set while waiting.
            TimeoutError: If the timeout expires first.
        """
        ids = set(project_ids)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while any(pid in self._running for pid in ids):
                if cancel is not None and cancel.is_set():
                    raise LockCancelledError("Wait for upstream builds cancelled")
                wait = poll_interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("Timeout waiting for upstream builds")
                    wait = min(wait, remaining)
                self._cond.wait(wait)


@dataclass
class Runtime:
    """Components shared by scheduling and management operations.

    Attributes:
        settings: Application settings.
        session_factory: Factory for database sessions.
        checker: Permission checker consulted by every mutation.
        store: Build record store (owns the build cache).
        pointers: Named pointer manager.
        resolver: Project path resolver.
        mutation_locks: Per-project locks for storage and pointer writes.
        workspace_locks: Per-project workspace locks.
        running: Builds currently executing.
    """

    settings: Settings
    session_factory: sessionmaker[Session]
    checker: PermissionChecker
    store: BuildStore
    pointers: PointerLinkManager
    resolver: ProjectPathResolver
    mutation_locks: MutationLocks
    workspace_locks: WorkspaceLockRegistry
    running: RunningBuilds

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        session_factory: sessionmaker[Session] | None = None,
        checker: PermissionChecker | None = None,
    ) -> Runtime:
        """Wire the runtime from settings.

        Args:
            settings: Application settings (loaded from env if omitted).
            session_factory: Session factory; a new engine is created and
                its tables are created if omitted.
            checker: Permission checker; defaults to a PolicyAuthorizer
                honouring Settings.anonymous_read.
        """
        if settings is None:
            settings = get_settings()
        if session_factory is None:
            engine = get_engine(settings.db_url)
            create_all_tables(engine)
            session_factory = get_session_factory(engine)
        if checker is None:
            checker = PolicyAuthorizer(anonymous_read=settings.anonymous_read)

        store = BuildStore.from_settings(settings)
        pointers = PointerLinkManager(store, settings.pointer_style)
        return cls(
            settings=settings,
            session_factory=session_factory,
            checker=checker,
            store=store,
            pointers=pointers,
            resolver=ProjectPathResolver(settings.projects_dir, store, pointers),
            mutation_locks=MutationLocks(
                settings.locks_dir, settings.lock_poll_interval
            ),
            workspace_locks=WorkspaceLockRegistry(
                settings.concurrent_polling, settings.lock_poll_interval
            ),
            running=RunningBuilds(),
        )


__all__ = ["RunningBuilds", "Runtime"]
