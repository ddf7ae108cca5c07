"""Build service module.

This module provides the high-level build API:
- BuildScheduler.schedule_build(): queue a build on the worker pool
- BuildScheduler.poll_changes(): run change detection under the workspace lock
- BuildScheduler.wipe_out_workspace(): remove a project's workspaces
- Build lookup, listing and pointer resolution

A build waits for upstream projects when configured to, takes the
workspace lock, allocates its sequence number under the project's mutation
lock, runs its steps and publishers, writes its final result, and only
then hands itself to the pointer manager.
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from buildkeep.builds.artifacts import ArtifactArchiver
from buildkeep.builds.records import Build, BuildKey, BuildRecord, ProjectLocation
from buildkeep.builds.runner import BuildContext, BuildStep, ShellStep, run_steps
from buildkeep.builds.store import BuildNotFoundError
from buildkeep.db import get_session
from buildkeep.projects.models import Project
from buildkeep.projects.service import (
    get_project_by_id,
    get_project_or_none,
    upstream_projects,
)
from buildkeep.security import (
    SYSTEM,
    AuthorizationError,
    Permission,
    Principal,
    require_permission,
)
from buildkeep.types import PointerName, Requester, Result
from buildkeep.workspace.polling import PollingStrategy, strategy_for_command

if TYPE_CHECKING:
    from buildkeep.runtime import Runtime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectSnapshot:
    """Project configuration captured at one point in time.

    Worker threads never share ORM instances; they work from snapshots.
    """

    project_id: int
    full_name: str
    location: ProjectLocation
    concurrent_build: bool
    block_when_upstream_building: bool
    upstream_ids: tuple[int, ...]
    shell_steps: tuple[str, ...]
    archive_patterns: tuple[str, ...]
    allow_empty_archive: bool
    downstream_projects: tuple[str, ...]
    downstream_threshold: Result
    poll_command: str | None


class BuildScheduler:
    """Runs builds and polls of projects on a worker pool.

    Args:
        runtime: Shared runtime components.
        max_workers: Worker threads (defaults to
            Settings.max_concurrent_builds).
    """

    def __init__(self, runtime: Runtime, max_workers: int | None = None) -> None:
        self.runtime = runtime
        self._shutdown = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or runtime.settings.max_concurrent_builds,
            thread_name_prefix="buildkeep-build",
        )
        self._pending_lock = threading.Lock()
        self._pending: set[Future[Build]] = set()

    # Snapshots

    def _load(self, session: Session, project_id: int) -> ProjectSnapshot:
        project = get_project_by_id(session, project_id)
        if project.relocating_from:
            with self.runtime.mutation_locks.hold(project_id):
                self.runtime.resolver.resume(session, project)
        return self._snapshot_of(session, project)

    def _snapshot_of(self, session: Session, project: Project) -> ProjectSnapshot:
        return ProjectSnapshot(
            project_id=project.id,
            full_name=project.full_name,
            location=self.runtime.resolver.locate(project),
            concurrent_build=project.concurrent_build,
            block_when_upstream_building=project.block_when_upstream_building,
            upstream_ids=tuple(p.id for p in upstream_projects(session, project)),
            shell_steps=tuple(project.shell_steps or ()),
            archive_patterns=tuple(project.archive_patterns or ()),
            allow_empty_archive=project.allow_empty_archive,
            downstream_projects=tuple(project.downstream_projects or ()),
            downstream_threshold=Result(project.downstream_threshold),
            poll_command=project.poll_command,
        )

    def snapshot(self, project_id: int) -> ProjectSnapshot:
        """Capture the current configuration of a project.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        with get_session(self.runtime.session_factory) as session:
            return self._load(session, project_id)

    # Builds

    def schedule_build(
        self, project_id: int, cause: str, principal: Principal
    ) -> Future[Build]:
        """Queue a build of a project.

        Args:
            project_id: Database ID of the project.
            cause: Why the build was requested (stored in the record).
            principal: Acting principal; needs BUILD on the project.

        Returns:
            Future resolving to the finished Build.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            AuthorizationError: If the principal may not build the project.
            RuntimeError: If the scheduler was shut down.
        """
        if self._shutdown.is_set():
            raise RuntimeError("Scheduler is shut down")
        snapshot = self.snapshot(project_id)
        require_permission(
            self.runtime.checker, principal, Permission.BUILD, snapshot.full_name
        )
        logger.info("Scheduling build of %s (%s)", snapshot.full_name, cause)

        future = self._executor.submit(self._execute, project_id, cause)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future[Build]) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _execute(self, project_id: int, cause: str) -> Build:
        snapshot = self.snapshot(project_id)
        if snapshot.block_when_upstream_building and snapshot.upstream_ids:
            logger.info("%s waits for upstream builds", snapshot.full_name)
            self.runtime.running.wait_until_idle(
                snapshot.upstream_ids,
                cancel=self._shutdown,
                poll_interval=self.runtime.settings.lock_poll_interval,
            )
            snapshot = self.snapshot(project_id)

        lock = self.runtime.workspace_locks.for_project(
            project_id, snapshot.location.workspace, snapshot.concurrent_build
        )
        with lock.hold(Requester.BUILD, cancel=self._shutdown) as lease:
            build, snapshot = self._start(project_id, cause, lease.workspace)
            try:
                result = self._perform(build, snapshot)
            except Exception as e:
                logger.exception(
                    "Build #%d of %s crashed", build.number, snapshot.full_name
                )
                self._finish(build, snapshot, Result.FAILURE, str(e))
                raise
            self._finish(build, snapshot, result)

        self._trigger_downstream(snapshot, build)
        return build

    def _start(
        self, project_id: int, cause: str, workspace: Path
    ) -> tuple[Build, ProjectSnapshot]:
        runtime = self.runtime
        with runtime.mutation_locks.hold(project_id):
            with get_session(runtime.session_factory) as session:
                project = get_project_by_id(session, project_id)
                number = project.next_build_number
                project.next_build_number = number + 1
                snapshot = self._snapshot_of(session, project)

            # The counter is committed; the number is never handed out again
            build_dir = runtime.store.create_build_directory(
                snapshot.location.builds_root, number
            )
            build = Build(
                BuildRecord(project_id=project_id, number=number, cause=cause),
                build_dir,
            )
            # Leases name the directory inside the project root as of the grant
            build.mark_started(snapshot.location.root / workspace.name)
            runtime.store.save_record(build)
            runtime.store.cache.put(build)
            runtime.running.started(project_id, number)

        logger.info(
            "Started build #%d of %s in %s", number, snapshot.full_name, build.workspace
        )
        return build, snapshot

    def _steps(
        self, snapshot: ProjectSnapshot
    ) -> tuple[list[BuildStep], list[BuildStep]]:
        timeout = self.runtime.settings.step_timeout
        builders: list[BuildStep] = [
            ShellStep(command, timeout=timeout) for command in snapshot.shell_steps
        ]
        publishers: list[BuildStep] = []
        if snapshot.archive_patterns:
            publishers.append(
                ArtifactArchiver(
                    list(snapshot.archive_patterns),
                    allow_empty=snapshot.allow_empty_archive,
                )
            )
        return builders, publishers

    def _perform(self, build: Build, snapshot: ProjectSnapshot) -> Result:
        workspace = build.workspace or snapshot.location.workspace
        workspace.mkdir(parents=True, exist_ok=True)
        builders, publishers = self._steps(snapshot)
        with build.log_path.open("a", encoding="utf-8") as log:
            log.write(
                f"# Build #{build.number} of {snapshot.full_name} "
                f"({build.record.cause})\n"
            )
            ctx = BuildContext(
                build=build,
                project_full_name=snapshot.full_name,
                workspace=workspace,
                log=log,
                cancel=self._shutdown,
            )
            result = run_steps(builders, ctx)
            result = run_steps(publishers, ctx, result, stop_on_failure=False)
            log.write(f"# Finished: {result.value}\n")
        return result

    def _finish(
        self,
        build: Build,
        snapshot: ProjectSnapshot,
        result: Result,
        message: str | None = None,
    ) -> None:
        runtime = self.runtime
        build.mark_finished(result, message)
        try:
            with runtime.mutation_locks.hold(snapshot.project_id):
                runtime.store.save_record(build)
                runtime.store.cache.put(build)
                runtime.pointers.on_build_finalized(snapshot.location, build)
        finally:
            runtime.running.finished(snapshot.project_id, build.number)

        log = logger.info if result is Result.SUCCESS else logger.warning
        log(
            "Build #%d of %s finished: %s",
            build.number,
            snapshot.full_name,
            result.value,
        )

    def _trigger_downstream(self, snapshot: ProjectSnapshot, build: Build) -> None:
        if not snapshot.downstream_projects or self._shutdown.is_set():
            return
        if not build.result.is_better_or_equal(snapshot.downstream_threshold):
            logger.info(
                "Not triggering downstream of %s: %s is worse than %s",
                snapshot.full_name,
                build.result.value,
                snapshot.downstream_threshold.value,
            )
            return

        with get_session(self.runtime.session_factory) as session:
            targets = []
            for name in snapshot.downstream_projects:
                project = get_project_or_none(session, name)
                if project is None:
                    logger.warning(
                        "Downstream project %s of %s not found",
                        name,
                        snapshot.full_name,
                    )
                    continue
                targets.append(project.id)

        cause = f"upstream {snapshot.full_name} #{build.number}"
        for project_id in targets:
            try:
                self.schedule_build(project_id, cause, SYSTEM)
            except AuthorizationError as e:
                logger.warning("Downstream build not scheduled: %s", e)

    def wait_for_idle(self, timeout: float | None = None) -> None:
        """Block until every scheduled build, including triggered ones, ends."""
        while True:
            with self._pending_lock:
                pending = set(self._pending)
            if not pending:
                return
            _, not_done = wait_futures(pending, timeout=timeout)
            if not_done:
                raise TimeoutError(f"{len(not_done)} build(s) still running")

    # Polling and workspace maintenance

    def poll_changes(
        self,
        project_id: int,
        strategy: PollingStrategy | None = None,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Check a project for source changes.

        The poll always goes through the workspace lock, so it never
        overlaps a build using the same workspace.

        Args:
            project_id: Database ID of the project.
            strategy: Polling strategy; defaults to the project's
                poll_command (or NullPolling).
            cancel: Event aborting the poll. While waiting for the lock it
                raises LockCancelledError; once polling it stops the
                strategy, which then reports no changes.

        Returns:
            True if changes were detected.

        Raises:
            LockCancelledError: If cancelled before the lock was granted.
        """
        snapshot = self.snapshot(project_id)
        if strategy is None:
            strategy = strategy_for_command(snapshot.poll_command)
        if cancel is None:
            cancel = self._shutdown

        lock = self.runtime.workspace_locks.for_project(
            project_id, snapshot.location.workspace, snapshot.concurrent_build
        )
        with lock.hold(Requester.POLL, cancel=cancel) as lease:
            workspace = None
            if strategy.requires_workspace():
                workspace = lease.workspace
                workspace.mkdir(parents=True, exist_ok=True)
            changed = strategy.poll(workspace, cancel)

        logger.info(
            "Polled %s: %s",
            snapshot.full_name,
            "changes found" if changed else "no changes",
        )
        return changed

    def wipe_out_workspace(self, project_id: int, principal: Principal) -> list[Path]:
        """Remove every workspace of a project.

        Waits until no poll or build uses any of the workspaces.

        Returns:
            Workspaces that were removed.

        Raises:
            AuthorizationError: If the principal lacks WIPEOUT.
        """
        snapshot = self.snapshot(project_id)
        require_permission(
            self.runtime.checker, principal, Permission.WIPEOUT, snapshot.full_name
        )
        lock = self.runtime.workspace_locks.for_project(
            project_id, snapshot.location.workspace, snapshot.concurrent_build
        )
        removed = []
        with lock.hold(Requester.WIPE, cancel=self._shutdown):
            for path in snapshot.location.workspace_dirs():
                shutil.rmtree(path)
                removed.append(path)
        logger.info(
            "Wiped out %d workspace(s) of %s", len(removed), snapshot.full_name
        )
        return removed

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and cancel pending polls and builds."""
        self._shutdown.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)


# Query Operations


def get_build(runtime: Runtime, project: Project, number: int) -> Build:
    """Get a build of a project.

    Raises:
        BuildNotFoundError: If the build does not exist.
    """
    location = runtime.resolver.locate(project)
    return runtime.store.cache.get(BuildKey(project.id, number), location.builds_root)


def list_builds(runtime: Runtime, project: Project, limit: int = 100) -> list[Build]:
    """List a project's builds, newest first."""
    location = runtime.resolver.locate(project)
    builds = []
    for number in reversed(runtime.store.list_build_numbers(location.builds_root)):
        try:
            builds.append(
                runtime.store.cache.get(
                    BuildKey(project.id, number), location.builds_root
                )
            )
        except BuildNotFoundError:
            logger.warning("Build #%d of %s has no record", number, project.full_name)
            continue
        if len(builds) >= limit:
            break
    return builds


def resolve_pointer(
    runtime: Runtime, project: Project, name: PointerName
) -> Build | None:
    """Build a named pointer resolves to, repairing the pointer if needed."""
    location = runtime.resolver.locate(project)
    with runtime.mutation_locks.hold(project.id):
        number = runtime.pointers.resolve(location, name)
    if number is None:
        return None
    return get_build(runtime, project, number)


__all__ = [
    "BuildScheduler",
    "ProjectSnapshot",
    "get_build",
    "list_builds",
    "resolve_pointer",
]
