"""Delete, rename and move cascades.

Every management operation that touches a project's files walks the same
state machine:

    REQUESTED -> AUTHORIZATION_CHECKED -> DIRECTORIES_MUTATED
              -> POINTERS_REPAIRED -> DONE

FAILED is reachable from every state. Authorization is checked before
any file is touched, and the project's mutation lock is held from the
first filesystem change to the last pointer update.
"""

from __future__ import annotations

import logging
import shutil
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from buildkeep.builds.records import BuildKey, ProjectLocation
from buildkeep.builds.store import TOMBSTONE_SUFFIX, BuildNotFoundError
from buildkeep.projects.models import Folder, Project
from buildkeep.projects.schema import check_name
from buildkeep.projects.service import (
    ProjectExistsError,
    container_target,
    name_in_use,
    replace_downstream_references,
)
from buildkeep.runtime import Runtime
from buildkeep.security import Permission, Principal, require_permission
from buildkeep.types import CascadeState

logger = logging.getLogger(__name__)

HISTORY_SIZE = 100


class ProjectBusyError(Exception):
    """Raised when a project cannot change while its workspace is in use."""

    def __init__(self, full_name: str, code: str = "project_busy") -> None:
        self.full_name = full_name
        self.code = code
        super().__init__(f"Project {full_name} is building")


class PartialDeletionError(Exception):
    """Raised when files remain after a deletion was committed.

    Pointers were already repaired; repeating the operation removes the
    leftovers.
    """

    def __init__(self, message: str, code: str = "partial_deletion") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class CascadeOutcome:
    """Trace of one cascade operation.

    Attributes:
        operation: Operation name ("delete_build", "rename_project", ...).
        target: Full name (and build number) the operation applied to.
        states: States visited, in order.
        details: Operation-specific results.
        error: Exception that ended the operation, if it failed.
    """

    operation: str
    target: str
    states: list[CascadeState] = field(
        default_factory=lambda: [CascadeState.REQUESTED]
    )
    details: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None

    @property
    def state(self) -> CascadeState:
        return self.states[-1]

    @property
    def succeeded(self) -> bool:
        return self.state is CascadeState.DONE

    def advance(self, state: CascadeState) -> None:
        if self.state in (CascadeState.DONE, CascadeState.FAILED):
            raise ValueError(f"{self.operation} already ended in {self.state.value}")
        self.states.append(state)


class CascadeCoordinator:
    """Runs project and build deletions, renames and moves.

    Must share its Runtime with the BuildScheduler so both use the same
    locks and build cache.

    Attributes:
        history: Outcomes of recent operations, failures included.
    """

    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime
        self.history: deque[CascadeOutcome] = deque(maxlen=HISTORY_SIZE)

    @contextmanager
    def _track(self, operation: str, target: str) -> Iterator[CascadeOutcome]:
        outcome = CascadeOutcome(operation, target)
        self.history.append(outcome)
        try:
            yield outcome
        except BaseException as e:
            outcome.error = e
            outcome.states.append(CascadeState.FAILED)
            logger.error(
                "%s of %s failed after %s: %s",
                operation,
                target,
                outcome.states[-2].value,
                e,
            )
            raise
        outcome.advance(CascadeState.DONE)
        logger.info("%s of %s done", operation, target)

    def _authorize(
        self,
        outcome: CascadeOutcome,
        principal: Principal,
        permission: Permission,
        target: str,
    ) -> None:
        require_permission(self.runtime.checker, principal, permission, target)
        outcome.advance(CascadeState.AUTHORIZATION_CHECKED)

    def _ensure_idle(self, project: Project) -> None:
        if self.runtime.running.is_building(
            project.id
        ) or self.runtime.workspace_locks.in_use(project.id):
            raise ProjectBusyError(project.full_name)

    # Builds

    def delete_build(
        self, session: Session, project: Project, number: int, principal: Principal
    ) -> CascadeOutcome:
        """Delete one build and repair the pointers that named it.

        Args:
            session: SQLAlchemy session.
            project: Owning project.
            number: Sequence number of the build.
            principal: Acting principal; needs DELETE on the project.

        Returns:
            Outcome with details["repaired"] mapping repaired pointers to
            their new targets.

        Raises:
            AuthorizationError: If the principal lacks DELETE.
            ProjectBusyError: If the build is still running.
            BuildNotFoundError: If no such build exists.
            PartialDeletionError: If the build directory could not be fully
                removed; pointers are already consistent.
        """
        with self._track("delete_build", f"{project.full_name} #{number}") as outcome:
            self._authorize(outcome, principal, Permission.DELETE, project.full_name)
            location = self.runtime.resolver.locate(project)
            with self.runtime.mutation_locks.hold(project.id):
                if self.runtime.running.is_building(project.id, number):
                    raise ProjectBusyError(project.full_name)
                self._delete_build_dir(location, number, outcome)
                outcome.details["repaired"] = self.runtime.pointers.on_build_deleted(
                    location, number
                )
                outcome.advance(CascadeState.POINTERS_REPAIRED)
                self._remove_tombstones(location)
        return outcome

    def _delete_build_dir(
        self, location: ProjectLocation, number: int, outcome: CascadeOutcome
    ) -> None:
        store = self.runtime.store
        purged = self._remove_tombstones(location)
        build_dir = store.build_dir(location.builds_root, number)
        store.cache.evict(BuildKey(location.project_id, number))

        if store.tombstone(build_dir) is None:
            grave = f".{build_dir.name}{TOMBSTONE_SUFFIX}"
            if not any(p.name == grave for p in purged):
                raise BuildNotFoundError(number)
            logger.info(
                "Build #%d of %s was already removed", number, location.full_name
            )
        outcome.advance(CascadeState.DIRECTORIES_MUTATED)

    def _remove_tombstones(self, location: ProjectLocation) -> list[Any]:
        try:
            return self.runtime.store.purge_tombstones(location.builds_root)
        except OSError as e:
            raise PartialDeletionError(
                f"Could not remove deleted builds of {location.full_name}: {e}"
            ) from e

    # Projects

    def delete_project(
        self, session: Session, project: Project, principal: Principal
    ) -> CascadeOutcome:
        """Delete a project with all of its builds, pointers and workspaces.

        The database row is deleted (flushed, not committed) once the
        files are gone.

        Raises:
            AuthorizationError: If the principal lacks DELETE.
            ProjectBusyError: If the project is building or polling.
            PartialDeletionError: If files could not be removed; repeating
                the deletion finishes the job.
        """
        full_name = project.full_name
        runtime = self.runtime
        with self._track("delete_project", full_name) as outcome:
            self._authorize(outcome, principal, Permission.DELETE, full_name)
            with runtime.mutation_locks.hold(project.id):
                self._ensure_idle(project)
                if project.relocating_from:
                    runtime.resolver.resume(session, project)
                location = runtime.resolver.locate(project)

                self._remove_tombstones(location)
                numbers = runtime.store.list_build_numbers(location.builds_root)
                for number in reversed(numbers):
                    runtime.store.cache.evict(BuildKey(project.id, number))
                    runtime.store.tombstone(
                        runtime.store.build_dir(location.builds_root, number)
                    )
                outcome.advance(CascadeState.DIRECTORIES_MUTATED)

                runtime.pointers.clear_all(location)
                outcome.advance(CascadeState.POINTERS_REPAIRED)

                try:
                    self._remove_tombstones(location)
                    for path in location.workspace_dirs():
                        shutil.rmtree(path)
                    for path in (location.builds_root, location.root):
                        if path.is_dir():
                            shutil.rmtree(path)
                except OSError as e:
                    raise PartialDeletionError(
                        f"Could not remove all files of {full_name}: {e}"
                    ) from e
                outcome.details["builds_deleted"] = len(numbers)

                runtime.store.cache.evict_project(project.id)
                runtime.workspace_locks.forget(project.id)
                replace_downstream_references(session, full_name, None)
                session.delete(project)
                session.flush()
        return outcome

    def rename_project(
        self,
        session: Session,
        project: Project,
        new_name: str,
        principal: Principal,
    ) -> CascadeOutcome:
        """Rename a project in place.

        Commits the session: the relocation journal and the new name are
        made durable before any directory moves, so an interrupted rename
        is resumed from the journal.

        Raises:
            AuthorizationError: If the principal lacks CONFIGURE.
            ValueError: If the new name is invalid.
            ProjectExistsError: If the name is taken in the folder.
            ProjectBusyError: If the project is building or polling.
            RelocationError: If the directories could not be moved; the
                move is journaled and completed by the next access.
        """
        with self._track("rename_project", project.full_name) as outcome:
            self._authorize(
                outcome, principal, Permission.CONFIGURE, project.full_name
            )
            check_name(new_name)
            self._relocate(session, project, project.folder, new_name, outcome)
        return outcome

    def move_project(
        self,
        session: Session,
        project: Project,
        new_folder: Folder | None,
        principal: Principal,
    ) -> CascadeOutcome:
        """Move a project to another folder (None = top level).

        Needs CONFIGURE on the project and on the destination folder.
        Commits the session like rename_project.

        Raises:
            AuthorizationError: If a permission is missing.
            ProjectExistsError: If the name is taken in the destination.
            ProjectBusyError: If the project is building or polling.
            RelocationError: If the directories could not be moved.
        """
        with self._track("move_project", project.full_name) as outcome:
            require_permission(
                self.runtime.checker,
                principal,
                Permission.CONFIGURE,
                project.full_name,
            )
            self._authorize(
                outcome, principal, Permission.CONFIGURE, container_target(new_folder)
            )
            self._relocate(session, project, new_folder, project.name, outcome)
        return outcome

    def _relocate(
        self,
        session: Session,
        project: Project,
        folder: Folder | None,
        name: str,
        outcome: CascadeOutcome,
    ) -> None:
        runtime = self.runtime
        old_full_name = project.full_name
        same_place = name == project.name and (
            (folder.id if folder is not None else None) == project.folder_id
        )

        with runtime.mutation_locks.hold(project.id):
            self._ensure_idle(project)
            if same_place:
                # Nothing to move unless an earlier attempt was interrupted
                location = runtime.resolver.resume(session, project)
                outcome.advance(CascadeState.DIRECTORIES_MUTATED)
                outcome.advance(CascadeState.POINTERS_REPAIRED)
                outcome.details["location"] = location or runtime.resolver.locate(
                    project
                )
                return
            if name_in_use(session, folder, name):
                parent = folder.full_name if folder is not None else ""
                raise ProjectExistsError(f"{parent}/{name}" if parent else name)

            # Finish any earlier relocation before journaling a new one
            runtime.resolver.resume(session, project)
            project.relocating_from = {"full_name": old_full_name}
            project.name = name
            project.folder = folder
            session.flush()
            new_full_name = project.full_name
            replace_downstream_references(session, old_full_name, new_full_name)
            session.commit()

            new = runtime.resolver.move_directories(
                project.id, old_full_name, new_full_name
            )
            outcome.advance(CascadeState.DIRECTORIES_MUTATED)
            outcome.details["pointers"] = runtime.pointers.revalidate(new)
            outcome.advance(CascadeState.POINTERS_REPAIRED)

            runtime.workspace_locks.for_project(
                project.id, new.workspace, project.concurrent_build
            )
            project.relocating_from = None
            session.commit()
            outcome.details["location"] = new
            logger.info("Relocated %s to %s", old_full_name, new_full_name)


__all__ = [
    "CascadeCoordinator",
    "CascadeOutcome",
    "PartialDeletionError",
    "ProjectBusyError",
]
