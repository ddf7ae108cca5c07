"""Project path resolution and relocation.

This module handles:
- Mapping a project's full name to its directory under the home dir
- Resolving the project's build storage root and workspace
- Moving a project's directories when it is renamed or moved
- Completing relocations left unfinished by a crash
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from sqlalchemy.orm import Session

from buildkeep.builds.pointers import PointerLinkManager
from buildkeep.builds.records import ProjectLocation
from buildkeep.builds.store import BuildStore, RelocationError
from buildkeep.projects.models import FULL_NAME_SEPARATOR, Project

logger = logging.getLogger(__name__)

# Directory separating a folder's own files from its children
CHILDREN_DIRNAME = "jobs"


class ProjectPathResolver:
    """Computes and maintains the on-disk locations of projects.

    Args:
        projects_dir: Directory holding top-level items.
        store: Build store resolving build storage roots.
        pointers: Pointer manager revalidated after relocations.
    """

    def __init__(
        self, projects_dir: Path, store: BuildStore, pointers: PointerLinkManager
    ) -> None:
        self.projects_dir = projects_dir
        self.store = store
        self.pointers = pointers

    def root_for(self, full_name: str) -> Path:
        """Directory of an item: <projects_dir>/a/jobs/b/jobs/c for "a/b/c"."""
        segments = full_name.strip(FULL_NAME_SEPARATOR).split(FULL_NAME_SEPARATOR)
        path = self.projects_dir / segments[0]
        for segment in segments[1:]:
            path = path / CHILDREN_DIRNAME / segment
        return path

    def location_for(self, project_id: int, full_name: str) -> ProjectLocation:
        root = self.root_for(full_name)
        return ProjectLocation(
            project_id=project_id,
            full_name=full_name,
            root=root,
            builds_root=self.store.resolve_root(full_name, root),
        )

    def locate(self, project: Project) -> ProjectLocation:
        """Current location of a project."""
        return self.location_for(project.id, project.full_name)

    def project_root(self, project: Project) -> Path:
        return self.root_for(project.full_name)

    def builds_root(self, project: Project) -> Path:
        return self.locate(project).builds_root

    def workspace(self, project: Project) -> Path:
        return self.locate(project).workspace

    def move_directories(
        self, project_id: int, old_full_name: str, new_full_name: str
    ) -> ProjectLocation:
        """Move the project directory and its build storage.

        Safe to call again after an interruption, and a no-op once the
        move is complete.

        Returns:
            The project's new location.

        Raises:
            RelocationError: If the directories cannot be moved.
        """
        old = self.location_for(project_id, old_full_name)
        new = self.location_for(project_id, new_full_name)

        if old.root != new.root and old.root.is_dir():
            if new.root.exists():
                if not new.root.is_dir() or any(new.root.iterdir()):
                    raise RelocationError(
                        f"Cannot move {old.root}: {new.root} already exists"
                    )
                new.root.rmdir()
            logger.info("Moving %s to %s", old.root, new.root)
            try:
                new.root.parent.mkdir(parents=True, exist_ok=True)
                os.rename(old.root, new.root)
            except OSError as e:
                raise RelocationError(
                    f"Failed to move {old.root} to {new.root}: {e}"
                ) from e

        # Nested build storage travelled with the project directory
        self.store.move_all(old.builds_root, new.builds_root)
        self.store.cache.evict_project(project_id)
        return new

    def on_rename(
        self, project_id: int, old_full_name: str, new_full_name: str
    ) -> ProjectLocation:
        """Relocate a renamed project and revalidate its pointers."""
        new = self.move_directories(project_id, old_full_name, new_full_name)
        self.pointers.revalidate(new)
        return new

    def on_container_move(
        self,
        project_id: int,
        name: str,
        old_parent_path: str,
        new_parent_path: str,
    ) -> ProjectLocation:
        """Relocate a project moved between containers.

        Args:
            project_id: Database ID of the project.
            name: Project name (unchanged by the move).
            old_parent_path: Full name of the old container ("" = top level).
            new_parent_path: Full name of the new container ("" = top level).
        """
        return self.on_rename(
            project_id,
            _join(old_parent_path, name),
            _join(new_parent_path, name),
        )

    def resume(self, session: Session, project: Project) -> ProjectLocation | None:
        """Finish a relocation journaled on the project, if any.

        Returns:
            The project's location if a relocation was completed, else None.
        """
        journal = project.relocating_from
        if not journal:
            return None
        logger.warning(
            "Completing interrupted relocation of %s from %s",
            project.full_name,
            journal["full_name"],
        )
        location = self.on_rename(project.id, journal["full_name"], project.full_name)
        project.relocating_from = None
        session.flush()
        return location


def _join(parent_path: str, name: str) -> str:
    return f"{parent_path}{FULL_NAME_SEPARATOR}{name}" if parent_path else name


__all__ = ["CHILDREN_DIRNAME", "ProjectPathResolver"]
