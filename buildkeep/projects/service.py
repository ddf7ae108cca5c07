"""Project service for CRUD and query operations.

This module provides the high-level API for project management: folders,
project creation and configuration, upstream/downstream wiring and bulk
import/export. Renames, moves and deletions touch the filesystem and live
in buildkeep.projects.cascade.

Functions flush but never commit; transaction boundaries belong to the
caller.
"""

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from buildkeep.projects.io import export_project, load_project
from buildkeep.projects.models import FULL_NAME_SEPARATOR, Folder, Project
from buildkeep.projects.schema import (
    ProjectBulkImportResult,
    ProjectImportResult,
    ProjectSchema,
    check_folder_path,
    check_name,
)
from buildkeep.security import (
    Permission,
    PermissionChecker,
    Principal,
    require_permission,
)
from buildkeep.types import Result

logger = logging.getLogger(__name__)

# Permission target used for the top-level container
TOP_LEVEL_TARGET = "/"


class ProjectNotFoundError(Exception):
    """Raised when a project is not found."""

    def __init__(self, full_name: str, code: str = "project_not_found") -> None:
        self.full_name = full_name
        self.code = code
        super().__init__(f"Project not found: {full_name}")


class FolderNotFoundError(Exception):
    """Raised when a folder is not found."""

    def __init__(self, full_name: str, code: str = "folder_not_found") -> None:
        self.full_name = full_name
        self.code = code
        super().__init__(f"Folder not found: {full_name}")


class ProjectExistsError(Exception):
    """Raised when a name is already used in the target container."""

    def __init__(self, full_name: str, code: str = "project_exists") -> None:
        self.full_name = full_name
        self.code = code
        super().__init__(f"An item named {full_name} already exists")


def split_full_name(full_name: str) -> tuple[str | None, str]:
    """Split "a/b/c" into ("a/b", "c"); top-level names have no parent."""
    parent, sep, name = full_name.strip(FULL_NAME_SEPARATOR).rpartition(
        FULL_NAME_SEPARATOR
    )
    return (parent if sep else None), name


def container_target(folder: Folder | None) -> str:
    """Permission target for creating items inside a container."""
    return folder.full_name if folder is not None else TOP_LEVEL_TARGET


def _in_container(column: Any, parent_id: int | None) -> Any:
    return column.is_(None) if parent_id is None else column == parent_id


# Folders


def get_folder_or_none(session: Session, full_name: str | None) -> Folder | None:
    """Resolve a folder path, or None when any segment is missing.

    Args:
        session: SQLAlchemy session.
        full_name: Slash-separated folder path; empty means top level.
    """
    folder: Folder | None = None
    if not full_name:
        return None
    for segment in full_name.strip(FULL_NAME_SEPARATOR).split(FULL_NAME_SEPARATOR):
        parent_id = folder.id if folder is not None else None
        stmt = select(Folder).where(
            Folder.name == segment, _in_container(Folder.parent_id, parent_id)
        )
        folder = session.execute(stmt).scalar_one_or_none()
        if folder is None:
            return None
    return folder


def get_folder(session: Session, full_name: str | None) -> Folder | None:
    """Resolve a folder path.

    Returns:
        The folder, or None for the top level.

    Raises:
        FolderNotFoundError: If the folder does not exist.
    """
    if not full_name:
        return None
    folder = get_folder_or_none(session, full_name)
    if folder is None:
        raise FolderNotFoundError(full_name)
    return folder


def name_in_use(session: Session, parent: Folder | None, name: str) -> bool:
    """Whether a folder or project already uses a name in a container.

    Folders and projects share a directory namespace, so both are checked.
    """
    parent_id = parent.id if parent is not None else None
    folder = session.execute(
        select(Folder.id).where(
            Folder.name == name, _in_container(Folder.parent_id, parent_id)
        )
    ).first()
    project = session.execute(
        select(Project.id).where(
            Project.name == name, _in_container(Project.folder_id, parent_id)
        )
    ).first()
    return folder is not None or project is not None


def create_folder(
    session: Session,
    name: str,
    parent: str | None = None,
    *,
    principal: Principal,
    checker: PermissionChecker,
) -> Folder:
    """Create a folder.

    Args:
        session: SQLAlchemy session.
        name: Folder name.
        parent: Full name of the parent folder (None = top level).
        principal: Acting principal.
        checker: Permission checker.

    Returns:
        Created Folder ORM instance.

    Raises:
        FolderNotFoundError: If the parent does not exist.
        ProjectExistsError: If the name is taken in the parent.
        AuthorizationError: If the principal may not configure the parent.
    """
    check_name(name)
    parent_folder = get_folder(session, parent)
    require_permission(
        checker, principal, Permission.CONFIGURE, container_target(parent_folder)
    )
    if name_in_use(session, parent_folder, name):
        raise ProjectExistsError(f"{parent}/{name}" if parent else name)

    folder = Folder(name=name, parent=parent_folder)
    session.add(folder)
    session.flush()
    logger.info("Created folder %s", folder.full_name)
    return folder


def ensure_folder_path(session: Session, full_name: str | None) -> Folder | None:
    """Return a folder, creating missing segments along the way."""
    check_folder_path(full_name)
    if not full_name:
        return None
    folder: Folder | None = None
    for segment in full_name.strip(FULL_NAME_SEPARATOR).split(FULL_NAME_SEPARATOR):
        prefix = f"{folder.full_name}/{segment}" if folder is not None else segment
        existing = get_folder_or_none(session, prefix)
        if existing is None:
            existing = Folder(name=segment, parent=folder)
            session.add(existing)
            session.flush()
            logger.info("Created folder %s", prefix)
        folder = existing
    return folder


# Projects


def get_project_or_none(session: Session, full_name: str) -> Project | None:
    """Get a project by its full name, or None if not found."""
    parent, name = split_full_name(full_name)
    folder = get_folder_or_none(session, parent)
    if parent and folder is None:
        return None
    folder_id = folder.id if folder is not None else None
    stmt = select(Project).where(
        Project.name == name, _in_container(Project.folder_id, folder_id)
    )
    return session.execute(stmt).scalar_one_or_none()


def get_project(session: Session, full_name: str) -> Project:
    """Get a project by its full name.

    Args:
        session: SQLAlchemy session.
        full_name: Slash-separated project name, e.g. "team/app".

    Returns:
        Project ORM instance.

    Raises:
        ProjectNotFoundError: If project does not exist.
    """
    project = get_project_or_none(session, full_name)
    if project is None:
        raise ProjectNotFoundError(full_name)
    return project


def get_project_by_id(session: Session, project_id: int) -> Project:
    """Get a project by database ID.

    Raises:
        ProjectNotFoundError: If project does not exist.
    """
    project = session.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError(f"#{project_id}")
    return project


def list_projects(session: Session, folder: str | None = None) -> Sequence[Project]:
    """List projects ordered by full name.

    Args:
        session: SQLAlchemy session.
        folder: Only list projects at or below this folder.

    Raises:
        FolderNotFoundError: If the folder does not exist.
    """
    projects = list(session.execute(select(Project)).scalars())
    if folder:
        get_folder(session, folder)
        prefix = folder.strip(FULL_NAME_SEPARATOR) + FULL_NAME_SEPARATOR
        projects = [p for p in projects if p.full_name.startswith(prefix)]
    return sorted(projects, key=lambda p: p.full_name)


def project_to_schema(project: Project) -> ProjectSchema:
    """Convert a Project ORM model to a ProjectSchema."""
    return ProjectSchema(
        name=project.name,
        folder=project.parent_path or None,
        description=project.description,
        concurrent_build=project.concurrent_build,
        block_when_upstream_building=project.block_when_upstream_building,
        shell_steps=list(project.shell_steps or []),
        archive_patterns=list(project.archive_patterns or []),
        allow_empty_archive=project.allow_empty_archive,
        downstream_projects=list(project.downstream_projects or []),
        downstream_threshold=Result(project.downstream_threshold),
        poll_command=project.poll_command,
    )


def apply_schema(project: Project, schema: ProjectSchema) -> None:
    """Copy configuration fields from a schema onto a project.

    Identity (name and folder) and the build counter are left alone.
    """
    project.description = schema.description
    project.concurrent_build = schema.concurrent_build
    project.block_when_upstream_building = schema.block_when_upstream_building
    project.shell_steps = list(schema.shell_steps)
    project.archive_patterns = list(schema.archive_patterns)
    project.allow_empty_archive = schema.allow_empty_archive
    project.downstream_projects = list(schema.downstream_projects)
    project.downstream_threshold = schema.downstream_threshold.value
    project.poll_command = schema.poll_command


def _check_downstream(schema: ProjectSchema) -> None:
    if schema.full_name in schema.downstream_projects:
        raise ValueError(f"{schema.full_name} cannot trigger itself")


def create_project(
    session: Session,
    schema: ProjectSchema,
    *,
    principal: Principal,
    checker: PermissionChecker,
) -> Project:
    """Create a new project from a schema.

    Args:
        session: SQLAlchemy session.
        schema: ProjectSchema with project data.
        principal: Acting principal.
        checker: Permission checker.

    Returns:
        Created Project ORM instance.

    Raises:
        FolderNotFoundError: If the folder does not exist.
        ProjectExistsError: If the name is taken in the folder.
        AuthorizationError: If the principal may not configure the folder.
    """
    _check_downstream(schema)
    folder = get_folder(session, schema.folder)
    require_permission(
        checker, principal, Permission.CONFIGURE, container_target(folder)
    )
    if name_in_use(session, folder, schema.name):
        raise ProjectExistsError(schema.full_name)

    project = Project(name=schema.name, folder=folder, next_build_number=1)
    apply_schema(project, schema)
    session.add(project)
    session.flush()
    logger.info("Created project %s", project.full_name)
    return project


def configure_project(
    session: Session,
    project: Project,
    schema: ProjectSchema,
    *,
    principal: Principal,
    checker: PermissionChecker,
) -> Project:
    """Replace a project's configuration.

    Raises:
        ValueError: If the schema names a different project.
        AuthorizationError: If the principal may not configure the project.
    """
    if schema.full_name != project.full_name:
        raise ValueError(
            f"Definition of '{schema.full_name}' doesn't match "
            f"update target '{project.full_name}'"
        )
    _check_downstream(schema)
    require_permission(checker, principal, Permission.CONFIGURE, project.full_name)
    apply_schema(project, schema)
    session.flush()
    logger.info("Configured project %s", project.full_name)
    return project


# Upstream/downstream wiring


def upstream_projects(session: Session, project: Project) -> list[Project]:
    """Projects that trigger the given project after their builds."""
    full_name = project.full_name
    return [
        p
        for p in list_projects(session)
        if p.id != project.id and full_name in (p.downstream_projects or [])
    ]


def set_upstream_projects(
    session: Session,
    project: Project,
    upstream_names: list[str],
    *,
    principal: Principal,
    checker: PermissionChecker,
) -> list[str]:
    """Make exactly the named projects trigger the given project.

    Only upstream projects the principal may configure are changed; the
    downstream lists of other projects are left as they are.

    Args:
        session: SQLAlchemy session.
        project: Project whose upstream set is edited.
        upstream_names: Full names of the desired upstream projects.
        principal: Acting principal.
        checker: Permission checker.

    Returns:
        Full names of the upstream projects that were changed.

    Raises:
        ProjectNotFoundError: If an upstream project does not exist.
    """
    wanted = {get_project(session, name).id for name in upstream_names}
    target = project.full_name
    changed = []
    for other in list_projects(session):
        if other.id == project.id:
            continue
        downstream = list(other.downstream_projects or [])
        has = target in downstream
        if has == (other.id in wanted):
            continue
        if not checker.check_permission(
            principal, Permission.CONFIGURE, other.full_name
        ):
            logger.warning(
                "Leaving %s untouched: %s may not configure it",
                other.full_name,
                principal.name,
            )
            continue
        if has:
            downstream.remove(target)
        else:
            downstream.append(target)
        other.downstream_projects = downstream
        changed.append(other.full_name)

    session.flush()
    if changed:
        logger.info("Upstream of %s changed on %s", target, ", ".join(changed))
    return changed


def replace_downstream_references(
    session: Session, old_full_name: str, new_full_name: str | None
) -> int:
    """Rewrite downstream lists after a rename, or drop entries on delete.

    Returns:
        Number of projects updated.
    """
    updated = 0
    for other in session.execute(select(Project)).scalars():
        downstream = other.downstream_projects or []
        if old_full_name not in downstream:
            continue
        if new_full_name is None:
            other.downstream_projects = [n for n in downstream if n != old_full_name]
        else:
            other.downstream_projects = [
                new_full_name if n == old_full_name else n for n in downstream
            ]
        updated += 1
    session.flush()
    return updated


# Import/Export Operations


def import_project_from_file(
    session: Session,
    path: Path,
    *,
    principal: Principal,
    checker: PermissionChecker,
    update_existing: bool = False,
) -> ProjectImportResult:
    """Import a project definition from a file.

    Missing folders on the project's path are created.

    Args:
        session: SQLAlchemy session.
        path: Path to the definition (YAML or JSON).
        principal: Acting principal.
        checker: Permission checker.
        update_existing: If True, update existing projects; if False, fail.

    Returns:
        ProjectImportResult with import status.
    """
    try:
        schema = load_project(path)
        existing = get_project_or_none(session, schema.full_name)
        if existing is not None:
            if not update_existing:
                return ProjectImportResult(
                    full_name=schema.full_name,
                    success=False,
                    error=f"Project already exists: {schema.full_name}",
                )
            configure_project(
                session, existing, schema, principal=principal, checker=checker
            )
            return ProjectImportResult(full_name=schema.full_name, success=True)

        ensure_folder_path(session, schema.folder)
        create_project(session, schema, principal=principal, checker=checker)
        return ProjectImportResult(
            full_name=schema.full_name, success=True, created=True
        )

    except ValidationError as e:
        return ProjectImportResult(
            full_name=path.stem, success=False, error=f"Validation error: {e}"
        )
    except (
        ValueError,
        OSError,
        yaml.YAMLError,
        ProjectExistsError,
        FolderNotFoundError,
    ) as e:
        return ProjectImportResult(full_name=path.stem, success=False, error=str(e))


def import_projects_from_directory(
    session: Session,
    directory: Path,
    *,
    principal: Principal,
    checker: PermissionChecker,
    pattern: str = "*.yaml",
    update_existing: bool = False,
) -> ProjectBulkImportResult:
    """Import project definitions from all matching files in a directory.

    Raises:
        FileNotFoundError: If directory does not exist.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Directory not found: {directory}")

    results = [
        import_project_from_file(
            session,
            file_path,
            principal=principal,
            checker=checker,
            update_existing=update_existing,
        )
        for file_path in sorted(directory.glob(pattern))
    ]
    succeeded = sum(1 for r in results if r.success)
    return ProjectBulkImportResult(
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )


def export_project_to_file(session: Session, full_name: str, path: Path) -> None:
    """Export a project definition to a file (extension selects format).

    Raises:
        ProjectNotFoundError: If project does not exist.
        ValueError: If file extension is not supported.
    """
    export_project(project_to_schema(get_project(session, full_name)), path)


__all__ = [
    "TOP_LEVEL_TARGET",
    "FolderNotFoundError",
    "ProjectExistsError",
    "ProjectNotFoundError",
    "apply_schema",
    "configure_project",
    "container_target",
    "create_folder",
    "create_project",
    "ensure_folder_path",
    "export_project_to_file",
    "get_folder",
    "get_folder_or_none",
    "get_project",
    "get_project_by_id",
    "get_project_or_none",
    "import_project_from_file",
    "import_projects_from_directory",
    "list_projects",
    "name_in_use",
    "project_to_schema",
    "replace_downstream_references",
    "set_upstream_projects",
    "split_full_name",
    "upstream_projects",
]
