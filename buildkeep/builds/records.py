"""Build records.

A build is identified by its project and sequence number. Its metadata is
persisted as ``build.json`` inside the build directory, so an in-memory
Build can be dropped at any time and rebuilt from disk.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from buildkeep.types import ArtifactInfo, Result

RECORD_FILENAME = "build.json"
LOG_FILENAME = "log"
ARCHIVE_DIRNAME = "archive"


class BuildKey(NamedTuple):
    """Identity of a build."""

    project_id: int
    number: int


class ProjectLocation(NamedTuple):
    """Where a project keeps its files.

    Attributes:
        project_id: Database ID of the project.
        full_name: Fully qualified name ("folder/project").
        root: The project's own directory (pointers live here).
        builds_root: Directory holding the project's build directories.
    """

    project_id: int
    full_name: str
    root: Path
    builds_root: Path

    @property
    def workspace(self) -> Path:
        return self.root / "workspace"

    def workspace_dirs(self) -> list[Path]:
        """Existing main and concurrent-build workspaces."""
        if not self.root.is_dir():
            return []
        main = self.workspace.name
        return sorted(
            p
            for p in self.root.iterdir()
            if p.is_dir()
            and not p.is_symlink()
            and (p.name == main or p.name.startswith(f"{main}@"))
        )


class BuildRecord(BaseModel):
    """Persisted build metadata.

    Attributes:
        project_id: Database ID of the owning project.
        number: Sequence number within the project.
        result: Build result; NOT_BUILT until the build finishes.
        cause: Why the build was scheduled.
        workspace: Workspace directory used by the build.
        started_at: When execution started.
        finished_at: When the final result was written.
        error_message: Description of the failure, if any.
        artifacts: Files archived by the build.
    """

    model_config = ConfigDict(extra="ignore")

    project_id: int
    number: int = Field(ge=1)
    result: Result = Result.NOT_BUILT
    cause: str = "user"
    workspace: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None
    artifacts: list[ArtifactInfo] = Field(default_factory=list)


class Build:
    """In-memory view of a build record bound to its directory.

    Builds compare equal when they share project and number, so a build
    reloaded from disk equals the instance it replaces.
    """

    def __init__(self, record: BuildRecord, root_dir: Path) -> None:
        self.record = record
        self.root_dir = root_dir

    @property
    def key(self) -> BuildKey:
        return BuildKey(self.record.project_id, self.record.number)

    @property
    def number(self) -> int:
        return self.record.number

    @property
    def id(self) -> str:
        return self.root_dir.name

    @property
    def result(self) -> Result:
        return self.record.result

    @property
    def is_building(self) -> bool:
        return not self.record.result.is_final

    @property
    def workspace(self) -> Path | None:
        return Path(self.record.workspace) if self.record.workspace else None

    @property
    def log_path(self) -> Path:
        return self.root_dir / LOG_FILENAME

    @property
    def archive_dir(self) -> Path:
        return self.root_dir / ARCHIVE_DIRNAME

    def mark_started(self, workspace: Path) -> None:
        """Record the workspace and start time."""
        self.record.workspace = str(workspace)
        self.record.started_at = datetime.now(timezone.utc)

    def mark_finished(self, result: Result, message: str | None = None) -> None:
        """Record the final result.

        Args:
            result: Final, non-NOT_BUILT result.
            message: Optional failure description.
        """
        if not result.is_final:
            raise ValueError("A finished build needs a final result")
        self.record.result = result
        self.record.finished_at = datetime.now(timezone.utc)
        if message:
            self.record.error_message = message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Build):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return (
            f"<Build(project_id={self.record.project_id}, number={self.number}, "
            f"result='{self.result.value}')>"
        )


__all__ = [
    "ARCHIVE_DIRNAME",
    "LOG_FILENAME",
    "RECORD_FILENAME",
    "Build",
    "BuildKey",
    "BuildRecord",
    "ProjectLocation",
]
