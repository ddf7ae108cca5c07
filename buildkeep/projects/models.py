"""Project and folder ORM models.

Projects hold their configuration in the database. Their builds live on
disk beside their output, so the rows here never reference individual
builds.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildkeep.db import Base

FULL_NAME_SEPARATOR = "/"


class Folder(Base):
    """ORM model for folders, the containers projects live in.

    Attributes:
        id: Primary key.
        name: Folder name, unique within its parent.
        parent_id: Enclosing folder, or None at top level.
        created_at: Timestamp of creation.
    """

    __tablename__ = "folders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("folders.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    parent: Mapped["Folder | None"] = relationship(
        "Folder", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["Folder"]] = relationship("Folder", back_populates="parent")
    projects: Mapped[list["Project"]] = relationship("Project", back_populates="folder")

    __table_args__ = (UniqueConstraint("parent_id", "name", name="uq_folder_name"),)

    @property
    def full_name(self) -> str:
        """Slash-separated path from the top level."""
        segments = []
        folder: "Folder | None" = self
        while folder is not None:
            segments.append(folder.name)
            folder = folder.parent
        return FULL_NAME_SEPARATOR.join(reversed(segments))

    def __repr__(self) -> str:
        return f"<Folder(id={self.id}, name='{self.name}')>"


class Project(Base):
    """ORM model for projects.

    Attributes:
        id: Primary key.
        name: Project name, unique within its folder.
        folder_id: Containing folder, or None at top level.
        description: Optional longer description.
        concurrent_build: Allow builds to run side by side, each in its own
            workspace.
        block_when_upstream_building: Hold builds while an upstream project
            is building.
        next_build_number: Sequence number the next build receives.
        shell_steps: JSON array of shell commands run by each build.
        archive_patterns: JSON array of workspace globs archived after a build.
        allow_empty_archive: Keep the result when no artifact matched.
        downstream_projects: JSON array of full names triggered after a build.
        downstream_threshold: Worst result that still triggers downstream.
        poll_command: Shell command reporting source changes (exit 0).
        relocating_from: Journal of an unfinished rename or move.
        created_at: Timestamp of creation.
        updated_at: Timestamp of last update.
    """

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    folder_id: Mapped[int | None] = mapped_column(
        ForeignKey("folders.id"), nullable=True, index=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Execution
    concurrent_build: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    block_when_upstream_building: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    next_build_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    shell_steps: Mapped[list[str] | None] = mapped_column(
        JSON, nullable=True, default=list
    )

    # Publishers and triggers
    archive_patterns: Mapped[list[str] | None] = mapped_column(
        JSON, nullable=True, default=list
    )
    allow_empty_archive: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    downstream_projects: Mapped[list[str] | None] = mapped_column(
        JSON, nullable=True, default=list
    )
    downstream_threshold: Mapped[str] = mapped_column(
        String(20), nullable=False, default="SUCCESS"
    )

    # Change detection
    poll_command: Mapped[str | None] = mapped_column(Text, nullable=True)

    relocating_from: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )

    # Metadata
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    folder: Mapped["Folder | None"] = relationship("Folder", back_populates="projects")

    __table_args__ = (UniqueConstraint("folder_id", "name", name="uq_project_name"),)

    @property
    def parent_path(self) -> str:
        """Full name of the containing folder ("" at top level)."""
        return self.folder.full_name if self.folder is not None else ""

    @property
    def full_name(self) -> str:
        """Slash-separated fully qualified name."""
        parent = self.parent_path
        return f"{parent}{FULL_NAME_SEPARATOR}{self.name}" if parent else self.name

    def __repr__(self) -> str:
        return (
            f"<Project(id={self.id}, name='{self.name}', "
            f"next_build_number={self.next_build_number})>"
        )


__all__ = ["FULL_NAME_SEPARATOR", "Folder", "Project"]
