"""Pydantic models for project definitions.

This module defines the models used to validate project definitions read
from YAML/JSON files before import, and to export projects to file
formats.
"""

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

from buildkeep.types import Result

# Names become directory names, so they are limited to a safe set
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-][a-zA-Z0-9_.\-]*$")


def check_name(value: str) -> str:
    """Validate a project or folder name.

    Raises:
        ValueError: If the name cannot be used as a path segment.
    """
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"name must match pattern {NAME_PATTERN.pattern}, got '{value}'"
        )
    if value.endswith(".partial") or value.endswith(".deleting"):
        raise ValueError(f"name must not end with a reserved suffix: '{value}'")
    return value


def check_folder_path(value: str | None) -> str | None:
    """Validate a slash-separated folder path ("" or None = top level)."""
    if not value:
        return None
    for segment in value.split("/"):
        check_name(segment)
    return value


class ProjectSchema(BaseModel):
    """Complete project definition for validation and import/export.

    Attributes:
        name: Project name.
        folder: Full name of the containing folder, None at top level.
        description: Optional longer description.
        concurrent_build: Allow builds to run side by side.
        block_when_upstream_building: Hold builds while upstream builds run.
        shell_steps: Shell commands run by each build.
        archive_patterns: Workspace globs archived after each build.
        allow_empty_archive: Keep the result when nothing matched.
        downstream_projects: Full names of projects triggered after a build.
        downstream_threshold: Worst result that still triggers downstream.
        poll_command: Shell command whose exit status 0 reports changes.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[
        str, Field(description="Project name", min_length=1, max_length=255)
    ]
    folder: str | None = Field(default=None, description="Containing folder")
    description: str | None = Field(default=None, description="Longer description")

    concurrent_build: bool = Field(
        default=False, description="Run builds side by side"
    )
    block_when_upstream_building: bool = Field(
        default=False, description="Wait while upstream projects build"
    )
    shell_steps: list[str] = Field(
        default_factory=list, description="Shell commands run by each build"
    )

    archive_patterns: list[str] = Field(
        default_factory=list, description="Workspace globs to archive"
    )
    allow_empty_archive: bool = Field(
        default=False, description="Do not fail when no artifact matched"
    )
    downstream_projects: list[str] = Field(
        default_factory=list, description="Projects triggered after a build"
    )
    downstream_threshold: Result = Field(
        default=Result.SUCCESS, description="Worst result that still triggers"
    )

    poll_command: str | None = Field(
        default=None, description="Change detection command"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name matches safe pattern."""
        return check_name(v)

    @field_validator("folder")
    @classmethod
    def validate_folder(cls, v: str | None) -> str | None:
        """Validate every folder segment."""
        return check_folder_path(v)

    @field_validator("shell_steps", "archive_patterns")
    @classmethod
    def validate_non_empty(cls, v: list[str]) -> list[str]:
        """Validate list entries are non-empty strings."""
        for item in v:
            if not item or not item.strip():
                raise ValueError("entries must be non-empty strings")
        return v

    @field_validator("downstream_threshold")
    @classmethod
    def validate_threshold(cls, v: Result) -> Result:
        """Validate the threshold is a final result."""
        if not v.is_final:
            raise ValueError("downstream_threshold must be a final result")
        return v

    @property
    def full_name(self) -> str:
        return f"{self.folder}/{self.name}" if self.folder else self.name


class ProjectImportResult(BaseModel):
    """Result of importing a single project definition.

    Attributes:
        full_name: Project that was imported (or the file stem on failure).
        success: Whether the import succeeded.
        error: Error message if import failed.
        created: True if newly created, False if updated.
    """

    full_name: str
    success: bool
    error: str | None = None
    created: bool = False


class ProjectBulkImportResult(BaseModel):
    """Result of importing multiple project definitions."""

    total: int
    succeeded: int
    failed: int
    results: list[ProjectImportResult]


__all__ = [
    "NAME_PATTERN",
    "ProjectBulkImportResult",
    "ProjectImportResult",
    "ProjectSchema",
    "check_folder_path",
    "check_name",
]
