"""Shared type definitions for buildkeep.

This module contains enums, dataclasses and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class Result(str, Enum):
    """Result of a build.

    Finished results are ordered from best to worst:
    SUCCESS < UNSTABLE < FAILURE < ABORTED. NOT_BUILT marks a build that
    has not finished yet and is never considered final.
    """

    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"
    NOT_BUILT = "NOT_BUILT"

    @property
    def ordinal(self) -> int:
        """Position in the severity ordering (lower is better)."""
        return _RESULT_ORDER[self]

    @property
    def is_final(self) -> bool:
        """Whether this result belongs to a finished build."""
        return self is not Result.NOT_BUILT

    def is_better_or_equal(self, other: "Result") -> bool:
        """Check if this result is at least as good as another."""
        return self.ordinal <= other.ordinal

    def combine(self, other: "Result") -> "Result":
        """Return the worse of two results."""
        return self if self.ordinal >= other.ordinal else other


_RESULT_ORDER = {
    Result.SUCCESS: 0,
    Result.UNSTABLE: 1,
    Result.FAILURE: 2,
    Result.ABORTED: 3,
    Result.NOT_BUILT: 4,
}


class Requester(str, Enum):
    """Kind of activity asking for a project's workspace."""

    POLL = "poll"
    BUILD = "build"
    WIPE = "wipe"


class PointerName(str, Enum):
    """Named build pointers kept in each project directory."""

    MOST_RECENT = "mostRecent"
    MOST_RECENT_STABLE = "mostRecentStable"
    MOST_RECENT_SUCCESSFUL = "mostRecentSuccessful"


class CascadeState(str, Enum):
    """States of a delete/rename/move cascade."""

    REQUESTED = "requested"
    AUTHORIZATION_CHECKED = "authorization_checked"
    DIRECTORIES_MUTATED = "directories_mutated"
    POINTERS_REPAIRED = "pointers_repaired"
    DONE = "done"
    FAILED = "failed"


class PointerStyle(str, Enum):
    """On-disk representation of named pointers."""

    SYMLINK = "symlink"
    FILE = "file"


class ConcurrentPolling(str, Enum):
    """How workspace polls interact with concurrent builds."""

    EXCLUSIVE = "exclusive"
    SHARED = "shared"


@dataclass
class ArtifactInfo:
    """Information about an archived build artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str


__all__ = [
    "ArtifactInfo",
    "CascadeState",
    "ConcurrentPolling",
    "PointerName",
    "PointerStyle",
    "Requester",
    "Result",
]
