"""Artifact archiving publisher.

This module handles:
- Matching workspace files against archive patterns
- Copying matches into the build's archive directory
- Computing checksums for archived files
- Failing the build when nothing matched
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path

from buildkeep.builds.runner import BuildContext
from buildkeep.types import ArtifactInfo, Result

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def find_artifacts(workspace: Path, patterns: list[str]) -> list[Path]:
    """Find workspace files matching any of the glob patterns.

    Args:
        workspace: Directory to search.
        patterns: Glob patterns relative to the workspace (e.g. "*.tar.gz",
            "dist/**/*.whl").

    Returns:
        Sorted list of matching files.
    """
    if not workspace.is_dir():
        return []
    matches: set[Path] = set()
    for pattern in patterns:
        matches.update(p for p in workspace.glob(pattern) if p.is_file())
    return sorted(matches)


class ArtifactArchiver:
    """Post-build publisher copying workspace files into the build.

    Args:
        patterns: Glob patterns relative to the workspace.
        allow_empty: Keep the result when no file matched.
    """

    def __init__(self, patterns: list[str], allow_empty: bool = False) -> None:
        self.patterns = patterns
        self.allow_empty = allow_empty

    def __repr__(self) -> str:
        return f"ArtifactArchiver({self.patterns!r})"

    def perform(self, ctx: BuildContext) -> Result:
        files = find_artifacts(ctx.workspace, self.patterns)
        if not files:
            message = f"No artifacts found that match {', '.join(self.patterns)}"
            ctx.log.write(f"# {message}\n")
            if self.allow_empty:
                logger.warning("%s in %s", message, ctx.workspace)
                return Result.SUCCESS
            logger.error("%s in %s", message, ctx.workspace)
            return Result.FAILURE

        archive_dir = ctx.build.archive_dir
        for path in files:
            relative = path.relative_to(ctx.workspace)
            target = archive_dir / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
            ctx.build.record.artifacts.append(
                ArtifactInfo(
                    filename=path.name,
                    relative_path=relative.as_posix(),
                    size_bytes=target.stat().st_size,
                    sha256=compute_file_hash(target),
                )
            )
            logger.debug("Archived %s", relative)

        ctx.log.write(f"# Archived {len(files)} artifact(s)\n")
        logger.info(
            "Archived %d artifact(s) for build #%d", len(files), ctx.build.number
        )
        return Result.SUCCESS


__all__ = [
    "ArtifactArchiver",
    "compute_file_hash",
    "find_artifacts",
]
