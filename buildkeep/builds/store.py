"""Build record store.

This module handles:
- Resolving a project's build storage root from the configured template
- Creating build directories named so that they sort in creation order
- Atomic persistence of build records
- Relocating all build directories when a project moves
- Two-phase deletion of build directories (tombstone, then remove)
- The lazy-reload cache of in-memory builds
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import threading
import uuid
from collections import OrderedDict
from pathlib import Path

from pydantic import ValidationError

from buildkeep.builds.records import RECORD_FILENAME, Build, BuildKey, BuildRecord
from buildkeep.config import (
    ITEM_FULL_NAME_TOKEN,
    Settings,
    validate_builds_dir_template,
)

logger = logging.getLogger(__name__)

BUILD_ID_WIDTH = 8
TOMBSTONE_SUFFIX = ".deleting"
PARTIAL_SUFFIX = ".partial"
DEFAULT_BUILDS_DIRNAME = "builds"


class BuildStoreError(Exception):
    """Base error for build storage operations."""

    def __init__(self, message: str, code: str = "build_store_error") -> None:
        super().__init__(message)
        self.code = code


class RelocationError(BuildStoreError):
    """Raised when moving build directories fails part way."""

    def __init__(self, message: str, code: str = "relocation_error") -> None:
        super().__init__(message, code=code)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, number: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: #{number}")
        self.number = number
        self.code = code


def format_build_id(number: int) -> str:
    """Encode a sequence number as a directory name.

    Zero padding keeps lexicographic order equal to creation order.
    """
    if number < 1:
        raise ValueError(f"Build numbers start at 1, got {number}")
    return f"{number:0{BUILD_ID_WIDTH}d}"


def parse_build_id(name: str) -> int | None:
    """Decode a build directory name, or return None for other entries."""
    if len(name) < BUILD_ID_WIDTH or not name.isdigit():
        return None
    return int(name)


def _remove_tree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _copy_entry(source: Path, target: Path) -> None:
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, target, symlinks=True)
    else:
        shutil.copy2(source, target, follow_symlinks=False)


class BuildStore:
    """Filesystem storage for build directories and records.

    Args:
        builds_dir_template: External storage template containing
            ${ITEM_FULL_NAME}, or None to nest builds under each project.
        permitted_roots: Directories external storage must live under.
        cache_size: Number of builds kept in the in-memory cache.

    Raises:
        ConfigurationError: If the template is invalid.
    """

    def __init__(
        self,
        builds_dir_template: str | None = None,
        permitted_roots: list[Path] | None = None,
        cache_size: int = 256,
    ) -> None:
        validate_builds_dir_template(builds_dir_template, permitted_roots)
        self.builds_dir_template = builds_dir_template
        self.permitted_roots = permitted_roots or []
        self.cache = BuildCache(self, max_size=cache_size)

    @classmethod
    def from_settings(cls, settings: Settings) -> BuildStore:
        """Create a store from application settings."""
        return cls(
            builds_dir_template=settings.builds_dir_template,
            permitted_roots=settings.permitted_build_roots,
            cache_size=settings.build_cache_size,
        )

    def resolve_root(self, full_name: str, project_root: Path) -> Path:
        """Compute the build storage root of a project.

        Args:
            full_name: Fully qualified project name ("folder/project").
            project_root: The project's own directory.

        Returns:
            Directory holding the project's build directories.
        """
        if self.builds_dir_template is None:
            return project_root / DEFAULT_BUILDS_DIRNAME
        return Path(self.builds_dir_template.replace(ITEM_FULL_NAME_TOKEN, full_name))

    @staticmethod
    def build_dir(root: Path, number: int) -> Path:
        """Return the directory of a build under a storage root."""
        return root / format_build_id(number)

    def create_build_directory(self, root: Path, number: int) -> Path:
        """Create the directory for a new build.

        Raises:
            BuildStoreError: If the directory already exists.
        """
        build_dir = self.build_dir(root, number)
        root.mkdir(parents=True, exist_ok=True)
        try:
            build_dir.mkdir()
        except FileExistsError:
            raise BuildStoreError(
                f"Build directory already exists: {build_dir}"
            ) from None
        logger.debug("Created build directory %s", build_dir)
        return build_dir

    @staticmethod
    def list_build_numbers(root: Path) -> list[int]:
        """List build numbers present under a storage root, oldest first.

        Only directory names are read; tombstones and partial copies are
        ignored.
        """
        if not root.is_dir():
            return []
        numbers = []
        for entry in root.iterdir():
            number = parse_build_id(entry.name)
            if number is not None and entry.is_dir():
                numbers.append(number)
        return sorted(numbers)

    @staticmethod
    def save_record(build: Build) -> None:
        """Persist a build record, replacing the previous one atomically."""
        target = build.root_dir / RECORD_FILENAME
        tmp = build.root_dir / f".{RECORD_FILENAME}.{uuid.uuid4().hex[:8]}"
        data = build.record.model_dump_json(indent=2)
        try:
            with tmp.open("w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise BuildStoreError(f"Failed to write {target}: {e}") from e

    def load_build(self, root: Path, number: int) -> Build:
        """Load a build from its on-disk record.

        Raises:
            BuildNotFoundError: If the build directory or record is missing.
            BuildStoreError: If the record cannot be parsed.
        """
        build_dir = self.build_dir(root, number)
        record_path = build_dir / RECORD_FILENAME
        try:
            data = record_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise BuildNotFoundError(number) from None
        try:
            record = BuildRecord.model_validate_json(data)
        except ValidationError as e:
            raise BuildStoreError(f"Corrupt build record {record_path}: {e}") from e
        return Build(record, build_dir)

    def tombstone(self, build_dir: Path) -> Path | None:
        """Take a build directory out of the namespace before removing it.

        Returns:
            Path of the tombstone, or None if the directory was already gone.
        """
        grave = build_dir.with_name(f".{build_dir.name}{TOMBSTONE_SUFFIX}")
        if grave.exists():
            _remove_tree(grave)
        try:
            os.rename(build_dir, grave)
        except FileNotFoundError:
            return None
        return grave

    @staticmethod
    def purge_tombstones(root: Path) -> list[Path]:
        """Remove tombstones left behind by interrupted deletions.

        Raises:
            OSError: If a tombstone cannot be removed.
        """
        if not root.is_dir():
            return []
        purged = []
        for entry in root.iterdir():
            if entry.name.startswith(".") and entry.name.endswith(TOMBSTONE_SUFFIX):
                _remove_tree(entry)
                purged.append(entry)
        if purged:
            logger.info("Purged %d tombstone(s) under %s", len(purged), root)
        return purged

    def move_all(self, old_root: Path, new_root: Path) -> None:
        """Move every build directory from one storage root to another.

        A plain rename is used when the target does not exist yet. Across
        filesystems each build is copied to a partial directory, renamed
        into place and then removed from the source, so calling this again
        after an interruption finishes the job.

        Raises:
            RelocationError: If the move cannot be completed.
        """
        if old_root == new_root:
            return
        if not old_root.exists():
            logger.debug("Nothing to move from %s", old_root)
            return

        logger.info("Moving builds from %s to %s", old_root, new_root)
        try:
            new_root.parent.mkdir(parents=True, exist_ok=True)
            if not new_root.exists():
                try:
                    os.rename(old_root, new_root)
                    return
                except OSError as e:
                    if e.errno != errno.EXDEV:
                        raise
            new_root.mkdir(exist_ok=True)

            for entry in sorted(old_root.iterdir()):
                target = new_root / entry.name
                if target.exists() or target.is_symlink():
                    # Copied by an earlier attempt; only the source remains
                    _remove_tree(entry)
                    continue
                try:
                    os.rename(entry, target)
                    continue
                except OSError as e:
                    if e.errno != errno.EXDEV:
                        raise
                partial = new_root / f".{entry.name}{PARTIAL_SUFFIX}"
                if partial.exists():
                    _remove_tree(partial)
                _copy_entry(entry, partial)
                os.replace(partial, target)
                _remove_tree(entry)

            old_root.rmdir()
        except OSError as e:
            raise RelocationError(
                f"Failed to move builds from {old_root} to {new_root}: {e}"
            ) from e


class BuildCache:
    """Bounded cache of in-memory builds keyed by build identity.

    Entries may be evicted at any time; a miss reloads the build from its
    record on disk.

    Args:
        store: Store used to reload evicted builds.
        max_size: Maximum number of cached builds.
    """

    def __init__(self, store: BuildStore, max_size: int = 256) -> None:
        self._store = store
        self.max_size = max_size
        self._lock = threading.Lock()
        self._entries: OrderedDict[BuildKey, Build] = OrderedDict()

    def get(self, key: BuildKey, root: Path) -> Build:
        """Return a cached build, reloading it from disk when needed.

        Args:
            key: Identity of the build.
            root: Current storage root of the project.

        Raises:
            BuildNotFoundError: If the build does not exist on disk.
        """
        with self._lock:
            build = self._entries.get(key)
            if build is not None and build.root_dir.parent == root:
                self._entries.move_to_end(key)
                return build

        build = self._store.load_build(root, key.number)
        if build.record.project_id != key.project_id:
            raise BuildStoreError(
                f"Build record under {root} belongs to project "
                f"{build.record.project_id}, expected {key.project_id}"
            )
        self.put(build)
        return build

    def put(self, build: Build) -> None:
        """Insert or refresh a build in the cache."""
        with self._lock:
            self._entries[build.key] = build
            self._entries.move_to_end(build.key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def evict(self, key: BuildKey) -> bool:
        """Drop one build from memory. Returns True if it was cached."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def evict_project(self, project_id: int) -> int:
        """Drop every cached build of a project."""
        with self._lock:
            keys = [k for k in self._entries if k.project_id == project_id]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def clear(self) -> None:
        """Drop all cached builds."""
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = [
    "BUILD_ID_WIDTH",
    "BuildCache",
    "BuildNotFoundError",
    "BuildStore",
    "BuildStoreError",
    "RelocationError",
    "format_build_id",
    "parse_build_id",
]
