"""Named build pointers.

Each project directory carries ``mostRecent``, ``mostRecentStable`` and
``mostRecentSuccessful`` entries pointing at a build directory. A pointer
always names the newest existing build whose result satisfies its
predicate, and is absent when no such build exists.

Pointers are replaced, never edited: a new entry is written under a
temporary name and renamed over the old one.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from buildkeep.builds.records import Build, BuildKey, ProjectLocation
from buildkeep.builds.store import BuildNotFoundError, BuildStore, parse_build_id
from buildkeep.types import PointerName, PointerStyle, Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointerSpec:
    """A named pointer and the results it accepts."""

    name: PointerName
    accepts: Callable[[Result], bool]


POINTERS: tuple[PointerSpec, ...] = (
    PointerSpec(PointerName.MOST_RECENT, lambda r: r.is_final),
    PointerSpec(
        PointerName.MOST_RECENT_STABLE,
        lambda r: r.is_final and r.is_better_or_equal(Result.UNSTABLE),
    ),
    PointerSpec(PointerName.MOST_RECENT_SUCCESSFUL, lambda r: r is Result.SUCCESS),
)


class PointerLinkManager:
    """Maintains the named pointers of projects.

    Callers serialize updates per project with the project's mutation lock.

    Args:
        store: Build store used to enumerate and load builds.
        style: Whether pointers are symlinks or small files.
    """

    def __init__(
        self, store: BuildStore, style: PointerStyle = PointerStyle.SYMLINK
    ) -> None:
        self.store = store
        self.style = style

    @staticmethod
    def pointer_path(location: ProjectLocation, name: PointerName) -> Path:
        return location.root / name.value

    def read(self, location: ProjectLocation, name: PointerName) -> int | None:
        """Return the build number a pointer names, without repairing it."""
        path = self.pointer_path(location, name)
        if path.is_symlink():
            return parse_build_id(Path(os.readlink(path)).name)
        if path.is_file():
            text = path.read_text(encoding="utf-8").strip()
            return int(text) if text.isdigit() else None
        return None

    def _points_at_build(
        self, location: ProjectLocation, name: PointerName, number: int
    ) -> bool:
        build_dir = self.store.build_dir(location.builds_root, number)
        if not build_dir.is_dir():
            return False
        path = self.pointer_path(location, name)
        if path.is_symlink():
            return os.path.realpath(path) == os.path.realpath(build_dir)
        return True

    def _result_of(self, location: ProjectLocation, number: int) -> Result | None:
        try:
            build = self.store.cache.get(
                BuildKey(location.project_id, number), location.builds_root
            )
        except BuildNotFoundError:
            return None
        return build.result

    def _scan(
        self,
        location: ProjectLocation,
        spec: PointerSpec,
        exclude: int | None = None,
    ) -> int | None:
        for number in reversed(self.store.list_build_numbers(location.builds_root)):
            if number == exclude:
                continue
            result = self._result_of(location, number)
            if result is not None and spec.accepts(result):
                return number
        return None

    def _write(
        self, location: ProjectLocation, name: PointerName, number: int
    ) -> None:
        path = self.pointer_path(location, name)
        tmp = location.root / f".{name.value}.{uuid.uuid4().hex[:8]}.tmp"
        location.root.mkdir(parents=True, exist_ok=True)
        try:
            if self.style is PointerStyle.SYMLINK:
                build_dir = self.store.build_dir(location.builds_root, number)
                try:
                    target = str(build_dir.relative_to(location.root))
                except ValueError:
                    target = str(build_dir)
                os.symlink(target, tmp)
            else:
                with tmp.open("w", encoding="utf-8") as f:
                    f.write(f"{number}\n")
                    f.flush()
                    os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError:
            if tmp.is_symlink() or tmp.exists():
                tmp.unlink()
            raise
        logger.debug("%s of %s -> #%d", name.value, location.full_name, number)

    def _clear(self, location: ProjectLocation, name: PointerName) -> None:
        path = self.pointer_path(location, name)
        if path.is_symlink() or path.exists():
            path.unlink()
            logger.debug("%s of %s cleared", name.value, location.full_name)

    def _set(
        self, location: ProjectLocation, name: PointerName, number: int | None
    ) -> None:
        if number is None:
            self._clear(location, name)
        elif self.read(location, name) != number or not self._points_at_build(
            location, name, number
        ):
            self._write(location, name, number)

    def on_build_finalized(
        self, location: ProjectLocation, build: Build
    ) -> list[PointerName]:
        """Advance pointers whose predicate the finished build satisfies.

        A pointer only moves forward: it is updated when absent, dangling,
        or naming an older build.

        Returns:
            Names of the pointers that now target the build.
        """
        if not build.result.is_final:
            return []

        updated = []
        for spec in POINTERS:
            if not spec.accepts(build.result):
                continue
            current = self.read(location, spec.name)
            if (
                current is not None
                and current >= build.number
                and self._points_at_build(location, spec.name, current)
            ):
                continue
            self._write(location, spec.name, build.number)
            updated.append(spec.name)

        if updated:
            logger.info(
                "Build #%d of %s is now %s",
                build.number,
                location.full_name,
                ", ".join(n.value for n in updated),
            )
        return updated

    def on_build_deleted(
        self, location: ProjectLocation, number: int
    ) -> dict[PointerName, int | None]:
        """Repoint pointers that targeted a deleted build.

        Returns:
            New target of every pointer that was repaired (None if cleared).
        """
        repaired: dict[PointerName, int | None] = {}
        for spec in POINTERS:
            current = self.read(location, spec.name)
            if current is None:
                continue
            if current != number and self._points_at_build(
                location, spec.name, current
            ):
                continue
            replacement = self._scan(location, spec, exclude=number)
            self._set(location, spec.name, replacement)
            repaired[spec.name] = replacement
        return repaired

    def resolve(self, location: ProjectLocation, name: PointerName) -> int | None:
        """Return the build a pointer names, repairing it if it dangles."""
        current = self.read(location, name)
        if current is not None and self._points_at_build(location, name, current):
            return current
        if current is None and not self.pointer_path(location, name).is_symlink():
            return None

        spec = next(s for s in POINTERS if s.name is name)
        replacement = self._scan(location, spec)
        logger.warning(
            "Repairing dangling %s of %s -> %s",
            name.value,
            location.full_name,
            replacement,
        )
        self._set(location, name, replacement)
        return replacement

    def revalidate(self, location: ProjectLocation) -> dict[PointerName, int | None]:
        """Recompute every pointer from the builds on disk."""
        targets: dict[PointerName, int | None] = {}
        for spec in POINTERS:
            targets[spec.name] = self._scan(location, spec)
            self._set(location, spec.name, targets[spec.name])
        return targets

    def clear_all(self, location: ProjectLocation) -> None:
        """Remove every pointer of a project."""
        for spec in POINTERS:
            self._clear(location, spec.name)


__all__ = [
    "POINTERS",
    "PointerLinkManager",
    "PointerSpec",
]
