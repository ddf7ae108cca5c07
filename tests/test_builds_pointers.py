"""Tests for builds/pointers.py module."""

import os
import shutil

import pytest

from buildkeep.builds.pointers import PointerLinkManager
from buildkeep.builds.records import Build, BuildRecord, ProjectLocation
from buildkeep.builds.store import BuildStore
from buildkeep.types import PointerName, PointerStyle, Result

MOST_RECENT = PointerName.MOST_RECENT
STABLE = PointerName.MOST_RECENT_STABLE
SUCCESSFUL = PointerName.MOST_RECENT_SUCCESSFUL


@pytest.fixture
def store() -> BuildStore:
    """Store keeping builds inside project directories."""
    return BuildStore()


@pytest.fixture
def location(tmp_path) -> ProjectLocation:
    """Location of a project named "app"."""
    root = tmp_path / "jobs" / "app"
    return ProjectLocation(1, "app", root, root / "builds")


@pytest.fixture
def pointers(store) -> PointerLinkManager:
    """Symlink pointer manager."""
    return PointerLinkManager(store)


def _finish(
    store: BuildStore,
    pointers: PointerLinkManager,
    location: ProjectLocation,
    number: int,
    result: Result,
) -> Build:
    build = Build(
        BuildRecord(project_id=location.project_id, number=number),
        store.create_build_directory(location.builds_root, number),
    )
    build.mark_finished(result)
    store.save_record(build)
    pointers.on_build_finalized(location, build)
    return build


def _targets(pointers: PointerLinkManager, location: ProjectLocation) -> tuple:
    return tuple(pointers.read(location, name) for name in PointerName)


class TestOnBuildFinalized:
    """Test pointer advancement."""

    def test_success_sets_all(self, store, pointers, location) -> None:
        """A successful build becomes every pointer's target."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        assert _targets(pointers, location) == (1, 1, 1)
        link = location.root / "mostRecentSuccessful"
        assert link.is_symlink()
        assert os.readlink(link) == os.path.join("builds", "00000001")
        assert link.resolve() == (location.builds_root / "00000001").resolve()

    def test_predicates(self, store, pointers, location) -> None:
        """Each pointer only accepts the results it covers."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        _finish(store, pointers, location, 2, Result.UNSTABLE)
        assert _targets(pointers, location) == (2, 2, 1)
        _finish(store, pointers, location, 3, Result.FAILURE)
        assert _targets(pointers, location) == (3, 2, 1)
        _finish(store, pointers, location, 4, Result.ABORTED)
        assert _targets(pointers, location) == (4, 2, 1)

    def test_only_moves_forward(self, store, pointers, location) -> None:
        """A build finishing after a newer one does not move pointers back."""
        old = Build(
            BuildRecord(project_id=1, number=1),
            store.create_build_directory(location.builds_root, 1),
        )
        _finish(store, pointers, location, 2, Result.SUCCESS)
        old.mark_finished(Result.SUCCESS)
        store.save_record(old)
        assert pointers.on_build_finalized(location, old) == []
        assert _targets(pointers, location) == (2, 2, 2)

    def test_unfinished_build_ignored(self, store, pointers, location) -> None:
        """Builds still running never become pointer targets."""
        build = Build(
            BuildRecord(project_id=1, number=1),
            store.create_build_directory(location.builds_root, 1),
        )
        assert pointers.on_build_finalized(location, build) == []
        assert _targets(pointers, location) == (None, None, None)

    def test_no_temp_entries_left(self, store, pointers, location) -> None:
        """Pointer writes leave no temporary entries behind."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        names = {p.name for p in location.root.iterdir()}
        assert names == {"builds", *(n.value for n in PointerName)}


class TestOnBuildDeleted:
    """Test pointer repair after deletions."""

    def test_repoints_to_previous(self, store, pointers, location) -> None:
        """Deleting a target repoints to the newest remaining match."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        _finish(store, pointers, location, 2, Result.UNSTABLE)
        build_3 = _finish(store, pointers, location, 3, Result.SUCCESS)

        store.tombstone(build_3.root_dir)
        repaired = pointers.on_build_deleted(location, 3)
        assert repaired == {MOST_RECENT: 2, STABLE: 2, SUCCESSFUL: 1}
        assert _targets(pointers, location) == (2, 2, 1)

    def test_clears_when_nothing_matches(self, store, pointers, location) -> None:
        """A pointer with no remaining match is removed."""
        _finish(store, pointers, location, 1, Result.FAILURE)
        build_2 = _finish(store, pointers, location, 2, Result.SUCCESS)
        store.tombstone(build_2.root_dir)
        repaired = pointers.on_build_deleted(location, 2)
        assert repaired[SUCCESSFUL] is None
        assert not (location.root / SUCCESSFUL.value).is_symlink()
        assert pointers.read(location, MOST_RECENT) == 1

    def test_untouched_pointers(self, store, pointers, location) -> None:
        """Pointers not naming the deleted build are not rewritten."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        build_2 = _finish(store, pointers, location, 2, Result.FAILURE)
        store.tombstone(build_2.root_dir)
        repaired = pointers.on_build_deleted(location, 2)
        assert set(repaired) == {MOST_RECENT}


class TestResolve:
    """Test reading pointers with repair."""

    def test_resolve_valid(self, store, pointers, location) -> None:
        """A valid pointer resolves to its build."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        assert pointers.resolve(location, SUCCESSFUL) == 1

    def test_resolve_missing(self, pointers, location) -> None:
        """An absent pointer resolves to None."""
        assert pointers.resolve(location, MOST_RECENT) is None

    def test_repairs_dangling(self, store, pointers, location) -> None:
        """A pointer to a vanished build is repaired on read."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        build_2 = _finish(store, pointers, location, 2, Result.SUCCESS)
        shutil.rmtree(build_2.root_dir)
        store.cache.clear()
        assert pointers.resolve(location, MOST_RECENT) == 1
        assert pointers.read(location, MOST_RECENT) == 1


class TestRevalidate:
    """Test recomputing pointers from disk."""

    def test_revalidate_after_move(self, store, pointers, location, tmp_path) -> None:
        """Pointers are rewritten for the new location."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        _finish(store, pointers, location, 2, Result.FAILURE)

        new_root = tmp_path / "jobs" / "renamed"
        os.rename(location.root, new_root)
        moved = ProjectLocation(1, "renamed", new_root, new_root / "builds")
        store.cache.clear()

        targets = pointers.revalidate(moved)
        assert targets == {MOST_RECENT: 2, STABLE: 1, SUCCESSFUL: 1}
        assert (new_root / "mostRecent").resolve() == (
            new_root / "builds" / "00000002"
        ).resolve()

    def test_revalidate_is_idempotent(self, store, pointers, location) -> None:
        """Revalidating correct pointers leaves them in place."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        link = location.root / "mostRecent"
        before = os.lstat(link).st_ino
        pointers.revalidate(location)
        assert os.lstat(link).st_ino == before

    def test_clear_all(self, store, pointers, location) -> None:
        """clear_all removes every pointer."""
        _finish(store, pointers, location, 1, Result.SUCCESS)
        pointers.clear_all(location)
        assert _targets(pointers, location) == (None, None, None)


class TestFilePointers:
    """Test the plain-file pointer style."""

    def test_file_style(self, store, location) -> None:
        """File pointers hold the build number."""
        pointers = PointerLinkManager(store, PointerStyle.FILE)
        _finish(store, pointers, location, 3, Result.SUCCESS)
        path = location.root / "mostRecent"
        assert not path.is_symlink()
        assert path.read_text().strip() == "3"
        assert pointers.resolve(location, MOST_RECENT) == 3


class TestExternalStorage:
    """Test pointers to builds stored outside the project."""

    def test_absolute_link(self, tmp_path) -> None:
        """Builds outside the project directory are linked absolutely."""
        store = BuildStore(f"{tmp_path}/external/${{ITEM_FULL_NAME}}")
        pointers = PointerLinkManager(store)
        root = tmp_path / "jobs" / "app"
        location = ProjectLocation(1, "app", root, store.resolve_root("app", root))
        _finish(store, pointers, location, 1, Result.SUCCESS)
        link = root / "mostRecent"
        assert os.path.isabs(os.readlink(link))
        assert pointers.resolve(location, MOST_RECENT) == 1
