"""Tests for builds/artifacts.py module."""

import hashlib

import pytest

from buildkeep.builds.artifacts import (
    ArtifactArchiver,
    compute_file_hash,
    find_artifacts,
)
from buildkeep.builds.records import Build, BuildRecord
from buildkeep.builds.runner import BuildContext
from buildkeep.types import Result


@pytest.fixture
def ctx(tmp_path):
    """Build context with a populated workspace."""
    build_dir = tmp_path / "builds" / "00000001"
    build_dir.mkdir(parents=True)
    workspace = tmp_path / "workspace"
    (workspace / "dist").mkdir(parents=True)
    (workspace / "dist" / "app.tar.gz").write_bytes(b"archive")
    (workspace / "dist" / "notes.txt").write_text("notes")
    (workspace / "README").write_text("readme")
    build = Build(BuildRecord(project_id=1, number=1), build_dir)
    with build.log_path.open("w", encoding="utf-8") as log:
        yield BuildContext(
            build=build, project_full_name="app", workspace=workspace, log=log
        )


class TestComputeFileHash:
    """Test compute_file_hash function."""

    def test_hash(self, tmp_path) -> None:
        """Hash matches hashlib's SHA-256."""
        path = tmp_path / "data"
        path.write_bytes(b"x" * 100_000)
        expected = hashlib.sha256(b"x" * 100_000).hexdigest()
        assert compute_file_hash(path, chunk_size=1024) == expected


class TestFindArtifacts:
    """Test find_artifacts function."""

    def test_patterns(self, ctx) -> None:
        """Matches from every pattern are returned once, sorted."""
        found = find_artifacts(ctx.workspace, ["dist/*.tar.gz", "dist/*", "README"])
        names = [p.relative_to(ctx.workspace).as_posix() for p in found]
        assert names == ["README", "dist/app.tar.gz", "dist/notes.txt"]

    def test_missing_workspace(self, tmp_path) -> None:
        """A missing workspace has no artifacts."""
        assert find_artifacts(tmp_path / "none", ["*"]) == []


class TestArtifactArchiver:
    """Test the archiving publisher."""

    def test_archives_matches(self, ctx) -> None:
        """Matched files are copied and recorded with checksums."""
        result = ArtifactArchiver(["dist/*.tar.gz"]).perform(ctx)
        assert result is Result.SUCCESS
        archived = ctx.build.archive_dir / "dist" / "app.tar.gz"
        assert archived.read_bytes() == b"archive"
        [info] = ctx.build.record.artifacts
        assert info.relative_path == "dist/app.tar.gz"
        assert info.size_bytes == len(b"archive")
        assert info.sha256 == hashlib.sha256(b"archive").hexdigest()

    def test_empty_fails(self, ctx) -> None:
        """Nothing matched fails the build by default."""
        assert ArtifactArchiver(["*.whl"]).perform(ctx) is Result.FAILURE

    def test_empty_allowed(self, ctx) -> None:
        """allow_empty keeps the result."""
        archiver = ArtifactArchiver(["*.whl"], allow_empty=True)
        assert archiver.perform(ctx) is Result.SUCCESS
        assert ctx.build.record.artifacts == []
