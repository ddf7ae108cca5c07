"""Shared fixtures for buildkeep tests."""

from collections.abc import Callable, Iterator

import pytest
from sqlalchemy.orm import Session

from buildkeep.config import Settings
from buildkeep.projects.schema import ProjectSchema
from buildkeep.projects.service import create_project, ensure_folder_path
from buildkeep.runtime import Runtime
from buildkeep.security import Principal

ALICE = Principal("alice")


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temporary home directory."""
    return Settings(
        home_dir=tmp_path / "home",
        db_url=f"sqlite:///{tmp_path / 'buildkeep.db'}",
        lock_poll_interval=0.01,
        step_timeout=30,
    )


@pytest.fixture
def runtime(settings) -> Runtime:
    """Runtime wired to a file-backed SQLite database."""
    return Runtime.create(settings)


@pytest.fixture
def session(runtime) -> Iterator[Session]:
    """Session for arranging and inspecting database state."""
    session = runtime.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_project(runtime) -> Callable[..., int]:
    """Create and commit a project, returning its ID.

    Usage: make_project("app", folder="team", shell_steps=["make"]).
    """

    def _make(name: str, folder: str | None = None, **fields) -> int:
        session = runtime.session_factory()
        try:
            ensure_folder_path(session, folder)
            project = create_project(
                session,
                ProjectSchema(name=name, folder=folder, **fields),
                principal=ALICE,
                checker=runtime.checker,
            )
            session.commit()
            return project.id
        finally:
            session.close()

    return _make
