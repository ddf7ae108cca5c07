"""Database engine and sessions for the project registry.

Folders and projects live in a SQL database; builds do not. The engine is
shared by the CLI thread and the build worker threads, so SQLite
connections are opened with cross-thread use allowed and a busy timeout
long enough to ride out a concurrent writer.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from buildkeep.config import get_settings

SQLITE_BUSY_TIMEOUT_MS = 30_000


class Base(DeclarativeBase):
    """Declarative base of the registry tables."""


def _prepare_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, _connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create the registry engine.

    For file-backed SQLite the database's parent directory is created.

    Args:
        db_url: Database URL; defaults to Settings.db_url.
    """
    url = make_url(db_url or get_settings().db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url)

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, connect_args={"check_same_thread": False})
    _prepare_sqlite(engine)
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Session factory whose objects stay readable after commit."""
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Unit of work: commit on success, roll back on any error.

    Service functions only flush; callers use this scope to decide when a
    change becomes durable.

    Args:
        session_factory: Factory to open the session from; one bound to
            the configured database is created if omitted.
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the folder and project tables if they are missing."""
    from buildkeep.projects import models  # noqa: F401

    Base.metadata.create_all(bind=engine if engine is not None else get_engine())


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
