"""Run history database access.

This module handles:
- Engine creation for the run history database (SQLite by default)
- SQLite connection tuning for runs written from worker threads
- Session factories and the transactional ``get_session`` scope
- The declarative base of the run history models
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from buildgraph.config import get_settings

SQLITE_PREFIX = "sqlite"
# Seconds a writer waits for a competing stage worker to release the database
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Declarative base of the run history models."""

    pass


def _sqlite_file(db_url: str) -> Path | None:
    path = db_url.removeprefix("sqlite:///")
    if path == db_url or not path or path == ":memory:":
        return None
    return Path(path)


def _enable_sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create the run history engine.

    SQLite databases get their parent directory created, a busy timeout,
    WAL journaling and foreign key enforcement, so that runs of one stage
    can be recorded from several worker threads.

    Args:
        db_url: Database URL. Defaults to ``Settings.db_url``.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    is_sqlite = db_url.startswith(SQLITE_PREFIX)
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
        db_file = _sqlite_file(db_url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(db_url, connect_args=connect_args, echo=False)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_pragmas)
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Create a session factory bound to the run history engine.

    Objects stay usable after commit: the pipeline commits between run
    state transitions and keeps working with the same JobRun instances.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits when the block exits normally, rolls back and re-raises on
    any exception.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the run history tables if they do not exist."""
    # Models must be imported so their tables are registered on Base.metadata
    from buildgraph.runs import models as runs_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
