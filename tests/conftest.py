"""Shared fixtures for buildgraph tests."""

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from buildgraph.config import Settings
from buildgraph.db import create_all_tables, get_engine, get_session_factory
from buildgraph.jobs.graph import JobGraph
from buildgraph.jobs.io import parse_pipeline_data


@pytest.fixture
def engine(tmp_path: Path):
    """Create a file-backed SQLite engine with all tables."""
    engine = get_engine(f"sqlite:///{tmp_path}/runs.db")
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    """Create a session factory for testing."""
    return get_session_factory(engine)


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every directory into tmp_path."""
    return Settings(
        workspace_dir=tmp_path / "workspaces",
        artifacts_dir=tmp_path / "artifacts",
        db_url=f"sqlite:///{tmp_path}/runs.db",
        pipeline_path=tmp_path / "buildgraph.yaml",
        max_concurrent_runs=2,
        run_timeout=60,
        lock_timeout=5,
    )


@pytest.fixture
def make_graph():
    """Return a helper building a JobGraph from raw job dictionaries."""

    def _make(*jobs: dict, project: str | None = None) -> JobGraph:
        data: dict = {"jobs": list(jobs)}
        if project:
            data["project"] = project
        return JobGraph(parse_pipeline_data(data).jobs)

    return _make
