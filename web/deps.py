"""Dependencies for FastAPI route handlers.

Provides the database session, settings and job graph to route handlers
via FastAPI dependency injection.

Transaction boundaries are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

import yaml
from fastapi import Depends, HTTPException, Request
from fastapi import status as http_status
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from buildgraph.config import Settings, get_settings
from buildgraph.jobs.graph import (
    CyclicDependencyError,
    DuplicateJobError,
    JobGraph,
    UnresolvedDependencyError,
)
from buildgraph.jobs.io import load_job_graph


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_app_settings() -> Settings:
    """Provide application settings."""
    return get_settings()


def get_job_graph(settings: Settings = Depends(get_app_settings)) -> JobGraph:
    """Load the job graph from the configured pipeline path.

    The configuration is read on every request so edits are picked up
    without a restart.

    Raises:
        HTTPException: 503 if the pipeline configuration cannot be loaded.
    """
    try:
        return load_job_graph(settings.pipeline_path)
    except FileNotFoundError as e:
        code, message = "pipeline_not_found", str(e)
    except (
        UnresolvedDependencyError,
        CyclicDependencyError,
        DuplicateJobError,
    ) as e:
        code, message = e.code, str(e)
    except (ValidationError, yaml.YAMLError, ValueError) as e:
        code, message = "invalid_pipeline", str(e)
    raise HTTPException(
        status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": code, "message": message},
    )
