"""Liveness of the API, its run history database and pipeline file."""

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from buildgraph import __version__
from buildgraph.config import Settings
from web.deps import get_app_settings, get_db

router = APIRouter()


@router.get("/health")
def health(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Report whether runs can be recorded and jobs can be loaded.

    The status is ``degraded`` when the run history database does not
    answer; a missing pipeline file is reported but does not degrade it.
    """
    try:
        db.execute(text("SELECT 1"))
        database = "reachable"
    except SQLAlchemyError:
        database = "unreachable"
    return {
        "status": "ok" if database == "reachable" else "degraded",
        "version": __version__,
        "database": database,
        "pipeline": str(settings.pipeline_path),
        "pipeline_found": settings.pipeline_path.exists(),
    }


@router.get("/")
def root() -> dict[str, Any]:
    """API name, version and the collections it serves."""
    return {
        "name": "Build Graph API",
        "version": __version__,
        "resources": ["/jobs", "/runs", "/config"],
    }
