"""Run endpoints.

- GET /runs - List runs
- GET /runs/{id} - Get a run with its consumed dependencies
- GET /runs/{id}/artifacts - Get artifacts published by a run
- POST /runs - Trigger a job
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from buildgraph.config import Settings
from buildgraph.jobs.graph import JobGraph, JobNotFoundError
from buildgraph.pipeline.service import trigger
from buildgraph.runs.service import (
    RunNotFoundError,
    artifact_to_dict,
    get_run,
    get_run_artifacts,
    list_runs,
    run_to_dict,
)
from buildgraph.types import RunState
from web.deps import get_app_settings, get_db, get_job_graph, get_session_factory

router = APIRouter()


class TriggerRequest(BaseModel):
    """Request body for triggering a job."""

    job_id: str = Field(min_length=1)
    params: dict[str, str] = Field(default_factory=dict)


def _run_not_found(run_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={"code": "run_not_found", "message": f"Run not found: {run_id}"},
    )


@router.get("")
def list_runs_endpoint(
    job: str | None = Query(None, description="Filter by absolute job id"),
    state: str | None = Query(None, description="Filter by run state"),
    trigger_id: str | None = Query(None, description="Filter by trigger id"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List runs, newest first.

    Raises:
        HTTPException: 400 if the state filter is invalid.
    """
    state_filter: RunState | None = None
    if state:
        try:
            state_filter = RunState(state)
        except ValueError:
            valid = ", ".join(s.value for s in RunState)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_state",
                    "message": f"Invalid state: {state}. Valid values: {valid}",
                },
            ) from None

    runs = list_runs(
        db, job_id=job, state=state_filter, trigger_id=trigger_id, limit=limit
    )
    return [run_to_dict(r) for r in runs]


@router.get("/{run_id}")
def get_run_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a run by ID.

    Raises:
        HTTPException: If run not found.
    """
    try:
        return run_to_dict(get_run(db, run_id), include_dependencies=True)
    except RunNotFoundError:
        raise _run_not_found(run_id) from None


@router.get("/{run_id}/artifacts")
def get_run_artifacts_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get artifacts published by a run.

    Raises:
        HTTPException: If run not found.
    """
    try:
        return [artifact_to_dict(a) for a in get_run_artifacts(db, run_id)]
    except RunNotFoundError:
        raise _run_not_found(run_id) from None


@router.post("")
def trigger_run_endpoint(
    request: TriggerRequest,
    graph: JobGraph = Depends(get_job_graph),
    settings: Settings = Depends(get_app_settings),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> dict[str, Any]:
    """Trigger a job and wait for the trigger to finish.

    The response reports every run of the trigger; a blocked dependent is
    reported as ``not_started``, distinct from ``failed``.

    Raises:
        HTTPException: If job not found.
    """
    try:
        result = trigger(
            session_factory, graph, request.job_id, settings, request.params
        )
    except JobNotFoundError:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={
                "code": "job_not_found",
                "message": f"Job not found: {request.job_id}",
            },
        ) from None
    return result.to_dict()
