"""Build job endpoints.

- GET /jobs - List jobs in topological order
- GET /jobs/{id} - Get a job definition
- GET /jobs/{id}/plan - Resolve the execution plan of a job
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from buildgraph.jobs.graph import JobGraph, JobNotFoundError
from buildgraph.jobs.io import job_to_dict
from buildgraph.pipeline.service import plan_job
from web.deps import get_db, get_job_graph

router = APIRouter()


def _job_not_found(job_id: str) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={"code": "job_not_found", "message": f"Job not found: {job_id}"},
    )


def parse_param_overrides(params: list[str]) -> dict[str, str]:
    """Parse ``NAME=VALUE`` strings into a parameter mapping.

    Raises:
        HTTPException: 400 if an entry has no ``=``.
    """
    overrides: dict[str, str] = {}
    for item in params:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_param",
                    "message": f"Invalid parameter '{item}', expected NAME=VALUE",
                },
            )
        overrides[name] = value
    return overrides


@router.get("")
def list_jobs_endpoint(
    graph: JobGraph = Depends(get_job_graph),
) -> list[dict[str, Any]]:
    """List jobs in topological order.

    Returns:
        Job summaries with their resolved dependency targets.
    """
    return [
        {
            "id": job.absolute_id,
            "name": job.display_name,
            "dependencies": [link.target for link in graph.links(job.absolute_id)],
            "dependents": graph.dependents(job.absolute_id),
        }
        for job in graph.jobs
    ]


@router.get("/{job_id}")
def get_job_endpoint(
    job_id: str,
    graph: JobGraph = Depends(get_job_graph),
) -> dict[str, Any]:
    """Get a job definition.

    Raises:
        HTTPException: If job not found.
    """
    try:
        job = graph.get(job_id)
    except JobNotFoundError:
        raise _job_not_found(job_id) from None
    data = job_to_dict(job)
    data["absolute_id"] = job.absolute_id
    return data


@router.get("/{job_id}/plan")
def plan_job_endpoint(
    job_id: str,
    param: list[str] = Query(default=[], description="NAME=VALUE override"),
    graph: JobGraph = Depends(get_job_graph),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Resolve the execution plan of a job against the run history.

    Raises:
        HTTPException: If job not found or a parameter is malformed.
    """
    overrides = parse_param_overrides(param)
    try:
        plan = plan_job(db, graph, job_id, overrides)
    except JobNotFoundError:
        raise _job_not_found(job_id) from None
    return plan.to_dict()
