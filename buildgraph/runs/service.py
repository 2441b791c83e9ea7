"""Run history service.

This module provides the run history API:
- Creating runs and recording consumed dependencies and artifacts
- Reuse lookup: most recent successful run with a matching params key
- Queries by id, job and state
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from buildgraph.runs.models import JobRun, RunArtifact, RunDependency
from buildgraph.types import ArtifactInfo, FailureAction, RunState

logger = logging.getLogger(__name__)


class RunNotFoundError(Exception):
    """Raised when a run is not found."""

    def __init__(self, run_id: int, code: str = "run_not_found") -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = code


def create_run(
    session: Session,
    job_id: str,
    params_key: str,
    params: Mapping[str, str] | None = None,
    job_name: str | None = None,
    trigger_id: str | None = None,
) -> JobRun:
    """Create a new JobRun in pending state.

    Args:
        session: Database session.
        job_id: Absolute job id.
        params_key: Hash of the run inputs.
        params: Effective parameters.
        job_name: Display name of the job.
        trigger_id: Id grouping runs of one trigger.

    Returns:
        Created JobRun.
    """
    run = JobRun(
        job_id=job_id,
        job_name=job_name,
        params_key=params_key,
        params=dict(params or {}),
        trigger_id=trigger_id,
        state=RunState.PENDING.value,
    )
    session.add(run)
    session.flush()
    logger.debug("Created run %d for job %s", run.id, job_id)
    return run


def find_reusable_run(
    session: Session,
    job_id: str,
    params_key: str,
) -> JobRun | None:
    """Find the most recent successful run of a job with the same inputs.

    Args:
        session: Database session.
        job_id: Absolute job id.
        params_key: Params key the run must match.

    Returns:
        JobRun if found, None otherwise.
    """
    stmt = (
        select(JobRun)
        .where(
            JobRun.job_id == job_id,
            JobRun.params_key == params_key,
            JobRun.state == RunState.SUCCESS.value,
        )
        .order_by(JobRun.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def record_dependency(
    session: Session,
    dependent: JobRun,
    target_job_id: str,
    target_run_id: int | None,
    *,
    reused: bool,
    on_dependency_failure: FailureAction,
    target_state: RunState | None,
    artifacts_transferred: int = 0,
) -> RunDependency:
    """Record that a run consumed (or was blocked by) a dependency run.

    Args:
        session: Database session.
        dependent: The dependent run.
        target_job_id: Absolute id of the target job.
        target_run_id: Id of the target run, if one exists.
        reused: Whether the target run came from history.
        on_dependency_failure: Failure policy of the link.
        target_state: State of the target run when evaluated.
        artifacts_transferred: Number of files copied.

    Returns:
        Created RunDependency.
    """
    dependency = RunDependency(
        dependent_run_id=dependent.id,
        target_run_id=target_run_id,
        target_job_id=target_job_id,
        reused=reused,
        on_dependency_failure=on_dependency_failure.value,
        target_state=target_state.value if target_state else None,
        artifacts_transferred=artifacts_transferred,
    )
    session.add(dependency)
    return dependency


def record_artifacts(
    session: Session,
    run: JobRun,
    artifacts: list[ArtifactInfo],
) -> list[RunArtifact]:
    """Persist published artifacts of a run.

    Args:
        session: Database session.
        run: Run that published the files.
        artifacts: Discovered artifact information.

    Returns:
        Created RunArtifact records.
    """
    records = []
    for info in artifacts:
        record = RunArtifact(
            run_id=run.id,
            relative_path=info.relative_path,
            filename=info.filename,
            size_bytes=info.size_bytes,
            sha256=info.sha256,
        )
        session.add(record)
        records.append(record)
    return records


def get_run(session: Session, run_id: int) -> JobRun:
    """Get a run by ID.

    Args:
        session: Database session.
        run_id: Run ID.

    Returns:
        JobRun instance.

    Raises:
        RunNotFoundError: If run not found.
    """
    run = session.get(JobRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def get_run_or_none(session: Session, run_id: int) -> JobRun | None:
    """Get a run by ID, or None if not found."""
    return session.get(JobRun, run_id)


def list_runs(
    session: Session,
    job_id: str | None = None,
    state: RunState | None = None,
    trigger_id: str | None = None,
    limit: int = 100,
) -> list[JobRun]:
    """List runs with optional filters, newest first.

    Args:
        session: Database session.
        job_id: Filter by absolute job id.
        state: Filter by state.
        trigger_id: Filter by trigger.
        limit: Maximum results to return.

    Returns:
        List of JobRun instances.
    """
    stmt = select(JobRun)

    if job_id is not None:
        stmt = stmt.where(JobRun.job_id == job_id)
    if state is not None:
        stmt = stmt.where(JobRun.state == state.value)
    if trigger_id is not None:
        stmt = stmt.where(JobRun.trigger_id == trigger_id)

    stmt = stmt.order_by(JobRun.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_run_artifacts(session: Session, run_id: int) -> list[RunArtifact]:
    """Get artifacts published by a run.

    Raises:
        RunNotFoundError: If run not found.
    """
    run = get_run(session, run_id)
    return sorted(run.artifacts, key=lambda a: a.relative_path)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def artifact_to_dict(artifact: RunArtifact) -> dict[str, Any]:
    """Convert a RunArtifact to a JSON-serializable dictionary."""
    return {
        "id": artifact.id,
        "run_id": artifact.run_id,
        "relative_path": artifact.relative_path,
        "filename": artifact.filename,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
    }


def run_to_dict(run: JobRun, include_dependencies: bool = False) -> dict[str, Any]:
    """Convert a JobRun to a JSON-serializable dictionary.

    Args:
        run: Run to convert.
        include_dependencies: Also list the consumed dependency runs.

    Returns:
        Dictionary with stable keys.
    """
    data: dict[str, Any] = {
        "id": run.id,
        "trigger_id": run.trigger_id,
        "job_id": run.job_id,
        "job_name": run.job_name,
        "state": run.state,
        "params": run.params or {},
        "params_key": run.params_key,
        "requested_at": _isoformat(run.requested_at),
        "started_at": _isoformat(run.started_at),
        "finished_at": _isoformat(run.finished_at),
        "workspace_dir": run.workspace_dir,
        "output_dir": run.output_dir,
        "log_path": run.log_path,
        "error_type": run.error_type,
        "error_message": run.error_message,
        "artifact_count": len(run.artifacts),
    }
    if include_dependencies:
        data["dependencies"] = [
            {
                "target_job_id": d.target_job_id,
                "target_run_id": d.target_run_id,
                "target_state": d.target_state,
                "reused": d.reused,
                "on_dependency_failure": d.on_dependency_failure,
                "artifacts_transferred": d.artifacts_transferred,
            }
            for d in run.dependencies
        ]
    return data


__all__ = [
    "RunNotFoundError",
    "artifact_to_dict",
    "create_run",
    "find_reusable_run",
    "get_run",
    "get_run_artifacts",
    "get_run_or_none",
    "list_runs",
    "record_artifacts",
    "record_dependency",
    "run_to_dict",
]
