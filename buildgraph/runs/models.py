"""Run history ORM models.

This module defines the JobRun, RunDependency and RunArtifact models
that store the append-only run history used for snapshot reuse lookups
and reporting.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildgraph.db import Base
from buildgraph.types import RUN_TRANSITIONS, RunState


class InvalidStateTransitionError(Exception):
    """Raised when a run is moved to a state not reachable from its current one."""

    def __init__(
        self,
        run_id: int | None,
        current: str,
        requested: str,
        code: str = "invalid_state_transition",
    ) -> None:
        super().__init__(
            f"Run {run_id} cannot move from '{current}' to '{requested}'"
        )
        self.run_id = run_id
        self.current = current
        self.requested = requested
        self.code = code


class JobRun(Base):
    """ORM model for a single run of a build job.

    A JobRun records one evaluation of a job: its effective parameters
    and params key (used for snapshot reuse), the directories it used,
    its state machine position, and the dependency runs it consumed.

    Attributes:
        id: Primary key.
        trigger_id: Id shared by all runs created by one trigger.
        job_id: Absolute id of the job.
        job_name: Display name of the job at run time.
        state: Run state (see RunState).
        requested_at: Timestamp when the run was created.
        started_at: Timestamp when the produce step started.
        finished_at: Timestamp when the run reached a terminal state.
        params: Effective parameters of the run.
        params_key: Hash of the run inputs for reuse lookup.
        workspace_dir: Job workspace used by the run.
        output_dir: Directory holding published artifacts.
        log_path: Path to the run log file.
        error_type: Type of error if the run did not succeed.
        error_message: Error message if the run did not succeed.
    """

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trigger_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    job_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # State and timing
    state: Mapped[str] = mapped_column(
        String(32), nullable=False, default=RunState.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Inputs
    params: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    params_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Paths
    workspace_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    output_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    artifacts: Mapped[list["RunArtifact"]] = relationship(
        "RunArtifact", back_populates="run", cascade="all, delete-orphan"
    )
    dependencies: Mapped[list["RunDependency"]] = relationship(
        "RunDependency",
        back_populates="dependent_run",
        foreign_keys="RunDependency.dependent_run_id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_job_runs_job_state_key", "job_id", "state", "params_key"),
    )

    def __repr__(self) -> str:
        """Return string representation of JobRun."""
        return (
            f"<JobRun(id={self.id}, job_id='{self.job_id}', "
            f"state='{self.state}', params_key='{self.params_key[:16]}...')>"
        )

    @property
    def run_state(self) -> RunState:
        """Current state as a RunState."""
        return RunState(self.state)

    def _transition(self, target: RunState) -> None:
        current = self.run_state
        if target not in RUN_TRANSITIONS[current]:
            raise InvalidStateTransitionError(self.id, current.value, target.value)
        self.state = target.value

    def _set_error(self, error_type: str | None, message: str | None) -> None:
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def mark_blocked(self) -> None:
        """Mark this run as waiting for its dependency links."""
        self._transition(RunState.BLOCKED_ON_DEPENDENCY)

    def mark_running(self) -> None:
        """Mark this run as executing its produce step."""
        self._transition(RunState.RUNNING)
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self._transition(RunState.SUCCESS)
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self._transition(RunState.FAILED)
        self.finished_at = datetime.now()
        self._set_error(error_type, message)

    def mark_not_started(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as never started because a dependency blocked it.

        Args:
            error_type: Type/category of the blocking reason.
            message: Details of the blocking dependency.
        """
        self._transition(RunState.NOT_STARTED)
        self.finished_at = datetime.now()
        self._set_error(error_type, message)

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.state == RunState.SUCCESS.value

    def is_terminal(self) -> bool:
        """Check if this run reached a terminal state."""
        return self.run_state.is_terminal


class RunDependency(Base):
    """ORM model linking a run to a dependency run it consumed.

    Attributes:
        id: Primary key.
        dependent_run_id: Run that declared the dependency.
        target_run_id: Run that satisfied the dependency.
        target_job_id: Absolute id of the target job.
        reused: Whether the target run was reused from history.
        on_dependency_failure: Failure policy of the link.
        target_state: State of the target run when it was evaluated.
        artifacts_transferred: Number of files copied from the target run.
    """

    __tablename__ = "run_dependencies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dependent_run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("job_runs.id"), nullable=False, index=True
    )
    target_run_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("job_runs.id"), nullable=True, index=True
    )
    target_job_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    on_dependency_failure: Mapped[str] = mapped_column(String(32), nullable=False)
    target_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    artifacts_transferred: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    dependent_run: Mapped["JobRun"] = relationship(
        "JobRun", back_populates="dependencies", foreign_keys=[dependent_run_id]
    )
    target_run: Mapped["JobRun"] = relationship(
        "JobRun", foreign_keys=[target_run_id]
    )

    def __repr__(self) -> str:
        """Return string representation of RunDependency."""
        return (
            f"<RunDependency(dependent={self.dependent_run_id}, "
            f"target={self.target_run_id}, reused={self.reused})>"
        )


class RunArtifact(Base):
    """ORM model for a file published by a run.

    Attributes:
        id: Primary key.
        run_id: Foreign key to JobRun.
        relative_path: Path relative to the run's output directory.
        filename: Artifact filename.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
    """

    __tablename__ = "run_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("job_runs.id"), nullable=False, index=True
    )
    relative_path: Mapped[str] = mapped_column(String(500), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    run: Mapped["JobRun"] = relationship("JobRun", back_populates="artifacts")

    def __repr__(self) -> str:
        """Return string representation of RunArtifact."""
        return (
            f"<RunArtifact(id={self.id}, relative_path='{self.relative_path}', "
            f"size={self.size_bytes})>"
        )


__all__ = ["InvalidStateTransitionError", "JobRun", "RunArtifact", "RunDependency"]
