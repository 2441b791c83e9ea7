"""Run history module.

This module handles:
- ORM models for job runs, consumed dependencies and published artifacts
- The run state machine
- History queries and snapshot reuse lookup
"""

from buildgraph.runs.models import (
    InvalidStateTransitionError,
    JobRun,
    RunArtifact,
    RunDependency,
)

__all__ = ["InvalidStateTransitionError", "JobRun", "RunArtifact", "RunDependency"]
