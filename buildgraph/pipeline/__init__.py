"""Pipeline execution module.

This module handles:
- Dependency resolution into execution plans with snapshot reuse
- Artifact rules, transfer and publishing
- Step execution in job workspaces
- Triggering jobs and propagating dependency failures
"""

from buildgraph.pipeline.artifacts import ArtifactNotFoundError
from buildgraph.pipeline.resolver import (
    DependencyResolver,
    ExecutionPlan,
    PlanAction,
    PlanNode,
)
from buildgraph.pipeline.runner import RunExecutionError
from buildgraph.pipeline.service import (
    DependencyBlockedError,
    DependencyFailedError,
    PipelineResult,
    plan_job,
    trigger,
)

__all__ = [
    "ArtifactNotFoundError",
    "DependencyBlockedError",
    "DependencyFailedError",
    "DependencyResolver",
    "ExecutionPlan",
    "PipelineResult",
    "PlanAction",
    "PlanNode",
    "RunExecutionError",
    "plan_job",
    "trigger",
]
