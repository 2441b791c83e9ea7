"""Dependency resolution into an execution plan.

This module handles:
- Walking the dependency links of a triggered job
- Snapshot reuse decisions (REUSE_EXISTING vs ALWAYS_REBUILD)
- Propagating reverse dependency parameters to link targets
- Deduplicating identical (job, params) targets
- Grouping build nodes into topological stages
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from buildgraph.jobs.graph import DependencyLink, JobGraph
from buildgraph.jobs.params import effective_params, reverse_overrides
from buildgraph.jobs.schema import BuildJobSchema
from buildgraph.pipeline.cache_key import compute_params_key_for_job
from buildgraph.runs.service import find_reusable_run
from buildgraph.types import ReuseBuilds

logger = logging.getLogger(__name__)


class PlanAction(str, Enum):
    """What the pipeline does with a plan node."""

    BUILD = "build"
    REUSE = "reuse"


@dataclass(frozen=True)
class PlannedDependency:
    """A dependency link bound to the plan node that satisfies it."""

    link: DependencyLink
    node_key: str


@dataclass
class PlanNode:
    """One (job, effective params) pair of an execution plan.

    Attributes:
        key: Unique node key, ``<job id>@<params key>``.
        job: Job definition.
        params: Effective parameter values.
        unresolved_params: Referenced parameters that could not be resolved.
        params_key: Hash of the run inputs.
        action: Build a fresh run or reuse an existing one.
        reused_run_id: Id of the reused run for REUSE nodes.
        dependencies: Links of the job and the nodes satisfying them.
    """

    key: str
    job: BuildJobSchema
    params: dict[str, str]
    unresolved_params: set[str]
    params_key: str
    action: PlanAction
    reused_run_id: int | None = None
    dependencies: list[PlannedDependency] = field(default_factory=list)

    @property
    def job_id(self) -> str:
        """Absolute id of the node's job."""
        return self.job.absolute_id

    @property
    def is_build(self) -> bool:
        """Whether the node schedules a fresh run."""
        return self.action is PlanAction.BUILD

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "key": self.key,
            "job_id": self.job_id,
            "action": self.action.value,
            "params_key": self.params_key,
            "params": self.params,
            "unresolved_params": sorted(self.unresolved_params),
            "reused_run_id": self.reused_run_id,
            "dependencies": [
                {
                    "target": dep.link.target,
                    "node": dep.node_key,
                    "reuse_builds": dep.link.reuse_builds.value,
                    "on_dependency_failure": dep.link.on_dependency_failure.value,
                    "artifact_rules": dep.link.artifact_rules,
                    "clean_destination": dep.link.clean_destination,
                }
                for dep in self.dependencies
            ],
        }


@dataclass
class ExecutionPlan:
    """Ordered plan for one trigger.

    Attributes:
        root: Key of the triggered job's node.
        nodes: All plan nodes by key.
        levels: Build node keys grouped into stages; stages run in order,
            nodes of one stage are independent of each other.
    """

    root: str
    nodes: dict[str, PlanNode]
    levels: list[list[str]]

    @property
    def root_node(self) -> PlanNode:
        """Node of the triggered job."""
        return self.nodes[self.root]

    @property
    def steps(self) -> int:
        """Number of stages."""
        return len(self.levels)

    @property
    def builds(self) -> list[PlanNode]:
        """Build nodes in execution order."""
        return [self.nodes[key] for level in self.levels for key in level]

    @property
    def reused(self) -> list[PlanNode]:
        """Reuse nodes sorted by key."""
        return [
            node
            for key, node in sorted(self.nodes.items())
            if node.action is PlanAction.REUSE
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "root": self.root,
            "steps": self.steps,
            "levels": [
                [self.nodes[key].job_id for key in level] for level in self.levels
            ],
            "nodes": [self.nodes[key].to_dict() for key in sorted(self.nodes)],
        }


class DependencyResolver:
    """Resolves a triggered job into an ExecutionPlan.

    Reuse lookups go to the run history through ``session``; the resolver
    itself never writes.
    """

    def __init__(self, graph: JobGraph, session: Session) -> None:
        self.graph = graph
        self.session = session
        self._nodes: dict[str, PlanNode] = {}

    def resolve(
        self,
        job_ref: str,
        param_overrides: Mapping[str, str] | None = None,
    ) -> ExecutionPlan:
        """Resolve a job and its dependency links.

        Args:
            job_ref: Relative or absolute id of the triggered job.
            param_overrides: Parameter values replacing the job's own.

        Returns:
            ExecutionPlan rooted at the triggered job.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        self._nodes = {}
        job = self.graph.get(job_ref)
        root = self._visit(job, dict(param_overrides or {}), force_build=True)
        levels = self._compute_levels()

        plan = ExecutionPlan(root=root, nodes=dict(self._nodes), levels=levels)
        logger.info(
            "Resolved plan for %s: %d build(s), %d reused, %d stage(s)",
            job.absolute_id,
            len(plan.builds),
            len(plan.reused),
            plan.steps,
        )
        return plan

    def _visit(
        self,
        job: BuildJobSchema,
        overrides: dict[str, str],
        force_build: bool,
    ) -> str:
        resolved = effective_params(job, overrides)
        params_key, _ = compute_params_key_for_job(job, resolved.values)
        key = f"{job.absolute_id}@{params_key}"

        existing = self._nodes.get(key)
        if existing is not None:
            if force_build and existing.action is PlanAction.REUSE:
                logger.debug("Upgrading %s from reuse to build", key)
                existing.action = PlanAction.BUILD
                existing.reused_run_id = None
                self._expand(existing)
            return key

        if not force_build:
            reusable = find_reusable_run(self.session, job.absolute_id, params_key)
            if reusable is not None:
                logger.debug("Reusing run %d for %s", reusable.id, job.absolute_id)
                self._nodes[key] = PlanNode(
                    key=key,
                    job=job,
                    params=resolved.values,
                    unresolved_params=resolved.unresolved,
                    params_key=params_key,
                    action=PlanAction.REUSE,
                    reused_run_id=reusable.id,
                )
                return key

        node = PlanNode(
            key=key,
            job=job,
            params=resolved.values,
            unresolved_params=resolved.unresolved,
            params_key=params_key,
            action=PlanAction.BUILD,
        )
        self._nodes[key] = node
        self._expand(node)
        return key

    def _expand(self, node: PlanNode) -> None:
        for link in self.graph.links(node.job_id):
            target = self.graph.get(link.target)
            overrides = reverse_overrides(node.params, target)
            child = self._visit(
                target,
                overrides,
                force_build=link.reuse_builds is ReuseBuilds.ALWAYS_REBUILD,
            )
            node.dependencies.append(PlannedDependency(link=link, node_key=child))

    def _compute_levels(self) -> list[list[str]]:
        builds = {key for key, node in self._nodes.items() if node.is_build}
        indeg = {key: 0 for key in builds}
        children: dict[str, list[str]] = {key: [] for key in builds}
        for key in builds:
            for dep in self._nodes[key].dependencies:
                if dep.node_key in builds:
                    indeg[key] += 1
                    children[dep.node_key].append(key)

        queue = deque(sorted(key for key, d in indeg.items() if d == 0))
        levels: list[list[str]] = []
        while queue:
            level: list[str] = []
            for _ in range(len(queue)):
                key = queue.popleft()
                level.append(key)
                for child in sorted(children[key]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        queue.append(child)
            levels.append(level)
        return levels


def resolve_plan(
    session: Session,
    graph: JobGraph,
    job_ref: str,
    param_overrides: Mapping[str, str] | None = None,
) -> ExecutionPlan:
    """Resolve the execution plan of a job.

    Args:
        session: Database session used for reuse lookups.
        graph: Validated job graph.
        job_ref: Relative or absolute id of the triggered job.
        param_overrides: Parameter values replacing the job's own.

    Returns:
        ExecutionPlan rooted at the triggered job.
    """
    return DependencyResolver(graph, session).resolve(job_ref, param_overrides)


__all__ = [
    "DependencyResolver",
    "ExecutionPlan",
    "PlanAction",
    "PlanNode",
    "PlannedDependency",
    "resolve_plan",
]
