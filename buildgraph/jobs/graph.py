"""Job dependency graph.

This module turns validated job definitions into a directed acyclic
graph: it indexes jobs by relative and absolute id, resolves every
dependency link target to exactly one job, rejects cycles, and computes
topological stages.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass

from buildgraph.jobs.schema import BuildJobSchema, DependencySchema
from buildgraph.types import FailureAction, ReuseBuilds

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """Raised when a job reference does not match any job."""

    def __init__(self, job_ref: str, code: str = "job_not_found") -> None:
        super().__init__(f"Job not found: {job_ref}")
        self.job_ref = job_ref
        self.code = code


class DuplicateJobError(Exception):
    """Raised when two jobs share an absolute id."""

    def __init__(self, job_id: str, code: str = "duplicate_job") -> None:
        super().__init__(f"Duplicate job id: {job_id}")
        self.job_id = job_id
        self.code = code


class UnresolvedDependencyError(Exception):
    """Raised when a dependency target does not resolve to exactly one job."""

    def __init__(
        self,
        job_id: str,
        target: str,
        candidates: list[str] | None = None,
        code: str = "unresolved_dependency",
    ) -> None:
        if candidates:
            message = (
                f"Job '{job_id}' depends on ambiguous target '{target}' "
                f"(matches: {', '.join(candidates)})"
            )
        else:
            message = f"Job '{job_id}' depends on unknown job '{target}'"
        super().__init__(message)
        self.job_id = job_id
        self.target = target
        self.candidates = candidates or []
        self.code = code


class CyclicDependencyError(Exception):
    """Raised when dependency links form a cycle."""

    def __init__(self, job_ids: list[str], code: str = "dependency_cycle") -> None:
        super().__init__(f"Dependency cycle between jobs: {', '.join(job_ids)}")
        self.job_ids = job_ids
        self.code = code


@dataclass(frozen=True)
class DependencyLink:
    """A resolved dependency link between two jobs.

    Attributes:
        owner: Absolute id of the dependent job.
        target: Absolute id of the job depended upon.
        reuse_builds: Snapshot reuse policy.
        on_dependency_failure: Failure propagation policy.
        artifact_rules: Artifact rules, or None for a snapshot-only link.
        clean_destination: Clear destinations before artifact transfer.
    """

    owner: str
    target: str
    reuse_builds: ReuseBuilds
    on_dependency_failure: FailureAction
    artifact_rules: str | None = None
    clean_destination: bool = False

    @property
    def has_artifacts(self) -> bool:
        """Whether this link transfers artifacts."""
        return bool(self.artifact_rules)

    @classmethod
    def from_schema(
        cls, owner: str, target: str, dep: DependencySchema
    ) -> DependencyLink:
        """Build a link from its configuration entry."""
        return cls(
            owner=owner,
            target=target,
            reuse_builds=dep.snapshot.reuse_builds,
            on_dependency_failure=dep.snapshot.on_dependency_failure,
            artifact_rules=dep.artifacts.artifact_rules if dep.artifacts else None,
            clean_destination=dep.artifacts.clean_destination
            if dep.artifacts
            else False,
        )


class JobGraph:
    """Validated dependency graph over a set of build jobs.

    Nodes are jobs keyed by absolute id; edges are dependency links.
    Construction fails with DuplicateJobError, UnresolvedDependencyError
    or CyclicDependencyError, so an existing JobGraph is always a DAG.
    """

    def __init__(self, jobs: Iterable[BuildJobSchema]) -> None:
        self._jobs: dict[str, BuildJobSchema] = {}
        self._by_relative_id: dict[str, list[str]] = {}

        for job in jobs:
            if job.absolute_id in self._jobs:
                raise DuplicateJobError(job.absolute_id)
            self._jobs[job.absolute_id] = job
            self._by_relative_id.setdefault(job.id, []).append(job.absolute_id)

        self._links: dict[str, list[DependencyLink]] = {}
        self._dependents: dict[str, set[str]] = {job_id: set() for job_id in self._jobs}

        for job_id, job in self._jobs.items():
            links: list[DependencyLink] = []
            for dep in job.dependencies:
                target_id = self._resolve_target(job, dep.target)
                if any(link.target == target_id for link in links):
                    raise ValueError(
                        f"Job '{job_id}' declares more than one dependency "
                        f"on '{target_id}'"
                    )
                links.append(DependencyLink.from_schema(job_id, target_id, dep))
                self._dependents[target_id].add(job_id)
            self._links[job_id] = links

        self._levels = self._compute_levels()
        logger.debug(
            "Built job graph with %d jobs in %d stages",
            len(self._jobs),
            len(self._levels),
        )

    def _resolve_target(self, owner: BuildJobSchema, ref: str) -> str:
        # Relative reference inside the owner's project
        if owner.project:
            qualified = f"{owner.project}_{ref}"
            if qualified in self._jobs:
                return qualified

        if ref in self._jobs:
            return ref

        candidates = self._by_relative_id.get(ref, [])
        if len(candidates) == 1:
            return candidates[0]
        raise UnresolvedDependencyError(
            owner.absolute_id, ref, candidates=sorted(candidates)
        )

    def _compute_levels(self) -> list[list[str]]:
        # Kahn's algorithm, one stage per wave of ready nodes
        indeg = {job_id: len(links) for job_id, links in self._links.items()}
        queue = deque(sorted(n for n, d in indeg.items() if d == 0))
        levels: list[list[str]] = []
        processed = 0

        while queue:
            level: list[str] = []
            for _ in range(len(queue)):
                node = queue.popleft()
                level.append(node)
                processed += 1
                for child in sorted(self._dependents[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        queue.append(child)
            levels.append(level)

        if processed != len(indeg):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise CyclicDependencyError(stuck)

        return levels

    def __contains__(self, job_ref: object) -> bool:
        if not isinstance(job_ref, str):
            return False
        try:
            self.resolve_id(job_ref)
        except JobNotFoundError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def jobs(self) -> list[BuildJobSchema]:
        """All jobs in topological order."""
        return [self._jobs[job_id] for job_id in self.topological_order()]

    def resolve_id(self, job_ref: str) -> str:
        """Resolve a relative or absolute job reference to an absolute id.

        Raises:
            JobNotFoundError: If the reference matches no job or several jobs.
        """
        if job_ref in self._jobs:
            return job_ref
        candidates = self._by_relative_id.get(job_ref, [])
        if len(candidates) == 1:
            return candidates[0]
        raise JobNotFoundError(job_ref)

    def get(self, job_ref: str) -> BuildJobSchema:
        """Get a job by relative or absolute id.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        return self._jobs[self.resolve_id(job_ref)]

    def links(self, job_ref: str) -> list[DependencyLink]:
        """Dependency links declared by a job, in declaration order."""
        return list(self._links[self.resolve_id(job_ref)])

    def dependents(self, job_ref: str) -> list[str]:
        """Absolute ids of jobs that link directly to this job."""
        return sorted(self._dependents[self.resolve_id(job_ref)])

    def upstream(self, job_ref: str) -> set[str]:
        """Absolute ids of all jobs this job transitively depends on."""
        seen: set[str] = set()
        stack = [link.target for link in self.links(job_ref)]
        while stack:
            job_id = stack.pop()
            if job_id in seen:
                continue
            seen.add(job_id)
            stack.extend(link.target for link in self._links[job_id])
        return seen

    def levels(self) -> list[list[str]]:
        """Topological stages; jobs inside a stage are independent."""
        return [list(level) for level in self._levels]

    def topological_order(self) -> list[str]:
        """Absolute ids with every job after all of its dependencies."""
        return [job_id for level in self._levels for job_id in level]


__all__ = [
    "CyclicDependencyError",
    "DependencyLink",
    "DuplicateJobError",
    "JobGraph",
    "JobNotFoundError",
    "UnresolvedDependencyError",
]
