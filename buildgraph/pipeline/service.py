"""Pipeline service module.

This module provides the high-level pipeline API:
- trigger(): Main entry point - plan, persist and execute a job and its
  dependency links
- Failure propagation policies between dependent runs
- Artifact transfer from dependency runs into job workspaces
- Per-job locking of shared workspaces
- Run state, artifact and manifest persistence
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session, sessionmaker

from buildgraph.config import get_settings
from buildgraph.db import get_session
from buildgraph.pipeline.artifacts import (
    MANIFEST_FILENAME,
    ArtifactNotFoundError,
    generate_manifest,
    publish_artifacts,
    transfer_artifacts,
    write_manifest,
)
from buildgraph.pipeline.resolver import (
    ExecutionPlan,
    PlanNode,
    PlannedDependency,
    resolve_plan,
)
from buildgraph.pipeline.rules import ArtifactRuleError, parse_rules
from buildgraph.pipeline.runner import LOG_FILENAME, RunExecutionError, run_steps
from buildgraph.runs.models import JobRun
from buildgraph.runs.service import (
    create_run,
    get_run,
    record_artifacts,
    record_dependency,
)
from buildgraph.types import FailureAction, RunState

if TYPE_CHECKING:
    from buildgraph.config import Settings
    from buildgraph.jobs.graph import JobGraph

logger = logging.getLogger(__name__)

# Order in which failure policies of failed dependencies take effect
FAILURE_PRECEDENCE = (
    FailureAction.FAIL_TO_START,
    FailureAction.FAIL_DEPENDENT,
    FailureAction.ADD_PROBLEM,
    FailureAction.IGNORE,
)


class DependencyBlockedError(Exception):
    """Raised when a FAIL_TO_START dependency did not succeed."""

    def __init__(
        self,
        job_id: str,
        targets: list[str],
        code: str = "dependency_blocked",
    ) -> None:
        super().__init__(
            f"Job '{job_id}' not started: dependency {', '.join(targets)} "
            "did not succeed"
        )
        self.job_id = job_id
        self.targets = targets
        self.code = code


class DependencyFailedError(Exception):
    """Raised when a FAIL_DEPENDENT dependency did not succeed."""

    def __init__(
        self,
        job_id: str,
        targets: list[str],
        code: str = "dependency_failed",
    ) -> None:
        super().__init__(
            f"Job '{job_id}' failed: dependency {', '.join(targets)} did not succeed"
        )
        self.job_id = job_id
        self.targets = targets
        self.code = code


@dataclass
class NodeOutcome:
    """Final state of one plan node.

    Attributes:
        key: Plan node key.
        job_id: Absolute job id.
        run_id: Run that represents the node (reused or fresh).
        state: Terminal run state.
        reused: Whether the run came from history.
        error_type: Type of error if the run did not succeed.
        error_message: Error message if the run did not succeed.
    """

    key: str
    job_id: str
    run_id: int
    state: RunState
    reused: bool = False
    error_type: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "run_id": self.run_id,
            "state": self.state.value,
            "reused": self.reused,
            "error_type": self.error_type,
            "error_message": self.error_message,
        }


@dataclass
class PipelineResult:
    """Result of a trigger.

    Attributes:
        trigger_id: Id shared by all runs created by the trigger.
        plan: Executed plan.
        outcomes: Outcome per plan node key.
    """

    trigger_id: str
    plan: ExecutionPlan
    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)

    @property
    def root(self) -> NodeOutcome:
        """Outcome of the triggered job."""
        return self.outcomes[self.plan.root]

    @property
    def success(self) -> bool:
        """Whether the triggered job succeeded."""
        return self.root.state is RunState.SUCCESS

    def _count(self, state: RunState, reused: bool = False) -> int:
        return sum(
            1
            for o in self.outcomes.values()
            if o.state is state and o.reused == reused
        )

    @property
    def succeeded(self) -> int:
        """Fresh runs that succeeded."""
        return self._count(RunState.SUCCESS)

    @property
    def failed(self) -> int:
        """Fresh runs that failed."""
        return self._count(RunState.FAILED)

    @property
    def not_started(self) -> int:
        """Fresh runs blocked by a dependency."""
        return self._count(RunState.NOT_STARTED)

    @property
    def reused(self) -> int:
        """Runs taken from history."""
        return sum(1 for o in self.outcomes.values() if o.reused)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        ordered = [n.key for n in self.plan.builds] + [n.key for n in self.plan.reused]
        return {
            "trigger_id": self.trigger_id,
            "success": self.success,
            "root": self.root.to_dict(),
            "counts": {
                "succeeded": self.succeeded,
                "failed": self.failed,
                "not_started": self.not_started,
                "reused": self.reused,
            },
            "runs": [self.outcomes[key].to_dict() for key in ordered],
        }


@contextmanager
def job_lock(
    lock_dir: Path,
    job_id: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire the workspace lock of a job.

    Uses a file-based lock so that runs of the same job never share the
    workspace at the same time, across threads and processes.

    Args:
        lock_dir: Directory for lock files.
        job_id: Absolute job id to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"{_safe_name(job_id)}.lock"

    logger.debug("Acquiring workspace lock for job: %s", job_id)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for workspace lock of {job_id}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Workspace lock acquired for job: %s", job_id)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Workspace lock released for job: %s", job_id)
        os.close(fd)


def _safe_name(job_id: str) -> str:
    return job_id.replace("/", "_").replace(":", "_")


def workspace_for(settings: Settings, job_id: str) -> Path:
    """Persistent workspace directory of a job."""
    return settings.workspace_dir / _safe_name(job_id)


def run_dir_for(settings: Settings, job_id: str, run_id: int) -> Path:
    """Directory holding the log, manifest and outputs of a run."""
    return settings.artifacts_dir / _safe_name(job_id) / f"{run_id:08d}"


def check_dependencies(
    session: Session,
    node: PlanNode,
    run_ids: Mapping[str, int],
) -> tuple[list[tuple[PlannedDependency, JobRun]], FailureAction | None]:
    """Evaluate the dependency runs of a node against the link policies.

    Args:
        session: Database session.
        node: Plan node of the dependent run.
        run_ids: Run id per plan node key.

    Returns:
        Tuple of (dependency and its run, in link order; the failure
        policy in effect, or None if every dependency succeeded).

    Raises:
        DependencyBlockedError: If a FAIL_TO_START dependency did not succeed.
        DependencyFailedError: If a FAIL_DEPENDENT dependency did not succeed.
    """
    evaluated: list[tuple[PlannedDependency, JobRun]] = []
    failed: dict[FailureAction, list[str]] = {}
    for dep in node.dependencies:
        target_run = get_run(session, run_ids[dep.node_key])
        evaluated.append((dep, target_run))
        if not target_run.is_succeeded():
            action = dep.link.on_dependency_failure
            failed.setdefault(action, []).append(dep.link.target)

    if not failed:
        return evaluated, None

    action = next(a for a in FAILURE_PRECEDENCE if a in failed)
    if action is FailureAction.FAIL_TO_START:
        raise DependencyBlockedError(node.job_id, failed[action])
    if action is FailureAction.FAIL_DEPENDENT:
        raise DependencyFailedError(node.job_id, failed[action])
    return evaluated, action


def _record_dependencies(
    session: Session,
    run: JobRun,
    node: PlanNode,
    run_ids: Mapping[str, int],
    transferred: Mapping[str, int] | None = None,
) -> None:
    transferred = transferred or {}
    for dep in node.dependencies:
        target_run = get_run(session, run_ids[dep.node_key])
        record_dependency(
            session,
            run,
            dep.link.target,
            target_run.id,
            reused=target_run.trigger_id != run.trigger_id,
            on_dependency_failure=dep.link.on_dependency_failure,
            target_state=target_run.run_state,
            artifacts_transferred=transferred.get(dep.node_key, 0),
        )


def _outcome(node: PlanNode, run: JobRun, reused: bool = False) -> NodeOutcome:
    return NodeOutcome(
        key=node.key,
        job_id=node.job_id,
        run_id=run.id,
        state=run.run_state,
        reused=reused,
        error_type=run.error_type,
        error_message=run.error_message,
    )


def _transfer_dependency_artifacts(
    evaluated: list[tuple[PlannedDependency, JobRun]],
    workspace: Path,
) -> dict[str, int]:
    transferred: dict[str, int] = {}
    for dep, target_run in evaluated:
        if not dep.link.has_artifacts or not target_run.is_succeeded():
            continue
        if target_run.output_dir is None:
            raise ArtifactNotFoundError(
                parse_rules(dep.link.artifact_rules), Path(dep.link.target)
            )
        result = transfer_artifacts(
            Path(target_run.output_dir),
            workspace,
            dep.link.artifact_rules or "",
            clean_destination=dep.link.clean_destination,
        )
        transferred[dep.node_key] = len(result.files)
    return transferred


def execute_node(
    session_factory: sessionmaker[Session],
    settings: Settings,
    plan: ExecutionPlan,
    key: str,
    run_ids: Mapping[str, int],
) -> NodeOutcome:
    """Drive one build node through the run state machine.

    Args:
        session_factory: Session factory; the node uses its own session.
        settings: Application settings.
        plan: Plan the node belongs to.
        key: Plan node key.
        run_ids: Run id per plan node key; dependencies are terminal.

    Returns:
        NodeOutcome with the terminal state of the run.
    """
    node = plan.nodes[key]
    job = node.job
    workspace = workspace_for(settings, node.job_id)

    with get_session(session_factory) as session:
        run = get_run(session, run_ids[key])
        run_dir = run_dir_for(settings, node.job_id, run.id)
        output_dir = run_dir / "artifacts"
        run.workspace_dir = str(workspace)
        run.output_dir = str(output_dir)
        run.log_path = str(run_dir / LOG_FILENAME)

        problem: FailureAction | None = None
        evaluated: list[tuple[PlannedDependency, JobRun]] = []
        if node.dependencies:
            run.mark_blocked()
            session.commit()
            try:
                evaluated, problem = check_dependencies(session, node, run_ids)
            except DependencyBlockedError as e:
                _record_dependencies(session, run, node, run_ids)
                run.mark_not_started(error_type=e.code, message=str(e))
                logger.warning("%s", e)
                return _outcome(node, run)
            except DependencyFailedError as e:
                _record_dependencies(session, run, node, run_ids)
                run.mark_failed(error_type=e.code, message=str(e))
                logger.error("%s", e)
                return _outcome(node, run)
        else:
            run.mark_running()
        session.commit()

        try:
            with job_lock(
                settings.workspace_dir / ".locks",
                node.job_id,
                timeout=settings.lock_timeout,
            ):
                try:
                    transferred = _transfer_dependency_artifacts(evaluated, workspace)
                except (ArtifactNotFoundError, ArtifactRuleError) as e:
                    _record_dependencies(session, run, node, run_ids)
                    run.mark_failed(error_type=e.code, message=str(e))
                    logger.error("Run %d of %s: %s", run.id, node.job_id, e)
                    return _outcome(node, run)

                if node.dependencies:
                    _record_dependencies(session, run, node, run_ids, transferred)
                    run.mark_running()
                    session.commit()

                result = run_steps(
                    job,
                    workspace,
                    Path(run.log_path),
                    node.params,
                    run_id=run.id,
                    shell=settings.shell,
                    timeout=settings.run_timeout,
                )
                if not result.success:
                    run.mark_failed(
                        error_type="step_failed", message=result.error_message
                    )
                    return _outcome(node, run)

                artifacts = publish_artifacts(workspace, output_dir, job.artifact_rules)
        except TimeoutError as e:
            run.mark_failed(error_type="lock_timeout", message=str(e))
            logger.error("Run %d of %s: %s", run.id, node.job_id, e)
            return _outcome(node, run)
        except (RunExecutionError, ArtifactRuleError) as e:
            run.mark_failed(error_type=e.code, message=str(e))
            logger.error("Run %d of %s: %s", run.id, node.job_id, e)
            return _outcome(node, run)
        except OSError as e:
            run.mark_failed(error_type="io_error", message=str(e))
            logger.error("Run %d of %s: %s", run.id, node.job_id, e)
            return _outcome(node, run)

        record_artifacts(session, run, artifacts)
        manifest = generate_manifest(
            artifacts,
            run_id=run.id,
            job_id=node.job_id,
            params_key=node.params_key,
            params=node.params,
        )
        write_manifest(manifest, run_dir / MANIFEST_FILENAME)

        if problem is FailureAction.ADD_PROBLEM:
            run.mark_failed(
                error_type="dependency_problem",
                message=f"Job '{node.job_id}' has a failed dependency",
            )
            logger.warning(
                "Run %d of %s failed with a dependency problem", run.id, node.job_id
            )
        else:
            run.mark_succeeded()
            logger.info(
                "Run %d of %s succeeded with %d artifacts",
                run.id,
                node.job_id,
                len(artifacts),
            )
        return _outcome(node, run)


def fail_unfinished_run(
    session_factory: sessionmaker[Session],
    node: PlanNode,
    run_id: int,
    error: Exception,
) -> NodeOutcome:
    """Fail a run whose node raised an unexpected error.

    Runs that already reached a terminal state are left untouched.
    """
    with get_session(session_factory) as session:
        run = get_run(session, run_id)
        if not run.run_state.is_terminal:
            if run.run_state is RunState.PENDING:
                run.mark_blocked()
            run.mark_failed(
                error_type="internal_error",
                message=f"{type(error).__name__}: {error}",
            )
        return _outcome(node, run)


def plan_job(
    session: Session,
    graph: JobGraph,
    job_ref: str,
    param_overrides: Mapping[str, str] | None = None,
) -> ExecutionPlan:
    """Resolve the plan of a job without executing it."""
    return resolve_plan(session, graph, job_ref, param_overrides)


def trigger(
    session_factory: sessionmaker[Session],
    graph: JobGraph,
    job_ref: str,
    settings: Settings | None = None,
    param_overrides: Mapping[str, str] | None = None,
) -> PipelineResult:
    """Trigger a job: plan, persist and execute it with its dependencies.

    This is the main entry point of the pipeline. It:
    1. Resolves the execution plan (reuse decisions, stages)
    2. Creates a pending run for every build node
    3. Executes stages in order, nodes of a stage in parallel
    4. Collects the terminal state of every node

    Args:
        session_factory: Session factory for the run history database.
        graph: Validated job graph.
        job_ref: Relative or absolute id of the triggered job.
        settings: Application settings.
        param_overrides: Parameter values replacing the job's own.

    Returns:
        PipelineResult describing every run of the trigger.

    Raises:
        JobNotFoundError: If the job does not exist.
    """
    if settings is None:
        settings = get_settings()

    trigger_id = uuid.uuid4().hex
    run_ids: dict[str, int] = {}
    result_outcomes: dict[str, NodeOutcome] = {}

    with get_session(session_factory) as session:
        plan = plan_job(session, graph, job_ref, param_overrides)
        for node in plan.builds:
            run = create_run(
                session,
                node.job_id,
                node.params_key,
                params=node.params,
                job_name=node.job.display_name,
                trigger_id=trigger_id,
            )
            run_ids[node.key] = run.id
        for node in plan.reused:
            reused_run = get_run(session, node.reused_run_id or 0)
            run_ids[node.key] = reused_run.id
            result_outcomes[node.key] = _outcome(node, reused_run, reused=True)

    logger.info(
        "Trigger %s: %d run(s) in %d stage(s), %d reused",
        trigger_id[:8],
        len(plan.builds),
        plan.steps,
        len(plan.reused),
    )

    for index, level in enumerate(plan.levels, start=1):
        logger.debug("Executing stage %d: %s", index, ", ".join(level))
        workers = min(settings.max_concurrent_runs, len(level))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(
                    execute_node, session_factory, settings, plan, key, run_ids
                ): key
                for key in level
            }
            for future in as_completed(futures):
                key = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.exception("Run %d of %s crashed", run_ids[key], key)
                    outcome = fail_unfinished_run(
                        session_factory, plan.nodes[key], run_ids[key], e
                    )
                result_outcomes[key] = outcome

    result = PipelineResult(
        trigger_id=trigger_id, plan=plan, outcomes=result_outcomes
    )
    logger.info(
        "Trigger %s finished: root %s is %s",
        trigger_id[:8],
        plan.root_node.job_id,
        result.root.state.value,
    )
    return result


__all__ = [
    "FAILURE_PRECEDENCE",
    "DependencyBlockedError",
    "DependencyFailedError",
    "NodeOutcome",
    "PipelineResult",
    "check_dependencies",
    "execute_node",
    "fail_unfinished_run",
    "job_lock",
    "plan_job",
    "run_dir_for",
    "trigger",
    "workspace_for",
]
