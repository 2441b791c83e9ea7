"""Step runner for executing build job scripts.

This module handles:
- Composing shell commands for job steps
- Expanding ``%param%`` references in step scripts
- Executing steps with subprocess in the job workspace
- Capturing stdout/stderr to a per-run log file
- Enforcing a timeout across all steps of a run
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from buildgraph.jobs.params import env_from_params, expand

if TYPE_CHECKING:
    from buildgraph.jobs.schema import BuildJobSchema

logger = logging.getLogger(__name__)

LOG_FILENAME = "run.log"


class RunExecutionError(Exception):
    """Raised when step execution cannot complete."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "execution_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class RunResult:
    """Result of executing the steps of a run.

    Attributes:
        success: Whether every step succeeded.
        exit_code: Exit code of the last executed step (0 for no steps).
        log_path: Path to the run log file.
        started_at: Execution start time.
        finished_at: Execution finish time.
        steps_run: Names of the steps that were executed.
        failed_step: Name of the step that failed, if any.
        error_message: Error message if the run failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    steps_run: list[str] = field(default_factory=list)
    failed_step: str | None = None
    error_message: str | None = None


def compose_step_command(shell: str, script: str) -> list[str]:
    """Compose the command executing one step script.

    Args:
        shell: Shell executable.
        script: Script text, already expanded.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [shell, "-c", script]


def build_environment(
    job_id: str,
    run_id: int | None,
    params: Mapping[str, str],
) -> dict[str, str]:
    """Build the environment of a step process.

    Args:
        job_id: Absolute job id.
        run_id: Database run id.
        params: Effective parameters of the run.

    Returns:
        Environment mapping for subprocess.
    """
    env = dict(os.environ)
    env.update(env_from_params(params))
    env["BUILDGRAPH_JOB_ID"] = job_id
    if run_id is not None:
        env["BUILDGRAPH_RUN_ID"] = str(run_id)
    return env


def run_steps(
    job: BuildJobSchema,
    workspace: Path,
    log_path: Path,
    params: Mapping[str, str],
    run_id: int | None = None,
    shell: str = "/bin/sh",
    timeout: int | None = None,
) -> RunResult:
    """Execute the steps of a job in its workspace.

    Steps run in declaration order; the first failing step stops the run.

    Args:
        job: Job definition.
        workspace: Job workspace directory.
        log_path: File receiving the combined output of all steps.
        params: Effective parameters used for ``%ref%`` expansion.
        run_id: Database run id, exported to steps.
        shell: Shell executable for step scripts.
        timeout: Total timeout for all steps in seconds (None = no timeout).

    Returns:
        RunResult with execution details.

    Raises:
        RunExecutionError: On timeout or if a step cannot be started.
    """
    workspace.mkdir(parents=True, exist_ok=True)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    env = build_environment(job.absolute_id, run_id, params)

    started_at = datetime.now(timezone.utc)
    deadline = time.monotonic() + timeout if timeout is not None else None
    steps_run: list[str] = []
    exit_code = 0
    failed_step: str | None = None
    error_message: str | None = None

    logger.info("Running %d step(s) of job %s", len(job.steps), job.absolute_id)

    with log_path.open("w") as log_file:
        log_file.write(f"# Job: {job.absolute_id}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# Workspace: {workspace}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        for step in job.steps:
            name = step.name
            script, missing = expand(step.script, params)
            if missing:
                logger.warning(
                    "Step '%s' of job %s references undefined params: %s",
                    name,
                    job.absolute_id,
                    ", ".join(sorted(missing)),
                )

            cwd = workspace / step.working_dir if step.working_dir else workspace
            cwd.mkdir(parents=True, exist_ok=True)
            cmd = compose_step_command(shell, script)

            remaining: float | None = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.0)

            log_file.write(f"# Step: {name}\n")
            log_file.write(f"# Command: {shlex.join(cmd)}\n")
            log_file.flush()
            logger.debug("Executing step '%s' in %s", name, cwd)

            try:
                result = subprocess.run(
                    cmd,
                    cwd=cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=remaining,
                    env=env,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                error_message = (
                    f"Run timed out after {timeout} seconds in step '{name}'"
                )
                log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
                logger.error("%s. See log: %s", error_message, log_path)
                raise RunExecutionError(
                    error_message,
                    exit_code=-1,
                    code="run_timeout",
                ) from e
            except OSError as e:
                error_message = f"Failed to execute step '{name}': {e}"
                logger.error(error_message)
                raise RunExecutionError(
                    error_message,
                    exit_code=None,
                    code="execution_error",
                ) from e

            steps_run.append(name)
            exit_code = result.returncode
            log_file.write(f"\n# Step '{name}' exit code: {exit_code}\n\n")
            log_file.flush()

            if exit_code != 0:
                failed_step = name
                error_message = f"Step '{name}' failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)
                break

        finished_at = datetime.now(timezone.utc)
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return RunResult(
        success=failed_step is None,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        steps_run=steps_run,
        failed_step=failed_step,
        error_message=error_message,
    )


__all__ = [
    "LOG_FILENAME",
    "RunExecutionError",
    "RunResult",
    "build_environment",
    "compose_step_command",
    "run_steps",
]
