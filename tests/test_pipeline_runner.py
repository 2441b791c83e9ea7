"""Tests for pipeline/runner.py module."""

import pytest

from buildgraph.jobs.schema import BuildJobSchema
from buildgraph.pipeline.runner import (
    RunExecutionError,
    build_environment,
    compose_step_command,
    run_steps,
)


def _job(*steps, **kwargs) -> BuildJobSchema:
    data = {"id": "lib", "steps": [dict(s) for s in steps]}
    data.update(kwargs)
    return BuildJobSchema.model_validate(data)


class TestComposeStepCommand:
    """Tests for compose_step_command function."""

    def test_shell_command(self):
        """Scripts should run through the shell with -c."""
        assert compose_step_command("/bin/sh", "make all") == [
            "/bin/sh",
            "-c",
            "make all",
        ]


class TestBuildEnvironment:
    """Tests for build_environment function."""

    def test_env_params_and_ids(self, monkeypatch):
        """env.* params and run identity should be exported."""
        monkeypatch.setenv("INHERITED", "yes")
        env = build_environment("P_lib", 12, {"env.CC": "clang", "mode": "x"})
        assert env["CC"] == "clang"
        assert env["BUILDGRAPH_JOB_ID"] == "P_lib"
        assert env["BUILDGRAPH_RUN_ID"] == "12"
        assert env["INHERITED"] == "yes"
        assert "mode" not in env

    def test_without_run_id(self, monkeypatch):
        """The run id should be omitted when unknown."""
        monkeypatch.delenv("BUILDGRAPH_RUN_ID", raising=False)
        env = build_environment("lib", None, {})
        assert env["BUILDGRAPH_JOB_ID"] == "lib"
        assert "BUILDGRAPH_RUN_ID" not in env


class TestRunSteps:
    """Tests for run_steps function."""

    def test_successful_steps(self, tmp_path):
        """Steps should run in order in the workspace."""
        job = _job(
            {"name": "first", "script": "echo one > out.txt"},
            {"name": "second", "script": "echo two >> out.txt"},
        )
        workspace = tmp_path / "ws"
        log_path = tmp_path / "run" / "run.log"

        result = run_steps(job, workspace, log_path, {}, run_id=1)

        assert result.success
        assert result.exit_code == 0
        assert result.steps_run == ["first", "second"]
        assert (workspace / "out.txt").read_text() == "one\ntwo\n"
        log = log_path.read_text()
        assert "# Job: lib" in log
        assert "# Step: second" in log

    def test_no_steps(self, tmp_path):
        """A job without steps should succeed trivially."""
        result = run_steps(_job(), tmp_path / "ws", tmp_path / "run.log", {})
        assert result.success
        assert result.steps_run == []

    def test_param_expansion_and_env(self, tmp_path):
        """Scripts should see expanded %refs% and env params."""
        job = _job(
            {"name": "write", "script": 'echo "%version% $CC" > out.txt'},
        )
        workspace = tmp_path / "ws"
        params = {"version": "1.2", "env.CC": "gcc"}

        result = run_steps(job, workspace, tmp_path / "run.log", params)

        assert result.success
        assert (workspace / "out.txt").read_text() == "1.2 gcc\n"

    def test_working_dir(self, tmp_path):
        """Steps with a working dir should run inside it."""
        job = _job({"name": "pwd", "script": "pwd > here.txt", "workingDir": "sub"})
        workspace = tmp_path / "ws"

        run_steps(job, workspace, tmp_path / "run.log", {})

        assert (workspace / "sub" / "here.txt").exists()

    def test_failing_step_stops_run(self, tmp_path):
        """The first failing step should stop the remaining steps."""
        job = _job(
            {"name": "ok", "script": "true"},
            {"name": "broken", "script": "exit 3"},
            {"name": "never", "script": "touch never.txt"},
        )
        workspace = tmp_path / "ws"

        result = run_steps(job, workspace, tmp_path / "run.log", {})

        assert not result.success
        assert result.exit_code == 3
        assert result.failed_step == "broken"
        assert result.steps_run == ["ok", "broken"]
        assert "exit code 3" in result.error_message
        assert not (workspace / "never.txt").exists()

    def test_timeout(self, tmp_path):
        """Exceeding the timeout should raise RunExecutionError."""
        job = _job({"name": "slow", "script": "sleep 5"})

        with pytest.raises(RunExecutionError) as exc_info:
            run_steps(job, tmp_path / "ws", tmp_path / "run.log", {}, timeout=1)

        assert exc_info.value.code == "run_timeout"
        assert "TIMEOUT" in (tmp_path / "run.log").read_text()

    def test_missing_shell(self, tmp_path):
        """An unusable shell should raise RunExecutionError."""
        job = _job({"name": "x", "script": "true"})

        with pytest.raises(RunExecutionError) as exc_info:
            run_steps(
                job,
                tmp_path / "ws",
                tmp_path / "run.log",
                {},
                shell=str(tmp_path / "no-such-shell"),
            )

        assert exc_info.value.code == "execution_error"
