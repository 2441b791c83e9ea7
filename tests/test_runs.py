"""Tests for run history models and service."""

import pytest

from buildgraph.runs.models import InvalidStateTransitionError, JobRun
from buildgraph.runs.service import (
    RunNotFoundError,
    create_run,
    find_reusable_run,
    get_run,
    get_run_artifacts,
    get_run_or_none,
    list_runs,
    record_artifacts,
    record_dependency,
    run_to_dict,
)
from buildgraph.types import ArtifactInfo, FailureAction, RunState


def _succeeded_run(session, job_id="lib", params_key="sha256:a", trigger_id="t1"):
    run = create_run(session, job_id, params_key, trigger_id=trigger_id)
    run.mark_running()
    run.mark_succeeded()
    session.flush()
    return run


class TestJobRunStateMachine:
    """Tests for JobRun transitions."""

    def test_new_run_is_pending(self, session):
        """Created runs should start pending."""
        run = create_run(session, "lib", "sha256:a", params={"v": "1"})
        assert run.run_state is RunState.PENDING
        assert run.params == {"v": "1"}
        assert not run.is_terminal()

    def test_blocked_path_to_success(self, session):
        """A run should pass through BLOCKED and RUNNING to SUCCESS."""
        run = create_run(session, "app", "sha256:a")
        run.mark_blocked()
        assert run.run_state is RunState.BLOCKED_ON_DEPENDENCY
        run.mark_running()
        assert run.started_at is not None
        run.mark_succeeded()
        assert run.is_succeeded()
        assert run.finished_at is not None

    def test_not_started_records_reason(self, session):
        """NOT_STARTED should store the blocking reason."""
        run = create_run(session, "app", "sha256:a")
        run.mark_blocked()
        run.mark_not_started("dependency_blocked", "lib failed")
        assert run.run_state is RunState.NOT_STARTED
        assert run.error_type == "dependency_blocked"
        assert run.started_at is None
        assert run.is_terminal()

    def test_running_cannot_become_not_started(self, session):
        """A started run can no longer become NOT_STARTED."""
        run = create_run(session, "app", "sha256:a")
        run.mark_running()
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            run.mark_not_started()
        assert exc_info.value.current == "running"
        assert exc_info.value.code == "invalid_state_transition"

    def test_pending_cannot_succeed(self, session):
        """A run must run before it succeeds."""
        run = create_run(session, "app", "sha256:a")
        with pytest.raises(InvalidStateTransitionError):
            run.mark_succeeded()

    def test_terminal_is_final(self, session):
        """Terminal runs should reject further transitions."""
        run = _succeeded_run(session)
        with pytest.raises(InvalidStateTransitionError):
            run.mark_failed("x", "y")

    def test_failed_from_blocked(self, session):
        """A blocked run may fail directly."""
        run = create_run(session, "app", "sha256:a")
        run.mark_blocked()
        run.mark_failed("dependency_failed", "lib failed")
        assert run.run_state is RunState.FAILED
        assert run.error_message == "lib failed"


class TestFindReusableRun:
    """Tests for reuse lookup."""

    def test_latest_successful_match(self, session):
        """Should return the newest successful run with the same key."""
        _succeeded_run(session)
        newer = _succeeded_run(session)
        assert find_reusable_run(session, "lib", "sha256:a").id == newer.id

    def test_ignores_failed_and_other_keys(self, session):
        """Failed runs and other keys should not be reused."""
        failed = create_run(session, "lib", "sha256:a")
        failed.mark_running()
        failed.mark_failed()
        _succeeded_run(session, params_key="sha256:b")
        _succeeded_run(session, job_id="other")
        session.flush()
        assert find_reusable_run(session, "lib", "sha256:a") is None


class TestRecording:
    """Tests for dependency and artifact recording."""

    def test_record_dependency(self, session):
        """Dependencies should be linked to the dependent run."""
        target = _succeeded_run(session)
        dependent = create_run(session, "app", "sha256:b")
        record_dependency(
            session,
            dependent,
            "lib",
            target.id,
            reused=True,
            on_dependency_failure=FailureAction.FAIL_TO_START,
            target_state=RunState.SUCCESS,
            artifacts_transferred=2,
        )
        session.flush()
        session.refresh(dependent)

        dep = dependent.dependencies[0]
        assert dep.target_run.id == target.id
        assert dep.reused is True
        assert dep.on_dependency_failure == "FAIL_TO_START"
        assert dep.target_state == "success"
        assert dep.artifacts_transferred == 2

    def test_record_artifacts(self, session):
        """Artifacts should be stored and listed by path."""
        run = _succeeded_run(session)
        record_artifacts(
            session,
            run,
            [
                ArtifactInfo("b.txt", "b.txt", 1, "h1"),
                ArtifactInfo("a.txt", "x/a.txt", 2, "h2"),
            ],
        )
        session.flush()
        session.refresh(run)

        paths = [a.relative_path for a in get_run_artifacts(session, run.id)]
        assert paths == ["b.txt", "x/a.txt"]


class TestQueries:
    """Tests for run queries."""

    def test_get_run(self, session):
        """Should fetch by id or raise RunNotFoundError."""
        run = create_run(session, "lib", "sha256:a")
        assert get_run(session, run.id) is run
        assert get_run_or_none(session, 999) is None
        with pytest.raises(RunNotFoundError) as exc_info:
            get_run(session, 999)
        assert exc_info.value.code == "run_not_found"

    def test_list_runs_filters(self, session):
        """Filters should combine and results come newest first."""
        first = _succeeded_run(session, trigger_id="t1")
        second = _succeeded_run(session, trigger_id="t2")
        create_run(session, "other", "sha256:c", trigger_id="t2")
        session.flush()

        assert [r.id for r in list_runs(session, job_id="lib")] == [
            second.id,
            first.id,
        ]
        assert len(list_runs(session, trigger_id="t2")) == 2
        pending = list_runs(session, state=RunState.PENDING)
        assert [r.job_id for r in pending] == ["other"]
        assert len(list_runs(session, limit=1)) == 1

    def test_run_to_dict(self, session):
        """Serialized runs should include state and dependencies."""
        target = _succeeded_run(session)
        dependent = create_run(session, "app", "sha256:b", trigger_id="t9")
        record_dependency(
            session,
            dependent,
            "lib",
            target.id,
            reused=False,
            on_dependency_failure=FailureAction.IGNORE,
            target_state=RunState.SUCCESS,
        )
        session.flush()
        session.refresh(dependent)

        data = run_to_dict(dependent, include_dependencies=True)

        assert data["state"] == "pending"
        assert data["trigger_id"] == "t9"
        assert data["artifact_count"] == 0
        assert data["dependencies"][0]["target_run_id"] == target.id
        assert data["dependencies"][0]["on_dependency_failure"] == "IGNORE"
        assert "dependencies" not in run_to_dict(dependent)

    def test_repr(self, session):
        """repr should include job and state."""
        run = create_run(session, "lib", "sha256:abcdef")
        assert "job_id='lib'" in repr(run)
        assert isinstance(run, JobRun)
