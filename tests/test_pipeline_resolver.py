"""Tests for pipeline/resolver.py module."""

import pytest

from buildgraph.jobs.graph import JobNotFoundError
from buildgraph.jobs.params import effective_params
from buildgraph.pipeline.cache_key import compute_params_key_for_job
from buildgraph.pipeline.resolver import DependencyResolver, PlanAction, resolve_plan
from buildgraph.runs.service import create_run


def _dep(target, reuse="REUSE_EXISTING", on_failure="FAIL_TO_START"):
    return {
        "target": target,
        "snapshot": {"reuseBuilds": reuse, "onDependencyFailure": on_failure},
    }


def _record_success(session, graph, job_ref, overrides=None):
    job = graph.get(job_ref)
    values = effective_params(job, overrides).values
    params_key, _ = compute_params_key_for_job(job, values)
    run = create_run(session, job.absolute_id, params_key, params=values)
    run.mark_running()
    run.mark_succeeded()
    session.flush()
    return run


def _level_jobs(plan):
    return [[plan.nodes[key].job_id for key in level] for level in plan.levels]


class TestSingleJob:
    """Tests for jobs without dependency links."""

    def test_single_step_plan(self, session, make_graph):
        """A job without dependencies should be a one-stage plan."""
        graph = make_graph({"id": "solo"})

        plan = resolve_plan(session, graph, "solo")

        assert plan.steps == 1
        assert [n.job_id for n in plan.builds] == ["solo"]
        assert plan.reused == []
        assert plan.root_node.job_id == "solo"

    def test_root_is_always_built(self, session, make_graph):
        """The triggered job should build even with a matching history run."""
        graph = make_graph({"id": "solo"})
        _record_success(session, graph, "solo")

        plan = resolve_plan(session, graph, "solo")

        assert plan.root_node.action is PlanAction.BUILD

    def test_unknown_job(self, session, make_graph):
        """Unknown jobs should raise JobNotFoundError."""
        graph = make_graph({"id": "solo"})
        with pytest.raises(JobNotFoundError):
            resolve_plan(session, graph, "missing")

    def test_param_overrides(self, session, make_graph):
        """Overrides should reach the root's effective params."""
        graph = make_graph({"id": "solo", "params": {"v": "1", "tag": "v%v%"}})

        plan = resolve_plan(session, graph, "solo", {"v": "2"})

        assert plan.root_node.params == {"v": "2", "tag": "v2"}


class TestReusePolicies:
    """Tests for REUSE_EXISTING and ALWAYS_REBUILD links."""

    def test_no_history_builds_dependency(self, session, make_graph):
        """Without history the dependency should be built first."""
        graph = make_graph({"id": "lib"}, {"id": "app", "dependencies": [_dep("lib")]})

        plan = resolve_plan(session, graph, "app")

        assert _level_jobs(plan) == [["lib"], ["app"]]

    def test_reuse_existing_skips_successful_run(self, session, make_graph):
        """REUSE_EXISTING with a matching successful run should not schedule it."""
        graph = make_graph({"id": "lib"}, {"id": "app", "dependencies": [_dep("lib")]})
        previous = _record_success(session, graph, "lib")

        plan = resolve_plan(session, graph, "app")

        assert _level_jobs(plan) == [["app"]]
        [reused] = plan.reused
        assert reused.job_id == "lib"
        assert reused.reused_run_id == previous.id
        assert plan.root_node.dependencies[0].node_key == reused.key

    def test_always_rebuild_schedules_run(self, session, make_graph):
        """ALWAYS_REBUILD should build even with a matching successful run."""
        graph = make_graph(
            {"id": "lib"},
            {"id": "app", "dependencies": [_dep("lib", reuse="ALWAYS_REBUILD")]},
        )
        _record_success(session, graph, "lib")

        plan = resolve_plan(session, graph, "app")

        assert _level_jobs(plan) == [["lib"], ["app"]]
        assert plan.reused == []

    def test_failed_history_is_not_reused(self, session, make_graph):
        """Only successful runs should be reused."""
        graph = make_graph({"id": "lib"}, {"id": "app", "dependencies": [_dep("lib")]})
        job = graph.get("lib")
        params_key, _ = compute_params_key_for_job(job, {})
        failed = create_run(session, "lib", params_key)
        failed.mark_running()
        failed.mark_failed()
        session.flush()

        plan = resolve_plan(session, graph, "app")

        assert _level_jobs(plan) == [["lib"], ["app"]]

    def test_reverse_params_change_reuse_key(self, session, make_graph):
        """Reverse dependency params should select a different snapshot."""
        graph = make_graph(
            {"id": "lib", "params": {"mode": "debug"}},
            {
                "id": "app",
                "params": {"reverse.dep.lib.mode": "release"},
                "dependencies": [_dep("lib")],
            },
        )
        _record_success(session, graph, "lib")

        plan = resolve_plan(session, graph, "app")

        lib_node = plan.builds[0]
        assert lib_node.job_id == "lib"
        assert lib_node.params == {"mode": "release"}

    def test_reused_node_dependencies_not_expanded(self, session, make_graph):
        """A reused run should not pull its own dependencies into the plan."""
        graph = make_graph(
            {"id": "base"},
            {"id": "lib", "dependencies": [_dep("base")]},
            {"id": "app", "dependencies": [_dep("lib")]},
        )
        _record_success(session, graph, "lib")

        plan = resolve_plan(session, graph, "app")

        assert sorted(n.job_id for n in plan.nodes.values()) == ["app", "lib"]


class TestDeduplication:
    """Tests for shared dependency targets."""

    def test_diamond_builds_shared_target_once(self, session, make_graph):
        """A target reached twice with the same params should be one node."""
        graph = make_graph(
            {"id": "base"},
            {"id": "core", "dependencies": [_dep("base")]},
            {"id": "ui", "dependencies": [_dep("base")]},
            {"id": "app", "dependencies": [_dep("core"), _dep("ui")]},
        )

        plan = DependencyResolver(graph, session).resolve("app")

        assert _level_jobs(plan) == [["base"], ["core", "ui"], ["app"]]
        assert len(plan.nodes) == 4

    def test_different_reverse_params_give_two_nodes(self, session, make_graph):
        """The same job with different effective params should run twice."""
        graph = make_graph(
            {"id": "base", "params": {"mode": "debug"}},
            {
                "id": "core",
                "params": {"reverse.dep.*.mode": "release"},
                "dependencies": [_dep("base")],
            },
            {"id": "ui", "dependencies": [_dep("base")]},
            {"id": "app", "dependencies": [_dep("core"), _dep("ui")]},
        )

        plan = resolve_plan(session, graph, "app")

        base_nodes = [n for n in plan.builds if n.job_id == "base"]
        assert sorted(n.params["mode"] for n in base_nodes) == ["debug", "release"]

    def test_forced_link_upgrades_reused_node(self, session, make_graph):
        """An ALWAYS_REBUILD link should turn an earlier reuse into a build."""
        graph = make_graph(
            {"id": "base"},
            {"id": "a", "dependencies": [_dep("base")]},
            {"id": "b", "dependencies": [_dep("base", reuse="ALWAYS_REBUILD")]},
            {"id": "app", "dependencies": [_dep("a"), _dep("b")]},
        )
        _record_success(session, graph, "base")

        plan = resolve_plan(session, graph, "app")

        assert _level_jobs(plan) == [["base"], ["a", "b"], ["app"]]
        assert plan.reused == []
        base = plan.builds[0]
        assert base.reused_run_id is None


class TestPlanSerialization:
    """Tests for plan dictionaries."""

    def test_to_dict(self, session, make_graph):
        """to_dict should expose stages and link settings."""
        graph = make_graph(
            {"id": "lib"},
            {"id": "app", "dependencies": [_dep("lib", on_failure="ADD_PROBLEM")]},
        )

        data = resolve_plan(session, graph, "app").to_dict()

        assert data["steps"] == 2
        assert data["levels"] == [["lib"], ["app"]]
        app = next(n for n in data["nodes"] if n["job_id"] == "app")
        assert app["action"] == "build"
        assert app["dependencies"][0]["on_dependency_failure"] == "ADD_PROBLEM"
        assert app["dependencies"][0]["reuse_builds"] == "REUSE_EXISTING"
