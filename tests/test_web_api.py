"""Tests for FastAPI web API.

Uses TestClient to test all endpoints.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from buildgraph import __version__
from web.app import create_app
from web.deps import get_app_settings
from web.routers import config, health, jobs, runs

PIPELINE_YAML = """\
jobs:
  - id: lib
    steps:
      - name: build
        script: echo v1 > lib.txt
    artifactRules: lib.txt
  - id: app
    params:
      mode: debug
    dependencies:
      - target: lib
        artifacts:
          artifactRules: lib.txt => deps
  - id: broken
    steps:
      - name: fail
        script: exit 1
  - id: blocked
    dependencies:
      - target: broken
"""


def create_test_app() -> FastAPI:
    """Create a minimal FastAPI app for testing without lifespan."""
    application = FastAPI(title="Build Graph API", version=__version__)
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])
    return application


def response_json(client, url, status_code=200):
    response = client.get(url)
    assert response.status_code == status_code, response.text
    return response.json()


@pytest.fixture
def client(session_factory, settings):
    """Create a test client with a fresh database and pipeline in tmp_path."""
    settings.pipeline_path.write_text(PIPELINE_YAML)
    app = create_test_app()
    app.state.session_factory = session_factory
    app.dependency_overrides[get_app_settings] = lambda: settings

    with TestClient(app) as test_client:
        yield test_client


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health(self, client):
        """Health endpoint should report the database and pipeline file."""
        data = response_json(client, "/health")
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["database"] == "reachable"
        assert data["pipeline_found"] is True

    def test_health_missing_pipeline(self, client, settings):
        """A missing pipeline file should be reported without degrading."""
        settings.pipeline_path.unlink()
        data = response_json(client, "/health")
        assert data["status"] == "ok"
        assert data["pipeline"] == str(settings.pipeline_path)
        assert data["pipeline_found"] is False

    def test_root(self, client):
        """Root endpoint should return API info."""
        assert response_json(client, "/")["name"] == "Build Graph API"

    def test_app_factory_routes(self):
        """The application factory should mount every router."""
        paths = {route.path for route in create_app().routes}
        assert {"/health", "/config", "/jobs", "/jobs/{job_id}/plan", "/runs"} <= paths


class TestConfigEndpoint:
    """Test config endpoint."""

    def test_get_config(self, client, settings):
        """Config endpoint should return effective settings."""
        data = response_json(client, "/config")
        assert data["db_url"] == settings.db_url
        assert data["max_concurrent_runs"] == 2


class TestJobsEndpoints:
    """Test job endpoints."""

    def test_list_jobs(self, client):
        """Jobs should be listed in topological order with links."""
        data = response_json(client, "/jobs")
        assert [j["id"] for j in data] == ["broken", "lib", "app", "blocked"]
        lib = next(j for j in data if j["id"] == "lib")
        assert lib["dependents"] == ["app"]

    def test_get_job(self, client):
        """A job should be returned with its absolute id."""
        data = response_json(client, "/jobs/app")
        assert data["absolute_id"] == "app"
        assert data["params"] == {"mode": "debug"}

    def test_get_unknown_job(self, client):
        """Unknown jobs should return 404."""
        data = response_json(client, "/jobs/missing", status_code=404)
        assert data["detail"]["code"] == "job_not_found"

    def test_plan(self, client):
        """The plan endpoint should return stages."""
        data = response_json(client, "/jobs/app/plan?param=mode=release")
        assert data["levels"] == [["lib"], ["app"]]
        root = next(n for n in data["nodes"] if n["job_id"] == "app")
        assert root["params"]["mode"] == "release"

    def test_plan_invalid_param(self, client):
        """Malformed overrides should return 400."""
        data = response_json(client, "/jobs/app/plan?param=broken", status_code=400)
        assert data["detail"]["code"] == "invalid_param"

    def test_missing_pipeline(self, client, settings):
        """A missing pipeline file should return 503."""
        settings.pipeline_path.unlink()
        data = response_json(client, "/jobs", status_code=503)
        assert data["detail"]["code"] == "pipeline_not_found"

    def test_cyclic_pipeline(self, client, settings):
        """A cyclic pipeline should return 503 with the cycle code."""
        settings.pipeline_path.write_text(
            "jobs:\n"
            "  - id: a\n    dependencies: [{target: b}]\n"
            "  - id: b\n    dependencies: [{target: a}]\n"
        )
        data = response_json(client, "/jobs", status_code=503)
        assert data["detail"]["code"] == "dependency_cycle"


class TestRunsEndpoints:
    """Test run endpoints."""

    def test_list_runs_empty(self, client):
        """Run list should be empty without history."""
        assert response_json(client, "/runs") == []

    def test_list_runs_invalid_state(self, client):
        """Invalid state filters should return 400."""
        data = response_json(client, "/runs?state=bogus", status_code=400)
        assert data["detail"]["code"] == "invalid_state"

    def test_get_unknown_run(self, client):
        """Unknown runs should return 404."""
        data = response_json(client, "/runs/999", status_code=404)
        assert data["detail"]["code"] == "run_not_found"
        response_json(client, "/runs/999/artifacts", status_code=404)

    def test_trigger_success(self, client):
        """Triggering a job should run its dependency chain."""
        response = client.post("/runs", json={"job_id": "app"})
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["success"] is True
        assert [r["job_id"] for r in data["runs"]] == ["lib", "app"]

        lib_run = data["runs"][0]["run_id"]
        artifacts = response_json(client, f"/runs/{lib_run}/artifacts")
        assert [a["relative_path"] for a in artifacts] == ["lib.txt"]

        app_run = response_json(client, f"/runs/{data['root']['run_id']}")
        assert app_run["dependencies"][0]["artifacts_transferred"] == 1

    def test_trigger_not_started(self, client):
        """A blocked dependent should be reported as not_started."""
        response = client.post("/runs", json={"job_id": "blocked"})
        data = response.json()
        assert data["success"] is False
        assert data["root"]["state"] == "not_started"
        assert data["counts"]["failed"] == 1
        assert data["counts"]["not_started"] == 1

        listed = response_json(client, "/runs?state=not_started")
        assert [r["job_id"] for r in listed] == ["blocked"]

    def test_trigger_with_params(self, client):
        """Trigger params should override job params."""
        response = client.post(
            "/runs", json={"job_id": "app", "params": {"mode": "release"}}
        )
        data = response.json()
        run = response_json(client, f"/runs/{data['root']['run_id']}")
        assert run["params"]["mode"] == "release"

    def test_trigger_unknown_job(self, client):
        """Triggering an unknown job should return 404."""
        response = client.post("/runs", json={"job_id": "missing"})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "job_not_found"

    def test_trigger_validation(self, client):
        """An empty job id should be rejected."""
        response = client.post("/runs", json={"job_id": ""})
        assert response.status_code == 422
