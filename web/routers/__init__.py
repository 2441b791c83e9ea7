"""Router modules for FastAPI web API."""

from web.routers import config, health, jobs, runs

__all__ = ["config", "health", "jobs", "runs"]
