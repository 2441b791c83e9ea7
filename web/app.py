"""FastAPI application for buildgraph.

Routes are thin proxies to the core services in ``buildgraph``; the
run history session factory lives on ``app.state`` and is created by the
lifespan hook.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from buildgraph import __version__
from buildgraph.config import get_settings
from buildgraph.db import create_all_tables, get_engine, get_session_factory
from web.routers import config, health, jobs, runs

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the run history database for the lifetime of the app."""
    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)
    logger.info("Serving pipeline %s", settings.pipeline_path)
    yield
    engine.dispose()


def create_app() -> FastAPI:
    """Build the API application with every router mounted.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Build Graph API",
        description="HTTP API for build jobs, execution plans, runs and artifacts",
        version=__version__,
        lifespan=lifespan,
    )

    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])

    return application


app = create_app()

__all__ = ["app", "create_app", "lifespan"]
