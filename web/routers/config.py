"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from buildgraph.config import Settings
from web.deps import get_app_settings

router = APIRouter()


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    return {
        "workspace_dir": str(settings.workspace_dir),
        "artifacts_dir": str(settings.artifacts_dir),
        "db_url": settings.db_url,
        "pipeline_path": str(settings.pipeline_path),
        "log_level": settings.log_level,
        "shell": settings.shell,
        "max_concurrent_runs": settings.max_concurrent_runs,
        "run_timeout": settings.run_timeout,
        "lock_timeout": settings.lock_timeout,
    }
