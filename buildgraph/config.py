"""Configuration settings for buildgraph.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_workspace_dir() -> Path:
    """Return the default root of job workspaces."""
    return Path.home() / ".local" / "share" / "buildgraph" / "workspaces"


def _default_artifacts_dir() -> Path:
    """Return the default root of run output areas."""
    return Path.home() / ".local" / "share" / "buildgraph" / "artifacts"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "buildgraph" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDGRAPH_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDGRAPH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    workspace_dir: Path = Field(
        default_factory=_default_workspace_dir,
        description="Root directory for persistent job workspaces",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for published run artifacts",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    pipeline_path: Path = Field(
        default=Path("buildgraph.yaml"),
        description="Pipeline configuration file or directory",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    shell: str = Field(
        default="/bin/sh",
        description="Shell used to execute job steps",
    )

    # Concurrency
    max_concurrent_runs: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum job runs executing at the same time",
    )

    # Timeouts (in seconds)
    run_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for the produce step of a single run",
    )
    lock_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout waiting for a job workspace lock",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
