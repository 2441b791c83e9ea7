"""Pydantic models for build job configuration.

This module defines the Pydantic models that validate pipeline files
(YAML/JSON) before the job graph is built, and that render jobs back
to file formats.

Keys accept both snake_case and the camelCase spelling used by
TeamCity-style configuration (``artifactRules``, ``reuseBuilds``,
``onDependencyFailure``, ``cleanDestination``).
"""

import re
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from buildgraph.types import FailureAction, ReuseBuilds

JOB_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")

# Legacy enum spellings accepted in configuration files
REUSE_BUILDS_ALIASES = {
    "SUCCESSFUL": ReuseBuilds.REUSE_EXISTING,
    "NO": ReuseBuilds.ALWAYS_REBUILD,
}
FAILURE_ACTION_ALIASES = {
    "MAKE_FAILED_TO_START": FailureAction.FAIL_DEPENDENT,
}


def _normalize_enum_name(value: Any, aliases: dict[str, Any]) -> Any:
    if isinstance(value, str):
        name = value.strip().upper().replace("-", "_")
        return aliases.get(name, name)
    return value


def _check_artifact_rules(value: str) -> str:
    # pipeline/__init__ imports the job graph, so import the parser lazily
    from buildgraph.pipeline.rules import parse_rules

    parse_rules(value)
    return value


class ArtifactDependencySchema(BaseModel):
    """Schema for the artifact part of a dependency link.

    Attributes:
        artifact_rules: Rules selecting files from the target run's outputs.
        clean_destination: Clear destination directories before copying.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    artifact_rules: str = Field(
        alias="artifactRules",
        min_length=1,
        description="Artifact rules (pattern[ => destination] per line)",
    )
    clean_destination: bool = Field(
        default=False,
        alias="cleanDestination",
        description="Clean destination directories before transfer",
    )

    @field_validator("artifact_rules")
    @classmethod
    def validate_rules_not_blank(cls, v: str) -> str:
        """Validate that at least one rule is present."""
        if not v.strip():
            raise ValueError("artifact_rules must not be blank")
        return _check_artifact_rules(v)


class SnapshotDependencySchema(BaseModel):
    """Schema for the snapshot part of a dependency link.

    Attributes:
        reuse_builds: Whether a previous successful run may be reused.
        on_dependency_failure: Policy applied when the target run fails.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    reuse_builds: ReuseBuilds = Field(
        default=ReuseBuilds.REUSE_EXISTING,
        alias="reuseBuilds",
    )
    on_dependency_failure: FailureAction = Field(
        default=FailureAction.FAIL_TO_START,
        alias="onDependencyFailure",
    )

    @field_validator("reuse_builds", mode="before")
    @classmethod
    def normalize_reuse_builds(cls, v: Any) -> Any:
        """Accept lowercase values and legacy spellings."""
        return _normalize_enum_name(v, REUSE_BUILDS_ALIASES)

    @field_validator("on_dependency_failure", mode="before")
    @classmethod
    def normalize_failure_action(cls, v: Any) -> Any:
        """Accept lowercase values and legacy spellings."""
        return _normalize_enum_name(v, FAILURE_ACTION_ALIASES)


class DependencySchema(BaseModel):
    """Schema for a dependency link declared by a job.

    Attributes:
        target: Relative or absolute id of the job depended upon.
        snapshot: Snapshot reuse and failure propagation settings.
        artifacts: Optional artifact transfer settings.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    target: Annotated[
        str, Field(description="Target job id", min_length=1, max_length=255)
    ]
    snapshot: SnapshotDependencySchema = Field(
        default_factory=SnapshotDependencySchema
    )
    artifacts: ArtifactDependencySchema | None = Field(default=None)


class StepSchema(BaseModel):
    """Schema for one step of a job's produce step.

    Attributes:
        name: Step name shown in logs.
        script: Shell script executed by the configured shell.
        working_dir: Optional directory relative to the job workspace.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Annotated[str, Field(min_length=1, max_length=255)]
    script: Annotated[str, Field(min_length=1)]
    working_dir: str | None = Field(default=None, alias="workingDir")

    @field_validator("working_dir")
    @classmethod
    def validate_working_dir(cls, v: str | None) -> str | None:
        """Validate working_dir stays inside the workspace."""
        if v is None:
            return v
        if v.startswith("/") or ".." in v.replace("\\", "/").split("/"):
            raise ValueError("working_dir must be a relative path inside the workspace")
        return v


class BuildJobSchema(BaseModel):
    """Complete build job schema.

    Attributes:
        id: Job id, unique inside its project.
        project: Optional project id; the absolute id is ``<project>_<id>``.
        name: Human-readable name.
        description: Optional longer description.
        params: Parameter name to value mapping.
        artifact_rules: Rules publishing files from the workspace.
        steps: Produce step commands, executed in order.
        dependencies: Dependency links to other jobs.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Annotated[str, Field(min_length=1, max_length=255)]
    project: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None)
    params: dict[str, str] = Field(default_factory=dict)
    artifact_rules: str = Field(default="", alias="artifactRules")
    steps: list[StepSchema] = Field(default_factory=list)
    dependencies: list[DependencySchema] = Field(default_factory=list)

    @field_validator("id", "project")
    @classmethod
    def validate_id(cls, v: str | None) -> str | None:
        """Validate ids match the safe pattern."""
        if v is None:
            return v
        if not JOB_ID_PATTERN.match(v):
            raise ValueError(
                f"id must match pattern {JOB_ID_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("artifact_rules")
    @classmethod
    def validate_artifact_rules(cls, v: str) -> str:
        """Validate that publish rules parse."""
        return _check_artifact_rules(v)

    @field_validator("params", mode="before")
    @classmethod
    def stringify_params(cls, v: Any) -> Any:
        """Coerce scalar YAML values (numbers, booleans) to strings."""
        if not isinstance(v, dict):
            return v
        result: dict[Any, Any] = {}
        for key, value in v.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            elif isinstance(value, int | float):
                value = str(value)
            elif value is None:
                value = ""
            result[key] = value
        return result

    @field_validator("params")
    @classmethod
    def validate_param_names(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate parameter names are non-empty and whitespace free."""
        for name in v:
            if not name or any(c.isspace() for c in name):
                raise ValueError(f"invalid parameter name: '{name}'")
        return v

    @field_validator("dependencies")
    @classmethod
    def validate_unique_targets(
        cls, v: list[DependencySchema]
    ) -> list[DependencySchema]:
        """Validate a job does not declare the same target twice."""
        seen: set[str] = set()
        for dep in v:
            if dep.target in seen:
                raise ValueError(f"duplicate dependency on '{dep.target}'")
            seen.add(dep.target)
        return v

    @property
    def absolute_id(self) -> str:
        """Globally unique job id."""
        if self.project:
            return f"{self.project}_{self.id}"
        return self.id

    @property
    def display_name(self) -> str:
        """Name for display, falling back to the id."""
        return self.name or self.id


class PipelineSchema(BaseModel):
    """Schema for a pipeline file.

    Attributes:
        project: Default project for jobs that do not declare one.
        jobs: Build jobs defined in this file.
    """

    model_config = ConfigDict(extra="forbid")

    project: str | None = Field(default=None, max_length=255)
    jobs: list[BuildJobSchema] = Field(default_factory=list)

    @field_validator("project")
    @classmethod
    def validate_project(cls, v: str | None) -> str | None:
        """Validate project id matches the safe pattern."""
        if v is not None and not JOB_ID_PATTERN.match(v):
            raise ValueError(
                f"project must match pattern {JOB_ID_PATTERN.pattern}, got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def apply_default_project(self) -> "PipelineSchema":
        """Give jobs without a project the file-level project."""
        if self.project:
            for job in self.jobs:
                if job.project is None:
                    job.project = self.project
        return self


class PipelineFileResult(BaseModel):
    """Result of validating a single pipeline file.

    Attributes:
        path: File that was validated.
        success: Whether the file is valid.
        job_ids: Absolute ids of jobs defined in the file.
        error: Error message if validation failed.
    """

    model_config = ConfigDict(extra="forbid")

    path: str
    success: bool
    job_ids: list[str] = Field(default_factory=list)
    error: str | None = None


class PipelineValidationResult(BaseModel):
    """Result of validating a directory of pipeline files."""

    model_config = ConfigDict(extra="forbid")

    total: int
    succeeded: int
    failed: int
    results: list[PipelineFileResult]


__all__ = [
    "JOB_ID_PATTERN",
    "ArtifactDependencySchema",
    "BuildJobSchema",
    "DependencySchema",
    "PipelineFileResult",
    "PipelineSchema",
    "PipelineValidationResult",
    "SnapshotDependencySchema",
    "StepSchema",
]
