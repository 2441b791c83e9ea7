"""Params key computation for snapshot reuse.

This module handles:
- Canonical input snapshot creation from a job and its effective params
- Deterministic hash computation over normalized inputs

Two runs with the same params key are interchangeable for a
``REUSE_EXISTING`` dependency link.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from buildgraph.jobs.schema import BuildJobSchema

# Schema version for params key format; bump when the format changes
PARAMS_KEY_SCHEMA_VERSION = "1"


@dataclass
class RunInputs:
    """Canonical representation of all inputs of a run.

    Attributes:
        schema_version: Version of the params key schema.
        job_id: Absolute job id.
        params: Effective parameter values.
        steps: Normalized produce steps.
        artifact_rules: Publish rules of the job.
    """

    schema_version: str = PARAMS_KEY_SCHEMA_VERSION
    job_id: str = ""
    params: dict[str, str] = field(default_factory=dict)
    steps: list[dict[str, Any]] = field(default_factory=list)
    artifact_rules: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def create_run_inputs(
    job: BuildJobSchema,
    params: Mapping[str, str],
) -> RunInputs:
    """Create canonical run inputs from a job and its effective params.

    Args:
        job: Job definition.
        params: Effective (resolved) parameter values.

    Returns:
        RunInputs instance with all normalized inputs.
    """
    return RunInputs(
        schema_version=PARAMS_KEY_SCHEMA_VERSION,
        job_id=job.absolute_id,
        params=dict(sorted(params.items())),
        steps=[
            {"name": s.name, "script": s.script, "working_dir": s.working_dir}
            for s in job.steps
        ],
        artifact_rules=job.artifact_rules.strip(),
    )


def compute_params_key(inputs: RunInputs) -> str:
    """Compute a params key hash from run inputs.

    Args:
        inputs: RunInputs instance.

    Returns:
        Params key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def compute_params_key_for_job(
    job: BuildJobSchema,
    params: Mapping[str, str],
) -> tuple[str, RunInputs]:
    """Compute the params key directly from a job.

    Returns:
        Tuple of (params_key, RunInputs).
    """
    inputs = create_run_inputs(job, params)
    return compute_params_key(inputs), inputs


__all__ = [
    "PARAMS_KEY_SCHEMA_VERSION",
    "RunInputs",
    "compute_params_key",
    "compute_params_key_for_job",
    "create_run_inputs",
]
