"""Build job configuration module.

This module handles:
- Validation of pipeline files (YAML/JSON)
- The dependency graph over build jobs
- Parameter resolution and reverse dependency parameters
"""

from buildgraph.jobs.graph import (
    CyclicDependencyError,
    DependencyLink,
    DuplicateJobError,
    JobGraph,
    JobNotFoundError,
    UnresolvedDependencyError,
)
from buildgraph.jobs.io import load_job_graph, load_jobs, load_pipeline_file
from buildgraph.jobs.schema import (
    ArtifactDependencySchema,
    BuildJobSchema,
    DependencySchema,
    PipelineSchema,
    SnapshotDependencySchema,
    StepSchema,
)

__all__ = [
    # Schema
    "ArtifactDependencySchema",
    "BuildJobSchema",
    "DependencySchema",
    "PipelineSchema",
    "SnapshotDependencySchema",
    "StepSchema",
    # Graph
    "CyclicDependencyError",
    "DependencyLink",
    "DuplicateJobError",
    "JobGraph",
    "JobNotFoundError",
    "UnresolvedDependencyError",
    # IO
    "load_job_graph",
    "load_jobs",
    "load_pipeline_file",
]

