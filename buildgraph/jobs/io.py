"""Pipeline configuration loading and export.

This module loads build job definitions from YAML/JSON files (a single
file or a directory of files) and renders jobs back to YAML/JSON.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from buildgraph.jobs.graph import JobGraph
from buildgraph.jobs.schema import (
    BuildJobSchema,
    PipelineFileResult,
    PipelineSchema,
    PipelineValidationResult,
)

PIPELINE_SUFFIXES = (".yaml", ".yml", ".json")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_pipeline_data(data: dict[str, Any]) -> PipelineSchema:
    """Parse and validate pipeline data using the schema.

    Args:
        data: Dictionary containing pipeline data.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return PipelineSchema.model_validate(data)


def load_pipeline_file(path: Path) -> PipelineSchema:
    """Load and validate a single pipeline file (YAML or JSON).

    Args:
        path: Path to the pipeline file.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )
    return parse_pipeline_data(data)


def _pipeline_files(directory: Path) -> list[Path]:
    return sorted(
        p
        for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in PIPELINE_SUFFIXES
    )


def load_jobs(path: Path) -> list[BuildJobSchema]:
    """Load all job definitions from a file or a directory of files.

    Args:
        path: Pipeline file, or directory containing pipeline files.

    Returns:
        Job definitions in file order.

    Raises:
        FileNotFoundError: If the path does not exist.
        pydantic.ValidationError: If a file does not match schema.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline path not found: {path}")

    if path.is_dir():
        jobs: list[BuildJobSchema] = []
        for file_path in _pipeline_files(path):
            jobs.extend(load_pipeline_file(file_path).jobs)
        return jobs

    return list(load_pipeline_file(path).jobs)


def load_job_graph(path: Path) -> JobGraph:
    """Load job definitions and build the validated dependency graph.

    Args:
        path: Pipeline file, or directory containing pipeline files.

    Returns:
        JobGraph over all loaded jobs.

    Raises:
        FileNotFoundError: If the path does not exist.
        pydantic.ValidationError: If a file does not match schema.
        UnresolvedDependencyError: If a link target cannot be resolved.
        CyclicDependencyError: If links form a cycle.
    """
    return JobGraph(load_jobs(path))


def validate_pipeline_directory(directory: Path) -> PipelineValidationResult:
    """Validate every pipeline file of a directory independently.

    Args:
        directory: Directory to scan.

    Returns:
        PipelineValidationResult with per-file results.

    Raises:
        FileNotFoundError: If directory does not exist.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Directory not found: {directory}")

    results: list[PipelineFileResult] = []
    for file_path in _pipeline_files(directory):
        try:
            pipeline = load_pipeline_file(file_path)
            results.append(
                PipelineFileResult(
                    path=str(file_path),
                    success=True,
                    job_ids=[j.absolute_id for j in pipeline.jobs],
                )
            )
        except ValidationError as e:
            results.append(
                PipelineFileResult(
                    path=str(file_path),
                    success=False,
                    error=f"Validation error: {e}",
                )
            )
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            results.append(
                PipelineFileResult(
                    path=str(file_path), success=False, error=f"Parse error: {e}"
                )
            )
        except ValueError as e:
            results.append(
                PipelineFileResult(path=str(file_path), success=False, error=str(e))
            )

    succeeded = sum(1 for r in results if r.success)
    return PipelineValidationResult(
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )


def job_to_dict(job: BuildJobSchema) -> dict[str, Any]:
    """Convert a job to a plain dictionary without unset fields."""
    return job.model_dump(mode="json", exclude_none=True, exclude_defaults=True)


def job_to_yaml_string(job: BuildJobSchema) -> str:
    """Convert a job to a YAML string.

    Args:
        job: Job to convert.

    Returns:
        YAML string representation.
    """
    result: str = yaml.dump(
        job_to_dict(job), default_flow_style=False, allow_unicode=True, sort_keys=False
    )
    return result


def job_to_json_string(job: BuildJobSchema) -> str:
    """Convert a job to a JSON string.

    Args:
        job: Job to convert.

    Returns:
        JSON string representation.
    """
    return json.dumps(job_to_dict(job), indent=2, ensure_ascii=False)


def export_jobs(jobs: list[BuildJobSchema], path: Path) -> None:
    """Export jobs to a pipeline file (YAML or JSON by extension).

    Args:
        jobs: Jobs to write.
        path: Output file path.

    Raises:
        ValueError: If file extension is not supported.
    """
    data = {"jobs": [job_to_dict(j) for j in jobs]}
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                data, f, default_flow_style=False, allow_unicode=True, sort_keys=False
            )
    elif suffix == ".json":
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
    else:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )


__all__ = [
    "PIPELINE_SUFFIXES",
    "export_jobs",
    "job_to_dict",
    "job_to_json_string",
    "job_to_yaml_string",
    "load_job_graph",
    "load_jobs",
    "load_json",
    "load_pipeline_file",
    "load_yaml",
    "parse_pipeline_data",
    "validate_pipeline_directory",
]
