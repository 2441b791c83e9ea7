"""Artifact publishing, transfer, and manifest generation.

This module handles:
- Publishing files from a job workspace into a run's output area
- Transferring artifacts from a dependency run into a dependent workspace
- Cleaning destination directories before transfer
- Computing checksums and generating run manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from buildgraph.pipeline.rules import (
    ArtifactRule,
    destination_dirs,
    match_rules,
    parse_rules,
)
from buildgraph.types import ArtifactInfo

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class ArtifactNotFoundError(Exception):
    """Raised when a required artifact rule matches no file."""

    def __init__(
        self,
        rules: list[ArtifactRule],
        source_dir: Path,
        code: str = "artifact_not_found",
    ) -> None:
        patterns = ", ".join(str(r) for r in rules)
        super().__init__(
            f"No files matched artifact rule(s) {patterns} in {source_dir}"
        )
        self.rules = rules
        self.source_dir = source_dir
        self.code = code


@dataclass
class TransferResult:
    """Result of an artifact transfer.

    Attributes:
        files: Destination paths relative to the destination root.
        cleaned: Destination directories cleared before the copy.
    """

    files: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _clean_directory(directory: Path) -> None:
    if not directory.exists():
        return
    for child in directory.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def _copy_files(files: dict[str, Path], dest_root: Path) -> list[str]:
    copied = []
    for relative, source in sorted(files.items()):
        destination = dest_root / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        copied.append(relative)
    return copied


def transfer_artifacts(
    source_dir: Path,
    dest_root: Path,
    artifact_rules: str,
    clean_destination: bool = False,
) -> TransferResult:
    """Copy artifacts of a dependency run into a dependent workspace.

    Every required include rule must match at least one file; the check
    happens before anything in the destination is touched.

    Args:
        source_dir: Output directory of the dependency run.
        dest_root: Workspace of the dependent job.
        artifact_rules: Rules selecting files from ``source_dir``.
        clean_destination: Clear each destination directory first.

    Returns:
        TransferResult describing copied files and cleaned directories.

    Raises:
        ArtifactNotFoundError: If a required rule matched no file.
        ArtifactRuleError: If the rules cannot be parsed.
    """
    rules = parse_rules(artifact_rules)
    matched = match_rules(source_dir, rules)

    missing = matched.unmatched()
    if missing:
        raise ArtifactNotFoundError(missing, source_dir)

    result = TransferResult()
    if clean_destination:
        for relative_dir in destination_dirs(rules):
            target = dest_root / relative_dir if relative_dir else dest_root
            _clean_directory(target)
            result.cleaned.append(relative_dir)
            logger.debug("Cleaned destination %s", target)

    dest_root.mkdir(parents=True, exist_ok=True)
    result.files = _copy_files(matched.files, dest_root)
    logger.info(
        "Transferred %d artifact(s) from %s to %s",
        len(result.files),
        source_dir,
        dest_root,
    )
    return result


def publish_artifacts(
    workspace: Path,
    output_dir: Path,
    artifact_rules: str,
) -> list[ArtifactInfo]:
    """Publish files from a job workspace into a run's output area.

    Rules matching nothing are logged, not raised: a run may legitimately
    produce fewer artifacts than its rules allow.

    Args:
        workspace: Job workspace after the produce step.
        output_dir: Output area of the run.
        artifact_rules: The job's publish rules.

    Returns:
        ArtifactInfo for every published file.
    """
    rules = parse_rules(artifact_rules)
    output_dir.mkdir(parents=True, exist_ok=True)
    if not rules:
        return []

    matched = match_rules(workspace, rules)
    for rule in matched.unmatched():
        logger.warning("Artifact rule '%s' matched no files in %s", rule, workspace)

    _copy_files(matched.files, output_dir)
    return discover_artifacts(output_dir)


def discover_artifacts(output_dir: Path) -> list[ArtifactInfo]:
    """Describe the files of a run's output area.

    Args:
        output_dir: Output area of a run.

    Returns:
        ArtifactInfo for each file, manifest excluded, sorted by path.
    """
    if not output_dir.exists():
        logger.warning("Output directory does not exist: %s", output_dir)
        return []

    artifacts: list[ArtifactInfo] = []
    for path in sorted(output_dir.rglob("*")):
        if not path.is_file():
            continue
        relative_path = path.relative_to(output_dir).as_posix()
        if relative_path == MANIFEST_FILENAME:
            continue
        artifacts.append(
            ArtifactInfo(
                filename=path.name,
                relative_path=relative_path,
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(path),
            )
        )
        logger.debug("Discovered artifact: %s", relative_path)

    logger.info("Discovered %d artifacts in %s", len(artifacts), output_dir)
    return artifacts


def generate_manifest(
    artifacts: list[ArtifactInfo],
    run_id: int | None = None,
    job_id: str | None = None,
    params_key: str | None = None,
    params: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Generate a run manifest.

    Args:
        artifacts: Published artifacts.
        run_id: Optional database run ID.
        job_id: Optional absolute job id.
        params_key: Optional params key.
        params: Optional effective parameters.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if run_id is not None:
        manifest["run_id"] = run_id
    if job_id:
        manifest["job_id"] = job_id
    if params_key:
        manifest["params_key"] = params_key
    if params:
        manifest["params"] = params

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
    }
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_FILENAME",
    "ArtifactNotFoundError",
    "TransferResult",
    "compute_file_hash",
    "discover_artifacts",
    "generate_manifest",
    "publish_artifacts",
    "transfer_artifacts",
    "write_manifest",
]
