"""Build parameter resolution.

This module handles:
- Expanding ``%name%`` references in parameter values and scripts
- Reverse dependency parameters (``reverse.dep.<job>.<name>``) that a
  dependent job pushes into the parameters of its dependency targets
- Exporting ``env.<NAME>`` parameters as step environment variables
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from buildgraph.jobs.schema import BuildJobSchema

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"%%|%([^%\s]+)%")
REVERSE_DEP_PREFIX = "reverse.dep."
ENV_PREFIX = "env."


@dataclass
class ResolvedParams:
    """Parameters with all resolvable references expanded.

    Attributes:
        values: Parameter name to expanded value.
        unresolved: Names referenced but not defined (or cyclic).
    """

    values: dict[str, str] = field(default_factory=dict)
    unresolved: set[str] = field(default_factory=set)


def find_references(value: str) -> set[str]:
    """Return the parameter names referenced by a value."""
    return {m.group(1) for m in REFERENCE_PATTERN.finditer(value) if m.group(1)}


def expand(value: str, params: Mapping[str, str]) -> tuple[str, set[str]]:
    """Expand ``%name%`` references in a value against known params.

    Unknown references are left verbatim; ``%%`` becomes a single ``%``.

    Args:
        value: Text to expand.
        params: Already resolved parameter values.

    Returns:
        Tuple of (expanded text, names that could not be resolved).
    """
    missing: set[str] = set()

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name is None:
            return "%"
        if name in params:
            return params[name]
        missing.add(name)
        return match.group(0)

    return REFERENCE_PATTERN.sub(_replace, value), missing


def resolve_params(params: Mapping[str, str]) -> ResolvedParams:
    """Resolve references between parameters.

    Args:
        params: Raw parameter values.

    Returns:
        ResolvedParams with expanded values and unresolved names.
    """
    resolved: dict[str, str] = {}
    unresolved: set[str] = set()

    def _resolve(name: str, stack: tuple[str, ...]) -> str | None:
        if name in resolved:
            return resolved[name]
        if name not in params or name in stack:
            unresolved.add(name)
            return None

        raw = params[name]
        known: dict[str, str] = {}
        for ref in find_references(raw):
            value = _resolve(ref, stack + (name,))
            if value is not None:
                known[ref] = value

        expanded, missing = expand(raw, known)
        unresolved.update(missing)
        resolved[name] = expanded
        return expanded

    for name in params:
        _resolve(name, ())

    if unresolved:
        logger.debug("Unresolved parameter references: %s", sorted(unresolved))
    return ResolvedParams(values=resolved, unresolved=unresolved)


def effective_params(
    job: BuildJobSchema,
    overrides: Mapping[str, str] | None = None,
) -> ResolvedParams:
    """Compute the effective parameters of a job.

    Args:
        job: Job definition.
        overrides: Values replacing the job's own (e.g. from dependents).

    Returns:
        ResolvedParams for the merged parameter set.
    """
    merged = dict(job.params)
    if overrides:
        merged.update(overrides)
    return resolve_params(merged)


def reverse_overrides(
    dependent_values: Mapping[str, str],
    target: BuildJobSchema,
) -> dict[str, str]:
    """Collect parameters a dependent pushes into one of its targets.

    ``reverse.dep.<target>.<name>`` (relative or absolute target id) takes
    precedence over ``reverse.dep.*.<name>``.

    Args:
        dependent_values: Resolved parameter values of the dependent job.
        target: The dependency target job.

    Returns:
        Parameter overrides for the target.
    """
    wildcard: dict[str, str] = {}
    specific: dict[str, str] = {}
    target_prefixes = {
        f"{REVERSE_DEP_PREFIX}{target.id}.",
        f"{REVERSE_DEP_PREFIX}{target.absolute_id}.",
    }
    wildcard_prefix = f"{REVERSE_DEP_PREFIX}*."

    for key, value in dependent_values.items():
        if key.startswith(wildcard_prefix):
            name = key[len(wildcard_prefix) :]
            if name:
                wildcard[name] = value
            continue
        for prefix in target_prefixes:
            if key.startswith(prefix) and len(key) > len(prefix):
                specific[key[len(prefix) :]] = value
                break

    return wildcard | specific


def env_from_params(values: Mapping[str, str]) -> dict[str, str]:
    """Extract ``env.<NAME>`` parameters as environment variables."""
    return {
        key[len(ENV_PREFIX) :]: value
        for key, value in values.items()
        if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX)
    }


__all__ = [
    "ENV_PREFIX",
    "REFERENCE_PATTERN",
    "REVERSE_DEP_PREFIX",
    "ResolvedParams",
    "effective_params",
    "env_from_params",
    "expand",
    "find_references",
    "resolve_params",
    "reverse_overrides",
]
