"""Shared type definitions for buildgraph.

This module contains enums, dataclasses, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class RunState(str, Enum):
    """State of a job run."""

    PENDING = "pending"
    BLOCKED_ON_DEPENDENCY = "blocked_on_dependency"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    NOT_STARTED = "not_started"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible from this state."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RunState.SUCCESS, RunState.FAILED, RunState.NOT_STARTED})

# Allowed run state transitions
RUN_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.BLOCKED_ON_DEPENDENCY, RunState.RUNNING}),
    RunState.BLOCKED_ON_DEPENDENCY: frozenset(
        {RunState.RUNNING, RunState.NOT_STARTED, RunState.FAILED}
    ),
    RunState.RUNNING: frozenset({RunState.SUCCESS, RunState.FAILED}),
    RunState.SUCCESS: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.NOT_STARTED: frozenset(),
}


class ReuseBuilds(str, Enum):
    """Snapshot reuse policy of a dependency link."""

    REUSE_EXISTING = "REUSE_EXISTING"
    ALWAYS_REBUILD = "ALWAYS_REBUILD"


class FailureAction(str, Enum):
    """What happens to a dependent run when its dependency did not succeed."""

    FAIL_TO_START = "FAIL_TO_START"
    FAIL_DEPENDENT = "FAIL_DEPENDENT"
    ADD_PROBLEM = "ADD_PROBLEM"
    IGNORE = "IGNORE"


class RuleKind(str, Enum):
    """Kind of an artifact rule line."""

    INCLUDE = "+"
    EXCLUDE = "-"
    OPTIONAL = "?"


@dataclass
class ArtifactInfo:
    """Information about a published artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str


__all__ = [
    "RUN_TRANSITIONS",
    "TERMINAL_STATES",
    "ArtifactInfo",
    "FailureAction",
    "ReuseBuilds",
    "RuleKind",
    "RunState",
]
