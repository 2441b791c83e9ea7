"""Artifact rule parsing and matching.

Artifact rules select files below a root directory and map them to
destination paths. Rules are separated by newlines or commas; each rule
has the form::

    [+:|-:|?:]source[ => target]

``+:`` (the default) includes, ``-:`` excludes, and ``?:`` includes
optionally (never reported as missing). In ``source``, ``*`` and ``?``
match inside one path segment and ``**`` matches across segments.
Matched files are placed under ``target`` keeping their path below the
literal (wildcard-free) directory prefix of ``source``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from buildgraph.types import RuleKind

WILDCARD_CHARS = frozenset("*?")
TARGET_SEPARATOR = "=>"


class ArtifactRuleError(ValueError):
    """Raised when an artifact rule cannot be parsed."""

    def __init__(
        self, rule: str, reason: str, code: str = "invalid_artifact_rule"
    ) -> None:
        super().__init__(f"Invalid artifact rule '{rule}': {reason}")
        self.rule = rule
        self.code = code


@dataclass(frozen=True)
class ArtifactRule:
    """A single parsed artifact rule.

    Attributes:
        kind: Include, exclude or optional include.
        source: Source pattern, relative POSIX path.
        target: Destination directory, relative POSIX path ("" for root).
    """

    kind: RuleKind
    source: str
    target: str = ""

    @property
    def is_include(self) -> bool:
        """Whether this rule adds files (required or optional)."""
        return self.kind is not RuleKind.EXCLUDE

    @property
    def has_wildcards(self) -> bool:
        """Whether the source contains wildcard characters."""
        return any(c in WILDCARD_CHARS for c in self.source)

    def __str__(self) -> str:
        text = self.source
        if self.kind is not RuleKind.INCLUDE:
            text = f"{self.kind.value}:{text}"
        if self.target:
            text += f" {TARGET_SEPARATOR} {self.target}"
        return text


@dataclass
class RuleMatch:
    """Files selected by a set of rules.

    Attributes:
        files: Destination relative path to source path.
        counts: Number of files each include rule matched.
    """

    files: dict[str, Path] = field(default_factory=dict)
    counts: dict[ArtifactRule, int] = field(default_factory=dict)

    def unmatched(self) -> list[ArtifactRule]:
        """Required include rules that matched no file."""
        return [
            rule
            for rule, count in self.counts.items()
            if count == 0 and rule.kind is RuleKind.INCLUDE
        ]


def _normalize_path(rule: str, value: str, *, allow_empty: bool) -> str:
    value = value.strip().replace("\\", "/")
    while value.startswith("./"):
        value = value[2:]
    if value.startswith("/"):
        raise ArtifactRuleError(rule, "paths must be relative")
    parts = [p for p in value.split("/") if p not in ("", ".")]
    if ".." in parts:
        raise ArtifactRuleError(rule, "'..' is not allowed")
    if not parts and not allow_empty:
        raise ArtifactRuleError(rule, "empty source pattern")
    return "/".join(parts)


def parse_rule(text: str) -> ArtifactRule:
    """Parse a single artifact rule.

    Raises:
        ArtifactRuleError: If the rule is malformed.
    """
    raw = text.strip()
    kind = RuleKind.INCLUDE
    for candidate in RuleKind:
        prefix = f"{candidate.value}:"
        if raw.startswith(prefix):
            kind = candidate
            raw = raw[len(prefix) :]
            break

    source, sep, target = raw.partition(TARGET_SEPARATOR)
    if sep and kind is RuleKind.EXCLUDE:
        raise ArtifactRuleError(text, "exclude rules cannot have a target")
    return ArtifactRule(
        kind=kind,
        source=_normalize_path(text, source, allow_empty=False),
        target=_normalize_path(text, target, allow_empty=True) if sep else "",
    )


def parse_rules(text: str | None) -> list[ArtifactRule]:
    """Parse newline or comma separated artifact rules.

    Blank entries and lines starting with ``#`` are ignored.

    Raises:
        ArtifactRuleError: If a rule is malformed.
    """
    if not text:
        return []
    rules = []
    for line in text.splitlines():
        if line.strip().startswith("#"):
            continue
        for entry in line.split(","):
            if entry.strip():
                rules.append(parse_rule(entry))
    return rules


def pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a source pattern to a regex over relative POSIX paths."""
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out))


def literal_prefix(pattern: str) -> str:
    """Directory part of a pattern before its first wildcard segment.

    For a pattern without wildcards this is the parent directory.
    """
    parts = pattern.split("/")
    prefix: list[str] = []
    for part in parts[:-1]:
        if any(c in WILDCARD_CHARS for c in part):
            break
        prefix.append(part)
    return "/".join(prefix)


def _list_files(root: Path) -> list[str]:
    return sorted(
        p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()
    )


def _expand_directory_rule(rule: ArtifactRule, root: Path) -> tuple[str, str]:
    # A literal directory source selects everything below it
    if not rule.has_wildcards and (root / rule.source).is_dir():
        return f"{rule.source}/**", rule.source
    return rule.source, literal_prefix(rule.source)


def match_rules(root: Path, rules: list[ArtifactRule]) -> RuleMatch:
    """Select the files below ``root`` matched by ``rules``.

    Excludes apply to source paths regardless of their position in the
    rule list. When several include rules map files to the same
    destination, the later rule wins.

    Args:
        root: Directory the source patterns are relative to.
        rules: Parsed rules.

    Returns:
        RuleMatch with destinations and per-rule match counts.
    """
    result = RuleMatch()
    available = _list_files(root) if root.is_dir() else []

    excludes = [
        pattern_to_regex(_expand_directory_rule(r, root)[0])
        for r in rules
        if r.kind is RuleKind.EXCLUDE
    ]
    candidates = [
        path for path in available if not any(rx.fullmatch(path) for rx in excludes)
    ]

    for rule in rules:
        if not rule.is_include:
            continue
        pattern, base = _expand_directory_rule(rule, root)
        regex = pattern_to_regex(pattern)
        count = 0
        for path in candidates:
            if not regex.fullmatch(path):
                continue
            relative = PurePosixPath(path)
            if base:
                relative = relative.relative_to(base)
            destination = (PurePosixPath(rule.target) / relative).as_posix()
            result.files[destination] = root / path
            count += 1
        result.counts[rule] = result.counts.get(rule, 0) + count

    return result


def destination_dirs(rules: list[ArtifactRule]) -> list[str]:
    """Distinct destination directories of the include rules."""
    seen: list[str] = []
    for rule in rules:
        if rule.is_include and rule.target not in seen:
            seen.append(rule.target)
    return seen


__all__ = [
    "ArtifactRule",
    "ArtifactRuleError",
    "RuleMatch",
    "destination_dirs",
    "literal_prefix",
    "match_rules",
    "parse_rule",
    "parse_rules",
    "pattern_to_regex",
]
