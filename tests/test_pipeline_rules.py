"""Tests for pipeline/rules.py module."""

import pytest

from buildgraph.pipeline.rules import (
    ArtifactRule,
    ArtifactRuleError,
    destination_dirs,
    literal_prefix,
    match_rules,
    parse_rule,
    parse_rules,
    pattern_to_regex,
)
from buildgraph.types import RuleKind


def _touch(root, *paths):
    for rel in paths:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel)


class TestParseRule:
    """Tests for rule parsing."""

    def test_plain_include(self):
        """A bare pattern should be a required include."""
        rule = parse_rule("dist/app.zip")
        assert rule == ArtifactRule(RuleKind.INCLUDE, "dist/app.zip", "")

    def test_target(self):
        """The part after => should be the target."""
        rule = parse_rule("  build/*.jar => libs/ ")
        assert rule.source == "build/*.jar"
        assert rule.target == "libs"

    def test_prefixes(self):
        """Rule prefixes should select the kind."""
        assert parse_rule("-:tmp/**").kind is RuleKind.EXCLUDE
        assert parse_rule("?:docs/*.md").kind is RuleKind.OPTIONAL
        assert parse_rule("+:a.txt").kind is RuleKind.INCLUDE

    def test_exclude_with_target_rejected(self):
        """Exclude rules cannot have a target."""
        with pytest.raises(ArtifactRuleError):
            parse_rule("-:a => b")

    def test_absolute_and_parent_paths_rejected(self):
        """Paths must stay relative."""
        with pytest.raises(ArtifactRuleError):
            parse_rule("/etc/passwd")
        with pytest.raises(ArtifactRuleError):
            parse_rule("a => ../out")

    def test_empty_source_rejected(self):
        """A rule needs a source pattern."""
        with pytest.raises(ArtifactRuleError) as exc_info:
            parse_rule(" => out")
        assert exc_info.value.code == "invalid_artifact_rule"

    def test_str_round_trip(self):
        """str() should render the rule text."""
        assert str(parse_rule("?:a/*.txt => b")) == "?:a/*.txt => b"

    def test_parse_rules_separators(self):
        """Rules should split on newlines and commas, skipping comments."""
        rules = parse_rules("a.txt, b.txt\n# comment\n\n-:c.txt")
        assert [r.source for r in rules] == ["a.txt", "b.txt", "c.txt"]
        assert parse_rules(None) == []


class TestPatterns:
    """Tests for wildcard translation."""

    def test_single_star_stays_in_segment(self):
        """* should not cross directories."""
        regex = pattern_to_regex("out/*.txt")
        assert regex.fullmatch("out/a.txt")
        assert not regex.fullmatch("out/sub/a.txt")

    def test_double_star_crosses_segments(self):
        """**/ should match zero or more directories."""
        regex = pattern_to_regex("out/**/*.txt")
        assert regex.fullmatch("out/a.txt")
        assert regex.fullmatch("out/x/y/a.txt")

    def test_literal_prefix(self):
        """The literal prefix should stop at the first wildcard segment."""
        assert literal_prefix("build/libs/*.jar") == "build/libs"
        assert literal_prefix("build/*/x.jar") == "build"
        assert literal_prefix("a.txt") == ""


class TestMatchRules:
    """Tests for matching rules against a directory."""

    def test_wildcard_keeps_relative_path(self, tmp_path):
        """Files should keep their path below the literal prefix."""
        _touch(tmp_path, "out/a.txt", "out/sub/b.txt", "other/c.txt")
        match = match_rules(tmp_path, parse_rules("out/** => dist"))
        assert sorted(match.files) == ["dist/a.txt", "dist/sub/b.txt"]

    def test_directory_source(self, tmp_path):
        """A literal directory selects everything below it."""
        _touch(tmp_path, "reports/x.html", "reports/css/y.css")
        match = match_rules(tmp_path, parse_rules("reports => site"))
        assert sorted(match.files) == ["site/css/y.css", "site/x.html"]

    def test_exclude_applies_anywhere(self, tmp_path):
        """Excludes should apply regardless of rule order."""
        _touch(tmp_path, "out/a.txt", "out/a.log")
        match = match_rules(tmp_path, parse_rules("-:**/*.log\nout/*"))
        assert list(match.files) == ["a.txt"]

    def test_unmatched_required_rule(self, tmp_path):
        """Required rules matching nothing should be reported."""
        _touch(tmp_path, "a.txt")
        rules = parse_rules("a.txt\nmissing.txt\n?:optional.txt")
        match = match_rules(tmp_path, rules)
        assert [r.source for r in match.unmatched()] == ["missing.txt"]

    def test_missing_root(self, tmp_path):
        """A missing root should match nothing."""
        match = match_rules(tmp_path / "none", parse_rules("a.txt"))
        assert match.files == {}
        assert len(match.unmatched()) == 1

    def test_destination_dirs(self):
        """Destination dirs should be distinct include targets."""
        rules = parse_rules("a => x\nb => x\nc\n-:d")
        assert destination_dirs(rules) == ["x", ""]
