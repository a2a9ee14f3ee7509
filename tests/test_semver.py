"""Tests for NuGet semantic version parsing and ordering."""

import pytest

from common.errors import VersionParseError
from versioning.semver import SemanticVersion, compare


class TestParse:
    """Parsing of version strings."""

    @pytest.mark.parametrize("text,expected", [
        ("1", (1, 0, 0, 0)),
        ("1.2", (1, 2, 0, 0)),
        ("1.2.3", (1, 2, 3, 0)),
        ("1.2.3.4", (1, 2, 3, 4)),
    ])
    def test_numeric_segments(self, text, expected):
        """Missing segments default to zero."""
        assert SemanticVersion.parse(text).version == expected

    def test_prerelease_and_metadata(self):
        """Labels and build metadata are split out."""
        v = SemanticVersion.parse("2.0.0-beta.1+build.7")
        assert v.special_version == "beta.1"
        assert v.metadata == "build.7"
        assert v.is_prerelease

    def test_str_keeps_original_text(self):
        """str() round-trips what was parsed, not the normalized form."""
        assert str(SemanticVersion.parse("1.0")) == "1.0"
        assert SemanticVersion.parse("1.0").to_normalized_string() == "1.0.0"

    def test_normalized_keeps_non_zero_revision(self):
        """A fourth segment only appears when it is non-zero."""
        assert SemanticVersion.parse("1.2.3.4").to_normalized_string() == "1.2.3.4"
        assert SemanticVersion.parse("1.2.3.0").to_normalized_string() == "1.2.3"

    @pytest.mark.parametrize("text", ["", "abc", "1.2.3.4.5", "1.0-", "1..0", "v1.0"])
    def test_rejects_malformed(self, text):
        """Malformed strings raise VersionParseError."""
        with pytest.raises(VersionParseError):
            SemanticVersion.parse(text)

    def test_try_parse_returns_none(self):
        """try_parse never raises."""
        assert SemanticVersion.try_parse("nope") is None
        assert SemanticVersion.try_parse(None) is None
        assert SemanticVersion.try_parse("1.0") == SemanticVersion(1)


class TestOrdering:
    """Total order over versions."""

    def test_missing_segments_compare_equal(self):
        """1.0 and 1.0.0.0 are the same version."""
        assert SemanticVersion.parse("1.0") == SemanticVersion.parse("1.0.0.0")
        assert hash(SemanticVersion.parse("1.0")) == hash(SemanticVersion.parse("1.0.0"))

    def test_release_sorts_above_prerelease(self):
        """A release beats any prerelease with the same numbers."""
        assert SemanticVersion.parse("1.0.0-rc") < SemanticVersion.parse("1.0.0")

    def test_prerelease_identifier_precedence(self):
        """Numeric identifiers compare numerically and below alphanumerics."""
        ordered = ["1.0.0-alpha", "1.0.0-alpha.1", "1.0.0-alpha.beta", "1.0.0-beta.2", "1.0.0-beta.11"]
        parsed = [SemanticVersion.parse(v) for v in ordered]
        assert sorted(reversed(parsed)) == parsed

    def test_prerelease_is_case_insensitive(self):
        """Labels compare without regard to case."""
        assert SemanticVersion.parse("1.0.0-RC1") == SemanticVersion.parse("1.0.0-rc1")

    def test_metadata_is_ignored(self):
        """Build metadata does not take part in ordering."""
        assert compare(SemanticVersion.parse("1.0.0+a"), SemanticVersion.parse("1.0.0+b")) == 0

    def test_revision_segment_orders(self):
        """The fourth segment participates in ordering."""
        assert SemanticVersion.parse("1.0.0.1") > SemanticVersion.parse("1.0.0")
