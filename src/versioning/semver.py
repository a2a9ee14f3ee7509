"""NuGet-flavoured semantic versions.

Accepts one to four numeric segments (``1``, ``1.2``, ``1.2.3``,
``1.2.3.4``), an optional ``-prerelease`` label made of dot separated
identifiers and optional ``+metadata``. Missing segments count as 0 for
ordering while ``str()`` keeps the original text. Prerelease labels are
compared case-insensitively with SemVer 2.0 identifier precedence, which
``semantic_version`` implements for us.
"""
from __future__ import annotations

import functools
import re
from typing import Optional, Tuple

import semantic_version

from common.errors import VersionParseError

_VERSION_RE = re.compile(
    r"^(?P<numbers>\d+(?:\.\d+){0,3})"
    r"(?:-(?P<special>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<metadata>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


@functools.total_ordering
class SemanticVersion:
    """Immutable version value with a total order."""

    __slots__ = ("major", "minor", "patch", "revision", "special_version", "metadata",
                 "_original", "_prerelease_key")

    def __init__(
        self,
        major: int,
        minor: int = 0,
        patch: int = 0,
        revision: int = 0,
        special_version: Optional[str] = None,
        metadata: Optional[str] = None,
        original: Optional[str] = None,
    ):
        self.major = int(major)
        self.minor = int(minor)
        self.patch = int(patch)
        self.revision = int(revision)
        self.special_version = special_version or None
        self.metadata = metadata or None
        self._prerelease_key = _prerelease_key(self.special_version, original)
        self._original = original or self.to_full_string()

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a version string, raising VersionParseError on bad input."""
        if value is None:
            raise VersionParseError("None", "version is missing")
        text = str(value).strip()
        match = _VERSION_RE.match(text)
        if not match:
            raise VersionParseError(text)
        numbers = [int(part) for part in match.group("numbers").split(".")]
        numbers += [0] * (4 - len(numbers))
        return cls(
            numbers[0],
            numbers[1],
            numbers[2],
            numbers[3],
            special_version=match.group("special"),
            metadata=match.group("metadata"),
            original=text,
        )

    @classmethod
    def try_parse(cls, value: Optional[str]) -> Optional["SemanticVersion"]:
        """Parse or return None."""
        if value is None:
            return None
        try:
            return cls.parse(value)
        except VersionParseError:
            return None

    @property
    def version(self) -> Tuple[int, int, int, int]:
        return self.major, self.minor, self.patch, self.revision

    @property
    def is_prerelease(self) -> bool:
        return self.special_version is not None

    def to_normalized_string(self) -> str:
        """Canonical text: three segments, a fourth only when non-zero, plus the label."""
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.revision:
            text += f".{self.revision}"
        if self.special_version:
            text += f"-{self.special_version}"
        return text

    def to_full_string(self) -> str:
        text = self.to_normalized_string()
        if self.metadata:
            text += f"+{self.metadata}"
        return text

    def compare_to(self, other: "SemanticVersion") -> int:
        """Return -1, 0 or 1."""
        if self.version != other.version:
            return -1 if self.version < other.version else 1
        if self._prerelease_key is None and other._prerelease_key is None:
            return 0
        # A release sorts above any prerelease of the same numbers
        if self._prerelease_key is None:
            return 1
        if other._prerelease_key is None:
            return -1
        if self._prerelease_key == other._prerelease_key:
            return 0
        return -1 if self._prerelease_key < other._prerelease_key else 1

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self.compare_to(other) == 0

    def __lt__(self, other: "SemanticVersion") -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self.compare_to(other) < 0

    def __hash__(self) -> int:
        special = self.special_version.lower() if self.special_version else None
        return hash((self.version, special))

    def __str__(self) -> str:
        return self._original

    def __repr__(self) -> str:
        return f"SemanticVersion({self._original!r})"


def _prerelease_key(special: Optional[str], original: Optional[str]) -> Optional[semantic_version.Version]:
    if not special:
        return None
    try:
        return semantic_version.Version(f"0.0.0-{special.lower()}")
    except ValueError as exc:
        raise VersionParseError(original or special, f"invalid prerelease label ({exc})") from exc


def compare(a: SemanticVersion, b: SemanticVersion) -> int:
    """Three-way comparison of two versions."""
    return a.compare_to(b)


def parse(value: str) -> SemanticVersion:
    """Module level alias for SemanticVersion.parse."""
    return SemanticVersion.parse(value)
