"""Dependency version ranges in NuGet interval notation.

Supported forms::

    1.0          ->  1.0 <= v
    [1.0]        ->  v == 1.0
    (1.0,)       ->  1.0 < v
    [1.0,2.0)    ->  1.0 <= v < 2.0
    (,2.0]       ->  v <= 2.0

An empty string means "any version".
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from common.errors import VersionParseError
from versioning.semver import SemanticVersion


def min_and_max_version_matched(
    version: SemanticVersion,
    minimum: Optional[SemanticVersion],
    maximum: Optional[SemanticVersion],
    min_inclusive: bool = True,
    max_inclusive: bool = True,
) -> bool:
    """Return True if version lies within the optional bounds."""
    if minimum is not None:
        if min_inclusive and version < minimum:
            return False
        if not min_inclusive and version <= minimum:
            return False
    if maximum is not None:
        if max_inclusive and version > maximum:
            return False
        if not max_inclusive and version >= maximum:
            return False
    return True


@dataclass(frozen=True)
class DependencyVersionRange:
    """Interval of acceptable versions; unbounded ends are None."""

    min_version: Optional[SemanticVersion] = None
    min_inclusive: bool = True
    max_version: Optional[SemanticVersion] = None
    max_inclusive: bool = True
    original: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        lo, hi = self.min_version, self.max_version
        if lo is not None and hi is not None:
            if lo > hi:
                raise VersionParseError(str(self), "minimum version is above maximum")
            if lo == hi and not (self.min_inclusive and self.max_inclusive):
                raise VersionParseError(str(self), "empty version range")

    @classmethod
    def parse(cls, value: Optional[str]) -> "DependencyVersionRange":
        """Parse NuGet interval notation."""
        text = (value or "").strip()
        if not text or text == "*":
            return cls(original=text)
        if text[0] not in "[(" and text[-1] not in "])":
            return cls(SemanticVersion.parse(text), True, original=text)
        if len(text) < 3 or text[0] not in "[(" or text[-1] not in "])":
            raise VersionParseError(text, "invalid version range")

        min_inclusive = text[0] == "["
        max_inclusive = text[-1] == "]"
        parts = [p.strip() for p in text[1:-1].split(",")]
        if len(parts) > 2:
            raise VersionParseError(text, "too many range parts")
        if len(parts) == 1:
            if not (min_inclusive and max_inclusive) or not parts[0]:
                raise VersionParseError(text, "exact version must use [x]")
            exact = SemanticVersion.parse(parts[0])
            return cls(exact, True, exact, True, original=text)

        low, high = parts
        if not low and not high:
            raise VersionParseError(text, "range has no bounds")
        min_version = SemanticVersion.parse(low) if low else None
        max_version = SemanticVersion.parse(high) if high else None
        return cls(min_version, min_inclusive, max_version, max_inclusive, original=text)

    @classmethod
    def exact(cls, version: SemanticVersion) -> "DependencyVersionRange":
        return cls(version, True, version, True)

    @property
    def is_exact(self) -> bool:
        return (
            self.min_version is not None
            and self.min_version == self.max_version
            and self.min_inclusive
            and self.max_inclusive
        )

    @property
    def is_unbounded(self) -> bool:
        return self.min_version is None and self.max_version is None

    def satisfies(self, version: SemanticVersion) -> bool:
        return min_and_max_version_matched(
            version, self.min_version, self.max_version, self.min_inclusive, self.max_inclusive
        )

    def __contains__(self, version: SemanticVersion) -> bool:
        return self.satisfies(version)

    def intersect(self, other: "DependencyVersionRange") -> Optional["DependencyVersionRange"]:
        """Return the overlap of two ranges, or None when they are disjoint."""
        lo, lo_inc = _tighter_lower(
            (self.min_version, self.min_inclusive), (other.min_version, other.min_inclusive)
        )
        hi, hi_inc = _tighter_upper(
            (self.max_version, self.max_inclusive), (other.max_version, other.max_inclusive)
        )
        if lo is not None and hi is not None:
            if lo > hi:
                return None
            if lo == hi and not (lo_inc and hi_inc):
                return None
        return DependencyVersionRange(lo, lo_inc, hi, hi_inc)

    def __str__(self) -> str:
        if self.is_unbounded:
            return ""
        if self.is_exact:
            return f"[{self.min_version}]"
        low = str(self.min_version) if self.min_version is not None else ""
        high = str(self.max_version) if self.max_version is not None else ""
        opener = "[" if self.min_inclusive and self.min_version is not None else "("
        closer = "]" if self.max_inclusive and self.max_version is not None else ")"
        return f"{opener}{low}, {high}{closer}"


Bound = Tuple[Optional[SemanticVersion], bool]


def _tighter_lower(a: Bound, b: Bound) -> Bound:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] == b[0]:
        return a[0], a[1] and b[1]
    return a if a[0] > b[0] else b


def _tighter_upper(a: Bound, b: Bound) -> Bound:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] == b[0]:
        return a[0], a[1] and b[1]
    return a if a[0] < b[0] else b


def _lower_bound_key(r: DependencyVersionRange):
    # Unbounded lowers first; at equal versions inclusive starts before exclusive
    if r.min_version is None:
        return (0, None, 0)
    return (1, r.min_version, 0 if r.min_inclusive else 1)


class _LowerKey:
    """Sort key wrapper so None bounds and versions compare cleanly."""

    __slots__ = ("key",)

    def __init__(self, r: DependencyVersionRange):
        self.key = _lower_bound_key(r)

    def __lt__(self, other: "_LowerKey") -> bool:
        a, b = self.key, other.key
        if a[0] != b[0]:
            return a[0] < b[0]
        if a[0] == 0:
            return False
        if a[1] != b[1]:
            return a[1] < b[1]
        return a[2] < b[2]


def reduce_constraints(constraints: Sequence[DependencyVersionRange]) -> List[DependencyVersionRange]:
    """Collapse constraints on one package into a minimal list of disjoint ranges.

    Ranges are sorted by lower bound and swept left to right: while the next
    range overlaps the running one, the running range narrows to their
    intersection; a disjoint range closes the running one and starts a new
    one. Touching endpoints overlap only when both sides are inclusive.
    """
    if len(constraints) <= 1:
        return list(constraints)
    ordered = sorted(constraints, key=_LowerKey)
    results: List[DependencyVersionRange] = []
    running = ordered[0]
    for current in ordered[1:]:
        overlap = running.intersect(current)
        if overlap is None:
            results.append(running)
            running = current
        else:
            running = overlap
    results.append(running)
    return results
