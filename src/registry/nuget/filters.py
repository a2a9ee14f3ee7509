"""Client-side package filters.

Filters accept PackageBase values or anything wrapping one in a
``package`` attribute (PackageResult, PackageItem) and return a list in
input order.
"""
from __future__ import annotations

import fnmatch
import re
from typing import Iterable, List, Optional, Sequence, TypeVar

from versioning.models import PackageEntryInfo, SearchContext
from versioning.ranges import min_and_max_version_matched
from versioning.semver import SemanticVersion

T = TypeVar("T")

WILDCARD_CHARS = "*?["


def _package(obj):
    return getattr(obj, "package", obj)


def has_wildcard(text: Optional[str]) -> bool:
    return bool(text) and any(c in text for c in WILDCARD_CHARS)


def wildcard_match(pattern: str, value: str) -> bool:
    """Case-insensitive glob match over the whole value."""
    return fnmatch.fnmatchcase(value.lower(), pattern.lower())


def name_matches(pattern: Optional[str], package_id: str) -> bool:
    """Glob match when the pattern has wildcards, otherwise case-insensitive substring."""
    if not pattern or not pattern.strip():
        return True
    if has_wildcard(pattern):
        return wildcard_match(pattern, package_id)
    return pattern.lower() in package_id.lower()


def filter_entry_by_name(entry: PackageEntryInfo, context: SearchContext) -> bool:
    """Re-apply the caller's original pattern to a search hit.

    Server search is token based, so ``Foo*`` may return ids that do not
    start with ``Foo``; those are dropped here.
    """
    return name_matches(context.original_pattern(), entry.id)


def filter_on_tags(packages: Iterable[T], tags: Sequence[str]) -> List[T]:
    """Keep packages carrying every requested tag (space or comma separated, case-insensitive)."""
    packages = list(packages)
    wanted = [t.lower() for t in tags if t and t.strip()]
    if not wanted:
        return packages
    result = []
    for obj in packages:
        raw = _package(obj).tags
        if not raw or not raw.strip():
            continue
        have = {t.lower() for t in re.split(r"[\s,]+", raw) if t}
        if all(t in have for t in wanted):
            result.append(obj)
    return result


def filter_on_contains(packages: Iterable[T], pattern: Optional[str]) -> List[T]:
    """Keep packages whose description or id contains the pattern."""
    packages = list(packages)
    if not pattern or not pattern.strip():
        return packages
    needle = pattern.lower()
    return [
        obj
        for obj in packages
        if needle in (_package(obj).description or "").lower() or needle in _package(obj).id.lower()
    ]


def filter_on_version(
    packages: Iterable[T],
    required_version: Optional[SemanticVersion] = None,
    minimum_version: Optional[SemanticVersion] = None,
    maximum_version: Optional[SemanticVersion] = None,
    min_inclusive: bool = True,
    max_inclusive: bool = True,
) -> List[T]:
    """Keep packages matching the required version, or else the min/max bounds."""
    packages = list(packages)
    if required_version is not None:
        return [obj for obj in packages if _package(obj).version == required_version]
    return [
        obj
        for obj in packages
        if min_and_max_version_matched(
            _package(obj).version, minimum_version, maximum_version, min_inclusive, max_inclusive
        )
    ]


def filter_on_name(packages: Iterable[T], search_term: str, use_wildcard: bool) -> List[T]:
    """Keep packages whose id matches the term (glob or substring)."""
    if use_wildcard:
        return [obj for obj in packages if wildcard_match(search_term, _package(obj).id)]
    needle = search_term.lower()
    return [obj for obj in packages if needle in _package(obj).id.lower()]
