"""Dependency resolution: cycle-safe install ordering with constraint reduction.

Resolution runs in two passes:

1. A depth-first walk from the root picks, for every dependency edge, the
   highest version the finder offers. Nodes are coloured gray while on the
   walk stack and black once finished; reaching a gray node is a cycle.
2. Constraints collected per package id are reduced to their
   intersections, and the walk is repeated choosing, for each id, the
   highest version that satisfies every reduced range (falling back to the
   first pass choices when some reduced range has no candidate).

The plan lists dependencies in post order, so every package comes after
everything it depends on; the root itself is not part of the plan.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from constants import ErrorCategory, Messages
from common.errors import DependencyLoopError, UnableToFindDependencyError
from common.logging_utils import extra_context, is_debug_enabled, Timer
from common.request import FeedRequest
from versioning.models import PackageItem
from versioning.ranges import DependencyVersionRange, reduce_constraints
from versioning.semver import SemanticVersion

from .installed import is_installed

logger = logging.getLogger(__name__)

Finder = Callable[[str, DependencyVersionRange], List[PackageItem]]
Edge = Tuple[PackageItem, Optional[DependencyVersionRange]]


@dataclass
class ResolutionPlan:
    """Dependencies to install, in order, plus the reduced ranges per id."""
    items: List[PackageItem] = field(default_factory=list)
    reduced_ranges: Dict[str, List[DependencyVersionRange]] = field(default_factory=dict)

    def __iter__(self) -> Iterator[PackageItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


def pick_candidate(candidates: List[PackageItem]) -> PackageItem:
    """Highest version wins; on equal versions prefer the one flagged latest."""
    return max(candidates, key=lambda c: (c.version, c.is_latest_version))


def dependency_installed(request: FeedRequest, package_id: str, version_range: DependencyVersionRange) -> bool:
    """Whether the host (or the destination folder) already has a matching version.

    The host's installed-packages list wins when present; otherwise the
    destination folder is scanned.
    """
    installed = request.installed_packages
    if installed:
        for entry in installed:
            if entry.id.lower() != package_id.lower():
                continue
            if not entry.version or not entry.version.strip():
                return True
            version = SemanticVersion.try_parse(entry.version)
            if version is not None and version_range.satisfies(version):
                return True
        return False
    return is_installed(request.destination, package_id, version_range)


class _Walk:
    """One depth-first pass over the dependency graph."""

    def __init__(
        self,
        request: FeedRequest,
        finder: Finder,
        reduced: Optional[Dict[str, List[PackageItem]]] = None,
    ):
        self.request = request
        self.finder = finder
        self.reduced = reduced
        self.processed: Set[str] = set()

    def dependencies(self, item: PackageItem) -> Iterator[Edge]:
        """Edges out of ``item`` that still need a package, fetched lazily."""
        force = self.request.force
        for dep in item.package.dependencies():
            key = dep.key
            if key in self.processed:
                continue
            lowered = dep.id.lower()

            if self.reduced is not None and lowered in self.reduced:
                self.processed.add(key)
                choices = self.reduced[lowered]
                if len(choices) == 1:
                    yield choices[0], dep.version_range
                else:
                    matching = [c for c in choices if dep.version_range.satisfies(c.version)]
                    yield (matching or choices)[0], dep.version_range
                continue

            if not force and dependency_installed(self.request, dep.id, dep.version_range):
                self.processed.add(key)
                self.request.verbose("Dependency %s is already installed", dep.id)
                continue

            candidates = self.finder(dep.id, dep.version_range)
            if not candidates:
                self.request.write_error(
                    ErrorCategory.OBJECT_NOT_FOUND, dep.id, Messages.UNABLE_TO_FIND_DEPENDENCY_PACKAGE, dep.id
                )
                raise UnableToFindDependencyError(dep.id, str(dep.version_range))
            yield pick_candidate(candidates), dep.version_range
            self.processed.add(key)

    def run(self, root: PackageItem) -> List[Edge]:
        """Post-order list of (item, range) reachable from root, root last."""
        gray: Set[Tuple[str, SemanticVersion]] = {root.key}
        black: Set[Tuple[str, SemanticVersion]] = set()
        order: List[Edge] = []
        stack: List[Tuple[PackageItem, Optional[DependencyVersionRange], Iterator[Edge]]] = [
            (root, None, self.dependencies(root))
        ]
        while stack:
            item, version_range, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                gray.discard(item.key)
                black.add(item.key)
                order.append((item, version_range))
                continue
            child_item, child_range = child
            if child_item.key in gray:
                path = [frame[0].id for frame in stack] + [child_item.id]
                raise DependencyLoopError(child_item.id, path)
            if child_item.key in black:
                continue
            gray.add(child_item.key)
            stack.append((child_item, child_range, self.dependencies(child_item)))
        return order


def _reduce(edges: List[Edge]) -> Tuple[Dict[str, List[PackageItem]], Dict[str, List[DependencyVersionRange]]]:
    grouped: Dict[str, List[Edge]] = {}
    for item, version_range in edges:
        if version_range is None:
            continue
        grouped.setdefault(item.id.lower(), []).append((item, version_range))

    chosen: Dict[str, List[PackageItem]] = {}
    reduced_ranges: Dict[str, List[DependencyVersionRange]] = {}
    for package_id, pairs in grouped.items():
        unreduced: List[PackageItem] = []
        for item, _ in pairs:
            if all(item.key != u.key for u in unreduced):
                unreduced.append(item)
        if len(pairs) <= 1:
            chosen[package_id] = unreduced
            continue

        ranges = reduce_constraints([r for _, r in pairs])
        reduced_ranges[package_id] = ranges
        picks: List[PackageItem] = []
        for version_range in ranges:
            matching = [u for u in unreduced if version_range.satisfies(u.version)]
            if not matching:
                picks = unreduced
                break
            best = pick_candidate(matching)
            if all(best.key != p.key for p in picks):
                picks.append(best)
        chosen[package_id] = picks
    return chosen, reduced_ranges


def resolve_dependencies(item: PackageItem, request: FeedRequest, finder: Finder) -> ResolutionPlan:
    """Dependencies of ``item`` in install order.

    Raises DependencyLoopError on a cycle and UnableToFindDependencyError
    when no source offers a version for some dependency.
    """
    with Timer() as t:
        first = _Walk(request, finder).run(item)
        chosen, reduced_ranges = _reduce(first)
        second = _Walk(request, finder, chosen).run(item)
    plan = ResolutionPlan([i for i, _ in second[:-1]], reduced_ranges)

    if is_debug_enabled(logger):
        logger.debug(
            "Dependencies resolved",
            extra=extra_context(
                event="resolve",
                component="resolver",
                action="resolve_dependencies",
                outcome="success",
                count=len(plan),
                duration_ms=t.duration_ms(),
                target=str(item),
                package_manager="nuget",
            ),
        )
    return plan
