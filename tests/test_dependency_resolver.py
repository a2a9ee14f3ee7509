"""Tests for dependency resolution ordering, loops and constraint reduction."""

import pytest

from common.errors import DependencyLoopError, UnableToFindDependencyError
from common.request import FeedRequest, InstalledPackage
from constants import Messages
from install.resolver import dependency_installed, pick_candidate, resolve_dependencies
from versioning.models import PackageBase, PackageDependency, PackageDependencySet, PackageItem
from versioning.ranges import DependencyVersionRange
from versioning.semver import SemanticVersion


def item(package_id, version, *deps, latest=False):
    dependencies = tuple(PackageDependency(d, DependencyVersionRange.parse(r)) for d, r in deps)
    package = PackageBase(
        package_id,
        SemanticVersion.parse(version),
        dependency_sets=(PackageDependencySet(None, dependencies),) if dependencies else (),
    )
    return PackageItem(package=package, is_latest_version=latest)


class Catalog:
    """Finder over a fixed set of items, honouring the requested range."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = []

    def __call__(self, package_id, version_range):
        self.calls.append(package_id)
        return [
            i for i in self.items
            if i.id.lower() == package_id.lower() and version_range.satisfies(i.version)
        ]


def ids(plan):
    return [f"{i.id} {i.version}" for i in plan]


class TestPickCandidate:
    """Choosing between finder results."""

    def test_highest_version(self):
        """The highest version wins."""
        assert str(pick_candidate([item("A", "1.0.0"), item("A", "2.0.0")]).version) == "2.0.0"

    def test_latest_flag_breaks_ties(self):
        """On equal versions the latest-flagged one wins."""
        plain, flagged = item("A", "1.0.0"), item("A", "1.0.0", latest=True)
        assert pick_candidate([plain, flagged]) is flagged


class TestResolveDependencies:
    """Install ordering."""

    def test_post_order_without_root(self):
        """Dependencies come before their dependents and the root is excluded."""
        root = item("App", "1.0.0", ("B", "[1.0, )"), ("C", "[1.0, )"))
        finder = Catalog(
            item("B", "1.0.0", ("D", "[1.0, )")),
            item("C", "1.0.0"),
            item("D", "1.0.0"),
        )
        plan = resolve_dependencies(root, FeedRequest(), finder)
        assert ids(plan) == ["D 1.0.0", "B 1.0.0", "C 1.0.0"]

    def test_shared_dependency_is_listed_once(self):
        """A dependency reached twice appears once."""
        root = item("App", "1.0.0", ("B", "[1.0, )"), ("C", "[1.0, )"))
        finder = Catalog(
            item("B", "1.0.0", ("D", "[1.0, )")),
            item("C", "1.0.0", ("D", "[1.0, )")),
            item("D", "1.0.0"),
        )
        plan = resolve_dependencies(root, FeedRequest(), finder)
        assert ids(plan) == ["D 1.0.0", "B 1.0.0", "C 1.0.0"]

    def test_ranges_are_reduced(self):
        """Two ranges on one id settle on the highest version satisfying both."""
        root = item("App", "1.0.0", ("B", "[1.0, )"), ("C", "[1.0, )"))
        finder = Catalog(
            item("B", "1.0.0", ("D", "[1.0, 2.0)")),
            item("C", "1.0.0", ("D", "[1.5, )")),
            item("D", "1.0.0"),
            item("D", "1.5.0"),
            item("D", "2.0.0"),
        )
        plan = resolve_dependencies(root, FeedRequest(), finder)
        assert ids(plan) == ["D 1.5.0", "B 1.0.0", "C 1.0.0"]
        assert [str(r) for r in plan.reduced_ranges["d"]] == [str(DependencyVersionRange.parse("[1.5, 2.0)"))]

    def test_cycle(self):
        """A dependency loop raises with the offending id."""
        root = item("A", "1.0.0", ("B", "[1.0, )"))
        finder = Catalog(item("B", "1.0.0", ("A", "[1.0, )")), item("A", "1.0.0", ("B", "[1.0, )")))
        with pytest.raises(DependencyLoopError):
            resolve_dependencies(root, FeedRequest(), finder)

    def test_missing_dependency(self):
        """A dependency no source offers is an error."""
        root = item("App", "1.0.0", ("Missing", "[1.0, )"))
        request = FeedRequest()
        with pytest.raises(UnableToFindDependencyError):
            resolve_dependencies(root, request, Catalog())
        assert [e.message_id for e in request.errors] == [Messages.UNABLE_TO_FIND_DEPENDENCY_PACKAGE]

    def test_installed_dependencies_are_skipped(self):
        """Dependencies the host reports as installed are not looked up."""
        root = item("App", "1.0.0", ("B", "[1.0, )"))
        finder = Catalog(item("B", "1.0.0"))
        request = FeedRequest(installed_packages=[InstalledPackage("b", "1.2.0")])
        assert list(resolve_dependencies(root, request, finder)) == []
        assert finder.calls == []

    def test_force_ignores_installed(self):
        """force resolves dependencies even when installed."""
        root = item("App", "1.0.0", ("B", "[1.0, )"))
        finder = Catalog(item("B", "1.0.0"))
        request = FeedRequest({"force": True}, installed_packages=[InstalledPackage("B")])
        assert ids(resolve_dependencies(root, request, finder)) == ["B 1.0.0"]


class TestDependencyInstalled:
    """Installed checks."""

    def test_host_list_version_outside_range(self):
        """An installed version outside the range does not count."""
        request = FeedRequest(installed_packages=[InstalledPackage("B", "0.9.0")])
        assert not dependency_installed(request, "B", DependencyVersionRange.parse("[1.0, )"))

    def test_host_list_without_version(self):
        """An entry without version matches any range."""
        request = FeedRequest(installed_packages=[InstalledPackage("B")])
        assert dependency_installed(request, "b", DependencyVersionRange.parse("[1.0, )"))

    def test_destination_scan(self, tmp_path):
        """Without a host list the destination folder is scanned."""
        request = FeedRequest({"destination": str(tmp_path)})
        assert not dependency_installed(request, "B", DependencyVersionRange.parse("[1.0, )"))
