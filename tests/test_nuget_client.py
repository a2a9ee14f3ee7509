"""Tests for source-level find, search and FastPath handling in NuGetClient."""

from datetime import datetime

import pytest

from common.errors import FeedUnavailableError, VersionParseError
from common.request import FeedRequest
from constants import Messages
from registry.nuget.client import NuGetClient, server_search_term
from sources.fastpath import make_fast_path, parse_fast_path
from sources.registry import PackageSourceRegistry
from versioning.models import FindResult, PackageBase, PackageResult, SearchTermType
from versioning.semver import SemanticVersion

from conftest import FakeHttp

UNLISTED = datetime(1900, 1, 1)


def pkg(package_id, version, published=None, tags=None):
    return PackageBase(package_id, SemanticVersion.parse(version), published=published, tags=tags)


class FakeRepository:
    """A remote collection answering find/search from a fixed list."""

    protocol = "v2"
    is_local = False
    files_feed = None
    autocomplete_feed = None

    def __init__(self, results=(), error=None, post_filter=True):
        self.results = list(results)
        self.error = error
        self.post_filter = post_filter
        self.contexts = []

    def find(self, context, request):
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return FindResult(list(self.results), self.post_filter)

    def search(self, context, request):
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return list(self.results)


class FakeDiscovery:
    def __init__(self, repositories):
        self.repositories = repositories

    def get(self, location, request=None):
        return self.repositories[location]


@pytest.fixture
def registry(tmp_path):
    return PackageSourceRegistry(config_path=str(tmp_path / "nuget.config"))


def remote_client(registry, **repositories):
    for name in repositories:
        registry.add(name, f"https://{name}.test/api/v2/")
    discovery = FakeDiscovery({f"https://{name}.test/api/v2/": repo for name, repo in repositories.items()})
    return NuGetClient(registry=registry, http=FakeHttp(), discovery=discovery, workers=2)


class TestServerSearchTerm:
    """Reducing wildcard names for the server."""

    def test_longest_literal_run(self):
        """The longest run between wildcards is searched."""
        assert server_search_term("Foo*Json.Net?") == "Json.Net"

    def test_brackets_are_wildcards(self):
        """Character classes count as wildcards."""
        assert server_search_term("[ab]Serializer*") == "Serializer"

    def test_only_wildcards(self):
        """A bare wildcard searches everything."""
        assert server_search_term("*") == ""


class TestSearchContext:
    """Search term construction."""

    def test_wildcard_name(self, registry):
        """A wildcard name keeps the pattern and sends its literal part."""
        client = NuGetClient(registry=registry, http=FakeHttp())
        request = FeedRequest({"filterontag": ["json"], "contains": "fast"})
        context = client.search_context(request, "Newtonsoft*")
        assert context.original_pattern() == "Newtonsoft*"
        assert context.terms_of(SearchTermType.SEARCH_TERM) == ["Newtonsoft"]
        assert context.terms_of(SearchTermType.TAG) == ["json"]
        assert context.terms_of(SearchTermType.CONTAINS) == ["fast"]

    def test_plain_name(self, registry):
        """A plain name is searched as is."""
        client = NuGetClient(registry=registry, http=FakeHttp())
        context = client.search_context(FeedRequest(), "Newtonsoft.Json")
        assert context.original_pattern() is None
        assert context.terms_of(SearchTermType.SEARCH_TERM) == ["Newtonsoft.Json"]


class TestGetPackageById:
    """Result selection rules for find."""

    def test_latest_release_only(self, registry):
        """Without version arguments only latest-flagged results are kept."""
        repo = FakeRepository([
            PackageResult(pkg("Foo", "1.0.0")),
            PackageResult(pkg("Foo", "2.0.0"), True, False),
            PackageResult(pkg("Foo", "3.0.0-beta"), False, True),
        ])
        client = remote_client(registry, main=repo)
        items = client.get_package_by_id(FeedRequest(), "Foo")
        assert [str(i.version) for i in items] == ["2.0.0"]
        assert items[0].source.name == "main"

    def test_prerelease_takes_highest(self, registry):
        """With prereleases allowed the highest version per id wins."""
        repo = FakeRepository([PackageResult(pkg("Foo", "2.0.0"), True), PackageResult(pkg("Foo", "3.0.0-beta"))])
        client = remote_client(registry, main=repo)
        items = client.get_package_by_id(FeedRequest({"allowprereleaseversions": True}), "Foo")
        assert [str(i.version) for i in items] == ["3.0.0-beta"]

    def test_all_versions_descending(self, registry):
        """allversions returns everything, newest first."""
        repo = FakeRepository([PackageResult(pkg("Foo", v)) for v in ("1.0.0", "3.0.0", "2.0.0")])
        client = remote_client(registry, main=repo)
        items = client.get_package_by_id(FeedRequest({"allversions": True}), "Foo")
        assert [str(i.version) for i in items] == ["3.0.0", "2.0.0", "1.0.0"]

    def test_unlisted_versions_are_dropped(self, registry):
        """Unlisted versions disappear when a listed one exists."""
        repo = FakeRepository([
            PackageResult(pkg("Foo", "1.0.0"), True),
            PackageResult(pkg("Foo", "2.0.0", published=UNLISTED)),
        ])
        client = remote_client(registry, main=repo)
        items = client.get_package_by_id(FeedRequest({"allversions": True}), "Foo")
        assert [str(i.version) for i in items] == ["1.0.0"]

    def test_all_unlisted_only_for_dependencies(self, registry):
        """When everything is unlisted only dependency lookups get results."""
        repo = FakeRepository([PackageResult(pkg("Foo", "1.0.0", published=UNLISTED), True)])
        client = remote_client(registry, main=repo)
        assert client.get_package_by_id(FeedRequest(), "Foo") == []
        assert len(client.get_package_by_id(FeedRequest(), "Foo", is_dependency=True)) == 1

    def test_range_drops_prereleases(self, registry):
        """Bounded lookups skip prereleases unless allowed."""
        repo = FakeRepository([PackageResult(pkg("Foo", v)) for v in ("1.0.0", "1.5.0-rc", "2.0.0")])
        client = remote_client(registry, main=repo)
        items = client.get_package_by_id(FeedRequest(), "Foo", minimum_version="1.0", maximum_version="2.0")
        assert [str(i.version) for i in items] == ["1.0.0", "2.0.0"]

    def test_required_version_post_filter(self, registry):
        """A feed asking for post filtering gets the required version applied."""
        repo = FakeRepository([PackageResult(pkg("Foo", v)) for v in ("1.0.0", "2.0.0")])
        client = remote_client(registry, main=repo)
        items = client.get_package_by_id(FeedRequest(), "Foo", required_version="2.0")
        assert [str(i.version) for i in items] == ["2.0.0"]
        assert repo.contexts[0].required_version == SemanticVersion.parse("2.0")

    def test_bad_version_argument(self, registry):
        """Malformed versions raise before any source is queried."""
        client = remote_client(registry, main=FakeRepository())
        with pytest.raises(VersionParseError):
            client.get_package_by_id(FeedRequest(), "Foo", required_version="not.a.version")

    def test_failing_source_is_a_warning(self, registry):
        """A source that fails contributes nothing; the others still answer."""
        good = FakeRepository([PackageResult(pkg("Foo", "1.0.0"), True)])
        bad = FakeRepository(error=FeedUnavailableError(["https://bad.test/"], [ConnectionError("down")]))
        client = remote_client(registry, good=good, bad=bad)
        request = FeedRequest()

        items = client.get_package_by_id(request, "Foo")

        assert [i.source.name for i in items] == ["good"]
        assert any(w.startswith("bad:") for w in request.warnings)
        assert request.errors == []

    def test_tag_filter(self, registry):
        """filterontag keeps only tagged results."""
        repo = FakeRepository([
            PackageResult(pkg("Foo", "1.0.0", tags="json"), True),
            PackageResult(pkg("Foo", "1.0.0", tags="xml"), True),
        ])
        client = remote_client(registry, main=repo)
        items = client.get_package_by_id(FeedRequest({"filterontag": ["xml"]}), "Foo")
        assert [i.package.tags for i in items] == ["xml"]


class TestLocalSource:
    """Ad hoc folder sources."""

    def test_find_in_folder(self, registry, make_nupkg):
        """A folder path works as a source and the highest version wins."""
        make_nupkg("Foo", "1.0.0")
        make_nupkg("Foo", "2.0.0")
        client = NuGetClient(registry=registry, http=FakeHttp())
        items = client.get_package_by_id(FeedRequest(), "Foo", sources=[make_nupkg.folder])
        assert [str(i.version) for i in items] == ["2.0.0"]
        assert items[0].sources == (make_nupkg.folder,)

    def test_fast_path_round_trip(self, registry, make_nupkg):
        """A FastPath token re-identifies the same package."""
        make_nupkg("Foo", "1.0.0")
        make_nupkg("Foo", "2.0.0")
        client = NuGetClient(registry=registry, http=FakeHttp())
        item = client.get_package_by_id(FeedRequest(), "Foo", sources=[make_nupkg.folder])[0]

        token = parse_fast_path(item.fast_path)
        assert (token.source, token.id, token.version) == (make_nupkg.folder, "Foo", "2.0.0")

        again = client.package_from_fast_path(FeedRequest(), item.fast_path)
        assert again.id == "Foo"
        assert again.version == SemanticVersion.parse("2.0.0")

    def test_blank_fast_path_sources_are_skipped(self, registry, make_nupkg, tmp_path):
        """Blank original sources are kept in the token but never resolved."""
        make_nupkg("App", "1.0.0", [("Lib", "[1.0, )")])
        make_nupkg("Lib", "1.0.0")
        client = NuGetClient(registry=registry, http=FakeHttp())
        token = make_fast_path(make_nupkg.folder, "App", "1.0.0", ["", make_nupkg.folder])
        destination = tmp_path / "out"
        request = FeedRequest({"destination": str(destination)})

        item = client.package_from_fast_path(request, token)
        assert item.sources == ("", make_nupkg.folder)
        assert client.install(request, item)

        assert request.errors == []
        assert (destination / "Lib.1.0.0" / "Lib.1.0.0.nupkg").is_file()

    def test_invalid_fast_path(self, registry):
        """Garbage tokens give None."""
        client = NuGetClient(registry=registry, http=FakeHttp())
        assert client.package_from_fast_path(FeedRequest(), "Foo") is None

    def test_search_folder_by_pattern(self, registry, make_nupkg):
        """Local search re-applies the wildcard pattern."""
        make_nupkg("Foo.Core", "1.0.0")
        make_nupkg("Bar.Foo", "1.0.0")
        client = NuGetClient(registry=registry, http=FakeHttp())
        items = client.search(FeedRequest(), "Foo*", sources=[make_nupkg.folder])
        assert [i.id for i in items] == ["Foo.Core"]

    def test_unresolvable_source(self, registry):
        """An unknown source name is reported as an error."""
        client = NuGetClient(registry=registry, http=FakeHttp())
        request = FeedRequest()
        assert client.get_package_by_id(request, "Foo", sources=["nowhere"]) == []
        assert [e.message_id for e in request.errors] == [Messages.UNABLE_TO_RESOLVE_SOURCE]


class TestSearch:
    """Search across sources."""

    def test_wildcard_with_all_versions_is_rejected(self, registry):
        """Searching a wildcard for every version is an error."""
        repo = FakeRepository()
        client = remote_client(registry, main=repo)
        request = FeedRequest({"allversions": True})
        assert client.search(request, "Foo*") == []
        assert [e.message_id for e in request.errors] == [Messages.ALL_VERSIONS_SEARCH_NOT_SUPPORTED]
        assert repo.contexts == []

    def test_v2_results_post_filtered(self, registry):
        """Non v3 results are filtered by the original pattern."""
        repo = FakeRepository([PackageResult(pkg("Foo.Core", "1.0.0")), PackageResult(pkg("Bar.Foo", "1.0.0"))])
        client = remote_client(registry, main=repo)
        items = client.search(FeedRequest(), "Foo*")
        assert [i.id for i in items] == ["Foo.Core"]
        assert repo.contexts[0].terms_of(SearchTermType.SEARCH_TERM) == ["Foo"]
