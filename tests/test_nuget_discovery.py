"""Tests for feed discovery and service index handling."""

import json

import pytest

from common.errors import DiscoveryError
from registry.nuget.discovery import (
    PROTOCOL_LOCAL,
    PROTOCOL_V2,
    PROTOCOL_V3,
    DiscoveryCache,
    discover,
    select_services,
)
from registry.nuget.converters import JsonDocument
from registry.nuget.feeds_v2 import FilesFeed2, PackagesFeed2, QueryFeed2
from registry.nuget.feeds_v3 import FilesFeed3, NuGetOrgGalleryFeed
from registry.nuget.service_info import ServiceType, lookup_service

from conftest import FakeHttp

V3_URL = "https://api.nuget.org/v3/index.json"

SERVICE_INDEX = {
    "version": "3.0.0",
    "resources": [
        {"@id": "https://search-a.nuget.org/query", "@type": "SearchQueryService/3.0.0-rc"},
        {"@id": "https://search-b.nuget.org/query", "@type": "SearchQueryService/3.0.0-rc"},
        {"@id": "https://search-old.nuget.org/query", "@type": "SearchQueryService"},
        {"@id": "https://api.nuget.org/v3/registration5-semver1/", "@type": "RegistrationsBaseUrl"},
        {"@id": "https://api.nuget.org/v3/registration5-gz-semver2/", "@type": "RegistrationsBaseUrl/3.6.0"},
        {"@id": "https://api.nuget.org/v3-flatcontainer/", "@type": "PackageBaseAddress/3.0.0"},
        {"@id": "https://azuresearch-usnc.nuget.org/autocomplete", "@type": "SearchAutocompleteService/3.0.0-rc"},
        {"@id": "https://www.nuget.org/packages/{id}/{version}/ReportAbuse", "@type": "ReportAbuseUriTemplate/3.0.0-rc"},
        {"@id": "https://example.org/unknown", "@type": ["SomethingElse/1.0.0"]},
    ],
}


class TestServiceInfo:
    """@type lookup."""

    def test_lookup_is_case_insensitive(self):
        """Type names are matched ignoring case."""
        info = lookup_service("registrationsBaseUrl/3.6.0")
        assert info.service_type is ServiceType.REGISTRATIONS
        assert info.preference == 4

    def test_unknown_type(self):
        """Unrecognized types map to None."""
        assert lookup_service("Catalog/3.0.0") is None
        assert lookup_service(None) is None


class TestSelectServices:
    """Preference and mirror selection."""

    def test_highest_preference_wins_and_mirrors_are_kept(self):
        """Equal preference query endpoints are mirrors; lower ones are dropped."""
        services = select_services(JsonDocument(SERVICE_INDEX).children("resources"))
        assert [e.url for e in services[ServiceType.QUERY]] == [
            "https://search-a.nuget.org/query",
            "https://search-b.nuget.org/query",
        ]
        assert [e.url for e in services[ServiceType.REGISTRATIONS]] == [
            "https://api.nuget.org/v3/registration5-gz-semver2/"
        ]


class TestDiscover:
    """Probing a source location."""

    def test_v3_service_index(self):
        """A JSON service index yields a v3 collection with every known feed."""
        http = FakeHttp(texts={V3_URL: json.dumps(SERVICE_INDEX)})
        collection = discover(V3_URL, http)

        assert collection.protocol == PROTOCOL_V3
        assert collection.query_feed is not None
        assert len(collection.query_feed.endpoints) == 2
        assert collection.packages_feed.url == "https://api.nuget.org/v3/registration5-gz-semver2/"
        assert isinstance(collection.files_feed, FilesFeed3)
        assert collection.autocomplete_feed is not None
        assert collection.abuse_feed is not None
        assert isinstance(collection.gallery_feed, NuGetOrgGalleryFeed)
        assert collection.packages_feed.collection is collection

    def test_v2_feed(self):
        """A body starting with an XML declaration is a v2 feed."""
        url = "https://www.myget.org/F/feed/api/v2"
        http = FakeHttp(texts={url: '<?xml version="1.0" encoding="utf-8"?><service />'})
        collection = discover(url, http)

        assert collection.protocol == PROTOCOL_V2
        assert isinstance(collection.packages_feed, PackagesFeed2)
        assert isinstance(collection.query_feed, QueryFeed2)
        assert isinstance(collection.files_feed, FilesFeed2)
        assert collection.packages_feed.base_url.endswith("/api/v2/")

    def test_local_folder(self, tmp_path):
        """An existing directory is a local repository without HTTP."""
        http = FakeHttp()
        collection = discover(str(tmp_path), http)
        assert collection.protocol == PROTOCOL_LOCAL
        assert collection.local is not None
        assert http.calls == []

    def test_unsupported_index_version(self):
        """Service index versions other than 3.x are rejected."""
        http = FakeHttp(texts={V3_URL: json.dumps(dict(SERVICE_INDEX, version="2.0.0"))})
        with pytest.raises(DiscoveryError):
            discover(V3_URL, http)

    def test_schema_violation(self):
        """Resources without @type fail schema validation."""
        index = {"version": "3.0.0", "resources": [{"@id": "https://x/"}]}
        http = FakeHttp(texts={V3_URL: json.dumps(index)})
        with pytest.raises(DiscoveryError):
            discover(V3_URL, http)

    def test_no_known_resources(self):
        """An index with nothing usable is rejected."""
        index = {"version": "3.0.0", "resources": [{"@id": "https://x/", "@type": "Catalog/3.0.0"}]}
        http = FakeHttp(texts={V3_URL: json.dumps(index)})
        with pytest.raises(DiscoveryError):
            discover(V3_URL, http)

    def test_http_failure(self):
        """A non-200 answer is a discovery failure."""
        with pytest.raises(DiscoveryError):
            discover("https://nowhere.example/index.json", FakeHttp())

    def test_neither_xml_nor_json(self):
        """An HTML page is not a feed."""
        http = FakeHttp(texts={V3_URL: "<html><body>hi</body></html>"})
        with pytest.raises(DiscoveryError):
            discover(V3_URL, http)


class TestDiscoveryCache:
    """Per-session memo."""

    def test_memoizes_success(self):
        """A discovered collection is reused."""
        http = FakeHttp(texts={V3_URL: json.dumps(SERVICE_INDEX)})
        cache = DiscoveryCache(http)
        first = cache.get(V3_URL)
        second = cache.get(V3_URL)
        assert first is second
        assert http.calls == [V3_URL]
        assert V3_URL in cache

    def test_failures_are_not_cached(self):
        """A failed discovery is retried on the next call."""
        http = FakeHttp()
        cache = DiscoveryCache(http)
        with pytest.raises(DiscoveryError):
            cache.get(V3_URL)
        http.texts[V3_URL] = json.dumps(SERVICE_INDEX)
        assert cache.get(V3_URL).protocol == PROTOCOL_V3
