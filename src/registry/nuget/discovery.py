"""Feed discovery: probe a source location and build its ResourceCollection.

A body starting with an XML declaration is a v2 OData feed. Anything else
must be a v3 service index whose ``resources`` are mapped through the
``@type`` table in service_info; for each service the highest preference
wins and equal-preference endpoints are kept together as mirrors.
"""
from __future__ import annotations

import json
import logging
import os
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

from common.errors import DiscoveryError
from common.http_client import FeedHttpClient
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from common.request import FeedRequest
from common.schemas import SERVICE_INDEX_SCHEMA, SchemaError, validate_document
from versioning.cache import KeyedMemo
from versioning.models import FindResult, PackageBase, PackageResult, SearchContext

from .converters import JsonDocument, package_from_json
from .feeds_v2 import FilesFeed2, PackagesFeed2, QueryFeed2
from .feeds_v3 import (
    AbuseFeed3,
    AutocompleteFeed3,
    FilesFeed3,
    PackagesFeed3,
    QueryFeed3,
    gallery_feed_for,
)
from .local import LocalPackageRepository
from .service_info import MIRRORABLE_SERVICES, ServiceInfo, ServiceType, lookup_service

logger = logging.getLogger(__name__)

XML_START = "<?xml"
DISCOVERY_HEADERS = {"Accept": "application/json, application/xml;q=0.9"}

PROTOCOL_LOCAL = "local"
PROTOCOL_V2 = "v2"
PROTOCOL_V3 = "v3"


class ResourceCollection:  # pylint: disable=too-many-instance-attributes
    """The set of feed adapters one source offers."""

    def __init__(self, protocol: str, base_url: str):
        self.protocol = protocol
        self.base_url = base_url
        self.packages_feed = None
        self.query_feed = None
        self.files_feed = None
        self.autocomplete_feed = None
        self.gallery_feed = None
        self.abuse_feed = None
        self.local: Optional[LocalPackageRepository] = None

    def bind(self) -> "ResourceCollection":
        """Give every adapter a back reference to this collection."""
        for feed in (self.packages_feed, self.query_feed, self.files_feed, self.autocomplete_feed):
            if feed is not None:
                feed.collection = self
        return self

    @property
    def is_local(self) -> bool:
        return self.protocol == PROTOCOL_LOCAL

    @property
    def is_file(self) -> bool:
        return self.local is not None and self.local.is_file

    def make_package(self, raw: Dict[str, Any]) -> Optional[PackageBase]:
        """Convert a v3 JSON entry, filling gallery, abuse and download URLs."""
        return package_from_json(
            raw,
            files_feed=self.files_feed,
            gallery_feed=self.gallery_feed,
            abuse_feed=self.abuse_feed,
        )

    def find(self, context: SearchContext, request: FeedRequest) -> FindResult:
        if self.local is not None:
            return self.local.find(context, request)
        if self.packages_feed is None:
            return FindResult([], True)
        return self.packages_feed.find(context, request)

    def search(self, context: SearchContext, request: FeedRequest) -> List[PackageResult]:
        if self.local is not None:
            return self.local.search(context, request)
        if self.query_feed is None:
            return []
        return list(self.query_feed.search(context, request))

    def __repr__(self) -> str:
        return f"ResourceCollection({self.protocol!r}, {self.base_url!r})"


def local_path(location: str) -> Optional[str]:
    """Filesystem path for a location, or None when it is not local."""
    if not location:
        return location
    parts = urllib.parse.urlsplit(location)
    if parts.scheme.lower() == "file":
        return urllib.request.url2pathname(parts.path)
    if os.path.exists(location):
        return location
    return None


def make_local(location: str) -> ResourceCollection:
    collection = ResourceCollection(PROTOCOL_LOCAL, location)
    collection.local = LocalPackageRepository(location)
    return collection


def make_v2(base_url: str, http: FeedHttpClient) -> ResourceCollection:
    collection = ResourceCollection(PROTOCOL_V2, base_url)
    collection.packages_feed = PackagesFeed2(base_url, http)
    collection.query_feed = QueryFeed2(base_url, http)
    collection.files_feed = FilesFeed2(base_url)
    return collection.bind()


def select_services(resources: List[JsonDocument]) -> Dict[ServiceType, List[ServiceInfo]]:
    """Best endpoints per service type; several only when they are mirrors."""
    selected: Dict[ServiceType, Tuple[int, List[ServiceInfo]]] = {}
    for resource in resources:
        url = resource.string("@id")
        if not url:
            continue
        for type_name in resource.types():
            info = lookup_service(type_name)
            if info is None:
                continue
            current = selected.get(info.service_type)
            if current is None or info.preference > current[0]:
                selected[info.service_type] = (info.preference, [info.with_url(url)])
            elif info.preference == current[0] and info.service_type in MIRRORABLE_SERVICES:
                if all(e.url != url for e in current[1]):
                    current[1].append(info.with_url(url))
    return {service: endpoints for service, (_, endpoints) in selected.items()}


def make_v3(base_url: str, index: Dict[str, Any], http: FeedHttpClient) -> ResourceCollection:
    """Build a v3 collection from a parsed service index."""
    try:
        validate_document(SERVICE_INDEX_SCHEMA, index)
    except SchemaError as exc:
        raise DiscoveryError(base_url, str(exc)) from exc
    doc = JsonDocument(index)
    version = doc.string("version") or ""
    if not version.startswith("3."):
        raise DiscoveryError(base_url, f"unsupported service index version {version!r}")

    services = select_services(doc.children("resources"))
    if not services:
        raise DiscoveryError(base_url, "no recognized resources")

    collection = ResourceCollection(PROTOCOL_V3, base_url)
    if ServiceType.QUERY in services:
        collection.query_feed = QueryFeed3(services[ServiceType.QUERY], http)
    if ServiceType.REGISTRATIONS in services:
        collection.packages_feed = PackagesFeed3(services[ServiceType.REGISTRATIONS], http)
    if ServiceType.AUTOCOMPLETE in services:
        collection.autocomplete_feed = AutocompleteFeed3(services[ServiceType.AUTOCOMPLETE], http)
    if ServiceType.FILES in services:
        collection.files_feed = FilesFeed3(services[ServiceType.FILES][0].url, http)
    if ServiceType.REPORT_ABUSE in services:
        collection.abuse_feed = AbuseFeed3(services[ServiceType.REPORT_ABUSE][0].url)
    collection.gallery_feed = gallery_feed_for(base_url)

    if is_debug_enabled(logger):
        for service, endpoints in services.items():
            logger.debug(
                "Endpoint discovered",
                extra=extra_context(
                    event="discovery",
                    component="discovery",
                    action="make_v3",
                    outcome=service.value,
                    count=len(endpoints),
                    target=safe_url(endpoints[0].url),
                    package_manager="nuget",
                ),
            )
    return collection.bind()


def discover(base_url: str, http: FeedHttpClient, request: Optional[FeedRequest] = None) -> ResourceCollection:
    """Probe a location and return its ResourceCollection.

    Raises DiscoveryError when the location answers with neither an
    Atom/XML feed nor a usable v3 service index.
    """
    path = local_path(base_url)
    if path is not None:
        return make_local(path)

    with Timer() as t:
        status, _, text = http.get_text(base_url, headers=DISCOVERY_HEADERS, request=request)
    if status != 200:
        raise DiscoveryError(base_url, f"HTTP status {status}")
    if is_debug_enabled(logger):
        logger.debug(
            "Service document fetched",
            extra=extra_context(
                event="discovery",
                component="discovery",
                action="discover",
                outcome="fetched",
                duration_ms=t.duration_ms(),
                target=safe_url(base_url),
                package_manager="nuget",
            ),
        )

    body = text.lstrip("\ufeff").lstrip()
    if body.startswith(XML_START):
        return make_v2(base_url, http)
    try:
        index = json.loads(body)
    except json.JSONDecodeError as exc:
        raise DiscoveryError(base_url, "response is neither XML nor JSON") from exc
    return make_v3(base_url, index, http)


class DiscoveryCache:
    """Per-session memo of discovered collections keyed by base URL.

    Population is first-writer-wins with one lock per URL, so discovering
    one source never blocks another. Failed discoveries are not cached.
    """

    def __init__(self, http: FeedHttpClient):
        self.http = http
        self._memo: KeyedMemo[ResourceCollection] = KeyedMemo()

    def get(self, base_url: str, request: Optional[FeedRequest] = None) -> ResourceCollection:
        key = (base_url or "").strip()
        return self._memo.get_or_create(key, lambda: discover(key, self.http, request))

    def __contains__(self, base_url: str) -> bool:
        return (base_url or "").strip() in self._memo

    def clear(self) -> None:
        self._memo.clear()
