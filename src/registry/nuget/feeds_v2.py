"""NuGet v2 (OData/Atom) feed adapters and the parallel page fetcher."""
from __future__ import annotations

import logging
import threading
import urllib.parse
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Tuple
from xml.etree import ElementTree as ET

from constants import Constants
from common.http_client import HEADERS_XML, FeedHttpClient
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from common.request import FeedRequest
from versioning.models import (
    FindResult,
    PackageBase,
    PackageEntryInfo,
    PackageItem,
    PackageResult,
    SearchContext,
    SearchTermType,
)
from versioning.semver import SemanticVersion

from .converters import read_v2_entry, v2_entries

if TYPE_CHECKING:  # pragma: no cover
    from .discovery import ResourceCollection

logger = logging.getLogger(__name__)

FIND_PACKAGES_BY_ID = "FindPackagesById()"
SEARCH = "Search()"
# Id that never exists; used to probe whether FindPackagesById() answers
DUMMY_PACKAGE_ID = "FoooBarr"

Page = Tuple[int, List[PackageResult]]


def ensure_trailing_slash(url: str) -> str:
    return url if url.endswith("/") else url + "/"


def odata_literal(value: str) -> str:
    """Quote a value as an OData string literal inside a query string."""
    return "'" + urllib.parse.quote(value.replace("'", "''"), safe="") + "'"


def page_url(query: str, skip: int, top: int) -> str:
    """Append ``$skip``/``$top`` paging parameters to a query URL."""
    separator = "&" if "?" in query else "?"
    return f"{query}{separator}$skip={skip}&$top={top}"


def search_text(context: SearchContext) -> str:
    """Server-side search text: the search term followed by ``tag:`` terms."""
    terms = context.terms_of(SearchTermType.SEARCH_TERM)
    text = terms[0] if terms else ""
    for tag in context.terms_of(SearchTermType.TAG):
        text += " tag:" + tag
    return text


def _same_package(a: PackageBase, b: PackageBase) -> bool:
    return a.full_name.lower() == b.full_name.lower() and str(a.version).lower() == str(b.version).lower()


def fetch_page(http: FeedHttpClient, url: str, request: FeedRequest) -> Optional[Page]:
    """Fetch one Atom page; returns (entry_count, results) or None when unavailable."""
    status, _, text = http.get_text(url, headers=HEADERS_XML, request=request)
    if status != 200:
        if is_debug_enabled(logger):
            logger.debug(
                "v2 page unavailable",
                extra=extra_context(
                    event="http_response",
                    component="feeds_v2",
                    action="fetch_page",
                    outcome="unavailable",
                    status_code=status,
                    target=safe_url(url),
                    package_manager="nuget",
                ),
            )
        return None
    try:
        entries = v2_entries(text)
    except ET.ParseError:
        request.warning("Response from %s is not a valid Atom document", safe_url(url))
        return None
    results = []
    for entry in entries:
        package, is_latest, is_absolute_latest = read_v2_entry(entry)
        if package is not None:
            results.append(PackageResult(package, is_latest, is_absolute_latest))
    return len(entries), results


def send_paged_request(
    http: FeedHttpClient,
    query: str,
    request: FeedRequest,
    page_size: Optional[int] = None,
    workers: Optional[int] = None,
) -> Iterator[PackageResult]:
    """Stream every package of a paged OData query.

    One probe page is fetched first: a short page means the server either
    has no more data or ignores paging, so nothing else is requested. After
    that ``workers`` fetchers share a next-offset counter and a stop flag
    under one lock. A short page stops further requests. A page opening
    with the first page's first record means the server ignores ``$skip``:
    paging stops and that page and every page in flight are discarded.
    """
    page_size = page_size or Constants.V2_PAGE_SIZE
    workers = workers or Constants.V2_PAGE_WORKERS

    first = fetch_page(http, page_url(query, 0, page_size), request)
    if first is None:
        return
    count, results = first
    first_package = results[0].package if results else None
    yield from results
    if count != page_size or request.is_canceled:
        if is_debug_enabled(logger):
            logger.debug(
                "v2 paging stopped after probe",
                extra=extra_context(
                    event="paging",
                    component="feeds_v2",
                    action="send_paged_request",
                    outcome="short_page",
                    count=count,
                    target=safe_url(query),
                    package_manager="nuget",
                ),
            )
        return

    lock = threading.Lock()
    state = {"offset": 0, "stop": False}

    def next_offset() -> int:
        with lock:
            state["offset"] += page_size
            return state["offset"]

    def stop() -> None:
        with lock:
            state["stop"] = True

    def stopped() -> bool:
        with lock:
            return state["stop"]

    repeated = False
    with ThreadPoolExecutor(max_workers=workers) as pool:
        pending = {
            pool.submit(fetch_page, http, page_url(query, next_offset(), page_size), request)
            for _ in range(workers)
        }
        while pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                page = future.result()
                if page is None:
                    stop()
                elif not repeated:
                    count, results = page
                    if count < page_size:
                        stop()
                    if first_package is not None and results and _same_package(first_package, results[0].package):
                        repeated = True
                        stop()
                        request.verbose("Feed ignores $skip; paging of %s stopped", safe_url(query))
                    else:
                        yield from results

                if request.is_canceled and not stopped():
                    request.warning("Request canceled while paging %s", safe_url(query))
                    stop()
                if not stopped():
                    pending.add(pool.submit(fetch_page, http, page_url(query, next_offset(), page_size), request))


class FilesFeedBase:
    """Download side shared by v2 and v3 files feeds."""

    def __init__(self) -> None:
        self.collection: Optional["ResourceCollection"] = None

    def make_download_uri(self, package: PackageBase) -> Optional[str]:
        raise NotImplementedError

    def version_list(self, package_id: str, request: FeedRequest) -> List[SemanticVersion]:
        raise NotImplementedError

    def install_package(self, item: PackageItem, request: FeedRequest, finder: Callable) -> bool:
        """Install the item and its dependencies into ``request.destination``."""
        from install import installer  # pylint: disable=import-outside-toplevel

        return installer.install_or_download(item, request, finder, operation=installer.INSTALL)

    def download_package(self, item: PackageItem, destination: str, request: FeedRequest, finder: Callable) -> bool:
        """Save the item's package file (and its dependencies) into ``destination``."""
        from install import installer  # pylint: disable=import-outside-toplevel

        return installer.install_or_download(
            item, request, finder, destination=destination, operation=installer.DOWNLOAD
        )


class FilesFeed2(FilesFeedBase):
    """v2 download URIs come from the entry's ``content src`` or the package route."""

    def __init__(self, base_url: str):
        super().__init__()
        self.base_url = ensure_trailing_slash(base_url)

    def make_download_uri(self, package: PackageBase) -> Optional[str]:
        if package.content_src_url:
            return package.content_src_url
        return f"{self.base_url}package/{package.id}/{package.version}"

    def version_list(self, package_id: str, request: FeedRequest) -> List[SemanticVersion]:
        raise NotImplementedError("v2 feeds have no version index")


class PackagesFeed2:
    """``FindPackagesById()`` lookups."""

    def __init__(self, base_url: str, http: FeedHttpClient):
        self.base_url = ensure_trailing_slash(base_url)
        self.http = http
        self.collection: Optional["ResourceCollection"] = None

    def find_query(self, package_id: str) -> str:
        return f"{self.base_url}{FIND_PACKAGES_BY_ID}?id={odata_literal(package_id)}"

    def is_available(self, request: FeedRequest) -> bool:
        status, _, _ = self.http.get_text(self.find_query(DUMMY_PACKAGE_ID), headers=HEADERS_XML, request=request)
        return status == 200

    def find(self, context: SearchContext, request: FeedRequest) -> FindResult:
        info: Optional[PackageEntryInfo] = context.package_info
        if info is None or not info.id.strip():
            return FindResult([], True)
        with Timer() as t:
            results = [
                r
                for r in send_paged_request(self.http, self.find_query(info.id), request)
                if r.id.lower() == info.id.lower()
                and (context.required_version is None or r.version == context.required_version)
            ]
        if is_debug_enabled(logger):
            logger.debug(
                "v2 find complete",
                extra=extra_context(
                    event="find",
                    component="feeds_v2",
                    action="find",
                    outcome="success",
                    count=len(results),
                    duration_ms=t.duration_ms(),
                    target=info.id,
                    package_manager="nuget",
                ),
            )
        return FindResult(results, True)


class QueryFeed2:
    """``Search()`` queries with ``tag:`` terms folded into the search text."""

    def __init__(self, base_url: str, http: FeedHttpClient):
        self.base_url = ensure_trailing_slash(base_url)
        self.http = http
        self.collection: Optional["ResourceCollection"] = None

    def search_query(self, context: SearchContext) -> str:
        prerelease = "true" if context.allow_prerelease else "false"
        return (
            f"{self.base_url}{SEARCH}?searchTerm={odata_literal(search_text(context))}"
            f"&targetFramework=''&includePrerelease={prerelease}"
        )

    def search(self, context: SearchContext, request: FeedRequest) -> Iterator[PackageResult]:
        return send_paged_request(self.http, self.search_query(context), request)
