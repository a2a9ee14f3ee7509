"""NuGet v3 (JSON) feed adapters.

Query, Registrations and Autocomplete feeds may be backed by several
equal-preference mirror endpoints; ``RemoteFeed.execute`` tries each one in
order with retries before giving up with an aggregate error.
"""
from __future__ import annotations

import dataclasses
import logging
import re
import urllib.parse
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, TypeVar

from constants import Constants
from common.errors import FeedUnavailableError, NuGetFeedError, OperationCanceledError
from common.http_client import HEADERS_JSON, FeedHttpClient, backoff_delay_ms
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from common.request import FeedRequest, ProgressTracker
from common.schemas import (
    AUTOCOMPLETE_SCHEMA,
    REGISTRATION_INDEX_SCHEMA,
    SEARCH_RESPONSE_SCHEMA,
    VERSION_INDEX_SCHEMA,
    check_document,
)
from versioning.cache import KeyedMemo
from versioning.models import (
    FindResult,
    PackageBase,
    PackageEntryInfo,
    PackageResult,
    SearchContext,
    SearchTermType,
)
from versioning.ranges import min_and_max_version_matched
from versioning.semver import SemanticVersion

from .converters import JsonDocument, catalog_url
from .feeds_v2 import FilesFeedBase
from .filters import filter_entry_by_name, has_wildcard, wildcard_match
from .service_info import ServiceInfo

if TYPE_CHECKING:  # pragma: no cover
    from .discovery import ResourceCollection

logger = logging.getLogger(__name__)

T = TypeVar("T")

NUGET_GALLERY_TEMPLATE = "https://www.nuget.org/packages/{id-lower}/{version-lower}"
MYGET_GALLERY_TEMPLATE = "{scheme}://{host}/feed/{feed}/package/nuget/{{id-lower}}/{{version-lower}}"
MYGET_FEED_RE = re.compile(r"myget\.org/F/(?P<feed>[^/]+)/api/v3/index\.json", re.IGNORECASE)


def join_url(base: str, path: str) -> str:
    return base + ("" if base.endswith("/") else "/") + path


def comparable_version_strings(version: SemanticVersion) -> List[str]:
    """Spellings a feed may use for one version: as given, normalized, four-part."""
    candidates = [str(version), version.to_normalized_string()]
    four_part = f"{version.major}.{version.minor}.{version.patch}.{version.revision}"
    if version.special_version:
        four_part += f"-{version.special_version}"
    candidates.append(four_part)
    seen: List[str] = []
    for candidate in candidates:
        if candidate.lower() not in (s.lower() for s in seen):
            seen.append(candidate)
    return seen


def filter_versions_by_requirements(context: SearchContext, info: PackageEntryInfo) -> Set[SemanticVersion]:
    """Versions of ``info`` the context asks for.

    Without constraints only the latest (or absolute latest when
    prereleases are allowed) is returned; with constraints either every
    matching version (all_versions) or the highest matching one.
    """
    if not context.has_version_constraint and not context.all_versions:
        latest = info.absolute_latest_version if context.allow_prerelease else info.latest_version
        return {latest} if latest is not None else set()

    matched: Set[SemanticVersion] = set()
    highest: Optional[SemanticVersion] = None
    for version in info.versions:
        if context.required_version is not None and version != context.required_version:
            continue
        if not min_and_max_version_matched(
            version, context.minimum_version, context.maximum_version, context.min_inclusive, context.max_inclusive
        ):
            continue
        if not (context.allow_prerelease or not version.is_prerelease):
            continue
        if context.all_versions:
            matched.add(version)
        elif highest is None or highest < version:
            highest = version
    if highest is not None and not context.all_versions:
        matched.add(highest)
    return matched


def with_latest_flags(packages: Sequence[PackageBase]) -> List[PackageResult]:
    """Wrap packages, flagging the highest release and the highest overall version."""
    latest = max((p for p in packages if not p.version.is_prerelease), key=lambda p: p.version, default=None)
    absolute = max(packages, key=lambda p: p.version, default=None)
    return [PackageResult(p, p is latest, p is absolute) for p in packages]


class RemoteFeed:
    """Base for feeds backed by one or more mirror endpoints."""

    def __init__(self, endpoints: Sequence[ServiceInfo], http: FeedHttpClient):
        self.endpoints: List[ServiceInfo] = list(endpoints)
        self.http = http
        self.collection: Optional["ResourceCollection"] = None

    @property
    def url(self) -> str:
        return self.endpoints[0].url

    def execute(self, action: Callable[[str], T], request: FeedRequest, retries: Optional[int] = None) -> T:
        """Run ``action(endpoint_url)`` against each mirror until one succeeds."""
        errors: List[BaseException] = []
        for endpoint in self.endpoints:
            try:
                return self._execute_with_retries(endpoint.url, action, request, retries)
            except FeedUnavailableError as exc:
                errors.extend(exc.errors)
        raise FeedUnavailableError([safe_url(e.url) for e in self.endpoints], errors)

    def _execute_with_retries(self, url: str, action: Callable[[str], T], request: FeedRequest, retries: Optional[int]) -> T:
        errors: List[BaseException] = []
        for attempt in range(retries or Constants.HTTP_RETRY_MAX):
            delay_ms = backoff_delay_ms(attempt)
            if delay_ms:
                if request.wait_canceled(delay_ms / 1000.0):
                    raise OperationCanceledError(url)
            try:
                return action(url)
            except OperationCanceledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                errors.append(exc)
                if is_debug_enabled(logger):
                    logger.debug(
                        "Feed call failed",
                        extra=extra_context(
                            event="feed_call",
                            component="feeds_v3",
                            action="execute",
                            outcome="error",
                            attempt=attempt + 1,
                            target=safe_url(url),
                            package_manager="nuget",
                        ),
                    )
        raise FeedUnavailableError([safe_url(url)], errors)

    def get_document(self, url: str, request: FeedRequest) -> JsonDocument:
        """Fetch a JSON document, raising when the feed does not answer with one."""
        status, _, data = self.http.get_json(url, headers=HEADERS_JSON, request=request)
        if status != 200 or not isinstance(data, dict):
            raise NuGetFeedError(f"HTTP {status} without a JSON document from {safe_url(url)}")
        return JsonDocument(data)

    def try_get_document(self, url: str, request: FeedRequest) -> Optional[JsonDocument]:
        status, _, data = self.http.get_json(url, headers=HEADERS_JSON, request=request)
        if status != 200 or not isinstance(data, dict):
            return None
        return JsonDocument(data)


def get_paged_results(
    fetch: Callable[[str], JsonDocument],
    make_url: Callable[[int], str],
    results_of: Callable[[JsonDocument], List[T]],
    request: FeedRequest,
    page_size: int,
    workers: Optional[int] = None,
) -> Iterator[T]:
    """Fetch a ``totalHits`` style paged result set.

    The first page tells how many hits exist; the remaining pages are
    requested in parallel with increasing ``skip``. When the first page has
    no usable total a warning is logged and only that page is used.
    """
    first_url = make_url(0)
    first = fetch(first_url)
    total = first.get("totalHits")
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        request.warning("Response from %s has no totalHits field; only the first page is used", safe_url(first_url))
        yield from results_of(first)
        return

    tracker = ProgressTracker(0, 0, 100)
    activity = request.start_progress(0, f"Reading {total} results")
    page_count = total // page_size + (1 if total % page_size else 0)

    def fetch_results(skip: int) -> List[T]:
        return results_of(fetch(make_url(skip)))

    done = 0
    successful = True
    with ThreadPoolExecutor(max_workers=workers or Constants.V3_SEARCH_WORKERS) as pool:
        futures = [pool.submit(results_of, first)]
        futures += [pool.submit(fetch_results, page * page_size) for page in range(1, page_count)]
        for future in as_completed(futures):
            if request.is_canceled:
                successful = False
                for other in futures:
                    other.cancel()
                break
            done += 1
            yield from future.result()
            request.progress(activity, tracker.convert_percent_to_progress(done / max(len(futures), 1)), f"Read page {done}")
    request.complete_progress(activity, successful)


class FilesFeed3(FilesFeedBase):
    """Flat container (``PackageBaseAddress``) downloads and version index."""

    def __init__(self, base_url: str, http: FeedHttpClient):
        super().__init__()
        self.base_url = base_url
        self.http = http

    def make_download_uri(self, package: PackageBase) -> Optional[str]:
        if package.content_src_url and package.content_src_url.strip():
            return package.content_src_url
        package_id = package.id.lower()
        version = package.version.to_normalized_string().lower()
        return join_url(self.base_url, f"{package_id}/{version}/{package_id}.{version}.nupkg")

    def version_index_url(self, package_id: str) -> str:
        return join_url(self.base_url, f"{package_id.lower()}/index.json")

    def version_info(self, info: PackageEntryInfo, request: FeedRequest) -> PackageEntryInfo:
        """Add every version from the flat container index to ``info``."""
        for version in self.version_list(info.id, request):
            info.add_version(version)
        return info

    def version_list(self, package_id: str, request: FeedRequest) -> List[SemanticVersion]:
        url = self.version_index_url(package_id)
        status, _, data = self.http.get_json(url, headers=HEADERS_JSON, request=request)
        doc = JsonDocument(data) if status == 200 and isinstance(data, dict) else None
        if doc is None or check_document(VERSION_INDEX_SCHEMA, data):
            request.debug("Version index unavailable for %s", package_id)
            return []
        versions = []
        for text in doc.get("versions"):
            version = SemanticVersion.try_parse(str(text))
            if version is not None:
                versions.append(version)
        return versions


class PackagesFeed3(RemoteFeed):
    """Registration (``RegistrationsBaseUrl``) lookups."""

    def __init__(self, endpoints: Sequence[ServiceInfo], http: FeedHttpClient):
        super().__init__(endpoints, http)
        # Leaf URL -> (package,) ; (None,) records a URL that never answered
        self._leaf_cache: KeyedMemo[tuple] = KeyedMemo()

    def candidate_urls(self, package_id: str, version: Optional[SemanticVersion], base_url: str) -> List[str]:
        package_id = package_id.lower()
        if version is None:
            return [join_url(base_url, f"{package_id}/index.json")]
        return [join_url(base_url, f"{package_id}/{v.lower()}.json") for v in comparable_version_strings(version)]

    def is_available(self, request: FeedRequest) -> bool:
        try:
            self.find(SearchContext(package_info=PackageEntryInfo("FoooBarr")), request)
            return True
        except Exception:  # pylint: disable=broad-exception-caught
            return False

    def find(self, context: SearchContext, request: FeedRequest) -> FindResult:
        info = context.package_info
        if info is None or not info.id.strip() or has_wildcard(info.id):
            return FindResult([], False)
        with Timer() as t:
            packages = self.execute(lambda base_url: self._find_for_base_url(base_url, context, request), request)
        if is_debug_enabled(logger):
            logger.debug(
                "v3 find complete",
                extra=extra_context(
                    event="find",
                    component="feeds_v3",
                    action="find",
                    outcome="success",
                    count=len(packages),
                    duration_ms=t.duration_ms(),
                    target=info.id,
                    package_manager="nuget",
                ),
            )
        if context.has_version_constraint:
            return FindResult([PackageResult(p) for p in packages], False)
        return FindResult(with_latest_flags(packages), False)

    def _find_for_base_url(self, base_url: str, context: SearchContext, request: FeedRequest) -> List[PackageBase]:
        attempts = 3
        while attempts > 0:
            attempts -= 1
            for url in self.candidate_urls(context.package_info.id, context.required_version, base_url):
                packages = self.find_by_url(url, context, request, final_attempt=attempts == 0)
                if packages is not None:
                    return packages
        return []

    def find_by_url(
        self,
        url: str,
        context: SearchContext,
        request: FeedRequest,
        final_attempt: bool = False,
    ) -> Optional[List[PackageBase]]:
        """Packages reachable from a registration index or leaf URL.

        Returns None when the URL does not answer so callers can try the
        next spelling of the version.
        """
        is_index = "index.json" in url
        if not is_index:
            cached = self._leaf_cache.peek(url)
            if cached is not None:
                return None if cached[0] is None else [cached[0]]

        doc = self.try_get_document(url, request)
        if doc is None:
            if final_attempt and not is_index:
                self._leaf_cache.get_or_create(url, lambda: (None,))
            return None

        types = doc.types()
        if not types:
            request.warning("Registration document %s has no @type", safe_url(url))
            return []

        info = context.package_info
        if not info.versions and self.collection is not None and isinstance(self.collection.files_feed, FilesFeed3):
            self.collection.files_feed.version_info(info, request)
        wanted = filter_versions_by_requirements(context, info) if info.versions else None

        if any(t.lower() == "packageregistration" for t in types):
            return self._from_registration(doc, context, request, wanted)

        pb = self._leaf_cache.get_or_create(url, lambda: (self._from_leaf(doc, request, wanted),))[0]
        return [pb] if pb is not None else []

    def _from_registration(
        self,
        doc: JsonDocument,
        context: SearchContext,
        request: FeedRequest,
        wanted: Optional[Set[SemanticVersion]],
    ) -> List[PackageBase]:
        problems = check_document(REGISTRATION_INDEX_SCHEMA, doc.raw)
        if problems:
            request.warning("Registration index does not match the expected schema: %s", problems[0])
        info = context.package_info
        packages: List[PackageBase] = []

        if not context.all_versions and wanted is not None and not context.enable_deep_metadata_bypass:
            for version in sorted(wanted):
                result = self.find(
                    SearchContext(package_info=info, required_version=version, allow_prerelease=True),
                    request,
                )
                if result.results:
                    packages.append(result.results[0].package)
            return packages

        # Crawl the registration pages; values are packages in bypass mode, catalog URLs otherwise
        catalog_objects: Dict[SemanticVersion, Any] = {}
        build_versions = not info.versions
        for page in doc.children("items"):
            if not page.has("items"):
                page_url = page.string("@id")
                fetched = self.try_get_document(page_url, request) if page_url else None
                if fetched is None:
                    request.warning("Could not get a response from %s", safe_url(page_url or ""))
                    continue
                page = fetched
            for leaf in page.children("items"):
                entry = leaf.child("catalogEntry")
                version = SemanticVersion.try_parse(entry.string("version")) if entry is not None else None
                if version is None:
                    continue
                if build_versions:
                    info.add_version(version)
                if context.enable_deep_metadata_bypass:
                    package = self.collection.make_package(entry.raw) if self.collection else None
                    if package is not None:
                        catalog_objects[version] = package
                else:
                    catalog_objects[version] = catalog_url(leaf.raw)

        for version in sorted(filter_versions_by_requirements(context, info), reverse=True):
            value = catalog_objects.get(version)
            if value is None:
                continue
            if context.enable_deep_metadata_bypass:
                packages.append(value)
            else:
                package = self._package_from_catalog_url(value, request, None)
                if package is not None:
                    packages.append(package)
        return packages

    def _from_leaf(self, doc: JsonDocument, request: FeedRequest, wanted: Optional[Set[SemanticVersion]]) -> Optional[PackageBase]:
        url = catalog_url(doc.raw)
        if url is None:
            return self.collection.make_package(doc.raw) if self.collection else None
        return self._package_from_catalog_url(url, request, wanted)

    def _package_from_catalog_url(
        self, url: str, request: FeedRequest, wanted: Optional[Set[SemanticVersion]]
    ) -> Optional[PackageBase]:
        doc = self.try_get_document(url, request)
        if doc is None:
            request.warning("Could not get a response from %s", safe_url(url))
            return None
        version = SemanticVersion.try_parse(doc.string("version"))
        if wanted is not None and version not in wanted:
            return None
        return self.collection.make_package(doc.raw) if self.collection else None


class QueryFeed3(RemoteFeed):
    """Search service queries."""

    def search_text(self, context: SearchContext) -> str:
        text = ""
        for term in context.search_terms:
            if term.kind is SearchTermType.SEARCH_TERM:
                text += term.text
            elif term.kind is SearchTermType.TAG:
                text += " tag:" + term.text
            elif term.kind is SearchTermType.CONTAINS:
                text += " description:" + term.text
        return text.strip()

    def is_available(self, request: FeedRequest) -> bool:
        return any(self.http.probe(e.url, request) for e in self.endpoints)

    def search(self, context: SearchContext, request: FeedRequest) -> List[PackageResult]:
        context = dataclasses.replace(context, enable_deep_metadata_bypass=not context.all_versions)
        params = {"q": self.search_text(context), "take": str(Constants.V3_SEARCH_PAGE_SIZE), "semVerLevel": Constants.SEMVER_LEVEL}
        if context.allow_prerelease:
            params["prerelease"] = "true"

        def run(base_url: str) -> List[PackageResult]:
            def make_url(skip: int) -> str:
                query = dict(params, skip=str(skip)) if skip > 0 else params
                return f"{base_url}?{urllib.parse.urlencode(query)}"

            return list(
                get_paged_results(
                    lambda url: self.get_document(url, request),
                    make_url,
                    lambda doc: self._results_for_page(doc, context, request),
                    request,
                    Constants.V3_SEARCH_PAGE_SIZE,
                )
            )

        return self.execute(run, request)

    def _results_for_page(self, doc: JsonDocument, context: SearchContext, request: FeedRequest) -> List[PackageResult]:
        problems = check_document(SEARCH_RESPONSE_SCHEMA, doc.raw)
        if problems:
            request.warning("Search response does not match the expected schema: %s", problems[0])
        results: List[PackageResult] = []
        for hit in doc.children("data"):
            if hit.string("id"):
                results.extend(self._results_for_hit(hit, context, request))
        return results

    def _results_for_hit(self, hit: JsonDocument, context: SearchContext, request: FeedRequest) -> List[PackageResult]:
        info = PackageEntryInfo(hit.string("id"))
        if not filter_entry_by_name(info, context):
            return []
        single = SearchContext(
            package_info=info,
            all_versions=context.all_versions,
            allow_prerelease=context.allow_prerelease,
            required_version=context.required_version,
            minimum_version=context.minimum_version,
            maximum_version=context.maximum_version,
            min_inclusive=context.min_inclusive,
            max_inclusive=context.max_inclusive,
            enable_deep_metadata_bypass=context.enable_deep_metadata_bypass,
        )
        packages_feed = self.collection.packages_feed if self.collection else None

        if context.enable_deep_metadata_bypass:
            if not context.all_versions and not context.has_version_constraint:
                # The hit itself describes the latest version
                package = self.collection.make_package(hit.raw) if self.collection else None
                if package is None:
                    return []
                info.add_version(package.version)
                return [PackageResult(package, not package.version.is_prerelease, True)]
            if packages_feed is None:
                return []
            return packages_feed.find(single, request).results

        # Deep path: resolve every listed version through its registration leaf
        by_version: Dict[SemanticVersion, PackageBase] = {}
        downloads: Dict[SemanticVersion, Optional[int]] = {}
        for entry in hit.children("versions"):
            version = SemanticVersion.try_parse(entry.string("version"))
            leaf_url = entry.string("@id")
            if version is None or not leaf_url:
                continue
            info.add_version(version)
            if version.is_prerelease and not context.allow_prerelease:
                continue
            found = packages_feed.find_by_url(leaf_url, single, request, final_attempt=True) if packages_feed else None
            if found:
                by_version[version] = found[0]
                downloads[version] = entry.get("downloads")
        results = []
        for version, package in by_version.items():
            if isinstance(downloads.get(version), int):
                package = dataclasses.replace(package, version_download_count=downloads[version])
            results.append(
                PackageResult(
                    package,
                    version == info.latest_version,
                    version == info.absolute_latest_version,
                )
            )
        return results


class AutocompleteFeed3(RemoteFeed):
    """Id and version completion."""

    def autocomplete(
        self,
        term: str,
        request: FeedRequest,
        allow_prerelease: bool = False,
        by_id: bool = False,
        take: Optional[int] = None,
    ) -> List[str]:
        """Complete a partial id, or list versions of an exact id when ``by_id``."""
        params = {"id" if by_id else "q": term}
        if allow_prerelease:
            params["prerelease"] = "true"
        params["take"] = str(take or Constants.AUTOCOMPLETE_TAKE)
        params["semVerLevel"] = Constants.SEMVER_LEVEL

        def accept(value: str) -> bool:
            if by_id:
                return True
            if has_wildcard(term):
                return wildcard_match(term, value)
            return value.lower().startswith(term.lower())

        def results_of(doc: JsonDocument) -> List[str]:
            problems = check_document(AUTOCOMPLETE_SCHEMA, doc.raw)
            if problems:
                request.warning("Autocomplete response does not match the expected schema: %s", problems[0])
            values = doc.get("data") or []
            return [str(v) for v in values if isinstance(v, str) and accept(v)]

        def run(base_url: str) -> List[str]:
            def make_url(skip: int) -> str:
                query = dict(params, skip=str(skip)) if skip > 0 else params
                return f"{base_url}?{urllib.parse.urlencode(query)}"

            return list(
                get_paged_results(
                    lambda url: self.get_document(url, request),
                    make_url,
                    results_of,
                    request,
                    int(params["take"]),
                )
            )

        return self.execute(run, request)


class NuGetOrgGalleryFeed:
    """Gallery pages on www.nuget.org."""

    template = NUGET_GALLERY_TEMPLATE

    def make_gallery_uri(self, package_id: str, version: str) -> str:
        return self.template.replace("{id-lower}", package_id.lower()).replace("{version-lower}", version.lower())


class MyGetGalleryFeed(NuGetOrgGalleryFeed):
    """Gallery pages of a MyGet feed, derived from its v3 index URL."""

    def __init__(self, feed_url: str):
        match = MYGET_FEED_RE.search(feed_url)
        parts = urllib.parse.urlsplit(feed_url)
        self.template = (
            MYGET_GALLERY_TEMPLATE.format(scheme=parts.scheme, host=parts.netloc, feed=match.group("feed"))
            if match
            else None
        )

    def make_gallery_uri(self, package_id: str, version: str) -> Optional[str]:
        if self.template is None:
            return None
        return super().make_gallery_uri(package_id, version)


def gallery_feed_for(base_url: str):
    """Pick the gallery template for a feed host, or None when unknown."""
    host = urllib.parse.urlsplit(base_url).hostname or ""
    if Constants.NUGET_GALLERY_HOST in host:
        return NuGetOrgGalleryFeed()
    if Constants.MYGET_HOST in host:
        return MyGetGalleryFeed(base_url)
    return None


class AbuseFeed3:
    """``ReportAbuseUriTemplate`` substitution."""

    def __init__(self, uri_template: str):
        self.uri_template = uri_template

    def make_abuse_uri(self, package_id: str, version: str) -> str:
        return self.uri_template.replace("{id}", package_id.lower()).replace("{version}", version.lower())
