"""Source level orchestration: find, search, install and download across sources.

Every selected source is queried by its own worker and the per-source
results are merged as they complete, so results from different sources
arrive in no particular order while each source keeps its own order.
One failing source never fails the call: its errors are reported as
warnings and it contributes nothing.
"""
from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Sequence, Union

from constants import Constants, ErrorCategory, Messages
from common.errors import DiscoveryError, FeedUnavailableError, OperationCanceledError
from common.http_client import FeedHttpClient
from common.logging_utils import extra_context, is_debug_enabled, Timer
from common.request import FeedRequest
from sources.fastpath import make_fast_path, try_parse_fast_path
from sources.registry import PackageSourceRegistry
from sources.resolve import SourceResolver
from versioning.models import (
    PackageEntryInfo,
    PackageItem,
    PackageResult,
    PackageSource,
    SearchContext,
    SearchTerm,
    SearchTermType,
)
from versioning.ranges import DependencyVersionRange
from versioning.semver import SemanticVersion

from .discovery import PROTOCOL_V3, DiscoveryCache, ResourceCollection
from .filters import filter_entry_by_name, filter_on_contains, filter_on_tags, filter_on_version, has_wildcard

logger = logging.getLogger(__name__)

VersionArg = Union[str, SemanticVersion, None]
Finder = Callable[[str, DependencyVersionRange], List[PackageItem]]

_BRACKET_RE = re.compile(r"\[.*?\]")


def _version(value: VersionArg) -> Optional[SemanticVersion]:
    if value is None or isinstance(value, SemanticVersion):
        return value
    text = str(value).strip()
    return SemanticVersion.parse(text) if text else None


def _named(sources: Optional[Sequence[str]]) -> Optional[List[str]]:
    """Non-blank source names, or None to fall back to the registered sources."""
    names = [s for s in (sources or ()) if s and s.strip()]
    return names or None


def server_search_term(name: str) -> str:
    """Reduce a wildcard name to the longest literal run the server can search for."""
    text = _BRACKET_RE.sub("*", name)
    parts = re.split(r"[?*]", text)
    longest = max(parts, key=len) if parts else ""
    return "" if longest == "*" else longest


class NuGetClient:
    """Entry point for package queries and installs over registered or ad hoc sources."""

    def __init__(
        self,
        registry: Optional[PackageSourceRegistry] = None,
        http: Optional[FeedHttpClient] = None,
        discovery: Optional[DiscoveryCache] = None,
        workers: Optional[int] = None,
    ):
        self.http = http or FeedHttpClient()
        self.registry = registry or PackageSourceRegistry()
        self.discovery = discovery or DiscoveryCache(self.http)
        self.resolver = SourceResolver(self.registry, self.http)
        self.workers = workers or Constants.SOURCE_WORKERS

    # Sources -------------------------------------------------------------
    def repository_for(self, source: PackageSource, request: FeedRequest) -> Optional[ResourceCollection]:
        """The source's discovered collection, bound once per session; None when unusable."""
        if source.repository is not None:
            return source.repository
        try:
            repository = self.discovery.get(source.location, request)
        except DiscoveryError as exc:
            request.warning(str(exc))
            return None
        except OperationCanceledError:
            return None
        source.bind_repository(repository)
        return repository

    def selected_sources(self, request: FeedRequest, sources: Optional[Sequence[str]] = None) -> List[PackageSource]:
        return self.resolver.selected_sources(request, sources)

    def _each_source(
        self,
        request: FeedRequest,
        sources: Optional[Sequence[str]],
        work: Callable[[PackageSource], List[PackageItem]],
    ) -> List[PackageItem]:
        selected = self.selected_sources(request, sources)
        if not selected:
            return []
        if len(selected) == 1:
            return work(selected[0])
        results: List[PackageItem] = []
        with ThreadPoolExecutor(max_workers=min(self.workers, len(selected))) as pool:
            futures = [pool.submit(work, source) for source in selected]
            for future in as_completed(futures):
                results.extend(future.result())
        return results

    @staticmethod
    def _item(result: PackageResult, source: PackageSource, sources: Optional[Sequence[str]]) -> PackageItem:
        original = tuple(sources or ())
        return PackageItem(
            package=result.package,
            source=source,
            fast_path=make_fast_path(source.serialized, result.id, str(result.version), original),
            sources=original,
            is_latest_version=result.is_latest_version,
            is_absolute_latest_version=result.is_absolute_latest_version,
        )

    # Find ------------------------------------------------------------------
    def get_package_by_id(  # pylint: disable=too-many-arguments
        self,
        request: FeedRequest,
        name: str,
        required_version: VersionArg = None,
        minimum_version: VersionArg = None,
        maximum_version: VersionArg = None,
        min_inclusive: bool = True,
        max_inclusive: bool = True,
        is_dependency: bool = False,
        sources: Optional[Sequence[str]] = None,
    ) -> List[PackageItem]:
        """Packages with exactly this id from every selected source.

        Raises VersionParseError for malformed version arguments.
        """
        if not name or not name.strip():
            return []
        required = _version(required_version)
        minimum = _version(minimum_version)
        maximum = _version(maximum_version)

        def work(source: PackageSource) -> List[PackageItem]:
            try:
                return self._get_package_by_id(
                    source, request, name, required, minimum, maximum,
                    min_inclusive, max_inclusive, is_dependency, sources,
                )
            except (FeedUnavailableError, DiscoveryError) as exc:
                request.warning("%s: %s", source.name, exc)
            except OperationCanceledError:
                pass
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.exception("Unexpected error while finding %s on %s", name, source.name)
                request.warning("%s: %s", source.name, exc)
            return []

        with Timer() as t:
            items = self._each_source(request, sources, work)
        if is_debug_enabled(logger):
            logger.debug(
                "Find complete",
                extra=extra_context(
                    event="find",
                    component="client",
                    action="get_package_by_id",
                    outcome="success",
                    count=len(items),
                    duration_ms=t.duration_ms(),
                    target=name,
                    package_manager="nuget",
                ),
            )
        return items

    def _get_package_by_id(  # pylint: disable=too-many-arguments,too-many-locals
        self,
        source: PackageSource,
        request: FeedRequest,
        name: str,
        required: Optional[SemanticVersion],
        minimum: Optional[SemanticVersion],
        maximum: Optional[SemanticVersion],
        min_inclusive: bool,
        max_inclusive: bool,
        is_dependency: bool,
        sources: Optional[Sequence[str]],
    ) -> List[PackageItem]:
        repository = self.repository_for(source, request)
        if repository is None:
            return []
        context = SearchContext(
            package_info=PackageEntryInfo(name),
            required_version=required,
            minimum_version=minimum,
            maximum_version=maximum,
            min_inclusive=min_inclusive,
            max_inclusive=max_inclusive,
            allow_prerelease=request.allow_prerelease,
            all_versions=request.all_versions,
            enable_deep_metadata_bypass=request.all_versions,
        )
        found = repository.find(context, request)
        results = list(found.results)

        exact = required is not None or (
            minimum is not None and maximum is not None and minimum == maximum and min_inclusive and max_inclusive
        )
        if not exact:
            listed = [r for r in results if not r.package.is_unlisted]
            if listed:
                results = listed
            elif not is_dependency:
                results = []

        if request.all_versions:
            results.sort(key=lambda r: r.version, reverse=True)
        elif required is None and minimum is None and maximum is None:
            if request.allow_prerelease or repository.is_local:
                highest = {}
                for result in results:
                    key = result.id.lower()
                    if key not in highest or result.version > highest[key].version:
                        highest[key] = result
                results = list(highest.values())
            else:
                results = [r for r in results if r.is_latest_version]
        elif not exact and not request.allow_prerelease:
            results = [r for r in results if not r.version.is_prerelease]

        results = filter_on_contains(results, request.contains)
        results = filter_on_tags(results, request.filter_on_tag)
        if found.version_post_filter_required:
            results = filter_on_version(results, required, minimum, maximum, min_inclusive, max_inclusive)
        return [self._item(r, source, sources) for r in results]

    def dependency_finder(self, request: FeedRequest, sources: Optional[Sequence[str]] = None) -> Finder:
        """Finder used by dependency resolution: every candidate for (id, range)."""

        def find(package_id: str, version_range: DependencyVersionRange) -> List[PackageItem]:
            return self.get_package_by_id(
                request,
                package_id,
                minimum_version=version_range.min_version,
                maximum_version=version_range.max_version,
                min_inclusive=version_range.min_inclusive,
                max_inclusive=version_range.max_inclusive,
                is_dependency=True,
                sources=sources,
            )

        return find

    # Search ----------------------------------------------------------------
    def search(
        self,
        request: FeedRequest,
        name: Optional[str] = None,
        sources: Optional[Sequence[str]] = None,
    ) -> List[PackageItem]:
        """Search every selected source by (wildcard) name, tags and contains text."""
        name = (name or "").strip()
        if has_wildcard(name) and request.all_versions:
            request.write_error(
                ErrorCategory.INVALID_ARGUMENT, name, Messages.ALL_VERSIONS_SEARCH_NOT_SUPPORTED, name
            )
            return []

        def work(source: PackageSource) -> List[PackageItem]:
            try:
                return self._search(source, request, name, sources)
            except (FeedUnavailableError, DiscoveryError) as exc:
                request.warning("%s: %s", source.name, exc)
            except OperationCanceledError:
                pass
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.exception("Unexpected error while searching %s", source.name)
                request.warning("%s: %s", source.name, exc)
            return []

        return self._each_source(request, sources, work)

    def search_context(self, request: FeedRequest, name: str) -> SearchContext:
        terms: List[SearchTerm] = []
        term = request.contains or ""
        if name and has_wildcard(name):
            terms.append(SearchTerm(SearchTermType.ORIGINAL_PATTERN, name))
            term = server_search_term(name)
        elif name:
            term = name
        if term.strip():
            terms.append(SearchTerm(SearchTermType.SEARCH_TERM, term))
        for tag in request.filter_on_tag:
            terms.append(SearchTerm(SearchTermType.TAG, tag))
        if request.contains and request.contains.strip():
            terms.append(SearchTerm(SearchTermType.CONTAINS, request.contains))
        return SearchContext(
            search_terms=terms,
            allow_prerelease=request.allow_prerelease,
            all_versions=request.all_versions,
        )

    def _search(
        self,
        source: PackageSource,
        request: FeedRequest,
        name: str,
        sources: Optional[Sequence[str]],
    ) -> List[PackageItem]:
        repository = self.repository_for(source, request)
        if repository is None:
            return []
        context = self.search_context(request, name)
        request.verbose("Searching %s for %s", source.location, [t.text for t in context.search_terms])
        results = repository.search(context, request)
        # v3 search already applies name and contains on the server side
        if repository.protocol != PROTOCOL_V3:
            if name:
                results = [r for r in results if filter_entry_by_name(PackageEntryInfo(r.id), context)]
            results = filter_on_contains(results, request.contains)
        return [self._item(r, source, sources) for r in results]

    def autocomplete(
        self,
        request: FeedRequest,
        term: str,
        by_id: bool = False,
        sources: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Id (or version, with ``by_id``) completions from v3 sources that offer them."""
        values: List[str] = []
        for source in self.selected_sources(request, sources):
            repository = self.repository_for(source, request)
            if repository is None or repository.autocomplete_feed is None:
                continue
            try:
                found = repository.autocomplete_feed.autocomplete(
                    term, request, allow_prerelease=request.allow_prerelease, by_id=by_id
                )
            except FeedUnavailableError as exc:
                request.warning("%s: %s", source.name, exc)
                continue
            values.extend(v for v in found if v not in values)
        return values

    # FastPath ------------------------------------------------------------
    def package_from_fast_path(self, request: FeedRequest, token: str) -> Optional[PackageItem]:
        """Re-identify a package from its FastPath token."""
        fast_path = try_parse_fast_path(token)
        if fast_path is None:
            return None
        version = SemanticVersion.try_parse(fast_path.version)
        if version is None:
            return None
        items = self.get_package_by_id(
            request,
            fast_path.id,
            required_version=version,
            sources=[fast_path.source],
        )
        for item in items:
            item.sources = fast_path.sources
            item.fast_path = make_fast_path(fast_path.source, item.id, str(item.version), fast_path.sources)
            return item
        return None

    # Install / download ----------------------------------------------------
    def install(self, request: FeedRequest, item: PackageItem, sources: Optional[Sequence[str]] = None) -> bool:
        """Install the item and its dependencies into ``request.destination``."""
        finder = self.dependency_finder(request, sources or _named(item.sources))
        files_feed = self._files_feed(item, request)
        if files_feed is not None:
            return files_feed.install_package(item, request, finder)
        from install import installer  # pylint: disable=import-outside-toplevel

        return installer.install_or_download(item, request, finder, operation=installer.INSTALL)

    def download(
        self,
        request: FeedRequest,
        item: PackageItem,
        destination: str,
        sources: Optional[Sequence[str]] = None,
    ) -> bool:
        """Save the item (and its dependencies) as ``.nupkg`` files in ``destination``."""
        finder = self.dependency_finder(request, sources or _named(item.sources))
        files_feed = self._files_feed(item, request)
        if files_feed is not None:
            return files_feed.download_package(item, destination, request, finder)
        from install import installer  # pylint: disable=import-outside-toplevel

        return installer.install_or_download(
            item, request, finder, destination=destination, operation=installer.DOWNLOAD
        )

    def _files_feed(self, item: PackageItem, request: FeedRequest):
        if item.source is None:
            return None
        repository = self.repository_for(item.source, request)
        return None if repository is None else repository.files_feed

    def close(self) -> None:
        self.http.close()
