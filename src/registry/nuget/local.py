"""Package repository backed by a local directory or a single package file."""
from __future__ import annotations

import base64
import dataclasses
import hashlib
import logging
import os
import zipfile
from typing import Dict, Iterator, List, Optional, Tuple

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled
from common.request import FeedRequest
from versioning.models import FindResult, PackageBase, PackageEntryInfo, PackageResult, SearchContext, SearchTermType
from versioning.semver import SemanticVersion

from .converters import package_from_nuspec
from .feeds_v3 import with_latest_flags
from .filters import filter_entry_by_name, has_wildcard, name_matches, wildcard_match

logger = logging.getLogger(__name__)


def file_hash(path: str, algorithm: str = "sha512") -> str:
    """Base64 digest of a file, the encoding feeds use for ``packageHash``."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(Constants.DOWNLOAD_CHUNK_SIZE), b""):
            digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")


def read_nuspec_from_package(path: str) -> Optional[str]:
    """Return the root ``.nuspec`` text of a ``.nupkg`` archive."""
    with zipfile.ZipFile(path) as archive:
        for name in archive.namelist():
            if "/" not in name and name.lower().endswith(Constants.MANIFEST_EXTENSION):
                return archive.read(name).decode("utf-8-sig")
    return None


def read_package_file(path: str) -> Optional[PackageBase]:
    """Build a PackageBase from a ``.nupkg`` or ``.nuspec`` file; None if unreadable."""
    try:
        if path.lower().endswith(Constants.PACKAGE_EXTENSION):
            text = read_nuspec_from_package(path)
        else:
            with open(path, "r", encoding="utf-8-sig") as handle:
                text = handle.read()
        if not text:
            return None
        package = package_from_nuspec(text)
    except Exception:  # pylint: disable=broad-exception-caught
        if is_debug_enabled(logger):
            logger.debug(
                "Unreadable package file",
                extra=extra_context(
                    event="parse",
                    component="local",
                    action="read_package_file",
                    outcome="error",
                    target=path,
                    package_manager="nuget",
                ),
            )
        return None
    if package is None:
        return None
    if not path.lower().endswith(Constants.PACKAGE_EXTENSION):
        return dataclasses.replace(package, content_src_url=path)
    return dataclasses.replace(
        package,
        content_src_url=path,
        package_hash=file_hash(path),
        package_hash_algorithm="SHA512",
        package_size=os.path.getsize(path),
    )


class LocalPackageRepository:
    """Finds packages in a folder.

    Recognized layouts: ``{id}.{version}.nupkg`` files and loose
    ``.nuspec`` manifests at the top level, ``{id}/{version}/*.nupkg``
    and ``{id}.{version}/*.nupkg`` (the install layout).
    """

    def __init__(self, location: str):
        self.location = location

    @property
    def is_file(self) -> bool:
        return os.path.isfile(self.location)

    def _candidate_files(self) -> Iterator[str]:
        if self.is_file:
            yield self.location
            return
        if not os.path.isdir(self.location):
            return
        for root, dirs, files in os.walk(self.location):
            depth = os.path.relpath(root, self.location).count(os.sep) + (0 if root == self.location else 1)
            if depth >= 2:
                dirs[:] = []
            for name in sorted(files):
                lower = name.lower()
                if lower.endswith(Constants.PACKAGE_EXTENSION) or (depth == 0 and lower.endswith(Constants.MANIFEST_EXTENSION)):
                    yield os.path.join(root, name)

    def packages(self) -> Iterator[Tuple[PackageBase, str]]:
        """Yield (package, file path) for every readable package, first file wins per identity."""
        seen = set()
        for path in self._candidate_files():
            package = read_package_file(path)
            if package is None or package.identity in seen:
                continue
            seen.add(package.identity)
            yield package, path

    def package_file(self, package_id: str, version: SemanticVersion) -> Optional[str]:
        for package, path in self.packages():
            if package.id.lower() == package_id.lower() and package.version == version:
                return path
        return None

    def find(self, context: SearchContext, request: Optional[FeedRequest] = None) -> FindResult:
        info: Optional[PackageEntryInfo] = context.package_info
        if info is None or not info.id.strip():
            return FindResult([], True)
        matches = [
            package
            for package, _ in self.packages()
            if (wildcard_match(info.id, package.id) if has_wildcard(info.id) else package.id.lower() == info.id.lower())
        ]
        if context.required_version is not None:
            matches = [p for p in matches if p.version == context.required_version]
        for package in matches:
            info.add_version(package.version)
        return FindResult(self._flag_per_id(matches), True)

    def search(self, context: SearchContext, request: Optional[FeedRequest] = None) -> List[PackageResult]:
        terms = context.terms_of(SearchTermType.SEARCH_TERM)
        term = terms[0] if terms else ""
        matches = []
        for package, _ in self.packages():
            if not name_matches(term, package.id):
                continue
            if not filter_entry_by_name(PackageEntryInfo(package.id), context):
                continue
            matches.append(package)
        return self._flag_per_id(matches)

    @staticmethod
    def _flag_per_id(packages: List[PackageBase]) -> List[PackageResult]:
        by_id: Dict[str, List[PackageBase]] = {}
        for package in packages:
            by_id.setdefault(package.id.lower(), []).append(package)
        results: List[PackageResult] = []
        for group in by_id.values():
            results.extend(with_latest_flags(group))
        return results
