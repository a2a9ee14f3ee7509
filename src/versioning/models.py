"""Data models for packages, dependencies, sources and queries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from versioning.ranges import DependencyVersionRange
from versioning.semver import SemanticVersion

if TYPE_CHECKING:  # pragma: no cover
    from registry.nuget.discovery import ResourceCollection


@dataclass(frozen=True)
class PackageIdentity:
    """(id, version) with a case-insensitive id."""
    id: str
    version: SemanticVersion

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageIdentity):
            return NotImplemented
        return self.id.lower() == other.id.lower() and self.version == other.version

    def __hash__(self) -> int:
        return hash((self.id.lower(), self.version))

    def __str__(self) -> str:
        return f"{self.id}.{self.version}"


@dataclass(frozen=True)
class PackageDependency:
    """A dependency on another package id within a version range."""
    id: str
    version_range: DependencyVersionRange = field(default_factory=DependencyVersionRange)

    @property
    def key(self) -> str:
        """Processing key used to avoid expanding the same edge twice."""
        return f"{self.id}!#!{self.version_range}"


@dataclass(frozen=True)
class PackageDependencySet:
    """Dependencies declared for one target framework (None means any)."""
    target_framework: Optional[str] = None
    dependencies: Tuple[PackageDependency, ...] = ()


@dataclass(frozen=True)
class PackageBase:  # pylint: disable=too-many-instance-attributes
    """Resolved metadata for exactly one (id, version)."""
    id: str
    version: SemanticVersion
    title: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    authors: Optional[str] = None
    owners: Optional[str] = None
    tags: Optional[str] = None
    language: Optional[str] = None
    copyright: Optional[str] = None
    release_notes: Optional[str] = None
    license_url: Optional[str] = None
    project_url: Optional[str] = None
    icon_url: Optional[str] = None
    gallery_details_url: Optional[str] = None
    report_abuse_url: Optional[str] = None
    content_src_url: Optional[str] = None
    package_hash: Optional[str] = None
    package_hash_algorithm: Optional[str] = None
    package_size: Optional[int] = None
    require_license_acceptance: bool = False
    dependency_sets: Tuple[PackageDependencySet, ...] = ()
    published: Optional[datetime] = None
    created: Optional[datetime] = None
    last_edited: Optional[datetime] = None
    download_count: Optional[int] = None
    version_download_count: Optional[int] = None
    is_prerelease: Optional[bool] = None
    listed: bool = True

    @property
    def identity(self) -> PackageIdentity:
        return PackageIdentity(self.id, self.version)

    @property
    def full_name(self) -> str:
        return f"{self.id}.{self.version}"

    @property
    def is_unlisted(self) -> bool:
        """Feeds mark unlisted versions with a published year of 1900 or earlier."""
        return self.published is not None and self.published.year <= 1900

    def dependencies(self) -> List[PackageDependency]:
        """All dependencies across every dependency set, in declaration order."""
        return [dep for dep_set in self.dependency_sets for dep in dep_set.dependencies]


@dataclass(frozen=True)
class PackageResult:
    """A package as returned by one query, with that query's latest flags."""
    package: PackageBase
    is_latest_version: bool = False
    is_absolute_latest_version: bool = False

    @property
    def id(self) -> str:
        return self.package.id

    @property
    def version(self) -> SemanticVersion:
        return self.package.version


class PackageEntryInfo:
    """Every version seen for one package id plus the latest markers."""

    def __init__(self, package_id: str):
        self.id = package_id
        self.versions: List[SemanticVersion] = []
        self.latest_version: Optional[SemanticVersion] = None
        self.absolute_latest_version: Optional[SemanticVersion] = None

    def add_version(self, version: SemanticVersion) -> "PackageEntryInfo":
        if version in self.versions:
            return self
        self.versions.append(version)
        if self.absolute_latest_version is None or version > self.absolute_latest_version:
            self.absolute_latest_version = version
        if not version.is_prerelease and (self.latest_version is None or version > self.latest_version):
            self.latest_version = version
        return self

    def __repr__(self) -> str:
        return f"PackageEntryInfo({self.id!r}, versions={len(self.versions)})"


class SearchTermType(Enum):
    """Kinds of search terms."""
    SEARCH_TERM = "SearchTerm"
    TAG = "Tag"
    CONTAINS = "Contains"
    ORIGINAL_PATTERN = "OriginalPattern"


@dataclass(frozen=True)
class SearchTerm:
    """One typed search term."""
    kind: SearchTermType
    text: str


@dataclass
class SearchContext:  # pylint: disable=too-many-instance-attributes
    """Everything a feed needs to answer a find or search call."""
    package_info: Optional[PackageEntryInfo] = None
    search_terms: List[SearchTerm] = field(default_factory=list)
    required_version: Optional[SemanticVersion] = None
    minimum_version: Optional[SemanticVersion] = None
    maximum_version: Optional[SemanticVersion] = None
    min_inclusive: bool = True
    max_inclusive: bool = True
    allow_prerelease: bool = False
    all_versions: bool = False
    enable_deep_metadata_bypass: bool = False

    @property
    def has_version_constraint(self) -> bool:
        return any(v is not None for v in (self.required_version, self.minimum_version, self.maximum_version))

    def terms_of(self, kind: SearchTermType) -> List[str]:
        return [t.text for t in self.search_terms if t.kind is kind]

    def original_pattern(self) -> Optional[str]:
        values = self.terms_of(SearchTermType.ORIGINAL_PATTERN)
        return values[0] if values else None


@dataclass
class FindResult:
    """Packages returned by a find call and whether callers must still filter by version."""
    results: List[PackageResult] = field(default_factory=list)
    version_post_filter_required: bool = True


@dataclass
class PackageSource:  # pylint: disable=too-many-instance-attributes
    """A named package location, registered or ad hoc."""
    name: str
    location: str
    trusted: bool = False
    is_registered: bool = False
    is_validated: bool = False
    _repository: Optional["ResourceCollection"] = field(default=None, repr=False, compare=False)

    @property
    def is_source_a_file(self) -> bool:
        lower = self.location.lower()
        return lower.endswith(".nupkg") or lower.endswith(".nuspec")

    @property
    def serialized(self) -> str:
        """Value embedded in FastPath tokens."""
        return self.location

    def bind_repository(self, repository: "ResourceCollection") -> None:
        self._repository = repository

    @property
    def repository(self) -> Optional["ResourceCollection"]:
        return self._repository


@dataclass
class PackageItem:  # pylint: disable=too-many-instance-attributes
    """A package tied to the source it came from and its FastPath token."""
    package: PackageBase
    source: Optional[PackageSource] = None
    fast_path: Optional[str] = None
    sources: Sequence[str] = ()
    is_package_file: bool = False
    full_path: Optional[str] = None
    is_latest_version: bool = False
    is_absolute_latest_version: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.package.id

    @property
    def version(self) -> SemanticVersion:
        return self.package.version

    @property
    def key(self) -> Tuple[str, SemanticVersion]:
        """Identity used by resolution: lowercase id and version."""
        return self.id.lower(), self.version

    @property
    def is_installed(self) -> bool:
        return self.is_package_file and bool(self.full_path)

    def __str__(self) -> str:
        return f"{self.id} {self.version}"
