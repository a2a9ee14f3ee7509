"""Error taxonomy for feed access, resolution and installation."""

from __future__ import annotations

from typing import List, Optional


class NuGetFeedError(Exception):
    """Base class for all errors raised by this project."""


class VersionParseError(NuGetFeedError, ValueError):
    """Raised when a version or version range string cannot be parsed."""

    def __init__(self, value: str, reason: str = "invalid version"):
        super().__init__(f"{reason}: {value!r}")
        self.value = value


class DiscoveryError(NuGetFeedError):
    """No usable feed protocol could be discovered for a source."""

    def __init__(self, base_url: str, reason: str):
        super().__init__(f"Unable to discover feed at {base_url}: {reason}")
        self.base_url = base_url
        self.reason = reason


class FeedUnavailableError(NuGetFeedError):
    """Every endpoint of a feed failed after retries."""

    def __init__(self, endpoints: List[str], errors: List[BaseException]):
        detail = "; ".join(str(e) for e in errors) or "no response"
        super().__init__(f"All endpoints failed ({', '.join(endpoints)}): {detail}")
        self.endpoints = endpoints
        self.errors = errors


class DependencyLoopError(NuGetFeedError):
    """A dependency cycle was found while ordering dependencies."""

    def __init__(self, package_id: str, path: Optional[List[str]] = None):
        chain = " -> ".join(path) if path else package_id
        super().__init__(f"Dependency loop detected: {chain}")
        self.package_id = package_id
        self.path = path or [package_id]


class UnableToFindDependencyError(NuGetFeedError):
    """No source offers a version satisfying a dependency."""

    def __init__(self, package_id: str, version_range: str = ""):
        super().__init__(f"Unable to find dependent package '{package_id}' {version_range}".rstrip())
        self.package_id = package_id
        self.version_range = version_range


class PackageInstallError(NuGetFeedError):
    """Downloading, verifying or extracting a package failed."""

    def __init__(self, package_id: str, reason: str):
        super().__init__(f"Failed to install '{package_id}': {reason}")
        self.package_id = package_id
        self.reason = reason


class HashMismatchError(PackageInstallError):
    """Downloaded bytes do not match the feed hash under the strict policy."""

    def __init__(self, package_id: str, algorithm: str):
        super().__init__(package_id, f"{algorithm} hash mismatch")
        self.algorithm = algorithm


class SourceConfigError(NuGetFeedError):
    """The source registry document cannot be used."""


class FastPathError(NuGetFeedError, ValueError):
    """A FastPath token is malformed."""


class OperationCanceledError(NuGetFeedError):
    """The host request was canceled while work was in flight."""
