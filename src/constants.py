"""Constants used in the project."""

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    EXIT_WARNINGS = 3
    RESOLUTION_ERROR = 4
    INSTALL_ERROR = 5


class HashMismatchPolicy(Enum):
    """What to do when a downloaded package does not match the feed hash."""

    WARN = "warn"
    FAIL = "fail"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    PROVIDER_NAME = "NuGet"
    NUGET_ORG_V3 = "https://api.nuget.org/v3/index.json"
    NUGET_ORG_V2 = "https://www.nuget.org/api/v2/"
    NUGET_GALLERY_HOST = "nuget.org"
    MYGET_HOST = "myget.org"
    SUPPORTED_SCHEMES = ["http", "https", "file"]
    CONFIG_FILE_NAME = "nuget.config"
    PACKAGE_EXTENSION = ".nupkg"
    MANIFEST_EXTENSION = ".nuspec"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    USER_AGENT = "nugetfeed/0.1"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests

    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_MS = 1000
    HTTP_CACHE_TTL_SEC = 300

    # v2 OData paging
    V2_PAGE_SIZE = 40
    V2_PAGE_WORKERS = 4

    # v3 search
    V3_SEARCH_PAGE_SIZE = 200
    V3_SEARCH_WORKERS = 4
    # Parallel tasks used when querying several sources at once
    SOURCE_WORKERS = 8
    SEMVER_LEVEL = "2.0.0"
    AUTOCOMPLETE_TAKE = 30

    # Download pipeline
    DOWNLOAD_RETRY_MAX = 3
    DOWNLOAD_CHUNK_SIZE = 64 * 1024
    DOWNLOAD_PROGRESS_STEP = 10
    DOWNLOAD_PROGRESS_SHARE = 70
    CANCEL_POLL_INTERVAL_SEC = 1.0
    DOWNLOAD_TIMEOUT_SEC = 1800
    HASH_MISMATCH_POLICY = HashMismatchPolicy.WARN.value
    HASH_POLICIES = [p.value for p in HashMismatchPolicy]
    DEFAULT_HASH_ALGORITHM = "sha512"


    # Source registry location (None means the per-user default)
    SOURCES_CONFIG_PATH: Optional[str] = None
    SKIP_SOURCE_VALIDATION = False


class ErrorCategory(Enum):
    """Categories attached to host-visible errors."""

    INVALID_ARGUMENT = "InvalidArgument"
    INVALID_OPERATION = "InvalidOperation"
    INVALID_RESULT = "InvalidResult"
    OBJECT_NOT_FOUND = "ObjectNotFound"
    DEADLOCK_DETECTED = "DeadlockDetected"
    OPERATION_STOPPED = "OperationStopped"


class Messages:  # pylint: disable=too-few-public-methods
    """Message ids and templates reported through the host request."""

    DEPENDENCY_LOOP_DETECTED = "DependencyLoopDetected"
    UNABLE_TO_FIND_DEPENDENCY_PACKAGE = "UnableToFindDependencyPackage"
    DEPENDENT_PACKAGE_FAILED_INSTALL_OR_DOWNLOAD = "DependentPackageFailedInstallOrDownload"
    PACKAGE_FAILED_INSTALL_OR_DOWNLOAD = "PackageFailedInstallOrDownload"
    UNABLE_TO_RESOLVE_SOURCE = "UnableToResolveSource"
    URI_SCHEME_NOT_SUPPORTED = "UriSchemeNotSupported"
    UNABLE_TO_DOWNLOAD = "UnableToDownload"
    FILE_EXISTS = "FileExists"
    UNABLE_TO_DELETE_FILE = "UnableToDeleteFile"
    INVALID_HASH = "InvalidHash"
    MISSING_HASH = "MissingHash"
    CONFIG_ROOT_INVALID = "ConfigRootInvalid"
    ALL_VERSIONS_SEARCH_NOT_SUPPORTED = "AllVersionsSearchNotSupported"

    TEMPLATES = {
        DEPENDENCY_LOOP_DETECTED: "Dependency loop detected for package '%s'",
        UNABLE_TO_FIND_DEPENDENCY_PACKAGE: "Unable to find dependent package '%s'",
        DEPENDENT_PACKAGE_FAILED_INSTALL_OR_DOWNLOAD: (
            "Failed to %s package '%s' because dependent package '%s' could not be processed"
        ),
        PACKAGE_FAILED_INSTALL_OR_DOWNLOAD: "Package '%s' failed to %s",
        UNABLE_TO_RESOLVE_SOURCE: "Unable to resolve package source '%s'",
        URI_SCHEME_NOT_SUPPORTED: "Unsupported URI scheme '%s'",
        UNABLE_TO_DOWNLOAD: "Unable to download from '%s' to '%s'",
        FILE_EXISTS: "File '%s' already exists; use force to overwrite",
        UNABLE_TO_DELETE_FILE: "Unable to delete file '%s'",
        INVALID_HASH: "Hash of '%s' does not match the value published by the feed",
        MISSING_HASH: "Package '%s' has no published hash; skipping verification",
        CONFIG_ROOT_INVALID: "Config file '%s' does not start with a <configuration> element",
        ALL_VERSIONS_SEARCH_NOT_SUPPORTED: "Searching all versions of wildcard name '%s' is not supported",
    }

    @classmethod
    def format(cls, message_id: str, *args: Any) -> str:
        """Render a message id with its arguments; unknown ids fall back to the id."""
        template = cls.TEMPLATES.get(message_id)
        if template is None:
            return " ".join([message_id] + [str(a) for a in args])
        try:
            return template % args
        except (TypeError, ValueError):
            return f"{template} {args}"


# Section name -> {yaml key: Constants attribute}
_CONFIG_KEYS: Dict[str, Dict[str, str]] = {
    "http": {
        "timeout": "REQUEST_TIMEOUT",
        "retry_max": "HTTP_RETRY_MAX",
        "retry_base_delay_ms": "HTTP_RETRY_BASE_DELAY_MS",
        "cache_ttl_sec": "HTTP_CACHE_TTL_SEC",
        "user_agent": "USER_AGENT",
    },
    "download": {
        "retry_max": "DOWNLOAD_RETRY_MAX",
        "chunk_size": "DOWNLOAD_CHUNK_SIZE",
        "timeout_sec": "DOWNLOAD_TIMEOUT_SEC",
        "cancel_poll_interval_sec": "CANCEL_POLL_INTERVAL_SEC",
    },
    "install": {
        "hash_mismatch_policy": "HASH_MISMATCH_POLICY",
        "default_hash_algorithm": "DEFAULT_HASH_ALGORITHM",
    },
    "sources": {
        "config_path": "SOURCES_CONFIG_PATH",
        "skip_validation": "SKIP_SOURCE_VALIDATION",
    },
    "feeds": {
        "v2_page_size": "V2_PAGE_SIZE",
        "v2_page_workers": "V2_PAGE_WORKERS",
        "v3_search_page_size": "V3_SEARCH_PAGE_SIZE",
        "v3_search_workers": "V3_SEARCH_WORKERS",
        "source_workers": "SOURCE_WORKERS",
    },
}


def _config_candidates() -> list:
    """Return YAML config locations in priority order."""
    env_path = os.environ.get("NUGETFEED_CONFIG")
    if env_path:
        return [env_path]
    home = os.path.expanduser("~")
    xdg = os.environ.get("XDG_CONFIG_HOME") or os.path.join(home, ".config")
    return [
        os.path.join(os.getcwd(), "nugetfeed.yml"),
        os.path.join(os.getcwd(), "nugetfeed.yaml"),
        os.path.join(xdg, "nugetfeed", "nugetfeed.yml"),
    ]


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the first YAML config found; returns {} when none is readable."""
    import yaml  # pylint: disable=import-outside-toplevel

    candidates = [path] if path else _config_candidates()
    for candidate in candidates:
        if not candidate or not os.path.isfile(candidate):
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Failed to read config %s: %s", candidate, exc)
            continue
        if isinstance(data, dict):
            return data
        logger.warning("Ignoring config %s: top level is not a mapping", candidate)
    return {}


def _apply_config(cfg: Dict[str, Any]) -> None:
    """Copy recognized config values onto Constants."""
    for section, keys in _CONFIG_KEYS.items():
        values = cfg.get(section)
        if not isinstance(values, dict):
            continue
        for key, attr in keys.items():
            if key not in values:
                continue
            current = getattr(Constants, attr)
            value = values[key]
            if isinstance(current, bool):
                value = bool(value)
            elif isinstance(current, int) and not isinstance(value, bool):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
            setattr(Constants, attr, value)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML config and apply it to Constants; returns the raw mapping."""
    cfg = _load_yaml_config(path)
    try:
        _apply_config(cfg)
    except (TypeError, ValueError) as exc:
        logger.warning("Invalid value in config: %s", exc)
    return cfg
