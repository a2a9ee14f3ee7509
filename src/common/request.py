"""Host request collaborator: logging, progress, cancellation, options, credentials."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from constants import ErrorCategory, Messages

logger = logging.getLogger(__name__)

Credential = Tuple[str, str]
CredentialProvider = Callable[[str, bool], Optional[Credential]]
ProgressSink = Callable[[int, int, str], None]


@dataclass
class ReportedError:
    """An error surfaced to the host."""
    category: ErrorCategory
    target: str
    message_id: str
    message: str


@dataclass
class ProgressTracker:
    """Maps a child operation's 0..1 completion onto a [start, end] percent window."""
    progress_id: int
    start: int = 0
    end: int = 100

    def convert_percent_to_progress(self, fraction: float) -> int:
        """Scale a fraction in [0, 1] into this tracker's window."""
        fraction = min(max(fraction, 0.0), 1.0)
        return int(self.start + (self.end - self.start) * fraction)


@dataclass
class InstalledPackage:
    """An (id, version) pair the host reports as already installed."""
    id: str
    version: Optional[str] = None


class FeedRequest:  # pylint: disable=too-many-instance-attributes,too-many-public-methods
    """Request object passed through every operation.

    Options are looked up case-insensitively. Cancellation is cooperative:
    workers poll ``is_canceled`` and unwind normally.
    """

    def __init__(
        self,
        options: Optional[Dict[str, Any]] = None,
        *,
        credential: Optional[Credential] = None,
        credential_provider: Optional[CredentialProvider] = None,
        progress_sink: Optional[ProgressSink] = None,
        installed_packages: Optional[Iterable[InstalledPackage]] = None,
    ):
        self._options = {str(k).lower(): v for k, v in (options or {}).items()}
        self._credential = credential
        self._credential_provider = credential_provider
        self._progress_sink = progress_sink
        self._installed_packages = list(installed_packages or [])
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._progress_ids = itertools.count(1)
        self.errors: List[ReportedError] = []
        self.warnings: List[str] = []

    # Options -------------------------------------------------------------
    def get_option(self, name: str, default: Any = None) -> Any:
        """Return a single option value."""
        return self._options.get(name.lower(), default)

    def get_options(self, name: str) -> List[Any]:
        """Return an option as a list (scalars are wrapped)."""
        value = self._options.get(name.lower())
        if value is None:
            return []
        if isinstance(value, (list, tuple, set)):
            return list(value)
        return [value]

    def _flag(self, name: str) -> bool:
        return bool(self.get_option(name, False))

    @property
    def force(self) -> bool:
        return self._flag("force")

    @property
    def skip_dependencies(self) -> bool:
        return self._flag("skipdependencies")

    @property
    def all_versions(self) -> bool:
        return self._flag("allversions")

    @property
    def allow_prerelease(self) -> bool:
        return self._flag("allowprereleaseversions")

    @property
    def exclude_version(self) -> bool:
        return self._flag("excludeversion")

    @property
    def skip_validate(self) -> bool:
        return self._flag("skipvalidate")

    @property
    def destination(self) -> Optional[str]:
        return self.get_option("destination")

    @property
    def contains(self) -> Optional[str]:
        return self.get_option("contains")

    @property
    def filter_on_tag(self) -> List[str]:
        return [str(t) for t in self.get_options("filterontag") if str(t).strip()]

    @property
    def installed_packages(self) -> List[InstalledPackage]:
        return list(self._installed_packages)

    # Logging -------------------------------------------------------------
    def debug(self, message: str, *args: Any) -> None:
        logger.debug(message, *args)

    def verbose(self, message: str, *args: Any) -> None:
        logger.info(message, *args)

    def warning(self, message: str, *args: Any) -> None:
        text = message % args if args else message
        with self._lock:
            self.warnings.append(text)
        logger.warning(text)

    def write_error(self, category: ErrorCategory, target: str, message_id: str, *args: Any) -> None:
        """Record a host-visible error and log it."""
        text = Messages.format(message_id, *args)
        with self._lock:
            self.errors.append(ReportedError(category, str(target), message_id, text))
        logger.error("%s (%s: %s)", text, category.value, target)

    # Progress ------------------------------------------------------------
    def start_progress(self, parent_id: int, message: str) -> int:
        """Begin a progress activity and return its id."""
        activity_id = next(self._progress_ids)
        logger.debug("progress start %s (parent %s): %s", activity_id, parent_id, message)
        if self._progress_sink:
            self._progress_sink(activity_id, 0, message)
        return activity_id

    def progress(self, activity_id: int, percent: int, message: str) -> None:
        if self._progress_sink:
            self._progress_sink(activity_id, int(percent), message)

    def complete_progress(self, activity_id: int, success: bool) -> None:
        logger.debug("progress complete %s success=%s", activity_id, success)
        if self._progress_sink:
            self._progress_sink(activity_id, 100, "completed" if success else "failed")

    # Cancellation ----------------------------------------------------------
    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def is_canceled(self) -> bool:
        return self._cancel_event.is_set()

    def wait_canceled(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True early if canceled."""
        return self._cancel_event.wait(timeout)

    # Credentials -----------------------------------------------------------
    def get_credentials(self, query: str, is_retry: bool = False) -> Optional[Credential]:
        """Return credentials for a URL.

        Static credentials are offered on the first attempt only; a retry
        after a 401 always goes to the credential provider.
        """
        if self._credential and not is_retry:
            return self._credential
        if self._credential_provider is None:
            return None
        try:
            return self._credential_provider(query, is_retry)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self.warning("Credential provider failed for %s: %s", query, exc)
            return None
