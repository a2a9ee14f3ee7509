"""Turn user supplied source names or locations into PackageSource objects."""
from __future__ import annotations

import logging
import os
import threading
import urllib.parse
import urllib.request
from typing import Dict, List, Optional, Sequence

from constants import Constants, ErrorCategory, Messages
from common.http_client import FeedHttpClient
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from common.request import FeedRequest
from versioning.cache import KeyedMemo
from versioning.models import PackageSource

from .registry import PackageSourceRegistry

logger = logging.getLogger(__name__)


def is_absolute_uri(location: str) -> bool:
    parts = urllib.parse.urlsplit(location or "")
    # A one letter scheme is a Windows drive, not a URI
    return len(parts.scheme) > 1 and bool(parts.netloc or parts.path)


def validate_source_uri(location: str, http: FeedHttpClient, request: Optional[FeedRequest] = None) -> bool:
    """True when the location uses a supported scheme and answers.

    ``file`` URIs must point at an existing directory; HTTP locations must
    answer a GET below 400 (401 is retried with credentials by the client).
    """
    parts = urllib.parse.urlsplit(location)
    scheme = parts.scheme.lower()
    if scheme not in Constants.SUPPORTED_SCHEMES:
        return False
    if scheme == "file":
        return os.path.isdir(urllib.request.url2pathname(parts.path))
    ok = http.probe(location, request=request)
    if is_debug_enabled(logger):
        logger.debug(
            "Source validated",
            extra=extra_context(
                event="validate",
                component="sources",
                action="validate_source_uri",
                outcome="valid" if ok else "invalid",
                target=safe_url(location),
            ),
        )
    return ok


class SourceResolver:
    """Resolves sources against the registry, remembering ad hoc ones for the session.

    Unregistered sources are never written to the registry file.
    """

    def __init__(self, registry: PackageSourceRegistry, http: FeedHttpClient):
        self.registry = registry
        self.http = http
        self._checked: Dict[str, PackageSource] = {}
        self._checked_lock = threading.Lock()
        self._validated: KeyedMemo[bool] = KeyedMemo()

    def _is_valid(self, location: str, request: FeedRequest) -> bool:
        return self._validated.get_or_create(
            location.lower(), lambda: validate_source_uri(location, self.http, request)
        )

    def resolve(self, name_or_location: str, request: FeedRequest) -> Optional[PackageSource]:
        """Registered source by name or location, else an ad hoc file, folder or URI source.

        Reports UnableToResolveSource (or UriSchemeNotSupported) and
        returns None when nothing fits.
        """
        if request.is_canceled or not name_or_location:
            return None
        source = self.registry.find(name_or_location)
        if source is not None:
            return source

        if os.path.isfile(name_or_location) or os.path.isdir(name_or_location):
            return PackageSource(
                name=name_or_location,
                location=name_or_location,
                trusted=True,
                is_registered=False,
                is_validated=True,
            )

        if is_absolute_uri(name_or_location):
            scheme = urllib.parse.urlsplit(name_or_location).scheme.lower()
            if scheme not in Constants.SUPPORTED_SCHEMES:
                request.write_error(
                    ErrorCategory.INVALID_ARGUMENT,
                    name_or_location,
                    Messages.URI_SCHEME_NOT_SUPPORTED,
                    scheme,
                )
                return None
            skip = request.skip_validate or Constants.SKIP_SOURCE_VALIDATION
            if skip or self._is_valid(name_or_location, request):
                return PackageSource(
                    name=name_or_location,
                    location=name_or_location,
                    trusted=False,
                    is_registered=False,
                    is_validated=not skip,
                )

        request.write_error(
            ErrorCategory.INVALID_ARGUMENT,
            name_or_location,
            Messages.UNABLE_TO_RESOLVE_SOURCE,
            name_or_location,
        )
        return None

    def selected_sources(self, request: FeedRequest, names: Optional[Sequence[str]] = None) -> List[PackageSource]:
        """Sources a request works against.

        Without names every registered source is used. Otherwise each name
        is resolved once per session; results are cached by the given text.
        """
        if request.is_canceled:
            return []
        wanted = [n for n in (names or []) if n and n.strip()]
        if not wanted:
            registered = self.registry.list()
            request.verbose("Using %d registered %s source(s)", len(registered), Constants.PROVIDER_NAME)
            return registered

        selected: List[PackageSource] = []
        for name in wanted:
            with self._checked_lock:
                cached = self._checked.get(name)
            if cached is None:
                cached = self.resolve(name, request)
                if cached is None:
                    continue
                with self._checked_lock:
                    cached = self._checked.setdefault(name, cached)
            if all(cached is not s for s in selected):
                selected.append(cached)
        return selected

    def forget(self, name: str) -> None:
        """Drop a session cached source (after it is removed from the registry)."""
        with self._checked_lock:
            self._checked.pop(name, None)
