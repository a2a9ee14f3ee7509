"""Shared HTTP helpers used by feed adapters, discovery and source validation.

Encapsulates timeout/retry/backoff handling, a per-session response cache
and the 401 credential retry so feed modules avoid duplicating try/except
blocks. Streaming package downloads live in install/download.py.
"""
from __future__ import annotations

import json
import logging
import time
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

import requests

from constants import Constants
from common.errors import FeedUnavailableError, OperationCanceledError
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from common.request import Credential, FeedRequest
from versioning.cache import TTLCache

logger = logging.getLogger(__name__)

HEADERS_JSON = {"Accept": "application/json"}
HEADERS_XML = {"Accept": "application/atom+xml,application/xml"}


def backoff_delay_ms(attempt: int, base_ms: Optional[int] = None) -> int:
    """Return the delay before a retry attempt.

    Attempt 0 runs immediately; attempt n > 0 waits base * 2 ** (n - 1).
    """
    if attempt <= 0:
        return 0
    base = Constants.HTTP_RETRY_BASE_DELAY_MS if base_ms is None else base_ms
    return int(base * (2 ** (attempt - 1)))


def _get_cache_key(method: str, url: str, headers: Optional[Dict[str, str]] = None) -> str:
    """Generate cache key from request parameters."""
    headers_str = str(sorted(headers.items())) if headers else ""
    return f"{method}:{url}:{headers_str}"


class FeedHttpClient:
    """requests.Session wrapper with retries, caching and credential retry.

    One instance is meant to live for one session; the response cache and
    the per-host credential memo are scoped to it.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        cache_ttl: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", Constants.USER_AGENT)
        ttl = Constants.HTTP_CACHE_TTL_SEC if cache_ttl is None else cache_ttl
        self._cache: TTLCache[Tuple[int, Dict[str, str], str]] = TTLCache(default_ttl=ttl)
        self._max_retries = max_retries or Constants.HTTP_RETRY_MAX
        self._host_credentials: Dict[str, Credential] = {}

    @property
    def session(self) -> requests.Session:
        return self._session

    def close(self) -> None:
        self._session.close()

    def credentials_for(self, url: str) -> Optional[Credential]:
        """Credentials that previously succeeded for the URL's host."""
        return self._host_credentials.get(urllib.parse.urlsplit(url).netloc.lower())

    def _send(self, url: str, headers: Optional[Dict[str, str]], auth: Optional[Credential]) -> requests.Response:
        return self._session.get(
            url,
            headers=headers,
            auth=auth,
            timeout=Constants.REQUEST_TIMEOUT,
        )

    def _send_with_credentials(
        self,
        url: str,
        headers: Optional[Dict[str, str]],
        request: Optional[FeedRequest],
    ) -> requests.Response:
        """Send once; on 401 ask the request for credentials, retrying at most twice."""
        response = self._send(url, headers, self.credentials_for(url))
        if response.status_code != 401 or request is None:
            return response
        for is_retry in (False, True):
            credential = request.get_credentials(url, is_retry=is_retry)
            if not credential:
                break
            response.close()
            response = self._send(url, headers, credential)
            if response.status_code != 401:
                self._host_credentials[urllib.parse.urlsplit(url).netloc.lower()] = credential
                break
        return response

    def fetch(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        request: Optional[FeedRequest] = None,
    ) -> requests.Response:
        """GET with retries and backoff.

        Returns the first response below 500. Raises FeedUnavailableError
        after the last attempt and OperationCanceledError when the request
        is canceled while waiting to retry.
        """
        safe_target = safe_url(url)
        errors: List[BaseException] = []
        for attempt in range(self._max_retries):
            delay_ms = backoff_delay_ms(attempt)
            if delay_ms:
                if request is not None:
                    if request.wait_canceled(delay_ms / 1000.0):
                        raise OperationCanceledError(url)
                else:
                    time.sleep(delay_ms / 1000.0)
            if request is not None and request.is_canceled:
                raise OperationCanceledError(url)
            with Timer() as t:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP request",
                        extra=extra_context(
                            event="http_request",
                            component="http_client",
                            action="GET",
                            target=safe_target,
                            attempt=attempt + 1,
                        ),
                    )
                try:
                    response = self._send_with_credentials(url, headers, request)
                except requests.Timeout as exc:
                    errors.append(exc)
                    if is_debug_enabled(logger):
                        logger.debug(
                            "HTTP timeout",
                            extra=extra_context(
                                event="http_exception",
                                component="http_client",
                                action="GET",
                                outcome="timeout",
                                attempt=attempt + 1,
                                target=safe_target,
                            ),
                        )
                    continue
                except requests.RequestException as exc:
                    errors.append(exc)
                    if is_debug_enabled(logger):
                        logger.debug(
                            "HTTP request exception",
                            extra=extra_context(
                                event="http_exception",
                                component="http_client",
                                action="GET",
                                outcome="request_exception",
                                attempt=attempt + 1,
                                target=safe_target,
                            ),
                        )
                    continue

                if response.status_code >= 500:
                    errors.append(requests.HTTPError(f"HTTP {response.status_code} for {safe_target}"))
                    response.close()
                    continue

                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP response ok",
                        extra=extra_context(
                            event="http_response",
                            component="http_client",
                            action="GET",
                            outcome="success",
                            status_code=response.status_code,
                            duration_ms=t.duration_ms(),
                            target=safe_target,
                        ),
                    )
                return response

        raise FeedUnavailableError([safe_target], errors)

    def get_text(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        request: Optional[FeedRequest] = None,
        use_cache: bool = True,
    ) -> Tuple[int, Dict[str, str], str]:
        """GET returning (status_code, headers, text); status 0 means every attempt failed."""
        cache_key = _get_cache_key("GET", url, headers)
        if use_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP cache hit",
                        extra=extra_context(
                            event="cache_hit",
                            component="http_client",
                            action="GET",
                            target=safe_url(url),
                        ),
                    )
                return cached

        try:
            response = self.fetch(url, headers=headers, request=request)
        except FeedUnavailableError as exc:
            return 0, {}, f"Request failed after {self._max_retries} attempts: {exc}"

        result = (response.status_code, dict(response.headers), response.text)
        if use_cache and 200 <= response.status_code < 300:
            self._cache.set(cache_key, result)
        return result

    def get_json(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        request: Optional[FeedRequest] = None,
    ) -> Tuple[int, Dict[str, str], Optional[Any]]:
        """Perform GET request and parse JSON response.

        Args:
            url: Target URL
            headers: Optional request headers
            request: Host request used for cancellation and credentials

        Returns:
            Tuple of (status_code, headers_dict, parsed_json_or_none)
        """
        status_code, response_headers, text = self.get_text(
            url, headers=headers or HEADERS_JSON, request=request
        )
        if status_code == 200 and text:
            try:
                return status_code, response_headers, json.loads(text)
            except json.JSONDecodeError:
                if is_debug_enabled(logger):
                    logger.debug(
                        "JSON decode error",
                        extra=extra_context(
                            event="parse",
                            component="http_client",
                            action="get_json",
                            outcome="json_decode_error",
                            status_code=status_code,
                            target=safe_url(url),
                        ),
                    )
                return status_code, response_headers, None
        return status_code, response_headers, None

    def probe(self, url: str, request: Optional[FeedRequest] = None) -> bool:
        """Return True when the URL answers with a non-error status."""
        status_code, _, _ = self.get_text(url, request=request)
        return 0 < status_code < 400
