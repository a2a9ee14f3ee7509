"""Streaming package download with retries and cooperative cancellation.

Transfers run on aiohttp. Next to every transfer a watcher task polls
``request.is_canceled`` once per ``CANCEL_POLL_INTERVAL_SEC`` and cancels
the transfer, which closes the response and removes the partial file.
Local sources (plain paths or ``file://`` URIs) are copied instead.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import urllib.parse
import urllib.request
from typing import Callable, List, Optional

import aiohttp

from constants import Constants
from common.errors import FeedUnavailableError, OperationCanceledError
from common.http_client import backoff_delay_ms
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from common.request import FeedRequest

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def remove_file(path: str) -> bool:
    """Delete a file if present; False when it could not be removed."""
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as exc:
        logger.warning("Unable to delete file %s: %s", path, exc)
        return False
    return True


def local_source_path(url: str) -> Optional[str]:
    """Filesystem path behind a download location, or None for remote URLs."""
    parts = urllib.parse.urlsplit(url)
    if parts.scheme.lower() == "file":
        return urllib.request.url2pathname(parts.path)
    if len(parts.scheme) <= 1:
        return url
    return None


class PackageDownloader:
    """Downloads one URL to one file; see ``download``."""

    def __init__(
        self,
        timeout: Optional[int] = None,
        chunk_size: Optional[int] = None,
        retries: Optional[int] = None,
    ):
        self._timeout = aiohttp.ClientTimeout(total=timeout or Constants.DOWNLOAD_TIMEOUT_SEC)
        self._chunk_size = chunk_size or Constants.DOWNLOAD_CHUNK_SIZE
        self._retries = retries or Constants.DOWNLOAD_RETRY_MAX

    def download(
        self,
        url: str,
        destination: str,
        request: FeedRequest,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Fetch ``url`` into ``destination`` and return the byte count.

        Raises OperationCanceledError when the request is canceled and
        FeedUnavailableError when every attempt failed. Nothing is left at
        ``destination`` in either case.
        """
        source = local_source_path(url)
        if source is not None:
            return self._copy(source, destination, progress)
        with Timer() as t:
            size = asyncio.run(self._download_with_watcher(url, destination, request, progress))
        if is_debug_enabled(logger):
            logger.debug(
                "Package downloaded",
                extra=extra_context(
                    event="download",
                    component="download",
                    action="download",
                    outcome="success",
                    size=size,
                    duration_ms=t.duration_ms(),
                    target=safe_url(url),
                    package_manager="nuget",
                ),
            )
        return size

    @staticmethod
    def _copy(source: str, destination: str, progress: Optional[ProgressCallback]) -> int:
        if not os.path.isfile(source):
            raise FeedUnavailableError([source], [FileNotFoundError(source)])
        shutil.copyfile(source, destination)
        if progress:
            progress(100)
        return os.path.getsize(destination)

    async def _download_with_watcher(
        self,
        url: str,
        destination: str,
        request: FeedRequest,
        progress: Optional[ProgressCallback],
    ) -> int:
        transfer = asyncio.create_task(self._download_with_retries(url, destination, request, progress))
        watcher = asyncio.create_task(self._watch_cancel(request, transfer))
        try:
            return await transfer
        except asyncio.CancelledError as exc:
            remove_file(destination)
            raise OperationCanceledError(url) from exc
        finally:
            watcher.cancel()

    @staticmethod
    async def _watch_cancel(request: FeedRequest, transfer: "asyncio.Task[int]") -> None:
        while not transfer.done():
            if request.is_canceled:
                request.warning("Download canceled")
                transfer.cancel()
                return
            await asyncio.sleep(Constants.CANCEL_POLL_INTERVAL_SEC)

    async def _download_with_retries(
        self,
        url: str,
        destination: str,
        request: FeedRequest,
        progress: Optional[ProgressCallback],
    ) -> int:
        errors: List[BaseException] = []
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            for attempt in range(self._retries):
                delay_ms = backoff_delay_ms(attempt)
                if delay_ms:
                    await asyncio.sleep(delay_ms / 1000.0)
                try:
                    size = await self._stream(session, url, destination, request, progress)
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                    errors.append(exc)
                    remove_file(destination)
                    request.verbose("Retrying download of %s (attempt %d): %s", safe_url(url), attempt + 1, exc)
                    continue
                if size == 0:
                    # Zero byte responses are never a valid package
                    remove_file(destination)
                    errors.append(ValueError(f"empty response from {safe_url(url)}"))
                    continue
                return size
        raise FeedUnavailableError([safe_url(url)], errors)

    async def _open(self, session: aiohttp.ClientSession, url: str, request: FeedRequest) -> aiohttp.ClientResponse:
        """GET the URL, asking the request for credentials on 401."""
        response = await session.get(url)
        for is_retry in (False, True):
            if response.status != 401:
                break
            # Providers may run an external command; keep the cancel watcher polling
            credential = await asyncio.to_thread(request.get_credentials, url, is_retry)
            if not credential:
                break
            response.release()
            response = await session.get(url, auth=aiohttp.BasicAuth(credential[0], credential[1]))
        return response

    async def _stream(
        self,
        session: aiohttp.ClientSession,
        url: str,
        destination: str,
        request: FeedRequest,
        progress: Optional[ProgressCallback],
    ) -> int:
        response = await self._open(session, url, request)
        try:
            response.raise_for_status()
            total = response.content_length or 0
            written = 0
            next_report = Constants.DOWNLOAD_PROGRESS_STEP
            with open(destination, "wb") as handle:
                async for chunk in response.content.iter_chunked(self._chunk_size):
                    handle.write(chunk)
                    written += len(chunk)
                    if progress and total:
                        percent = written * 100 // total
                        if percent >= next_report:
                            progress(min(percent, 100))
                            next_report = (percent // Constants.DOWNLOAD_PROGRESS_STEP + 1) * Constants.DOWNLOAD_PROGRESS_STEP
            return written
        finally:
            response.release()


def download_file(
    url: str,
    destination: str,
    request: FeedRequest,
    progress: Optional[ProgressCallback] = None,
) -> int:
    """Module level shortcut for ``PackageDownloader().download``."""
    return PackageDownloader().download(url, destination, request, progress)
