"""Tests for the streaming package downloader."""

import asyncio
import threading

import pytest

aiohttp = pytest.importorskip("aiohttp")

from common.errors import FeedUnavailableError, OperationCanceledError
from common.request import FeedRequest, ProgressTracker
from constants import Constants
from install import download
from install.download import PackageDownloader, local_source_path
from install.installer import InstallState, PackageInstallation
from versioning.models import PackageBase, PackageItem
from versioning.semver import SemanticVersion

URL = "https://feed.test/api/v2/package/Foo/1.0.0"


class FakeResponse:
    def __init__(self, chunks=(), status=200, delay=0.0, between_chunks=None):
        self.status = status
        self._chunks = list(chunks)
        self._delay = delay
        self._between_chunks = between_chunks
        self.content_length = sum(len(c) for c in self._chunks)
        self.content = self
        self.released = False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientConnectionError(f"status {self.status}")

    async def iter_chunked(self, _size):
        for index, chunk in enumerate(self._chunks):
            if index and self._between_chunks is not None:
                self._between_chunks()
            if self._delay:
                await asyncio.sleep(self._delay)
            yield chunk

    def release(self):
        self.released = True


class FakeSession:
    def __init__(self, responses, calls):
        self._responses = responses
        self._calls = calls

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def get(self, url, auth=None):
        self._calls.append((url, auth))
        return self._responses.pop(0)


@pytest.fixture
def fake_session(monkeypatch):
    """Route aiohttp sessions in the downloader to scripted responses."""
    state = {"responses": [], "calls": []}
    monkeypatch.setattr(
        download.aiohttp,
        "ClientSession",
        lambda *args, **kwargs: FakeSession(state["responses"], state["calls"]),
    )
    return state


class TestRemoteDownload:
    """aiohttp transfers."""

    def test_streams_chunks_with_progress(self, fake_session, tmp_path):
        """Chunks land in the file and progress is reported every ten percent."""
        fake_session["responses"].append(FakeResponse([b"x" * 10] * 10))
        target = tmp_path / "Foo.1.0.0.nupkg"
        seen = []

        size = PackageDownloader().download(URL, str(target), FeedRequest(), seen.append)

        assert size == 100
        assert target.read_bytes() == b"x" * 100
        assert seen == [10, 20, 30, 40, 50, 60, 70, 80, 90, 100]

    def test_retries_after_failure(self, fake_session, tmp_path):
        """A failed attempt is retried on the same session."""
        fake_session["responses"].extend([FakeResponse(status=500), FakeResponse([b"abc"])])
        target = tmp_path / "pkg.nupkg"

        assert PackageDownloader().download(URL, str(target), FeedRequest()) == 3
        assert len(fake_session["calls"]) == 2

    def test_zero_byte_responses_fail(self, fake_session, tmp_path):
        """Empty bodies are never kept and exhaust the attempts."""
        fake_session["responses"].extend([FakeResponse([]) for _ in range(3)])
        target = tmp_path / "pkg.nupkg"

        with pytest.raises(FeedUnavailableError):
            PackageDownloader(retries=3).download(URL, str(target), FeedRequest())

        assert not target.exists()
        assert len(fake_session["calls"]) == 3

    def test_unauthorized_retries_with_credentials(self, fake_session, tmp_path):
        """A 401 is retried with the request's credentials."""
        fake_session["responses"].extend([FakeResponse(status=401), FakeResponse([b"abc"])])
        request = FeedRequest(credential=("bot", "s3cret"))

        PackageDownloader().download(URL, str(tmp_path / "pkg.nupkg"), request)

        first, second = fake_session["calls"]
        assert first[1] is None
        assert second[1] == aiohttp.BasicAuth("bot", "s3cret")

    def test_credential_provider_runs_off_the_event_loop(self, fake_session, tmp_path):
        """A slow credential provider runs in a worker thread, not on the loop."""
        fake_session["responses"].extend([FakeResponse(status=401), FakeResponse([b"abc"])])
        seen = []

        def provider(url, is_retry):
            seen.append((threading.get_ident(), is_retry))
            return ("bot", "s3cret")

        PackageDownloader().download(URL, str(tmp_path / "pkg.nupkg"), FeedRequest(credential_provider=provider))

        assert seen and seen[0][0] != threading.get_ident()
        assert seen[0][1] is False
        assert fake_session["calls"][1][1] == aiohttp.BasicAuth("bot", "s3cret")

    def test_cancellation_removes_partial_file(self, fake_session, tmp_path, monkeypatch):
        """A canceled request stops the transfer and deletes what was written."""
        monkeypatch.setattr(Constants, "CANCEL_POLL_INTERVAL_SEC", 0.01)
        fake_session["responses"].append(FakeResponse([b"x"] * 50, delay=0.05))
        target = tmp_path / "pkg.nupkg"
        request = FeedRequest()
        request.cancel()

        with pytest.raises(OperationCanceledError):
            PackageDownloader().download(URL, str(target), request)

        assert not target.exists()


class TestLocalDownload:
    """Folder and file URI sources are copied."""

    def test_copies_path_and_file_uri(self, tmp_path):
        """Plain paths and file URIs are both copied."""
        source = tmp_path / "Foo.1.0.0.nupkg"
        source.write_bytes(b"package")
        seen = []

        assert PackageDownloader().download(str(source), str(tmp_path / "a.nupkg"), FeedRequest(), seen.append) == 7
        assert PackageDownloader().download(source.as_uri(), str(tmp_path / "b.nupkg"), FeedRequest()) == 7
        assert seen == [100]
        assert (tmp_path / "b.nupkg").read_bytes() == b"package"

    def test_missing_source(self, tmp_path):
        """A local source that does not exist is unavailable."""
        with pytest.raises(FeedUnavailableError):
            PackageDownloader().download(str(tmp_path / "absent.nupkg"), str(tmp_path / "x"), FeedRequest())

    def test_local_source_path(self):
        """Only remote schemes are left to aiohttp."""
        assert local_source_path("https://feed.test/x") is None
        assert local_source_path("C:\\feeds\\x.nupkg") == "C:\\feeds\\x.nupkg"
        assert local_source_path("/srv/feeds/x.nupkg") == "/srv/feeds/x.nupkg"


class TestInstallCancellation:
    """Cancelling an installation while the package is streaming."""

    def test_cancel_mid_stream_rolls_back(self, fake_session, tmp_path, monkeypatch):
        """The partial package and the folders the install created are removed; existing ones stay."""
        monkeypatch.setattr(Constants, "CANCEL_POLL_INTERVAL_SEC", 0.01)
        destination = tmp_path / "out"
        destination.mkdir()
        (destination / "Other.1.0.0").mkdir()
        package_file = destination / "Foo.1.0.0" / "Foo.1.0.0.nupkg"
        request = FeedRequest({"destination": str(destination)})
        partial_seen = []

        def cancel_after_first_chunk():
            partial_seen.append(package_file.is_file())
            request.cancel()

        fake_session["responses"].append(
            FakeResponse([b"x" * 10] * 20, delay=0.05, between_chunks=cancel_after_first_chunk)
        )
        item = PackageItem(package=PackageBase("Foo", SemanticVersion.parse("1.0.0"), content_src_url=URL))
        installation = PackageInstallation(item, request, ProgressTracker(0), PackageDownloader())

        with pytest.raises(OperationCanceledError):
            installation.run()

        assert partial_seen == [True]
        assert installation.state is InstallState.FAILED
        assert not package_file.exists()
        assert not (destination / "Foo.1.0.0").exists()
        assert destination.is_dir()
        assert (destination / "Other.1.0.0").is_dir()
