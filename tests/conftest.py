"""Shared fixtures: package archives on disk and an in-memory feed."""

import json
import zipfile

import pytest

from constants import Constants

NUSPEC_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<package xmlns="http://schemas.microsoft.com/packaging/2013/05/nuspec.xsd">
  <metadata>
    <id>{id}</id>
    <version>{version}</version>
    <authors>tests</authors>
    <description>{description}</description>
    <tags>{tags}</tags>
    <dependencies>{dependencies}</dependencies>
  </metadata>
</package>
"""


def nuspec_xml(package_id, version, dependencies=(), description="", tags=""):
    deps = "".join(f'<dependency id="{d}" version="{r}" />' for d, r in dependencies)
    return NUSPEC_TEMPLATE.format(
        id=package_id, version=version, description=description or f"{package_id} package",
        tags=tags, dependencies=deps,
    )


def write_nupkg(path, package_id, version, dependencies=(), description="", tags="", extra_files=None):
    """Write a minimal .nupkg archive and return its path."""
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr(f"{package_id}.nuspec", nuspec_xml(package_id, version, dependencies, description, tags))
        archive.writestr("lib/net6.0/placeholder.txt", f"{package_id} {version}")
        for name, content in (extra_files or {}).items():
            archive.writestr(name, content)
    return str(path)


@pytest.fixture
def make_nupkg(tmp_path):
    """Factory writing ``{id}.{version}.nupkg`` into a feed folder."""
    feed = tmp_path / "feed"
    feed.mkdir()

    def _make(package_id, version, dependencies=(), **kwargs):
        return write_nupkg(feed / f"{package_id}.{version}.nupkg", package_id, version, dependencies, **kwargs)

    _make.folder = str(feed)
    return _make


class FakeHttp:
    """Serves canned JSON and text documents keyed by URL.

    A URL with a query string falls back to the document registered for the
    bare path so tests need not spell out every parameter.
    """

    def __init__(self, json_docs=None, texts=None):
        self.json_docs = dict(json_docs or {})
        self.texts = dict(texts or {})
        self.calls = []

    def _lookup(self, table, url):
        if url in table:
            return table[url]
        return table.get(url.split("?", 1)[0])

    def get_json(self, url, headers=None, request=None):
        self.calls.append(url)
        doc = self._lookup(self.json_docs, url)
        if doc is None:
            return 404, {}, None
        return 200, {}, doc

    def get_text(self, url, headers=None, request=None, use_cache=True):
        self.calls.append(url)
        text = self._lookup(self.texts, url)
        if text is None:
            doc = self._lookup(self.json_docs, url)
            if doc is None:
                return 404, {}, ""
            text = json.dumps(doc)
        return 200, {}, text

    def probe(self, url, request=None):
        return self.get_text(url, request=request)[0] == 200

    def close(self):
        pass


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch):
    """Keep retry backoff out of test run time."""
    monkeypatch.setattr(Constants, "HTTP_RETRY_BASE_DELAY_MS", 0)
