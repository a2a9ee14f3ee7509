"""Tests for folder and single-file package repositories."""

import base64
import hashlib
import os

from registry.nuget.local import LocalPackageRepository, file_hash, read_package_file
from versioning.models import PackageEntryInfo, SearchContext, SearchTerm, SearchTermType
from versioning.semver import SemanticVersion

from conftest import nuspec_xml, write_nupkg


class TestReadPackageFile:
    """Manifest extraction."""

    def test_nupkg_metadata_and_hash(self, make_nupkg):
        """A .nupkg yields its nuspec metadata plus a SHA512 hash of the archive."""
        path = make_nupkg("Foo", "1.2.0", [("Bar", "[1.0, )")], tags="json fast")
        package = read_package_file(path)

        assert package.id == "Foo"
        assert package.version == SemanticVersion.parse("1.2.0")
        assert package.tags == "json fast"
        assert [d.id for d in package.dependencies()] == ["Bar"]
        assert package.content_src_url == path
        assert package.package_hash_algorithm == "SHA512"
        assert package.package_size == os.path.getsize(path)

    def test_file_hash_is_base64_sha512(self, tmp_path):
        """Hashes use the base64 encoding feeds publish."""
        path = tmp_path / "blob.bin"
        path.write_bytes(b"payload")
        assert file_hash(str(path)) == base64.b64encode(hashlib.sha512(b"payload").digest()).decode("ascii")

    def test_loose_nuspec(self, tmp_path):
        """A bare .nuspec is read without a hash."""
        path = tmp_path / "Foo.nuspec"
        path.write_text(nuspec_xml("Foo", "1.0.0"), encoding="utf-8")
        package = read_package_file(str(path))
        assert package.id == "Foo"
        assert package.package_hash is None

    def test_corrupt_archive(self, tmp_path):
        """Unreadable files are skipped rather than raising."""
        path = tmp_path / "broken.1.0.0.nupkg"
        path.write_bytes(b"not a zip")
        assert read_package_file(str(path)) is None


class TestLocalRepository:
    """find and search over a folder."""

    def test_find_latest_flags(self, make_nupkg):
        """All versions of an id are returned with per-id latest flags."""
        make_nupkg("Foo", "1.0.0")
        make_nupkg("Foo", "2.0.0")
        make_nupkg("Foo", "3.0.0-beta")
        make_nupkg("Other", "1.0.0")
        repo = LocalPackageRepository(make_nupkg.folder)
        info = PackageEntryInfo("foo")

        result = repo.find(SearchContext(package_info=info), None)

        flags = {str(r.version): (r.is_latest_version, r.is_absolute_latest_version) for r in result.results}
        assert flags == {"1.0.0": (False, False), "2.0.0": (True, False), "3.0.0-beta": (False, True)}
        assert result.version_post_filter_required
        assert info.latest_version == SemanticVersion.parse("2.0.0")

    def test_find_required_version(self, make_nupkg):
        """A required version narrows the matches."""
        make_nupkg("Foo", "1.0.0")
        make_nupkg("Foo", "2.0.0")
        repo = LocalPackageRepository(make_nupkg.folder)
        context = SearchContext(package_info=PackageEntryInfo("Foo"), required_version=SemanticVersion.parse("1.0"))
        assert [str(r.version) for r in repo.find(context).results] == ["1.0.0"]

    def test_find_wildcard(self, make_nupkg):
        """Wildcard ids glob across packages."""
        make_nupkg("Foo.Core", "1.0.0")
        make_nupkg("Foo.Data", "1.0.0")
        make_nupkg("Bar", "1.0.0")
        repo = LocalPackageRepository(make_nupkg.folder)
        found = repo.find(SearchContext(package_info=PackageEntryInfo("Foo.*")))
        assert sorted(r.id for r in found.results) == ["Foo.Core", "Foo.Data"]

    def test_search_term_and_pattern(self, make_nupkg):
        """Search applies the term and then the original pattern."""
        make_nupkg("Foo.Core", "1.0.0")
        make_nupkg("Bar.Foo", "1.0.0")
        repo = LocalPackageRepository(make_nupkg.folder)
        context = SearchContext(search_terms=[
            SearchTerm(SearchTermType.SEARCH_TERM, "Foo"),
            SearchTerm(SearchTermType.ORIGINAL_PATTERN, "Foo*"),
        ])
        assert [r.id for r in repo.search(context)] == ["Foo.Core"]

    def test_install_layout(self, tmp_path):
        """Packages inside {id}.{version} folders are found."""
        folder = tmp_path / "Foo.1.0.0"
        folder.mkdir()
        write_nupkg(folder / "Foo.1.0.0.nupkg", "Foo", "1.0.0")
        repo = LocalPackageRepository(str(tmp_path))
        assert repo.package_file("foo", SemanticVersion.parse("1.0.0")) == str(folder / "Foo.1.0.0.nupkg")

    def test_single_file_source(self, make_nupkg):
        """A path to one .nupkg is a repository of that package."""
        path = make_nupkg("Foo", "1.0.0")
        repo = LocalPackageRepository(path)
        assert repo.is_file
        assert [p.id for p, _ in repo.packages()] == ["Foo"]

    def test_missing_folder(self, tmp_path):
        """A missing folder has no packages."""
        repo = LocalPackageRepository(str(tmp_path / "missing"))
        assert list(repo.packages()) == []
