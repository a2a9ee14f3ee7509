"""Install and download pipeline.

``install_or_download`` resolves dependencies, then processes each
dependency and finally the package itself. Installing one package walks
``PENDING -> DOWNLOADING -> VERIFYING -> EXTRACTING -> INSTALLED``; any
failure moves it to ``FAILED`` and rolls back what that step created:
directories made by this call and the partially written package file.
Folders that already existed are never removed.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import shutil
import tempfile
import zipfile
from enum import Enum
from typing import Callable, List, Optional

from constants import Constants, ErrorCategory, HashMismatchPolicy, Messages
from common.errors import (
    DependencyLoopError,
    FeedUnavailableError,
    HashMismatchError,
    NuGetFeedError,
    OperationCanceledError,
    PackageInstallError,
    UnableToFindDependencyError,
)
from common.logging_utils import extra_context, is_debug_enabled, Timer
from common.request import FeedRequest, ProgressTracker
from registry.nuget.converters import package_from_nuspec
from versioning.models import PackageItem

from .download import PackageDownloader, remove_file
from .resolver import resolve_dependencies

logger = logging.getLogger(__name__)

INSTALL = "Install"
DOWNLOAD = "Download"

HASH_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "md5": hashlib.md5,
    "sha512": hashlib.sha512,
}


class InstallState(Enum):
    """Lifecycle of one package install."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    INSTALLED = "installed"
    FAILED = "failed"


def package_directory_name(exclude_version: bool, destination: str, package_id: str, version: str) -> str:
    return os.path.join(destination, package_id if exclude_version else f"{package_id}.{version}")


def package_file_name(exclude_version: bool, package_id: str, version: str) -> str:
    stem = package_id if exclude_version else f"{package_id}.{version}"
    return stem + Constants.PACKAGE_EXTENSION


def compute_hash(path: str, algorithm: Optional[str]) -> bytes:
    """Digest of a file; unknown or missing algorithms use the configured default."""
    name = (algorithm or "").lower()
    factory = HASH_ALGORITHMS.get(name) or HASH_ALGORITHMS.get(Constants.DEFAULT_HASH_ALGORITHM, hashlib.sha512)
    digest = factory()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(Constants.DOWNLOAD_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.digest()


def verify_hash(path: str, item: PackageItem, request: FeedRequest) -> bool:
    """Compare a downloaded file with the feed's base64 hash.

    A missing hash only warns. A mismatch warns under the ``warn`` policy
    and raises HashMismatchError under ``fail``.
    """
    expected = item.package.package_hash
    algorithm = item.package.package_hash_algorithm or Constants.DEFAULT_HASH_ALGORITHM
    if not expected or not expected.strip():
        request.warning(Messages.format(Messages.MISSING_HASH, item.id))
        return True
    try:
        wanted = base64.b64decode(expected.strip(), validate=True)
    except (binascii.Error, ValueError):
        wanted = b""
    if compute_hash(path, algorithm) == wanted:
        return True
    if Constants.HASH_MISMATCH_POLICY == HashMismatchPolicy.FAIL.value:
        request.write_error(ErrorCategory.INVALID_RESULT, item.id, Messages.INVALID_HASH, item.id)
        raise HashMismatchError(item.id, algorithm)
    request.warning(Messages.format(Messages.INVALID_HASH, item.id))
    return False


def download_url(item: PackageItem) -> str:
    """Where to fetch the item's package file from."""
    if item.package.content_src_url:
        return item.package.content_src_url
    repository = item.source.repository if item.source is not None else None
    if repository is not None and repository.files_feed is not None:
        uri = repository.files_feed.make_download_uri(item.package)
        if uri:
            return uri
    if item.source is not None:
        return f"{item.source.location.rstrip('/')}/package/{item.id}/{item.version}"
    raise PackageInstallError(item.id, "no download location")


def _safe_extract(archive: zipfile.ZipFile, target: str) -> None:
    root = os.path.realpath(target)
    for member in archive.namelist():
        path = os.path.realpath(os.path.join(target, member))
        if path != root and not path.startswith(root + os.sep):
            raise PackageInstallError(member, "archive entry escapes the extraction folder")
    archive.extractall(target)


class PackageInstallation:
    """Installs one package into ``request.destination`` and tracks what it created."""

    def __init__(
        self,
        item: PackageItem,
        request: FeedRequest,
        tracker: ProgressTracker,
        downloader: Optional[PackageDownloader] = None,
    ):
        self.item = item
        self.request = request
        self.tracker = tracker
        self.downloader = downloader or PackageDownloader()
        self.state = InstallState.PENDING
        self.created_dirs: List[str] = []
        self.partial_file: Optional[str] = None

    def _make_dir(self, path: str) -> None:
        """Create ``path``, remembering the outermost folder this call created."""
        if os.path.isdir(path):
            return
        top = os.path.abspath(path)
        while not os.path.exists(os.path.dirname(top)) and os.path.dirname(top) != top:
            top = os.path.dirname(top)
        os.makedirs(path)
        self.created_dirs.append(top)

    def rollback(self) -> None:
        """Remove the partial file and every folder this installation created."""
        if self.partial_file:
            remove_file(self.partial_file)
        for path in reversed(self.created_dirs):
            shutil.rmtree(path, ignore_errors=True)
        self.created_dirs = []

    def _report(self, fraction: float, message: str) -> None:
        self.request.progress(self.tracker.progress_id, self.tracker.convert_percent_to_progress(fraction), message)

    def run(self) -> PackageItem:
        """Run the state machine; returns the installed item or raises after rolling back."""
        item, request = self.item, self.request
        destination = request.destination
        if not destination:
            raise PackageInstallError(item.id, "no destination folder given")
        version = str(item.version)
        exclude = request.exclude_version
        try:
            self._make_dir(destination)
            install_dir = package_directory_name(exclude, destination, item.id, version)
            self._make_dir(install_dir)
            package_path = os.path.join(install_dir, package_file_name(exclude, item.id, version))

            self.state = InstallState.DOWNLOADING
            self.partial_file = package_path
            share = Constants.DOWNLOAD_PROGRESS_SHARE / 100.0
            self.downloader.download(
                download_url(item),
                package_path,
                request,
                progress=lambda percent: self._report(share * percent / 100.0, f"Downloading {item.id}"),
            )
            if not os.path.isfile(package_path):
                raise PackageInstallError(item.id, "package file missing after download")

            self.state = InstallState.VERIFYING
            verify_hash(package_path, item, request)

            self.state = InstallState.EXTRACTING
            self._report(share, "Unzipping")
            installed = self._extract(package_path, install_dir)
            self.partial_file = None
            self.state = InstallState.INSTALLED
            self._report(1.0, f"Installed {item.id}")
            return installed
        except BaseException:
            self.state = InstallState.FAILED
            self.rollback()
            raise

    def _extract(self, package_path: str, install_dir: str) -> PackageItem:
        item = self.item
        temp_dir = tempfile.mkdtemp(prefix="nugetfeed-")
        try:
            with zipfile.ZipFile(package_path) as archive:
                _safe_extract(archive, temp_dir)
            shutil.copytree(temp_dir, install_dir, dirs_exist_ok=True)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        self._report(0.85, "Reading manifest")
        manifest = None
        wanted = (item.id + Constants.MANIFEST_EXTENSION).lower()
        for name in os.listdir(install_dir):
            if name.lower() == wanted:
                manifest = os.path.join(install_dir, name)
                break
        package = item.package
        if manifest is not None:
            with open(manifest, "r", encoding="utf-8-sig") as handle:
                package = package_from_nuspec(handle.read()) or package
            remove_file(manifest)
        return PackageItem(
            package=package,
            source=item.source,
            fast_path=item.fast_path,
            sources=item.sources,
            is_package_file=True,
            full_path=install_dir,
        )


def install_single(item: PackageItem, request: FeedRequest, tracker: ProgressTracker) -> bool:
    """Install one package without looking at its dependencies."""
    installation = PackageInstallation(item, request, tracker)
    with Timer() as t:
        try:
            installed = installation.run()
        except OperationCanceledError:
            return False
        except (NuGetFeedError, OSError, zipfile.BadZipFile) as exc:
            request.warning("Failed to install '%s': %s", item.id, exc)
            return False
    request.verbose("Installed %s %s to %s", installed.id, installed.version, installed.full_path)
    if is_debug_enabled(logger):
        logger.debug(
            "Package installed",
            extra=extra_context(
                event="install",
                component="installer",
                action="install_single",
                outcome=installation.state.value,
                duration_ms=t.duration_ms(),
                target=str(item),
                package_manager="nuget",
            ),
        )
    return True


def download_single(item: PackageItem, destination: str, request: FeedRequest, tracker: ProgressTracker) -> bool:
    """Save one ``{id}.{version}.nupkg`` into ``destination``.

    An existing file is kept unless ``force`` is set, in which case it is
    deleted first; failing to delete it fails the download.
    """
    target = os.path.join(destination, package_file_name(False, item.id, str(item.version)))
    if os.path.exists(target):
        if not request.force:
            request.verbose("Skipping %s: %s already exists", item.id, target)
            return True
        remove_file(target)
        if os.path.exists(target):
            request.write_error(ErrorCategory.INVALID_OPERATION, target, Messages.UNABLE_TO_DELETE_FILE, target)
            return False

    created = None
    if not os.path.isdir(destination):
        os.makedirs(destination)
        created = destination
    try:
        PackageDownloader().download(
            download_url(item),
            target,
            request,
            progress=lambda percent: request.progress(
                tracker.progress_id, tracker.convert_percent_to_progress(percent / 100.0), f"Downloading {item.id}"
            ),
        )
        verify_hash(target, item, request)
    except OperationCanceledError:
        remove_file(target)
        if created:
            shutil.rmtree(created, ignore_errors=True)
        return False
    except (NuGetFeedError, OSError) as exc:
        remove_file(target)
        if created:
            shutil.rmtree(created, ignore_errors=True)
        request.write_error(
            ErrorCategory.INVALID_RESULT, item.id, Messages.UNABLE_TO_DOWNLOAD, download_url_or_id(item), target
        )
        logger.warning("Download of %s failed: %s", item.id, exc)
        return False
    request.verbose("Downloaded %s to %s", item.id, target)
    return True


def download_url_or_id(item: PackageItem) -> str:
    try:
        return download_url(item)
    except PackageInstallError:
        return item.id


def install_or_download(
    item: PackageItem,
    request: FeedRequest,
    finder: Callable,
    destination: Optional[str] = None,
    operation: str = INSTALL,
) -> bool:
    """Install (or download) ``item`` after its dependencies.

    Progress for the whole operation moves in steps of
    ``n * 100 / (dependencies + 1)``. A dependency loop installs nothing;
    a failing dependency stops before the package itself.
    """
    if operation == DOWNLOAD and not destination:
        raise PackageInstallError(item.id, "no download destination given")

    def single(package: PackageItem, tracker: ProgressTracker) -> bool:
        if operation == DOWNLOAD:
            return download_single(package, destination, request, tracker)
        return install_single(package, request, tracker)

    dependencies: List[PackageItem] = []
    if not request.skip_dependencies:
        try:
            dependencies = resolve_dependencies(item, request, finder).items
        except DependencyLoopError:
            request.write_error(
                ErrorCategory.DEADLOCK_DETECTED, item.id, Messages.DEPENDENCY_LOOP_DETECTED, item.id
            )
            return False
        except (UnableToFindDependencyError, FeedUnavailableError) as exc:
            request.warning(str(exc))
            request.write_error(
                ErrorCategory.INVALID_RESULT, item.id, Messages.PACKAGE_FAILED_INSTALL_OR_DOWNLOAD,
                item.id, operation.lower(),
            )
            return False
        if request.is_canceled:
            return False

    count = len(dependencies)
    progress_id = request.start_progress(0, f"{operation} package '{item.id}'")
    done = 0
    success = False
    try:
        for dependency in dependencies:
            request.progress(progress_id, done * 100 // (count + 1), f"{operation} dependency '{dependency.id}'")
            sub_id = request.start_progress(progress_id, f"{operation} package '{dependency.id}'")
            try:
                ok = single(dependency, ProgressTracker(sub_id))
            finally:
                request.complete_progress(sub_id, True)
            if not ok:
                request.write_error(
                    ErrorCategory.INVALID_RESULT,
                    dependency.id,
                    Messages.DEPENDENT_PACKAGE_FAILED_INSTALL_OR_DOWNLOAD,
                    operation.lower(),
                    item.id,
                    dependency.id,
                )
                return False
            done += 1
            request.progress(progress_id, done * 100 // (count + 1), f"{operation} finished for '{dependency.id}'")

        success = single(item, ProgressTracker(progress_id, done * 100 // (count + 1), 100))
    finally:
        request.complete_progress(progress_id, True)

    if not success:
        request.write_error(
            ErrorCategory.INVALID_RESULT, item.id, Messages.PACKAGE_FAILED_INSTALL_OR_DOWNLOAD,
            item.id, operation.lower(),
        )
    return success


def download_package(item: PackageItem, destination: str, request: FeedRequest, finder: Callable) -> bool:
    """Download ``item`` and its dependencies into ``destination``."""
    return install_or_download(item, request, finder, destination=destination, operation=DOWNLOAD)
