"""Scan an install destination for packages that are already there.

Each immediate subfolder of the destination is one installed package
(``{id}.{version}`` or ``{id}`` when installed without the version) that
holds its ``.nupkg`` and/or ``.nuspec``.
"""
from __future__ import annotations

import logging
import os
from typing import List, Optional

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled
from registry.nuget.filters import has_wildcard, wildcard_match
from registry.nuget.local import read_package_file
from versioning.models import PackageItem
from versioning.ranges import min_and_max_version_matched
from versioning.semver import SemanticVersion

logger = logging.getLogger(__name__)


def _name_in_file(name: str, path: str) -> bool:
    base = os.path.basename(path).lower()
    if has_wildcard(name):
        return wildcard_match(name + "*", base)
    return name.lower() in base


def _package_files(folder: str) -> List[str]:
    names = sorted(os.listdir(folder))
    nupkgs = [n for n in names if n.lower().endswith(Constants.PACKAGE_EXTENSION)]
    nuspecs = [n for n in names if n.lower().endswith(Constants.MANIFEST_EXTENSION)]
    return [os.path.join(folder, n) for n in nupkgs + nuspecs]


def get_installed(  # pylint: disable=too-many-arguments
    destination: Optional[str],
    name: Optional[str] = None,
    required_version: Optional[SemanticVersion] = None,
    minimum_version: Optional[SemanticVersion] = None,
    maximum_version: Optional[SemanticVersion] = None,
    min_inclusive: bool = True,
    max_inclusive: bool = True,
    terminate_first_found: bool = False,
) -> List[PackageItem]:
    """Installed packages in ``destination`` matching the filters.

    At most one package is reported per folder. With a name and
    ``terminate_first_found`` the scan stops at the first version match.
    """
    if not destination or not os.path.isdir(destination):
        return []
    found: List[PackageItem] = []
    for entry in sorted(os.listdir(destination)):
        folder = os.path.join(destination, entry)
        if not os.path.isdir(folder):
            continue
        for path in _package_files(folder):
            if name and name.strip() and not _name_in_file(name, path):
                continue
            package = read_package_file(path)
            if package is None:
                continue
            if name and name.strip():
                if has_wildcard(name):
                    if not wildcard_match(name, package.id):
                        continue
                elif package.id.lower() != name.lower():
                    continue
                if required_version is not None:
                    if package.version != required_version:
                        continue
                elif not min_and_max_version_matched(
                    package.version, minimum_version, maximum_version, min_inclusive, max_inclusive
                ):
                    continue
            found.append(
                PackageItem(package=package, is_package_file=True, full_path=folder)
            )
            break
        if terminate_first_found and found and name:
            break

    if is_debug_enabled(logger):
        logger.debug(
            "Installed packages scanned",
            extra=extra_context(
                event="scan",
                component="installed",
                action="get_installed",
                outcome="found" if found else "none",
                count=len(found),
                target=destination,
                package_manager="nuget",
            ),
        )
    return found


def is_installed(destination: Optional[str], package_id: str, version_range) -> bool:
    """True when some installed version of ``package_id`` satisfies the range."""
    return bool(
        get_installed(
            destination,
            package_id,
            minimum_version=version_range.min_version,
            maximum_version=version_range.max_version,
            min_inclusive=version_range.min_inclusive,
            max_inclusive=version_range.max_inclusive,
            terminate_first_found=True,
        )
    )
