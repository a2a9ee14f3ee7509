"""Dependency resolution, package download and installation."""

from .installed import get_installed
from .installer import DOWNLOAD, INSTALL, InstallState, download_package, install_or_download
from .resolver import ResolutionPlan, resolve_dependencies

__all__ = [
    "get_installed",
    "DOWNLOAD",
    "INSTALL",
    "InstallState",
    "download_package",
    "install_or_download",
    "ResolutionPlan",
    "resolve_dependencies",
]
