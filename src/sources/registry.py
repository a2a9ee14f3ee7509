"""Registered package sources persisted in a ``nuget.config`` style XML file.

Document shape::

    <configuration>
      <packageSources>
        <add key="name" value="location" trusted="True" validated="True"/>
      </packageSources>
    </configuration>

All reads and writes of the file go through one process-wide lock; every
write re-serializes the whole document.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Dict, List, Optional
from xml.etree import ElementTree as ET

from constants import Constants, Messages
from common.logging_utils import extra_context, is_debug_enabled
from common.request import FeedRequest
from versioning.models import PackageSource

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = """<?xml version="1.0"?>
<configuration>
  <packageSources>
  </packageSources>
</configuration>
"""

# Guards the config file; add/remove may run from several threads
_config_lock = threading.RLock()


def default_config_path() -> str:
    """Per-user registry location: ``$XDG_CONFIG_HOME/NuGet/nuget.config``."""
    home = os.path.expanduser("~")
    base = os.environ.get("APPDATA") or os.environ.get("XDG_CONFIG_HOME") or os.path.join(home, ".config")
    return os.path.join(base, "NuGet", Constants.CONFIG_FILE_NAME)


def location_close_enough_match(given: str, known: str) -> bool:
    """Case-insensitive location match that tolerates one kind of trailing separator."""
    if given.lower() == known.lower():
        return True
    if given.rstrip("/").lower() == known.rstrip("/").lower():
        return True
    return given.rstrip("\\").lower() == known.rstrip("\\").lower()


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local(child.tag).lower() == name.lower():
            return child
    return None


class PackageSourceRegistry:
    """Reads and edits the registered source list."""

    def __init__(self, config_path: Optional[str] = None, request: Optional[FeedRequest] = None):
        self.config_path = config_path or Constants.SOURCES_CONFIG_PATH or default_config_path()
        self.request = request
        self._tree: Optional[ET.ElementTree] = None
        self._sources: Optional[Dict[str, PackageSource]] = None
        # True when the file exists but is unusable; edits then stay in memory
        self._read_only = False

    def _warn(self, message: str, *args) -> None:
        if self.request is not None:
            self.request.warning(message, *args)
        else:
            logger.warning(message, *args)

    def _ensure_file(self) -> None:
        if os.path.exists(self.config_path):
            return
        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as handle:
            handle.write(DEFAULT_CONFIG)
        if is_debug_enabled(logger):
            logger.debug(
                "Created source registry",
                extra=extra_context(
                    event="config",
                    component="sources",
                    action="create",
                    outcome="created",
                    target=self.config_path,
                ),
            )

    def _load(self) -> Dict[str, PackageSource]:
        with _config_lock:
            if self._sources is not None:
                return self._sources
            self._sources = {}
            try:
                self._ensure_file()
                tree = ET.parse(self.config_path)
            except (OSError, ET.ParseError) as exc:
                self._warn("Unable to read source registry %s: %s", self.config_path, exc)
                self._read_only = True
                return self._sources

            root = tree.getroot()
            if _local(root.tag).lower() != "configuration":
                self._warn(Messages.format(Messages.CONFIG_ROOT_INVALID, self.config_path))
                self._read_only = True
                return self._sources

            self._tree = tree
            package_sources = _child(root, "packageSources")
            if package_sources is None:
                return self._sources
            for node in package_sources:
                if _local(node.tag) != "add":
                    continue
                name, location = node.get("key"), node.get("value")
                if name is None or location is None:
                    continue
                self._sources[name.lower()] = PackageSource(
                    name=name,
                    location=location,
                    trusted=_is_true(node.get("trusted")),
                    is_registered=True,
                    is_validated=_is_true(node.get("validated")),
                )
            return self._sources

    def _save(self) -> None:
        if self._tree is None or self._read_only:
            return
        ET.indent(self._tree, space="  ")
        self._tree.write(self.config_path, encoding="utf-8", xml_declaration=True)

    def _package_sources_element(self) -> Optional[ET.Element]:
        if self._tree is None:
            return None
        root = self._tree.getroot()
        element = _child(root, "packageSources")
        if element is None:
            element = ET.SubElement(root, "packageSources")
        return element

    def list(self) -> List[PackageSource]:
        """Registered sources in file order."""
        return list(self._load().values())

    def find(self, name_or_location: str) -> Optional[PackageSource]:
        """Look up by exact name (case-insensitive), then by location."""
        if not name_or_location:
            return None
        sources = self._load()
        source = sources.get(name_or_location.lower())
        if source is not None:
            return source
        for candidate in sources.values():
            if location_close_enough_match(name_or_location, candidate.location):
                return candidate
        return None

    def add(self, name: str, location: str, trusted: bool = False, validated: bool = False) -> PackageSource:
        """Register (or update) a source and persist the document."""
        with _config_lock:
            sources = self._load()
            element = self._package_sources_element()
            if element is not None:
                node = next(
                    (n for n in element if _local(n.tag) == "add" and (n.get("key") or "").lower() == name.lower()),
                    None,
                )
                if node is None:
                    node = ET.SubElement(element, "add")
                node.set("key", name)
                node.set("value", location)
                if validated:
                    node.set("validated", "True")
                if trusted:
                    node.set("trusted", "True")
                self._save()
            source = PackageSource(
                name=name,
                location=location,
                trusted=trusted,
                is_registered=True,
                is_validated=validated,
            )
            sources[name.lower()] = source
        logger.info("Registered package source %s at %s", name, location)
        return source

    def remove(self, name: str) -> bool:
        """Unregister a source by name; returns False when it was not registered."""
        with _config_lock:
            sources = self._load()
            removed = sources.pop(name.lower(), None) is not None
            element = self._package_sources_element()
            if element is not None:
                for node in list(element):
                    if _local(node.tag) == "add" and (node.get("key") or "").lower() == name.lower():
                        element.remove(node)
                        removed = True
                        break
                self._save()
        if removed:
            logger.info("Removed package source %s", name)
        return removed

    def reload(self) -> None:
        """Forget the cached document so the next call re-reads the file."""
        with _config_lock:
            self._tree = None
            self._sources = None
            self._read_only = False
