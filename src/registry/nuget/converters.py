"""Wire format converters: v3 JSON catalog entries, v2 Atom entries and nuspec manifests."""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from xml.etree import ElementTree as ET

from common.errors import VersionParseError
from common.logging_utils import extra_context, is_debug_enabled
from versioning.models import PackageBase, PackageDependency, PackageDependencySet
from versioning.ranges import DependencyVersionRange
from versioning.semver import SemanticVersion

logger = logging.getLogger(__name__)

_FRACTION_RE = re.compile(r"\.(\d+)")


class JsonDocument:
    """Case-insensitive, read-only view over a parsed JSON object.

    Feed documents are inconsistent about key casing (``totalHits`` vs
    ``totalhits``); lookups here ignore case and absent keys are reported
    through ``has`` instead of raising.
    """

    def __init__(self, raw: Optional[Dict[str, Any]]):
        self.raw: Dict[str, Any] = raw if isinstance(raw, dict) else {}
        self._keys = {k.lower(): k for k in self.raw}

    def has(self, name: str) -> bool:
        return name.lower() in self._keys

    def get(self, name: str, default: Any = None) -> Any:
        key = self._keys.get(name.lower())
        if key is None:
            return default
        return self.raw[key]

    def child(self, name: str) -> Optional["JsonDocument"]:
        value = self.get(name)
        return JsonDocument(value) if isinstance(value, dict) else None

    def children(self, name: str) -> List["JsonDocument"]:
        value = self.get(name)
        if not isinstance(value, list):
            return []
        return [JsonDocument(v) for v in value if isinstance(v, dict)]

    def string(self, name: str) -> Optional[str]:
        value = self.get(name)
        if value is None:
            return None
        return str(value)

    def types(self) -> List[str]:
        """The ``@type`` value normalized to a list."""
        value = self.get("@type")
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        return [str(value)]


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 timestamps from feeds; returns None on failure."""
    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    # fromisoformat wants at most six fractional digits
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _join(value: Any, separator: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        return separator.join(str(v) for v in value)
    return str(value)


def _parse_range(package_id: str, text: Optional[str]) -> DependencyVersionRange:
    try:
        return DependencyVersionRange.parse(text)
    except VersionParseError:
        if is_debug_enabled(logger):
            logger.debug(
                "Invalid dependency range",
                extra=extra_context(
                    event="parse",
                    component="converters",
                    action="parse_range",
                    outcome="invalid",
                    target=package_id,
                    package_manager="nuget",
                ),
            )
        return DependencyVersionRange()


def dependency_sets_from_json(groups: Iterable[JsonDocument]) -> Tuple[PackageDependencySet, ...]:
    """Convert v3 ``dependencyGroups`` into dependency sets."""
    sets = []
    for group in groups:
        deps = []
        for dep in group.children("dependencies"):
            dep_id = dep.string("id")
            if not dep_id:
                continue
            deps.append(PackageDependency(dep_id, _parse_range(dep_id, dep.string("range"))))
        sets.append(PackageDependencySet(group.string("targetFramework") or None, tuple(deps)))
    return tuple(sets)


# JSON field name -> (PackageBase attribute, converter)
_JSON_FIELDS = {
    "id": ("id", str),
    "title": ("title", str),
    "summary": ("summary", str),
    "description": ("description", str),
    "owners": ("owners", lambda v: _join(v, ",")),
    "authors": ("authors", lambda v: _join(v, ",")),
    "tags": ("tags", lambda v: _join(v, ", ")),
    "language": ("language", str),
    "copyright": ("copyright", str),
    "releaseNotes": ("release_notes", str),
    "licenseUrl": ("license_url", str),
    "projectUrl": ("project_url", str),
    "iconUrl": ("icon_url", str),
    "packageContent": ("content_src_url", str),
    "packageHash": ("package_hash", str),
    "packageHashAlgorithm": ("package_hash_algorithm", str),
    "packageSize": ("package_size", _as_int),
    "requireLicenseAcceptance": ("require_license_acceptance", _as_bool),
    "published": ("published", parse_datetime),
    "created": ("created", parse_datetime),
    "lastEdited": ("last_edited", parse_datetime),
    "totalDownloads": ("download_count", _as_int),
    "isPrerelease": ("is_prerelease", _as_bool),
}


def _collect_json_fields(doc: JsonDocument, fields: Dict[str, Any]) -> None:
    for name, (attr, convert) in _JSON_FIELDS.items():
        if doc.has(name) and doc.get(name) is not None:
            fields[attr] = convert(doc.get(name))
    if doc.has("version") and doc.get("version") is not None:
        fields["version"] = str(doc.get("version"))
    if doc.has("dependencyGroups"):
        fields["dependency_sets"] = dependency_sets_from_json(doc.children("dependencyGroups"))
    if doc.has("listed"):
        fields["listed"] = _as_bool(doc.get("listed"))
    # Registration leaves inline the catalog entry; its fields win
    inner = doc.child("catalogEntry")
    if inner is not None:
        _collect_json_fields(inner, fields)


def package_from_json(raw: Dict[str, Any], *, files_feed=None, gallery_feed=None, abuse_feed=None) -> Optional[PackageBase]:
    """Build a PackageBase from a v3 registration leaf or catalog entry.

    Returns None for unlisted entries and for entries without a usable
    id/version.
    """
    fields: Dict[str, Any] = {}
    _collect_json_fields(JsonDocument(raw), fields)
    if fields.get("listed") is False:
        return None
    package_id = fields.get("id")
    version = SemanticVersion.try_parse(fields.get("version"))
    if not package_id or version is None:
        return None
    fields["version"] = version
    return _finish(fields, files_feed, gallery_feed, abuse_feed)


def catalog_url(raw: Dict[str, Any]) -> Optional[str]:
    """Catalog entry URL of a registration leaf (a string or an object with ``@id``)."""
    entry = JsonDocument(raw).get("catalogEntry")
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        return JsonDocument(entry).string("@id")
    return None


def _finish(fields: Dict[str, Any], files_feed, gallery_feed, abuse_feed) -> PackageBase:
    package = PackageBase(**fields)
    updates: Dict[str, Any] = {}
    if abuse_feed is not None:
        updates["report_abuse_url"] = abuse_feed.make_abuse_uri(package.id, str(package.version))
    if gallery_feed is not None and not package.gallery_details_url:
        updates["gallery_details_url"] = gallery_feed.make_gallery_uri(package.id, str(package.version))
    if files_feed is not None:
        updates["content_src_url"] = files_feed.make_download_uri(package)
    if not updates:
        return package
    fields.update(updates)
    return PackageBase(**fields)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _children(element: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in element:
        if _local(child.tag) == name:
            yield child


def _first(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    if element is None:
        return None
    return next(_children(element, name), None)


def _text(element: Optional[ET.Element], name: str) -> Optional[str]:
    node = _first(element, name)
    if node is None or node.text is None:
        return None
    return node.text.strip()


def parse_v2_dependencies(value: Optional[str]) -> Tuple[PackageDependencySet, ...]:
    """Parse the v2 ``Dependencies`` property (``id:range:framework|...``)."""
    if not value:
        return ()
    groups: Dict[Optional[str], List[PackageDependency]] = {}
    for item in value.split("|"):
        parts = item.split(":")
        dep_id = parts[0].strip() if parts else ""
        dep_range = parts[1].strip() if len(parts) > 1 else ""
        framework = parts[2].strip() if len(parts) > 2 and parts[2].strip() else None
        bucket = groups.setdefault(framework, [])
        if dep_id:
            bucket.append(PackageDependency(dep_id, _parse_range(dep_id, dep_range)))
    return tuple(PackageDependencySet(fw, tuple(deps)) for fw, deps in groups.items())


# v2 OData property -> (PackageBase attribute, converter)
_V2_PROPERTIES = {
    "Title": ("title", str),
    "Summary": ("summary", str),
    "Description": ("description", str),
    "Authors": ("authors", str),
    "Owners": ("owners", str),
    "Tags": ("tags", str),
    "Language": ("language", str),
    "Copyright": ("copyright", str),
    "ReleaseNotes": ("release_notes", str),
    "LicenseUrl": ("license_url", str),
    "ProjectUrl": ("project_url", str),
    "IconUrl": ("icon_url", str),
    "GalleryDetailsUrl": ("gallery_details_url", str),
    "ReportAbuseUrl": ("report_abuse_url", str),
    "PackageHash": ("package_hash", str),
    "PackageHashAlgorithm": ("package_hash_algorithm", str),
    "PackageSize": ("package_size", _as_int),
    "RequireLicenseAcceptance": ("require_license_acceptance", _as_bool),
    "Published": ("published", parse_datetime),
    "Created": ("created", parse_datetime),
    "LastUpdated": ("last_edited", parse_datetime),
    "LastEdited": ("last_edited", parse_datetime),
    "DownloadCount": ("download_count", _as_int),
    "VersionDownloadCount": ("version_download_count", _as_int),
    "IsPrerelease": ("is_prerelease", _as_bool),
}


def read_v2_entry(entry: ET.Element) -> Tuple[Optional[PackageBase], bool, bool]:
    """Convert one Atom ``<entry>``.

    Returns (package, is_latest_version, is_absolute_latest_version); the
    package is None when the entry lacks an id or a parsable version.
    """
    props = _first(entry, "properties")
    fields: Dict[str, Any] = {}
    for name, (attr, convert) in _V2_PROPERTIES.items():
        value = _text(props, name)
        if value:
            fields[attr] = convert(value)
    if not fields.get("summary"):
        summary = _text(entry, "summary")
        if summary:
            fields["summary"] = summary
    if not fields.get("authors"):
        author = _first(entry, "author")
        name = _text(author, "name")
        if name:
            fields["authors"] = name

    package_id = _text(props, "Id") or _text(entry, "title")
    version = SemanticVersion.try_parse(_text(props, "Version"))
    if not package_id or version is None:
        return None, False, False
    fields["id"] = package_id
    fields["version"] = version
    fields["dependency_sets"] = parse_v2_dependencies(_text(props, "Dependencies"))

    content = _first(entry, "content")
    if content is not None and content.get("src"):
        fields["content_src_url"] = content.get("src")

    is_latest = _as_bool(_text(props, "IsLatestVersion") or "false")
    is_absolute_latest = _as_bool(_text(props, "IsAbsoluteLatestVersion") or "false")
    return PackageBase(**fields), is_latest, is_absolute_latest


def v2_entries(document: str) -> List[ET.Element]:
    """Return the ``<entry>`` elements of an Atom feed (or the root if it is one entry)."""
    root = ET.fromstring(document)
    if _local(root.tag) == "entry":
        return [root]
    return list(_children(root, "entry"))


def package_from_nuspec(xml_text: str) -> Optional[PackageBase]:
    """Build a PackageBase from nuspec XML."""
    root = ET.fromstring(xml_text)
    metadata = _first(root, "metadata")
    if metadata is None:
        return None
    package_id = _text(metadata, "id")
    version = SemanticVersion.try_parse(_text(metadata, "version"))
    if not package_id or version is None:
        return None

    dependency_sets: List[PackageDependencySet] = []
    dependencies = _first(metadata, "dependencies")
    if dependencies is not None:
        loose = []
        for child in dependencies:
            name = _local(child.tag)
            if name == "group":
                deps = tuple(
                    PackageDependency(d.get("id"), _parse_range(d.get("id"), d.get("version")))
                    for d in _children(child, "dependency")
                    if d.get("id")
                )
                dependency_sets.append(PackageDependencySet(child.get("targetFramework") or None, deps))
            elif name == "dependency" and child.get("id"):
                loose.append(PackageDependency(child.get("id"), _parse_range(child.get("id"), child.get("version"))))
        if loose:
            dependency_sets.insert(0, PackageDependencySet(None, tuple(loose)))

    return PackageBase(
        id=package_id,
        version=version,
        title=_text(metadata, "title"),
        summary=_text(metadata, "summary"),
        description=_text(metadata, "description"),
        authors=_text(metadata, "authors"),
        owners=_text(metadata, "owners"),
        tags=_text(metadata, "tags"),
        language=_text(metadata, "language"),
        copyright=_text(metadata, "copyright"),
        release_notes=_text(metadata, "releaseNotes"),
        license_url=_text(metadata, "licenseUrl"),
        project_url=_text(metadata, "projectUrl"),
        icon_url=_text(metadata, "iconUrl"),
        require_license_acceptance=_as_bool(_text(metadata, "requireLicenseAcceptance") or "false"),
        dependency_sets=tuple(dependency_sets),
        is_prerelease=version.is_prerelease,
    )
