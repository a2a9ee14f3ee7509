"""FastPath tokens: opaque, round-trippable package identities for the host.

Format: ``$<b64 source>\\<b64 id>\\<b64 version>\\<b64 sources joined by '|'>``.
Each field is base64 (standard alphabet, padded) of its UTF-8 text; the
sources field joins the base64 of every original source with ``|``.
Empty sources are kept in place, except that a single empty source encodes
to an empty field and decodes as no sources.
"""
from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from common.errors import FastPathError

FAST_PATH_RE = re.compile(
    r"^\$(?P<source>[A-Za-z0-9+/=]*)\\(?P<id>[A-Za-z0-9+/=]*)\\(?P<version>[A-Za-z0-9+/=]*)"
    r"\\(?P<sources>[A-Za-z0-9+/=|]*)$"
)


@dataclass(frozen=True)
class FastPath:
    """Decoded FastPath fields."""
    source: str
    id: str
    version: str
    sources: Tuple[str, ...] = ()


def to_base64(text: Optional[str]) -> str:
    return base64.b64encode((text or "").encode("utf-8")).decode("ascii")


def from_base64(text: str) -> str:
    if not text:
        return ""
    try:
        return base64.b64decode(text.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise FastPathError(f"invalid base64 field {text!r}") from exc


def make_fast_path(source: str, package_id: str, version: str, sources: Sequence[str] = ()) -> str:
    """Build the token for (source, id, version, original sources)."""
    joined = "|".join(to_base64(s) for s in sources)
    return f"${to_base64(source)}\\{to_base64(package_id)}\\{to_base64(version)}\\{joined}"


def parse_fast_path(token: str) -> FastPath:
    """Decode a token; raises FastPathError when it is malformed."""
    match = FAST_PATH_RE.match((token or "").strip())
    if not match:
        raise FastPathError(f"not a fast path: {token!r}")
    field = match.group("sources")
    sources = tuple(from_base64(part) for part in field.split("|")) if field else ()
    return FastPath(
        source=from_base64(match.group("source")),
        id=from_base64(match.group("id")),
        version=from_base64(match.group("version")),
        sources=sources,
    )


def try_parse_fast_path(token: str) -> Optional[FastPath]:
    """Decode a token, or None when it is not one."""
    try:
        return parse_fast_path(token)
    except FastPathError:
        return None
