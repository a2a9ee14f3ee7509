"""Package sources: the registry file, ad hoc resolution and FastPath tokens."""

from .fastpath import FastPath, make_fast_path, parse_fast_path, try_parse_fast_path
from .registry import PackageSourceRegistry, location_close_enough_match
from .resolve import SourceResolver, validate_source_uri

__all__ = [
    "FastPath",
    "make_fast_path",
    "parse_fast_path",
    "try_parse_fast_path",
    "PackageSourceRegistry",
    "location_close_enough_match",
    "SourceResolver",
    "validate_source_uri",
]
