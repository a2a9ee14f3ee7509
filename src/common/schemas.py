"""JSON Schema checks for feed wire documents.

Wraps jsonschema Draft7 validation with a strict helper that raises and a
best-effort helper that returns problems so callers can log a warning and
carry on with whatever fields are present.
"""

from __future__ import annotations

from typing import Any, Dict, List

from jsonschema import Draft7Validator


class SchemaError(ValueError):
    """Raised when a document fails to validate against a schema."""


SERVICE_INDEX_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["version"],
    "properties": {
        "version": {"type": "string"},
        "resources": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["@id", "@type"],
                "properties": {
                    "@id": {"type": "string"},
                    "@type": {
                        "anyOf": [
                            {"type": "string"},
                            {"type": "array", "items": {"type": "string"}},
                        ]
                    },
                },
            },
        },
    },
}

SEARCH_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["data"],
    "properties": {
        "totalHits": {"type": "integer"},
        "data": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id"],
                "properties": {
                    "id": {"type": "string"},
                    "version": {"type": "string"},
                    "versions": {"type": "array"},
                },
            },
        },
    },
}

REGISTRATION_INDEX_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["items"],
    "properties": {
        "count": {"type": "integer"},
        "items": {"type": "array", "items": {"type": "object"}},
    },
}

VERSION_INDEX_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["versions"],
    "properties": {"versions": {"type": "array", "items": {"type": "string"}}},
}

AUTOCOMPLETE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["data"],
    "properties": {"data": {"type": "array", "items": {"type": "string"}}},
}


def _describe(error) -> str:
    path = "/".join(str(p) for p in error.path)
    return f"'{path}': {error.message}" if path else error.message


def validate_document(schema: Dict[str, Any], data: Any) -> None:
    """Strictly validate a document; raise SchemaError on the first problem."""
    validator = Draft7Validator(schema)
    errs = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])
    if errs:
        raise SchemaError(f"Invalid document at {_describe(errs[0])}")


def check_document(schema: Dict[str, Any], data: Any) -> List[str]:
    """Best-effort validation; returns problem descriptions instead of raising."""
    validator = Draft7Validator(schema)
    return [_describe(e) for e in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])]
