"""Logging helpers shared across feeds, sources and the install pipeline.

Provides:
- configure_logging(): root logger setup driven by environment variables
- extra_context(): structured ``extra=`` payloads with correlation ids
- is_debug_enabled(): cheap guard for building DEBUG payloads
- Timer: context manager measuring elapsed wall time in milliseconds
- safe_url()/redact(): scrub credentials and secrets before logging
"""
from __future__ import annotations

import contextvars
import json
import logging
import os
import re
import time
import urllib.parse
import uuid
from typing import Any, Dict, List, Optional

from constants import Constants

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "nugetfeed_correlation_id", default=None
)

_SENSITIVE_QUERY_KEYS = {"token", "access_token", "api_key", "apikey", "key", "password", "sig", "signature"}
_REDACTED = "***"
_SECRET_PATTERNS = [
    re.compile(r"(?i)(authorization:\s*)(\S+(?:\s+\S+)?)"),
    re.compile(r"(?i)(password=)([^&\s]+)"),
    re.compile(r"(?i)(apikey=)([^&\s]+)"),
]

# Attributes present on every LogRecord; anything else came from extra=
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def new_correlation_id() -> str:
    """Start a new correlation id for the current context and return it."""
    value = uuid.uuid4().hex[:12]
    _correlation_id.set(value)
    return value


def get_correlation_id() -> Optional[str]:
    """Return the correlation id bound to the current context, if any."""
    return _correlation_id.get()


def extra_context(**kwargs: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping for structured log records.

    None values are dropped so formatters only see populated fields; the
    active correlation id is attached automatically.
    """
    ctx = {k: v for k, v in kwargs.items() if v is not None}
    cid = _correlation_id.get()
    if cid and "correlation_id" not in ctx:
        ctx["correlation_id"] = cid
    return ctx


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records would be emitted by this logger."""
    return logger.isEnabledFor(logging.DEBUG)


def redact(text: Any) -> str:
    """Mask secrets that may appear in free-form text."""
    if text is None:
        return ""
    value = str(text)
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(lambda m: m.group(1) + _REDACTED, value)
    return value


def safe_url(url: Optional[str]) -> str:
    """Return the URL with userinfo and sensitive query values masked."""
    if not url:
        return ""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = f"{_REDACTED}@{netloc.rsplit('@', 1)[1]}"
    query = parts.query
    if query:
        pairs = urllib.parse.parse_qsl(query, keep_blank_values=True)
        query = urllib.parse.urlencode(
            [(k, _REDACTED if k.lower() in _SENSITIVE_QUERY_KEYS else v) for k, v in pairs],
            safe="'()$,",
        )
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring elapsed time.

    Example:
        with Timer() as t:
            do_work()
        logger.debug("done", extra=extra_context(duration_ms=t.duration_ms()))
    """

    def __init__(self) -> None:
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> float:
        """Milliseconds since entering the block (or until it exited)."""
        if self._start is None:
            return 0.0
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000.0, 3)


class HumanFormatter(logging.Formatter):
    """Plain formatter that appends structured fields at DEBUG level."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if record.levelno > logging.DEBUG:
            return base
        fields = {k: v for k, v in vars(record).items() if k not in _RESERVED_ATTRS}
        if not fields:
            return base
        rendered = " ".join(f"{k}={redact(v)}" for k, v in sorted(fields.items()))
        return f"{base} | {rendered}"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including any structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure the root logger once.

    Level comes from the argument, then NUGETFEED_LOG_LEVEL, then INFO. The
    output format is "human" (default) or "json" via NUGETFEED_LOG_FORMAT.
    With ``log_file`` records are also appended to that file.
    """
    level_name = (level or os.environ.get("NUGETFEED_LOG_LEVEL") or "INFO").upper()
    fmt_name = (fmt or os.environ.get("NUGETFEED_LOG_FORMAT") or "human").lower()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handler = next((h for h in root.handlers if getattr(h, "_nugetfeed", False)), None)
    if handler is None:
        handler = logging.StreamHandler()
        handler._nugetfeed = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    handlers: List[logging.Handler] = [handler]
    if log_file:
        path = os.path.abspath(log_file)
        file_handler = next(
            (h for h in root.handlers if isinstance(h, logging.FileHandler) and h.baseFilename == path),
            None,
        )
        if file_handler is None:
            file_handler = logging.FileHandler(path, encoding="utf-8")
            root.addHandler(file_handler)
        handlers.append(file_handler)
    for h in handlers:
        if fmt_name == "json":
            h.setFormatter(JsonFormatter())
        else:
            h.setFormatter(HumanFormatter(Constants.LOG_FORMAT))
