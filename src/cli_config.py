"""CLI configuration overrides for runtime tunables (timeouts, hash policy, sources file).

Kept apart from the entrypoint so it stays slim. CLI overrides have the
highest precedence (above YAML config and environment) and never raise.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from constants import Constants

logger = logging.getLogger(__name__)


def apply_overrides(args) -> None:
    """Apply CLI overrides on top of the loaded configuration.

    Bad values are logged and ignored rather than breaking the CLI.
    """
    try:
        if getattr(args, "TIMEOUT", None) is not None:
            Constants.REQUEST_TIMEOUT = int(args.TIMEOUT)
        if getattr(args, "HASH_POLICY", None):
            Constants.HASH_MISMATCH_POLICY = str(args.HASH_POLICY).lower()
        if getattr(args, "SOURCES_CONFIG", None):
            Constants.SOURCES_CONFIG_PATH = args.SOURCES_CONFIG
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.warning("Ignoring invalid CLI override: %s", exc)


def request_options(args) -> Dict[str, Any]:
    """Translate parsed arguments into request options."""
    options: Dict[str, Any] = {
        "force": getattr(args, "FORCE", False),
        "skipdependencies": getattr(args, "SKIP_DEPENDENCIES", False),
        "allversions": getattr(args, "ALL_VERSIONS", False),
        "allowprereleaseversions": getattr(args, "PRERELEASE", False),
        "excludeversion": getattr(args, "EXCLUDE_VERSION", False),
        "skipvalidate": getattr(args, "SKIP_VALIDATE", False),
    }
    if getattr(args, "DESTINATION", None):
        options["destination"] = args.DESTINATION
    if getattr(args, "CONTAINS", None):
        options["contains"] = args.CONTAINS
    tags = [t for t in (getattr(args, "TAGS", None) or []) if t and t.strip()]
    if tags:
        options["filterontag"] = tags
    return options
