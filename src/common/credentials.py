"""Credential providers used when a feed answers 401."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from typing import Optional

from common.logging_utils import extra_context, is_debug_enabled, safe_url
from common.request import Credential

logger = logging.getLogger(__name__)

CREDENTIAL_PROVIDER_TIMEOUT_SEC = 60


class CommandCredentialProvider:
    """Runs an external credential provider executable.

    The command is invoked as ``<command> -uri <url> -nonInteractive
    [-isRetry]`` and must print a JSON object with ``Username`` and
    ``Password`` on stdout.
    """

    def __init__(self, command: str, timeout: int = CREDENTIAL_PROVIDER_TIMEOUT_SEC):
        self._command = command
        self._timeout = timeout

    def __call__(self, query: str, is_retry: bool) -> Optional[Credential]:
        argv = shlex.split(self._command) + ["-uri", query, "-nonInteractive"]
        if is_retry:
            argv.append("-isRetry")
        if is_debug_enabled(logger):
            logger.debug(
                "Invoking credential provider",
                extra=extra_context(
                    event="credential_provider",
                    component="credentials",
                    action="invoke",
                    target=safe_url(query),
                    is_retry=is_retry,
                ),
            )
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Credential provider failed to run: %s", exc)
            return None
        if result.returncode != 0 or not result.stdout.strip():
            logger.warning("Credential provider exited with code %s", result.returncode)
            return None
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("Credential provider returned non-JSON output")
            return None
        username = payload.get("Username") or payload.get("username")
        password = payload.get("Password") or payload.get("password")
        if not username or password is None:
            return None
        return str(username), str(password)


def credential_provider_from_env() -> Optional[CommandCredentialProvider]:
    """Build a provider from NUGETFEED_CREDENTIAL_PROVIDER when it is set."""
    command = os.environ.get("NUGETFEED_CREDENTIAL_PROVIDER")
    if command and command.strip():
        return CommandCredentialProvider(command.strip())
    return None
