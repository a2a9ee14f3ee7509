"""nugetfeed - find, search, download and install packages from NuGet feeds.

    Returns:
        int: Exit code
"""
import logging
import os
import sys
from typing import List, Optional

from constants import Constants, ExitCodes, load_config
from common.credentials import credential_provider_from_env
from common.errors import (
    FastPathError,
    FeedUnavailableError,
    NuGetFeedError,
    SourceConfigError,
    VersionParseError,
)
from common.logging_utils import configure_logging, extra_context, is_debug_enabled, new_correlation_id
from common.request import FeedRequest
from args import parse_args
from cli_config import apply_overrides, request_options
from install.installed import get_installed
from install.resolver import pick_candidate
from registry.nuget.client import NuGetClient
from sources.fastpath import parse_fast_path
from sources.registry import PackageSourceRegistry
from sources.resolve import is_absolute_uri, validate_source_uri
from versioning.models import PackageItem
from versioning.semver import SemanticVersion

logger = logging.getLogger(__name__)


def print_items(items: List[PackageItem]) -> None:
    """Print one line per package: id, version, source and FastPath token."""
    for item in sorted(items, key=lambda i: (i.id.lower(), i.version)):
        source = item.source.name if item.source is not None else (item.full_path or "")
        line = f"{item.id} {item.version}"
        if source:
            line += f"  [{source}]"
        if item.fast_path:
            line += f"  {item.fast_path}"
        print(line)


def build_request(args) -> FeedRequest:
    """Request carrying the CLI options and the credential provider from the environment."""
    return FeedRequest(request_options(args), credential_provider=credential_provider_from_env())


def _parse_version(value: Optional[str]) -> Optional[SemanticVersion]:
    if value is None or not value.strip():
        return None
    return SemanticVersion.parse(value)


def find_packages(client: NuGetClient, request: FeedRequest, args) -> List[PackageItem]:
    """Exact id lookup using the version arguments on the command line."""
    return client.get_package_by_id(
        request,
        args.NAME,
        required_version=getattr(args, "REQUIRED_VERSION", None),
        minimum_version=getattr(args, "MINIMUM_VERSION", None),
        maximum_version=getattr(args, "MAXIMUM_VERSION", None),
        sources=args.SOURCES,
    )


def select_package(client: NuGetClient, request: FeedRequest, args) -> Optional[PackageItem]:
    """The single package an install or download acts on.

    A leading ``$`` marks a FastPath token; anything else is a package id
    and the highest matching version across sources is chosen.
    """
    if args.NAME.startswith("$"):
        return client.package_from_fast_path(request, args.NAME)
    items = find_packages(client, request, args)
    if not items:
        return None
    return pick_candidate(items)


def cmd_search(client: NuGetClient, request: FeedRequest, args) -> ExitCodes:
    items = client.search(request, args.NAME, args.SOURCES)
    print_items(items)
    logging.info("%d package(s) found.", len(items))
    return ExitCodes.SUCCESS


def cmd_find(client: NuGetClient, request: FeedRequest, args) -> ExitCodes:
    items = find_packages(client, request, args)
    if not items:
        logging.warning("No match was found for package '%s'.", args.NAME)
        return ExitCodes.RESOLUTION_ERROR
    print_items(items)
    return ExitCodes.SUCCESS


def cmd_install(client: NuGetClient, request: FeedRequest, args) -> ExitCodes:
    item = select_package(client, request, args)
    if item is None:
        logging.error("No match was found for package '%s'.", args.NAME)
        return ExitCodes.RESOLUTION_ERROR
    logging.info("Installing %s into %s", item, args.DESTINATION)
    if not client.install(request, item, args.SOURCES or None):
        return ExitCodes.INSTALL_ERROR
    logging.info("Installed %s.", item)
    return ExitCodes.SUCCESS


def cmd_download(client: NuGetClient, request: FeedRequest, args) -> ExitCodes:
    item = select_package(client, request, args)
    if item is None:
        logging.error("No match was found for package '%s'.", args.NAME)
        return ExitCodes.RESOLUTION_ERROR
    logging.info("Downloading %s to %s", item, args.DESTINATION)
    if not client.download(request, item, args.DESTINATION, args.SOURCES or None):
        return ExitCodes.INSTALL_ERROR
    logging.info("Downloaded %s.", item)
    return ExitCodes.SUCCESS


def cmd_list_installed(_client: NuGetClient, _request: FeedRequest, args) -> ExitCodes:
    items = get_installed(
        args.DESTINATION,
        args.NAME or None,
        required_version=_parse_version(args.REQUIRED_VERSION),
        minimum_version=_parse_version(args.MINIMUM_VERSION),
        maximum_version=_parse_version(args.MAXIMUM_VERSION),
    )
    print_items(items)
    return ExitCodes.SUCCESS


def cmd_sources(client: NuGetClient, request: FeedRequest, args) -> ExitCodes:
    registry = client.registry
    action = args.SOURCES_COMMAND
    if action == "list":
        for source in registry.list():
            flags = []
            if source.trusted:
                flags.append("trusted")
            if source.is_validated:
                flags.append("validated")
            suffix = f"  ({', '.join(flags)})" if flags else ""
            print(f"{source.name}  {source.location}{suffix}")
        return ExitCodes.SUCCESS
    if action == "add":
        validated = False
        if not args.SKIP_VALIDATE:
            if is_absolute_uri(args.LOCATION):
                validated = validate_source_uri(args.LOCATION, client.http, request)
            else:
                validated = bool(args.LOCATION) and os.path.isdir(args.LOCATION)
            if not validated:
                logging.error("Package source '%s' could not be validated.", args.LOCATION)
                return ExitCodes.CONNECTION_ERROR
        registry.add(args.SOURCE_NAME, args.LOCATION, trusted=args.TRUSTED, validated=validated)
        return ExitCodes.SUCCESS
    if not registry.remove(args.SOURCE_NAME):
        logging.error("Package source '%s' is not registered.", args.SOURCE_NAME)
        return ExitCodes.FILE_ERROR
    client.resolver.forget(args.SOURCE_NAME)
    return ExitCodes.SUCCESS


def cmd_fastpath(client: NuGetClient, request: FeedRequest, args) -> ExitCodes:
    parse_fast_path(args.TOKEN)
    item = client.package_from_fast_path(request, args.TOKEN)
    if item is None:
        logging.error("The package behind the FastPath token could not be found.")
        return ExitCodes.RESOLUTION_ERROR
    print_items([item])
    return ExitCodes.SUCCESS


COMMANDS = {
    "search": cmd_search,
    "find": cmd_find,
    "install": cmd_install,
    "download": cmd_download,
    "list-installed": cmd_list_installed,
    "sources": cmd_sources,
    "fastpath": cmd_fastpath,
}


def run(args) -> ExitCodes:
    """Run one parsed command and map failures onto exit codes."""
    request = build_request(args)
    client = NuGetClient(registry=PackageSourceRegistry(request=request))
    try:
        code = COMMANDS[args.COMMAND](client, request, args)
    except (VersionParseError, FastPathError) as exc:
        logging.error("%s", exc)
        return ExitCodes.FILE_ERROR
    except SourceConfigError as exc:
        logging.error("Source configuration error: %s", exc)
        return ExitCodes.FILE_ERROR
    except FeedUnavailableError as exc:
        logging.error("%s", exc)
        return ExitCodes.CONNECTION_ERROR
    except NuGetFeedError as exc:
        logging.error("%s", exc)
        return ExitCodes.RESOLUTION_ERROR
    except KeyboardInterrupt:
        request.cancel()
        logging.warning("Canceled.")
        return ExitCodes.INSTALL_ERROR
    finally:
        client.close()

    if code == ExitCodes.SUCCESS and request.errors:
        code = ExitCodes.RESOLUTION_ERROR
    if code == ExitCodes.SUCCESS and request.warnings and args.ERROR_ON_WARNINGS:
        logging.warning("Warnings present, exiting with non-zero status code.")
        code = ExitCodes.EXIT_WARNINGS
    return code


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    configure_logging(args.LOG_LEVEL, log_file=args.LOG_FILE)
    load_config(args.CONFIG)
    apply_overrides(args)
    new_correlation_id()

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(
                event="function_entry",
                component="cli",
                action="main",
                target=args.COMMAND,
                user_agent=Constants.USER_AGENT,
            ),
        )

    code = run(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(
                event="function_exit",
                component="cli",
                action="main",
                outcome=code.name.lower(),
            ),
        )
    sys.exit(code.value)


if __name__ == "__main__":
    main()
