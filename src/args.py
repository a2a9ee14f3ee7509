"""Argument parsing functionality for nugetfeed."""

import argparse

from constants import Constants


def _add_source_args(parser):
    parser.add_argument("-s", "--source",
                        dest="SOURCES",
                        help="Package source name or location (can be used multiple times; default: all registered)",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--skip-validate",
                        dest="SKIP_VALIDATE",
                        help="Do not probe unregistered source locations before use.",
                        action="store_true")


def _add_version_args(parser):
    parser.add_argument("-v", "--version",
                        dest="REQUIRED_VERSION",
                        help="Exact version to find",
                        action="store",
                        type=str)
    parser.add_argument("--min-version",
                        dest="MINIMUM_VERSION",
                        help="Lowest acceptable version (inclusive)",
                        action="store",
                        type=str)
    parser.add_argument("--max-version",
                        dest="MAXIMUM_VERSION",
                        help="Highest acceptable version (inclusive)",
                        action="store",
                        type=str)
    parser.add_argument("--allversions",
                        dest="ALL_VERSIONS",
                        help="Return every version instead of only the latest.",
                        action="store_true")
    parser.add_argument("--prerelease",
                        dest="PRERELEASE",
                        help="Include prerelease versions.",
                        action="store_true")


def _add_filter_args(parser):
    parser.add_argument("--tag",
                        dest="TAGS",
                        help="Only packages carrying this tag (can be used multiple times; all must match)",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--contains",
                        dest="CONTAINS",
                        help="Only packages whose id or description contains this text",
                        action="store",
                        type=str)


def _add_install_args(parser):
    parser.add_argument("--force",
                        dest="FORCE",
                        help="Reinstall or overwrite existing packages.",
                        action="store_true")
    parser.add_argument("--skipdependencies",
                        dest="SKIP_DEPENDENCIES",
                        help="Do not install or download dependencies.",
                        action="store_true")
    parser.add_argument("--hash-policy",
                        dest="HASH_POLICY",
                        help="What to do when a package hash does not match (default: warn)",
                        action="store",
                        type=str.lower,
                        choices=Constants.HASH_POLICIES)


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="nugetfeed",
        description="nugetfeed - find, search, download and install packages from NuGet feeds",
        add_help=True,
    )

    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML)",
                        action="store",
                        type=str)
    parser.add_argument("--sources-config",
                        dest="SOURCES_CONFIG",
                        help="Path to the nuget.config holding registered sources",
                        action="store",
                        type=str)
    parser.add_argument("--timeout",
                        dest="TIMEOUT",
                        help="HTTP request timeout in seconds",
                        action="store",
                        type=int)
    parser.add_argument("--error-on-warnings",
                        dest="ERROR_ON_WARNINGS",
                        help="Exit with a non-zero status code if warnings are present.",
                        action="store_true")

    sub = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    sub.required = True

    search = sub.add_parser("search", help="Search sources by (wildcard) name, tag or text")
    search.add_argument("NAME", nargs="?", default="", help="Package name; * ? and [] wildcards allowed")
    _add_source_args(search)
    _add_version_args(search)
    _add_filter_args(search)

    find = sub.add_parser("find", help="Find a package by exact id")
    find.add_argument("NAME", help="Package id")
    _add_source_args(find)
    _add_version_args(find)
    _add_filter_args(find)

    install = sub.add_parser("install", help="Install a package and its dependencies")
    install.add_argument("NAME", help="Package id or FastPath token")
    install.add_argument("-d", "--destination",
                         dest="DESTINATION",
                         help="Install folder",
                         action="store",
                         type=str,
                         required=True)
    install.add_argument("--excludeversion",
                         dest="EXCLUDE_VERSION",
                         help="Install into a folder named after the id only.",
                         action="store_true")
    _add_source_args(install)
    _add_version_args(install)
    _add_install_args(install)

    download = sub.add_parser("download", help="Download a package (and dependencies) as .nupkg files")
    download.add_argument("NAME", help="Package id or FastPath token")
    download.add_argument("-d", "--destination",
                          dest="DESTINATION",
                          help="Download folder",
                          action="store",
                          type=str,
                          required=True)
    _add_source_args(download)
    _add_version_args(download)
    _add_install_args(download)

    installed = sub.add_parser("list-installed", help="List packages installed in a folder")
    installed.add_argument("NAME", nargs="?", default="", help="Package name; wildcards allowed")
    installed.add_argument("-d", "--destination",
                           dest="DESTINATION",
                           help="Install folder",
                           action="store",
                           type=str,
                           required=True)
    _add_version_args(installed)

    sources = sub.add_parser("sources", help="Manage registered package sources")
    sources_sub = sources.add_subparsers(dest="SOURCES_COMMAND", metavar="ACTION")
    sources_sub.required = True
    sources_sub.add_parser("list", help="List registered sources")
    add = sources_sub.add_parser("add", help="Register a source")
    add.add_argument("SOURCE_NAME", help="Source name")
    add.add_argument("LOCATION", help="Feed URL or local folder")
    add.add_argument("--trusted",
                     dest="TRUSTED",
                     help="Mark the source as trusted.",
                     action="store_true")
    add.add_argument("--skip-validate",
                     dest="SKIP_VALIDATE",
                     help="Register without probing the location.",
                     action="store_true")
    remove = sources_sub.add_parser("remove", help="Unregister a source")
    remove.add_argument("SOURCE_NAME", help="Source name")

    fastpath = sub.add_parser("fastpath", help="Look up the package a FastPath token refers to")
    fastpath.add_argument("TOKEN", help="FastPath token printed by search/find")

    return parser.parse_args(argv)
