"""Argument parsing functionality for pkgstore."""

import argparse
from constants import Constants


def _add_common_options(parser):
    """Options shared by every subcommand."""
    parser.add_argument("-s", "--store",
                        dest="STORE",
                        help=f"Store directory (default: ${Constants.ENV_STORE_DIR} or {Constants.DEFAULT_STORE_DIR})",
                        action="store",
                        type=str)
    parser.add_argument("--prefix",
                        dest="PREFIX",
                        help="Project directory (default: current directory)",
                        action="store",
                        type=str)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help=f"Path to configuration file (default: <prefix>/{Constants.RC_FILE})",
                        action="store",
                        type=str)
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    parser.add_argument("--no-lock",
                        dest="NO_LOCK",
                        help="Do not take cross-process store locks",
                        action="store_true")


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog=Constants.PACKAGE_MANAGER_NAME,
        description="pkgstore - shared, content-verified package store",
        add_help=True,
    )
    parser.add_argument("--version",
                        action="version",
                        version=f"%(prog)s {Constants.PACKAGE_MANAGER_VERSION}")
    subparsers = parser.add_subparsers(dest="COMMAND", required=True)

    add = subparsers.add_parser("add", help="Fetch packages into the store and link them into the project")
    _add_common_options(add)
    add.add_argument("PACKAGES",
                     help="Packages as name, name@version, name@range or name@tag",
                     nargs="+",
                     type=str)
    add.add_argument("-r", "--registry",
                     dest="REGISTRY",
                     help="Default registry URL",
                     action="store",
                     type=str)
    add.add_argument("-f", "--force",
                     dest="FORCE",
                     help="Refetch packages even when they are in the store",
                     action="store_true")
    add.add_argument("--child-concurrency",
                     dest="CHILD_CONCURRENCY",
                     help="Maximum number of packages processed at once",
                     action="store",
                     type=int)
    add.add_argument("--side-effects-cache",
                     dest="SIDE_EFFECTS_CACHE",
                     help="Import cached builds for the current engine when available",
                     action="store_true")
    add.add_argument("--no-verify-store-integrity",
                     dest="NO_VERIFY",
                     help="Trust store entries without rehashing their files",
                     action="store_true")

    prune = subparsers.add_parser("prune", help="Remove packages no project references")
    _add_common_options(prune)

    usages = subparsers.add_parser("usages", help="Show which projects use a package")
    _add_common_options(usages)
    usages.add_argument("QUERIES",
                        help="Package id, package name or name@range",
                        nargs="+",
                        type=str)

    location = subparsers.add_parser("location", help="Print where a package's files live")
    _add_common_options(location)
    location.add_argument("PACKAGE_ID", help="Package id", type=str)
    location.add_argument("NAME", help="Package name", type=str)
    location.add_argument("--engine",
                          dest="ENGINE",
                          help="Target engine whose cached build should be preferred",
                          action="store",
                          type=str)

    return parser.parse_args(argv)
