"""Argument parsing for the mambalite command line."""

import argparse

from .constants import Constants


def _add_common(parser):
    """Options shared by every subcommand."""
    parser.add_argument("-p", "--prefix",
                        dest="TARGET_PREFIX",
                        help="Path to the target environment",
                        action="store",
                        type=str)
    parser.add_argument("-n", "--name",
                        dest="ENV_NAME",
                        help="Name of the environment under <root-prefix>/envs",
                        action="store",
                        type=str)
    parser.add_argument("-r", "--root-prefix",
                        dest="ROOT_PREFIX",
                        help=f"Root prefix holding the package cache (default: ${Constants.ENV_ROOT_PREFIX})",
                        action="store",
                        type=str)
    parser.add_argument("--rc-file",
                        dest="RC_FILE",
                        help="Path to a YAML configuration file",
                        action="store",
                        type=str)
    parser.add_argument("-c", "--channel",
                        dest="CHANNELS",
                        help="Channel name or URL; repeat for several, first listed wins",
                        action="append",
                        type=str)
    parser.add_argument("-y", "--yes",
                        dest="ALWAYS_YES",
                        help="Do not ask for confirmation",
                        action="store_true",
                        default=None)
    parser.add_argument("--dry-run",
                        dest="DRY_RUN",
                        help="Only show what would be done",
                        action="store_true",
                        default=None)
    parser.add_argument("--offline",
                        dest="OFFLINE",
                        help="Use cached repodata and packages only",
                        action="store_true",
                        default=None)
    parser.add_argument("--json",
                        dest="JSON",
                        help="Report the transaction as JSON",
                        action="store_true",
                        default=None)
    parser.add_argument("--allow-downgrade",
                        dest="ALLOW_DOWNGRADE",
                        help="Allow installed packages to be downgraded",
                        action="store_true",
                        default=None)
    parser.add_argument("--ssl-verify",
                        dest="SSL_VERIFY",
                        help="Verify TLS certificates (default: true)",
                        action="store",
                        type=str.lower,
                        choices=["true", "false"])
    parser.add_argument("--cacert-path",
                        dest="CACERT_PATH",
                        help="CA bundle used to verify TLS certificates",
                        action="store",
                        type=str)
    parser.add_argument("--repodata-ttl",
                        dest="REPODATA_TTL",
                        help="Seconds during which cached repodata is used without revalidation",
                        action="store",
                        type=int)
    parser.add_argument("--platform",
                        dest="PLATFORM",
                        help="Target platform subdir, e.g. linux-64",
                        action="store",
                        type=str)
    parser.add_argument("-v", "--verbose",
                        dest="VERBOSITY",
                        help="Increase verbosity (-v info, -vv debug)",
                        action="count",
                        default=0)
    parser.add_argument("-q", "--quiet",
                        dest="QUIET",
                        help="Only print errors",
                        action="store_true",
                        default=None)


def build_parser():
    """Build the top level parser with its subcommands."""
    parser = argparse.ArgumentParser(
        prog=Constants.PROG_NAME,
        description="mambalite - a small conda-compatible package manager",
        add_help=True,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {Constants.VERSION}")
    sub = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    sub.required = True

    create = sub.add_parser("create", help="Create a new environment")
    _add_common(create)
    create.add_argument("SPECS", nargs="*", help="Package specs, e.g. 'numpy>=1.20'")

    install = sub.add_parser("install", help="Install packages into an existing environment")
    _add_common(install)
    install.add_argument("SPECS", nargs="+", help="Package specs, e.g. 'numpy>=1.20'")

    update = sub.add_parser("update", help="Update packages of an environment")
    _add_common(update)
    update.add_argument("-a", "--all",
                        dest="UPDATE_ALL",
                        help="Update every installed package",
                        action="store_true")
    update.add_argument("SPECS", nargs="*", help="Packages to update")

    remove = sub.add_parser("remove", help="Remove packages from an environment")
    _add_common(remove)
    remove.add_argument("SPECS", nargs="+", metavar="NAMES", help="Package names")

    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.COMMAND == "update" and not args.SPECS and not args.UPDATE_ALL:
        parser.error("update needs package names or --all")
    if args.TARGET_PREFIX and args.ENV_NAME:
        parser.error("--prefix and --name are mutually exclusive")
    return args
