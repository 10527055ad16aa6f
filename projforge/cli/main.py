"""
Top-level CLI dispatcher: projforge [--db-path PATH] [--config PATH] [--verbose] <command> [args...].
Global flags are resolved into one Config here and passed to the command module.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from projforge._version import __version__
from projforge.config import load_config
from projforge.core.errors import ProjforgeError

COMMANDS = {
    "db": "Manage the projforge store (init, migrate, backup, restore, export, import, status, ...)",
}


def add_global_options(parser: argparse.ArgumentParser, suppress: bool = False) -> None:
    """--db-path/--config/--verbose; suppress=True lets subcommands accept them without clobbering."""
    default = argparse.SUPPRESS if suppress else None
    parser.add_argument("--db-path", dest="db_path", default=default, help="SQLite store path (default: ~/.projforge/projforge.db)")
    parser.add_argument("--config", dest="config", default=default, help="YAML config file (default: ~/.projforge/config.yaml)")
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS if suppress else False, help="Debug logging"
    )


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = argparse.ArgumentParser(
        prog="projforge",
        description="Project scaffolding CLI: store management",
    )
    parser.add_argument("--version", action="version", version=f"projforge {__version__}")
    add_global_options(parser)
    subparsers = parser.add_subparsers(dest="command", help="command")
    for name, help_text in COMMANDS.items():
        subparsers.add_parser(name, help=help_text, add_help=False)

    args, rest = parser.parse_known_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    if args.command == "db":
        from projforge.cli import db as db_mod

        return db_mod.main(rest, defaults=args)

    parser.print_help()
    return 0


def resolve_config(args: argparse.Namespace, export_format: Optional[str] = None):
    """Build the invocation Config from parsed flags; ConfigError is reported by the caller."""
    config = load_config(
        getattr(args, "config", None),
        db_path=getattr(args, "db_path", None),
        export_format=export_format,
        verbose=getattr(args, "verbose", None),
    )
    configure_logging(config.verbose)
    return config


def report_error(e: ProjforgeError) -> int:
    print(f"error: {e}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
