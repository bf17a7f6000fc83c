"""Command-line dispatcher for repro-threshold."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from repro_core.errors import ConfigError, ReproError
from repro_core.session import SCHEME_PREFIX

from . import plumbing, transport  # noqa: F401  (registers commands)
from .api import registered_commands

logger = logging.getLogger(__name__)

LOG_ENV = "REPRO_THRESHOLD_LOG"
LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
OWN_LOGGERS = ("repro_core", "repro_cli")
GROUP_HELP = {
    "transport": "Run as a package manager download transport",
    "plumbing": "Low-level inspection and debugging commands",
}


def configure_logging(verbosity: int = 0) -> None:
    """Send all logging to stderr; stdout belongs to the package manager protocol."""

    own_level = logging.DEBUG if verbosity >= 1 else logging.INFO
    root_level = logging.DEBUG if verbosity >= 2 else logging.WARNING
    explicit = os.environ.get(LOG_ENV, "").strip().upper()
    if explicit:
        level = logging.getLevelName(explicit)
        if isinstance(level, int):
            own_level = level
        else:
            print(f"warning: ignoring unknown log level {LOG_ENV}={explicit}", file=sys.stderr)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_repro_threshold", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._repro_threshold = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(root_level)
    for name in OWN_LOGGERS:
        logging.getLogger(name).setLevel(own_level)


def build_parser(prog: str | None = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog or "repro-threshold",
        description="Accept downloads only when enough independent rebuilders reproduced them",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="More logging on stderr (repeat for dependency logs too)",
    )
    groups = parser.add_subparsers(dest="group", metavar="GROUP")
    group_parsers: dict[str, argparse._SubParsersAction] = {}
    for spec in registered_commands():
        if spec.group not in group_parsers:
            group_parser = groups.add_parser(spec.group, help=GROUP_HELP.get(spec.group, ""))
            group_parsers[spec.group] = group_parser.add_subparsers(dest="command", metavar="COMMAND")
        command_parser = group_parsers[spec.group].add_parser(spec.name, help=spec.help, description=spec.help)
        spec.command.configure(command_parser)
        command_parser.set_defaults(_command=spec.command)
    return parser


def _multicall_argv(argv: list[str], prog: str) -> list[str]:
    # installed as /usr/lib/apt/methods/reproduced+https and started by apt without arguments
    if Path(prog).name.startswith(SCHEME_PREFIX):
        return ["transport", "apt", *argv]
    return argv


def main(argv: Sequence[str] | None = None, *, prog: str | None = None) -> int:
    invoked_as = prog if prog is not None else (sys.argv[0] if sys.argv else "repro-threshold")
    args = _multicall_argv(list(sys.argv[1:] if argv is None else argv), invoked_as)

    parser = build_parser(prog)
    parsed = parser.parse_args(args)
    configure_logging(parsed.verbose)

    command_cls = getattr(parsed, "_command", None)
    if command_cls is None:
        parser.print_help(sys.stderr)
        return 2

    try:
        return int(command_cls().run(parsed))
    except ConfigError as exc:
        print(f"error: configuration: {exc}", file=sys.stderr)
        return 2
    except ReproError as exc:
        logger.debug("command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
