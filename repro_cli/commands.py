"""Shared helpers for commands that need the trust policy."""

from __future__ import annotations

from argparse import ArgumentParser
from typing import Any

from repro_core.config import TransportOverrides, TrustConfig, load_config
from repro_core.session import SessionController
from repro_core.trust.engine import TrustEngine

from .api import ReproCommand


def add_policy_arguments(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--rebuilder",
        dest="rebuilders",
        action="append",
        default=[],
        metavar="URL",
        help="Use these rebuilders instead of the configured ones (repeatable)",
    )
    parser.add_argument(
        "--required-confirms",
        type=int,
        default=None,
        help="Number of trust groups required to accept a package as reproduced",
    )
    parser.add_argument(
        "--blindly-allow",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Allow these packages even if nobody could reproduce them (name or name=version)",
    )


class _PolicyAwareCommand(ReproCommand):
    def _load_config(self, argv: Any) -> TrustConfig:
        overrides = TransportOverrides(
            rebuilders=tuple(getattr(argv, "rebuilders", None) or ()),
            required_confirms=getattr(argv, "required_confirms", None),
            blindly_allow=tuple(getattr(argv, "blindly_allow", None) or ()),
        )
        return load_config(overrides=overrides)

    def _controller(self, config: TrustConfig) -> SessionController:
        engine = TrustEngine.from_config(config)
        return SessionController(engine, max_parallel=config.max_parallel_downloads)
