"""Command registry used by the CLI dispatcher."""

from __future__ import annotations

from argparse import ArgumentParser
from dataclasses import dataclass
from typing import Any, Callable, TypeVar


class ReproCommand:
    """Base class for CLI commands: ``configure`` the parser, then ``run``."""

    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        return None

    def run(self, argv: Any) -> int:
        raise NotImplementedError


@dataclass(frozen=True)
class CommandSpec:
    name: str
    group: str
    command: type[ReproCommand]
    help: str


_COMMANDS: dict[tuple[str, str], CommandSpec] = {}

C = TypeVar("C", bound=type[ReproCommand])


def reprocommand(*, name: str, group: str) -> Callable[[C], C]:
    def _register(cls: C) -> C:
        doc = (cls.__doc__ or "").strip().splitlines()
        _COMMANDS[(group, name)] = CommandSpec(
            name=name,
            group=group,
            command=cls,
            help=doc[0] if doc else "",
        )
        return cls

    return _register


def registered_commands() -> list[CommandSpec]:
    return sorted(_COMMANDS.values(), key=lambda spec: (spec.group, spec.name))
