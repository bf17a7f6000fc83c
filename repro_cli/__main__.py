"""Console script entrypoint; also reached through apt's ``reproduced+*`` method symlinks."""

from __future__ import annotations

import sys


def run(argv: list[str] | None = None) -> int:
    from .main import main as cli_main

    if argv is None:
        return cli_main()
    return cli_main(argv)


def main() -> int:
    """Console entrypoint used by setuptools script hooks."""
    return run()


if __name__ == "__main__":
    sys.exit(run())
