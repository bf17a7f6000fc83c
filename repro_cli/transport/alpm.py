"""pacman ``XferCommand`` adapter: one download per process."""

from __future__ import annotations

import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import Any, TextIO

from repro_core.artifacts.inspect import is_pacman_package, url_filename
from repro_core.security import redact_url
from repro_core.session import AcquireRequest, SessionController

from ..api import reprocommand
from ..commands import _PolicyAwareCommand, add_policy_arguments
from .base import TransportAdapter

logger = logging.getLogger(__name__)


class AlpmTransport(TransportAdapter):
    def __init__(
        self,
        controller: SessionController,
        *,
        output: Path,
        url: str,
        stderr: TextIO | None = None,
    ) -> None:
        super().__init__(controller)
        self.output = output
        self.url = url
        self.stderr = stderr or sys.stderr

    def status(self, request: AcquireRequest, message: str) -> None:
        logger.info("%s: %s", redact_url(request.fetch_url), message)

    def started(self, request: AcquireRequest, size: int | None, last_modified: str | None) -> None:
        logger.debug("downloading %s size=%s", redact_url(request.fetch_url), size)

    def run(self) -> int:
        # databases and detached signatures are covered by pacman's own checks
        request = AcquireRequest(
            uri=self.url,
            filename=self.output,
            verify=is_pacman_package(url_filename(self.url)),
        )
        result = self.controller.acquire(request, self)
        if result.ok:
            return 0
        print(f"error: {result.message}", file=self.stderr)
        return 1


@reprocommand(name="alpm", group="transport")
class AlpmTransportCommand(_PolicyAwareCommand):
    """Download one file for pacman (XferCommand) and verify it before writing it."""

    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        parser.add_argument("-O", "--output", required=True, help="Path pacman expects the download at")
        parser.add_argument("url", help="URL to download")
        add_policy_arguments(parser)

    def run(self, argv: Any) -> int:
        config = self._load_config(argv)
        with self._controller(config) as controller:
            return AlpmTransport(controller, output=Path(argv.output), url=str(argv.url)).run()
