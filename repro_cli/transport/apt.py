"""APT acquire-method adapter.

APT starts the method once and talks to it over stdin/stdout with blocks of
``<code> <description>`` followed by ``Key: Value`` headers and a blank line.
Several ``600 URI Acquire`` blocks may be outstanding at once; every answer
carries the URI and Filename of the request it belongs to.
"""

from __future__ import annotations

import logging
import sys
import threading
from argparse import ArgumentParser
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, TextIO

from repro_core.errors import ConfigError
from repro_core.security import redact_url, single_line
from repro_core.session import AcquireRequest, AcquireResult, SessionController

from ..api import reprocommand
from ..commands import _PolicyAwareCommand, add_policy_arguments
from .base import TransportAdapter

logger = logging.getLogger(__name__)

CAPABILITIES: tuple[tuple[str, str], ...] = (
    ("Version", "1.2"),
    ("Pipeline", "true"),
    ("Send-URI-Encoded", "true"),
)
VERIFIED_TARGET_TYPES = ("deb",)

Headers = Iterable[tuple[str, str | None]]


@dataclass(frozen=True)
class AptMessage:
    code: int
    description: str
    headers: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    def get(self, key: str) -> str | None:
        wanted = key.lower()
        for name, value in self.headers:
            if name.lower() == wanted:
                return value
        return None


def read_message(stream: TextIO) -> AptMessage | None:
    """Read the next block from ``stream``; ``None`` at end of input."""

    status: str | None = None
    headers: list[tuple[str, str]] = []
    while True:
        raw = stream.readline()
        if not raw:
            break
        line = raw.rstrip("\r\n")
        if not line.strip():
            if status is None:
                continue
            break
        if status is None:
            status = line.strip()
            continue
        key, sep, value = line.partition(":")
        if not sep:
            logger.warning("ignoring malformed header line %r", line)
            continue
        headers.append((key.strip(), value.strip()))

    if status is None:
        return None
    code_text, _, description = status.partition(" ")
    try:
        code = int(code_text)
    except ValueError:
        code = 0
    return AptMessage(code=code, description=description.strip(), headers=tuple(headers))


def format_message(code: int, description: str, headers: Headers = ()) -> str:
    lines = [f"{code} {description}"]
    for key, value in headers:
        if value is None:
            continue
        lines.append(f"{key}: {single_line(str(value))}")
    return "\n".join(lines) + "\n\n"


class AptTransport(TransportAdapter):
    """Serve one APT session until stdin closes."""

    def __init__(
        self,
        controller: SessionController,
        *,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        super().__init__(controller)
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self._write_lock = threading.Lock()

    def send(self, code: int, description: str, headers: Headers = ()) -> None:
        block = format_message(code, description, headers)
        with self._write_lock:
            self.stdout.write(block)
            self.stdout.flush()

    # AcquireListener
    def status(self, request: AcquireRequest, message: str) -> None:
        self.send(102, "Status", (("URI", request.uri), ("Message", message)))

    def started(self, request: AcquireRequest, size: int | None, last_modified: str | None) -> None:
        self.send(
            200,
            "URI Start",
            (
                ("URI", request.uri),
                ("Size", str(size) if size is not None else None),
                ("Last-Modified", last_modified),
            ),
        )

    def fail(self, uri: str | None, message: str) -> None:
        self.send(400, "URI Failure", (("URI", uri), ("Message", message)))

    def run(self) -> int:
        self.send(100, "Capabilities", CAPABILITIES)
        pending: list[threading.Event] = []
        while True:
            message = read_message(self.stdin)
            if message is None:
                break
            if message.code == 600:
                answered = self._acquire(message)
                if answered is not None:
                    pending.append(answered)
            elif message.code == 601:
                logger.debug("ignoring configuration block with %s items", len(message.headers))
            else:
                self.fail(None, f"Unsupported command {message.code} {message.description}".strip())
        for answered in pending:
            answered.wait()
        logger.debug("apt session finished after %s acquisitions", len(pending))
        return 0

    def _acquire(self, message: AptMessage) -> threading.Event | None:
        uri = message.get("URI")
        filename = message.get("Filename")
        if not uri or not filename:
            self.fail(uri, "Acquire request needs both URI and Filename")
            return None
        target_type = message.get("Target-Type")
        request = AcquireRequest(
            uri=uri,
            filename=Path(filename),
            last_modified=message.get("Last-Modified"),
            verify=target_type is None or target_type in VERIFIED_TARGET_TYPES,
        )
        if not request.verify:
            logger.debug("passing through %s (Target-Type %s)", redact_url(request.fetch_url), target_type)
        answered = threading.Event()
        future = self.controller.submit(request, self)
        future.add_done_callback(lambda done, req=request: self._complete(req, done, answered))
        return answered

    def _complete(self, request: AcquireRequest, future: Future[AcquireResult], answered: threading.Event) -> None:
        try:
            self._answer(request, future)
        finally:
            answered.set()

    def _answer(self, request: AcquireRequest, future: Future[AcquireResult]) -> None:
        try:
            result = future.result()
        except Exception as exc:
            logger.error("acquire %s crashed: %s", redact_url(request.fetch_url), exc, exc_info=True)
            self.fail(request.uri, f"Internal error: {exc}")
            return
        if not result.ok:
            self.fail(request.uri, result.message)
            return
        self.send(
            201,
            "URI Done",
            (
                ("URI", request.uri),
                ("Filename", str(request.filename)),
                ("Size", str(result.size)),
                ("Last-Modified", result.last_modified),
                ("SHA256-Hash", result.digest.hexdigest if result.digest is not None else None),
                ("IMS-Hit", "true" if result.ims_hit else None),
            ),
        )


@reprocommand(name="apt", group="transport")
class AptTransportCommand(_PolicyAwareCommand):
    """Run as an APT acquire method speaking the method protocol on stdin/stdout."""

    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        add_policy_arguments(parser)

    def run(self, argv: Any) -> int:
        try:
            config = self._load_config(argv)
            controller = self._controller(config)
        except ConfigError as exc:
            logger.error("configuration error: %s", exc)
            stdout = sys.stdout
            stdout.write(format_message(100, "Capabilities", CAPABILITIES))
            stdout.write(format_message(401, "General Failure", (("Message", f"Configuration error: {exc}"),)))
            stdout.flush()
            return 2
        with controller:
            return AptTransport(controller).run()
