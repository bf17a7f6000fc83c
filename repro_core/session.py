"""Drive acquisitions end-to-end: fetch, identify, decide, then promote or discard."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol
from urllib.parse import urlsplit

from .artifacts.fetcher import ArtifactFetcher, FetchedArtifact, discard, promote
from .artifacts.inspect import inspect_artifact
from .errors import ArtifactError, FetchError
from .security import redact_url
from .trust.engine import TrustEngine
from .types import AggregateDecision, ArtifactDigest, PackageIdentity

logger = logging.getLogger(__name__)

SCHEME_PREFIX = "reproduced+"

Inspector = Callable[..., PackageIdentity]


@dataclass(frozen=True)
class AcquireRequest:
    uri: str
    filename: Path
    last_modified: str | None = None
    verify: bool = True

    @property
    def fetch_url(self) -> str:
        if self.uri.startswith(SCHEME_PREFIX):
            return self.uri[len(SCHEME_PREFIX) :]
        return self.uri


@dataclass(frozen=True)
class AcquireResult:
    request: AcquireRequest
    ok: bool
    message: str = ""
    size: int = 0
    digest: ArtifactDigest | None = None
    last_modified: str | None = None
    ims_hit: bool = False
    decision: AggregateDecision | None = None


class AcquireListener(Protocol):
    def status(self, request: AcquireRequest, message: str) -> None: ...

    def started(self, request: AcquireRequest, size: int | None, last_modified: str | None) -> None: ...


class _SilentListener:
    def status(self, request: AcquireRequest, message: str) -> None:
        logger.debug("%s: %s", redact_url(request.fetch_url), message)

    def started(self, request: AcquireRequest, size: int | None, last_modified: str | None) -> None:
        return None


class SessionController:
    """Runs acquisitions, several at a time when the host protocol pipelines them.

    Every result carries the request it answers, so callers correlate by
    identity and never by completion order.
    """

    def __init__(
        self,
        engine: TrustEngine,
        fetcher: ArtifactFetcher | None = None,
        *,
        inspector: Inspector = inspect_artifact,
        max_parallel: int = 4,
    ) -> None:
        self.engine = engine
        self.fetcher = fetcher or ArtifactFetcher()
        self.inspector = inspector
        self._executor = ThreadPoolExecutor(
            max_workers=max(int(max_parallel), 1),
            thread_name_prefix="acquire",
        )

    def __enter__(self) -> "SessionController":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def submit(self, request: AcquireRequest, listener: AcquireListener | None = None) -> "Future[AcquireResult]":
        return self._executor.submit(self.acquire, request, listener)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def acquire(self, request: AcquireRequest, listener: AcquireListener | None = None) -> AcquireResult:
        events = listener or _SilentListener()
        url = request.fetch_url
        host = urlsplit(url).hostname or url
        events.status(request, f"Connecting to {host}")

        # a 304 proves nothing about the bytes at filename, so verified downloads are always fetched in full
        last_modified = None if request.verify else request.last_modified
        try:
            artifact = self.fetcher.fetch(
                url,
                request.filename,
                last_modified=last_modified,
                on_start=lambda size, modified: events.started(request, size, modified),
            )
        except (FetchError, ArtifactError) as exc:
            logger.warning("acquire %s failed: %s", redact_url(url), exc)
            return self._failure(request, str(exc))

        if artifact.not_modified:
            if request.verify:
                return self._failure(request, "Server answered 304 Not Modified for a download that must be verified")
            logger.debug("acquire %s not modified since %s", redact_url(url), last_modified)
            return AcquireResult(
                request=request,
                ok=True,
                size=artifact.size,
                last_modified=artifact.last_modified,
                ims_hit=True,
            )

        promoted = False
        try:
            decision: AggregateDecision | None = None
            if request.verify:
                events.status(request, "Verifying download")
                decision = self._verify(artifact, url)
                if not decision.allowed:
                    return self._failure(request, decision.describe(), artifact=artifact, decision=decision)
            promote(artifact, request.filename)
            promoted = True
            return AcquireResult(
                request=request,
                ok=True,
                size=artifact.size,
                digest=artifact.digest,
                last_modified=artifact.last_modified,
                decision=decision,
            )
        except ArtifactError as exc:
            logger.warning("acquire %s failed: %s", redact_url(url), exc)
            return self._failure(request, f"Failed to parse package metadata: {exc}", artifact=artifact)
        except OSError as exc:
            logger.warning("acquire %s failed: %s", redact_url(url), exc)
            return self._failure(request, f"Failed to store {request.filename}: {exc}")
        finally:
            if not promoted:
                discard(artifact)

    def _verify(self, artifact: FetchedArtifact, url: str) -> AggregateDecision:
        if artifact.digest is None:
            raise ArtifactError("artifact has no digest")
        identity = self.inspector(artifact.path, url=url)
        return self.engine.decide(identity, artifact.digest)

    def _failure(
        self,
        request: AcquireRequest,
        message: str,
        *,
        artifact: FetchedArtifact | None = None,
        decision: AggregateDecision | None = None,
    ) -> AcquireResult:
        # a stale or partial file must not be mistaken for a verified download
        try:
            request.filename.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("could not remove %s: %s", request.filename, exc)
        return AcquireResult(
            request=request,
            ok=False,
            message=message,
            size=artifact.size if artifact is not None else 0,
            digest=artifact.digest if artifact is not None else None,
            decision=decision,
        )
