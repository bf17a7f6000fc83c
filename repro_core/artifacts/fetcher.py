"""Download artifacts into a private temporary file and hash them on the way in."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import requests
from requests.exceptions import RequestException

from ..errors import ArtifactError, FetchError
from ..rebuilder.types import DEFAULT_USER_AGENT
from ..security import redact_url
from ..types import ArtifactDigest

logger = logging.getLogger(__name__)

StartCallback = Callable[[int | None, str | None], None]


@dataclass(frozen=True)
class FetcherConfig:
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 60.0
    chunk_size: int = 1024 * 1024
    user_agent: str = DEFAULT_USER_AGENT


@dataclass(frozen=True)
class FetchedArtifact:
    url: str
    path: Path
    digest: ArtifactDigest | None
    size: int
    last_modified: str | None = None
    not_modified: bool = False


class ArtifactFetcher:
    def __init__(self, config: FetcherConfig | None = None) -> None:
        self.config = config or FetcherConfig()

    def fetch(
        self,
        url: str,
        destination: Path,
        *,
        last_modified: str | None = None,
        on_start: StartCallback | None = None,
    ) -> FetchedArtifact:
        """Stream ``url`` into a temporary sibling of ``destination``.

        The destination itself is never touched here; callers promote the
        temporary file with :func:`promote` once the artifact is accepted.
        Raises :class:`FetchError` for transfer faults and
        :class:`ArtifactError` for an empty body.
        """

        headers = {"User-Agent": self.config.user_agent}
        if last_modified:
            headers["If-Modified-Since"] = last_modified
        timeout = (self.config.connect_timeout_seconds, self.config.read_timeout_seconds)
        logger.debug("fetching url=%s", redact_url(url))
        try:
            response = requests.get(url, headers=headers, stream=True, timeout=timeout)
        except RequestException as exc:
            raise FetchError(f"failed to fetch {redact_url(url)}: {exc}") from exc

        with response:
            if response.status_code == 304 and last_modified:
                return FetchedArtifact(
                    url=url,
                    path=destination,
                    digest=None,
                    size=destination.stat().st_size if destination.exists() else 0,
                    last_modified=last_modified,
                    not_modified=True,
                )
            if response.status_code >= 400:
                raise FetchError(f"failed to fetch {redact_url(url)}: HTTP {response.status_code}")

            remote_modified = response.headers.get("Last-Modified")
            length = response.headers.get("Content-Length")
            if on_start is not None:
                on_start(int(length) if length and length.isdigit() else None, remote_modified)

            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{destination.name}.",
                suffix=".partial",
                dir=destination.parent,
            )
            tmp_path = Path(tmp_name)
            sha256 = hashlib.sha256()
            size = 0
            try:
                with os.fdopen(fd, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                        if not chunk:
                            continue
                        handle.write(chunk)
                        sha256.update(chunk)
                        size += len(chunk)
            except (RequestException, OSError) as exc:
                tmp_path.unlink(missing_ok=True)
                raise FetchError(f"transfer of {redact_url(url)} interrupted: {exc}") from exc

        if size == 0:
            tmp_path.unlink(missing_ok=True)
            raise ArtifactError(f"{redact_url(url)} returned an empty body")

        digest = ArtifactDigest(sha256.hexdigest())
        logger.debug("fetched url=%s size=%s digest=%s", redact_url(url), size, digest)
        return FetchedArtifact(
            url=url,
            path=tmp_path,
            digest=digest,
            size=size,
            last_modified=remote_modified,
        )


def promote(artifact: FetchedArtifact, destination: Path) -> Path:
    """Atomically move an accepted artifact into place."""

    if artifact.not_modified or artifact.path == destination:
        return destination
    os.replace(artifact.path, destination)
    return destination


def discard(artifact: FetchedArtifact) -> None:
    if artifact.not_modified:
        return
    artifact.path.unlink(missing_ok=True)
