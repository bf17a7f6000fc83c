"""HTTP client for rebuilderd attestation endpoints."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from ..errors import AttestationError, RebuilderError, RebuilderTimeout
from ..security import redact_url
from ..types import ArtifactDigest, PackageIdentity, RebuilderConfig, Verdict, VerdictRecord
from .attestation import Attestation
from .types import RebuilderClientConfig, SearchRecord

logger = logging.getLogger(__name__)


class _Transient(Exception):
    """Internal marker for faults worth one more attempt."""


class RebuilderClient:
    """Asks a rebuilder whether it reproduced an exact binary.

    ``query`` never raises for rebuilder-side faults: they collapse into
    ``Verdict.ERROR`` or ``Verdict.UNKNOWN`` records for that rebuilder only.
    """

    def __init__(self, config: RebuilderClientConfig | None = None) -> None:
        self.config = config or RebuilderClientConfig()
        self._headers = {"User-Agent": self.config.user_agent}

    def query(
        self,
        rebuilder: RebuilderConfig,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> VerdictRecord:
        effective_timeout = float(timeout if timeout is not None else self.config.timeout_seconds)
        try:
            verdict, detail = self._evaluate(rebuilder, identity, digest, effective_timeout, cancel)
        except RebuilderTimeout as exc:
            verdict, detail = Verdict.UNKNOWN, str(exc)
        except RebuilderError as exc:
            verdict, detail = Verdict.ERROR, str(exc)
        logger.debug(
            "rebuilder=%s package=%s digest=%s verdict=%s detail=%s",
            rebuilder.id,
            identity,
            digest,
            verdict.value,
            detail,
        )
        return VerdictRecord(rebuilder_id=rebuilder.id, verdict=verdict, detail=detail)

    def search(
        self,
        rebuilder: RebuilderConfig,
        identity: PackageIdentity,
        *,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> list[SearchRecord]:
        url = _api_url(rebuilder.endpoint, "api", "v1", "packages", "binary")
        params = {
            "name": identity.name,
            "version": identity.version,
            "architecture": identity.architecture,
        }
        response = self._get(url, params=params, timeout=timeout, cancel=cancel, allow_missing=True)
        if response is None:
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            raise RebuilderError(f"invalid JSON from {redact_url(url)}") from exc
        return _parse_search_payload(payload)

    def fetch_attestation(
        self,
        rebuilder: RebuilderConfig,
        record: SearchRecord,
        *,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> Attestation:
        url = _api_url(
            rebuilder.endpoint,
            "api",
            "v1",
            "builds",
            str(record.build_id),
            "artifacts",
            str(record.artifact_id),
            "attestation",
        )
        response = self._get(url, timeout=timeout, cancel=cancel)
        if response is None:
            raise RebuilderError(f"attestation missing at {redact_url(url)}")
        return Attestation.parse(response.content, label=url)

    def _evaluate(
        self,
        rebuilder: RebuilderConfig,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        timeout: float,
        cancel: threading.Event | None,
    ) -> tuple[Verdict, str]:
        records = self.search(rebuilder, identity, timeout=timeout, cancel=cancel)
        if not records:
            return Verdict.UNKNOWN, "rebuilder has no record of this package"

        accepted: list[Attestation] = []
        failures: list[str] = []
        for record in records:
            if record.failed or not record.has_attestation:
                continue
            try:
                attestation = self.fetch_attestation(rebuilder, record, timeout=timeout, cancel=cancel)
            except AttestationError as exc:
                logger.warning("rebuilder=%s served a malformed attestation: %s", rebuilder.id, exc)
                failures.append(str(exc))
                continue
            if rebuilder.signing_keys and attestation.verified_key(rebuilder.signing_keys) is None:
                logger.warning(
                    "rebuilder=%s attestation %s failed signature verification",
                    rebuilder.id,
                    redact_url(attestation.label),
                )
                failures.append("attestation signature did not verify")
                continue
            if not rebuilder.signing_keys:
                logger.debug("rebuilder=%s has no signing keyring, trusting endpoint", rebuilder.id)
            accepted.append(attestation)

        if any(item.attests(digest) for item in accepted):
            return Verdict.REPRODUCED, f"attested {digest}"
        if accepted:
            others = sorted({value for item in accepted for value in item.product_digests()})
            return Verdict.UNREPRODUCED, f"rebuilt binary differs (sha256 {', '.join(others) or 'none'})"
        if any(record.failed for record in records):
            return Verdict.UNREPRODUCED, "rebuilder reports the build as not reproducible"
        if failures:
            return Verdict.ERROR, "; ".join(failures)
        return Verdict.UNKNOWN, "no attestation available yet"

    def _get(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        timeout: float,
        cancel: threading.Event | None = None,
        allow_missing: bool = False,
    ) -> requests.Response | None:
        attempts = 1 + max(int(self.config.max_retries), 0)
        backoff = max(float(self.config.backoff_seconds), 0.0)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                raise RebuilderError("query cancelled")
            try:
                logger.debug("rebuilder request attempt=%s/%s url=%s", attempt, attempts, redact_url(url))
                response = requests.get(url, params=params, headers=self._headers, timeout=timeout)
                status = response.status_code
                if status == 404 and allow_missing:
                    return None
                if 500 <= status < 600:
                    raise _Transient(f"upstream error status={status}")
                if status >= 400:
                    raise RebuilderError(f"request failed status={status} url={redact_url(url)}")
                return response
            except Timeout as exc:
                last_error = exc
                logger.warning("rebuilder timeout attempt=%s/%s url=%s", attempt, attempts, redact_url(url))
            except (RequestsConnectionError, _Transient) as exc:
                last_error = exc
                logger.warning(
                    "rebuilder transport error attempt=%s/%s url=%s: %s",
                    attempt,
                    attempts,
                    redact_url(url),
                    exc,
                )
            except RequestException as exc:
                raise RebuilderError(f"request failed url={redact_url(url)}: {exc}") from exc
            if attempt < attempts:
                time.sleep(min(backoff * attempt, 1.0))

        if isinstance(last_error, Timeout):
            raise RebuilderTimeout(f"timed out after {timeout:.1f}s") from last_error
        raise RebuilderError(f"unreachable after {attempts} attempt(s): {last_error}") from last_error


def _api_url(base: str, *segments: str) -> str:
    return "/".join([base.rstrip("/"), *segments])


def _parse_search_payload(payload: Any) -> list[SearchRecord]:
    if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
        raise RebuilderError("search response has no 'records' list")
    records: list[SearchRecord] = []
    for item in payload["records"]:
        if not isinstance(item, dict):
            continue
        records.append(
            SearchRecord(
                build_id=_optional_int(item.get("build_id")),
                artifact_id=_optional_int(item.get("artifact_id")),
                status=str(item.get("status") or "").strip().upper(),
            )
        )
    return records


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
