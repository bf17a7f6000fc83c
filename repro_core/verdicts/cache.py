from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

from ..types import ArtifactDigest, PackageIdentity, VerdictRecord

if TYPE_CHECKING:
    from ..config import TrustConfig

logger = logging.getLogger(__name__)
CACHE_VERSION = 1


class VerdictCache(Protocol):
    def lookup(self, identity: PackageIdentity, digest: ArtifactDigest) -> dict[str, VerdictRecord] | None: ...

    def store(
        self,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        records: Iterable[VerdictRecord],
        ttl: float,
    ) -> None: ...


def _safe_cache_key(raw: str) -> str:
    return "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in raw)


def cache_key(identity: PackageIdentity, digest: ArtifactDigest) -> str:
    return _safe_cache_key(
        f"{identity.name}_{identity.version}_{identity.architecture}_{digest.hexdigest}"
    )


def _merge(
    existing: dict[str, tuple[VerdictRecord, float]],
    records: Iterable[VerdictRecord],
    ttl: float,
) -> dict[str, tuple[VerdictRecord, float]]:
    merged = dict(existing)
    for record in records:
        merged[record.rebuilder_id] = (record, record.checked_at + float(ttl))
    return merged


def _fresh(entries: dict[str, tuple[VerdictRecord, float]], now: float) -> dict[str, VerdictRecord]:
    return {
        rebuilder_id: VerdictRecord(
            rebuilder_id=record.rebuilder_id,
            verdict=record.verdict,
            detail=record.detail,
            checked_at=record.checked_at,
            cached=True,
        )
        for rebuilder_id, (record, expires_at) in entries.items()
        if expires_at > now
    }


class NullVerdictCache:
    def lookup(self, identity: PackageIdentity, digest: ArtifactDigest) -> dict[str, VerdictRecord] | None:
        return None

    def store(
        self,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        records: Iterable[VerdictRecord],
        ttl: float,
    ) -> None:
        return None


class MemoryVerdictCache:
    """Process-local cache. Useless for one-shot invocations, which start empty."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, tuple[VerdictRecord, float]]] = {}

    def lookup(self, identity: PackageIdentity, digest: ArtifactDigest) -> dict[str, VerdictRecord] | None:
        with self._lock:
            entries = dict(self._entries.get(cache_key(identity, digest), {}))
        fresh = _fresh(entries, self._clock())
        return fresh or None

    def store(
        self,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        records: Iterable[VerdictRecord],
        ttl: float,
    ) -> None:
        key = cache_key(identity, digest)
        with self._lock:
            self._entries[key] = _merge(self._entries.get(key, {}), records, ttl)


class FileVerdictCache:
    """One JSON document per (identity, digest), replaced atomically on write."""

    def __init__(
        self,
        root: Path,
        *,
        max_entries: int = 4096,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = root.expanduser().resolve()
        self.max_entries = max(int(max_entries), 1)
        self._clock = clock
        self._lock = threading.Lock()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, identity: PackageIdentity, digest: ArtifactDigest) -> Path:
        return self.root / f"{cache_key(identity, digest)}.json"

    def lookup(self, identity: PackageIdentity, digest: ArtifactDigest) -> dict[str, VerdictRecord] | None:
        with self._lock:
            entries = self._read(self._path(identity, digest), digest)
        fresh = _fresh(entries, self._clock())
        return fresh or None

    def store(
        self,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        records: Iterable[VerdictRecord],
        ttl: float,
    ) -> None:
        path = self._path(identity, digest)
        with self._lock:
            merged = _merge(self._read(path, digest), records, ttl)
            payload = {
                "version": CACHE_VERSION,
                "package": identity.to_dict(),
                "digest": str(digest),
                "verdicts": [
                    {**record.to_dict(), "expires_at": expires_at}
                    for record, expires_at in sorted(merged.values(), key=lambda item: item[0].rebuilder_id)
                ],
            }
            self._write(path, payload)
            self._evict_if_needed()

    def _read(self, path: Path, digest: ArtifactDigest) -> dict[str, tuple[VerdictRecord, float]]:
        if not path.exists():
            return {}
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("ignoring unreadable verdict cache entry %s", path)
            return {}
        if not isinstance(payload, dict) or payload.get("version") != CACHE_VERSION:
            return {}
        if payload.get("digest") != str(digest):
            return {}
        entries: dict[str, tuple[VerdictRecord, float]] = {}
        for item in payload.get("verdicts") or []:
            try:
                record = VerdictRecord.from_dict(item)
                expires_at = float(item["expires_at"])
            except (KeyError, TypeError, ValueError):
                continue
            entries[record.rebuilder_id] = (record, expires_at)
        return entries

    def _write(self, path: Path, payload: dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=".verdict-", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, sort_keys=True)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _evict_if_needed(self) -> None:
        entries = [item for item in self.root.glob("*.json") if item.is_file()]
        if len(entries) <= self.max_entries:
            return
        for stale in sorted(entries, key=lambda item: item.stat().st_mtime)[: len(entries) - self.max_entries]:
            stale.unlink(missing_ok=True)


def open_cache(config: "TrustConfig") -> VerdictCache:
    if config.cache_backend == "off":
        return NullVerdictCache()
    if config.cache_backend == "memory":
        return MemoryVerdictCache()
    try:
        return FileVerdictCache(config.cache_dir)
    except OSError as exc:
        logger.warning("verdict cache %s unavailable, keeping verdicts in memory: %s", config.cache_dir, exc)
        return MemoryVerdictCache()
