"""Core datatypes shared by the trust engine, the cache and the transports."""

from __future__ import annotations

import enum
import fnmatch
import re
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

_HEX_SHA256_RE = re.compile(r"^[a-f0-9]{64}$")
_PATTERN_NAME_RE = re.compile(r"^[A-Za-z0-9.+_\-*?\[\]!]+$")
_PATTERN_VERSION_RE = re.compile(r"^[A-Za-z0-9.+~:_\-*?\[\]!]+$")


@dataclass(frozen=True)
class PackageIdentity:
    name: str
    version: str
    architecture: str
    source: str = ""

    def __post_init__(self) -> None:
        for label in ("name", "version", "architecture"):
            if not str(getattr(self, label) or "").strip():
                raise ValueError(f"package identity is missing {label}")
        if not self.source:
            object.__setattr__(self, "source", self.name)

    def __str__(self) -> str:
        return f"{self.name}={self.version}/{self.architecture}"

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "version": self.version,
            "architecture": self.architecture,
            "source": self.source,
        }


@dataclass(frozen=True)
class ArtifactDigest:
    """sha256 of the exact downloaded bytes, kept as lowercase hex."""

    hexdigest: str
    algorithm: str = "sha256"

    def __post_init__(self) -> None:
        value = self.hexdigest.strip().lower()
        if value.startswith("sha256:"):
            value = value[len("sha256:") :]
        if not _HEX_SHA256_RE.match(value):
            raise ValueError(f"invalid sha256 digest: {self.hexdigest!r}")
        object.__setattr__(self, "hexdigest", value)

    @classmethod
    def parse(cls, value: str) -> "ArtifactDigest":
        return cls(hexdigest=value)

    def matches(self, other_hex: str) -> bool:
        return other_hex.strip().lower() == self.hexdigest

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hexdigest}"


class Verdict(str, enum.Enum):
    REPRODUCED = "reproduced"
    UNREPRODUCED = "unreproduced"
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def conclusive(self) -> bool:
        return self in (Verdict.REPRODUCED, Verdict.UNREPRODUCED)


@dataclass(frozen=True)
class VerdictRecord:
    """One rebuilder's answer for one (identity, digest) pair."""

    rebuilder_id: str
    verdict: Verdict
    detail: str = ""
    checked_at: float = field(default_factory=time.time)
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rebuilder_id": self.rebuilder_id,
            "verdict": self.verdict.value,
            "detail": self.detail,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, cached: bool = False) -> "VerdictRecord":
        return cls(
            rebuilder_id=str(payload["rebuilder_id"]),
            verdict=Verdict(str(payload["verdict"])),
            detail=str(payload.get("detail") or ""),
            checked_at=float(payload["checked_at"]),
            cached=cached,
        )


@dataclass(frozen=True)
class RebuilderConfig:
    id: str
    endpoint: str
    groups: frozenset[str]
    signing_keys: tuple[bytes, ...] = ()


@dataclass(frozen=True)
class ThresholdPolicy:
    minimum: int


@dataclass(frozen=True)
class BlindTrustEntry:
    """Exemption pattern, either ``name`` or ``name=version`` with fnmatch globs."""

    name: str
    version: str | None = None

    @classmethod
    def parse(cls, raw: str) -> "BlindTrustEntry":
        value = str(raw)
        if not value or value != value.strip() or any(ch.isspace() for ch in value):
            raise ValueError(f"malformed blind-trust pattern: {raw!r}")
        if value.count("=") > 1:
            raise ValueError(f"malformed blind-trust pattern: {raw!r}")
        name, sep, version = value.partition("=")
        if not name or not _PATTERN_NAME_RE.match(name):
            raise ValueError(f"malformed blind-trust pattern: {raw!r}")
        if sep and (not version or not _PATTERN_VERSION_RE.match(version)):
            raise ValueError(f"malformed blind-trust pattern: {raw!r}")
        return cls(name=name, version=version if sep else None)

    def matches(self, identity: PackageIdentity) -> bool:
        if not fnmatch.fnmatchcase(identity.name, self.name):
            return False
        if self.version is None:
            return True
        return fnmatch.fnmatchcase(identity.version, self.version)

    def __str__(self) -> str:
        return self.name if self.version is None else f"{self.name}={self.version}"


class Decision(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


class DecisionReason(str, enum.Enum):
    BLIND_TRUST = "blind-trust exemption"
    THRESHOLD_MET = "threshold met"
    EXPLICIT_MISMATCH = "explicit mismatch"
    INSUFFICIENT_EVIDENCE = "insufficient evidence"


@dataclass(frozen=True)
class AggregateDecision:
    decision: Decision
    reason: DecisionReason
    identity: PackageIdentity
    digest: ArtifactDigest
    threshold: int
    evidence: tuple[VerdictRecord, ...] = ()
    confirming_groups: frozenset[str] = frozenset()
    mismatching_rebuilders: tuple[str, ...] = ()
    blind_trust_pattern: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW

    def describe(self) -> str:
        if self.reason is DecisionReason.BLIND_TRUST:
            return f"{self.identity} allowed by blind-trust exemption '{self.blind_trust_pattern}'"
        groups = len(self.confirming_groups)
        if self.reason is DecisionReason.EXPLICIT_MISMATCH:
            offenders = ", ".join(self.mismatching_rebuilders)
            return (
                f"EXPLICIT MISMATCH for {self.identity} ({self.digest}): "
                f"rebuilder(s) {offenders} could not reproduce this binary"
            )
        if self.reason is DecisionReason.INSUFFICIENT_EVIDENCE:
            return (
                f"Not enough reproducible builds attestations for {self.identity}: "
                f"only {groups}/{self.threshold} required trust groups confirmed"
            )
        return f"{self.identity} reproduced by {groups}/{self.threshold} required trust groups"

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason.value,
            "message": self.describe(),
            "package": self.identity.to_dict(),
            "digest": str(self.digest),
            "threshold": self.threshold,
            "confirming_groups": sorted(self.confirming_groups),
            "mismatching_rebuilders": list(self.mismatching_rebuilders),
            "blind_trust_pattern": self.blind_trust_pattern,
            "evidence": [
                {**record.to_dict(), "cached": record.cached} for record in self.evidence
            ],
        }
