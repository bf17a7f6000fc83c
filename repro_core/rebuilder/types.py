"""Rebuilder client datatypes and configuration."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_USER_AGENT = "repro-threshold"


@dataclass(frozen=True)
class RebuilderClientConfig:
    timeout_seconds: float = 10.0
    max_retries: int = 1
    backoff_seconds: float = 0.2
    user_agent: str = DEFAULT_USER_AGENT


@dataclass(frozen=True)
class SearchRecord:
    build_id: int | None
    artifact_id: int | None
    status: str = ""

    @property
    def has_attestation(self) -> bool:
        return self.build_id is not None and self.artifact_id is not None

    @property
    def failed(self) -> bool:
        return self.status in ("BAD", "FAIL")
