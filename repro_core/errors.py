"""Error types raised by the reproducible-builds trust core."""

from __future__ import annotations


class ReproError(RuntimeError):
    """Base class for repro-threshold failures."""


class ConfigError(ReproError):
    """Configuration is malformed or the policy can never be satisfied."""


class FetchError(ReproError):
    """The artifact transfer itself failed (network, HTTP status or local IO)."""


class ArtifactError(ReproError):
    """The transfer succeeded but the downloaded content is unusable."""


class RebuilderError(ReproError):
    """A single rebuilder could not be queried or returned garbage."""


class RebuilderTimeout(RebuilderError):
    """A rebuilder did not answer within the configured timeout."""


class AttestationError(ReproError):
    """An attestation document is malformed or fails signature verification."""
