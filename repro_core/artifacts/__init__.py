"""Artifact transfer and package metadata inspection."""

from .fetcher import ArtifactFetcher, FetchedArtifact, FetcherConfig, discard, promote
from .inspect import (
    identity_from_pacman_filename,
    inspect_artifact,
    inspect_deb,
    is_deb,
    is_pacman_package,
    parse_control,
    url_filename,
)

__all__ = [
    "ArtifactFetcher",
    "FetchedArtifact",
    "FetcherConfig",
    "discard",
    "identity_from_pacman_filename",
    "inspect_artifact",
    "inspect_deb",
    "is_deb",
    "is_pacman_package",
    "parse_control",
    "promote",
    "url_filename",
]
