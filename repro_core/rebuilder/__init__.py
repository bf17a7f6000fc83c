"""Rebuilder attestation client."""

from .attestation import Attestation, canonical_json, confirming_keys, load_signing_keys
from .client import RebuilderClient
from .types import RebuilderClientConfig, SearchRecord

__all__ = [
    "Attestation",
    "RebuilderClient",
    "RebuilderClientConfig",
    "SearchRecord",
    "canonical_json",
    "confirming_keys",
    "load_signing_keys",
]
