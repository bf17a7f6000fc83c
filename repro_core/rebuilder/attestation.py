"""in-toto link attestations published by rebuilders."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from ..errors import AttestationError
from ..types import ArtifactDigest

logger = logging.getLogger(__name__)
_PEM_BLOCK_RE = re.compile(
    r"-----BEGIN PUBLIC KEY-----\s+.*?-----END PUBLIC KEY-----",
    re.DOTALL,
)


def load_signing_keys(pem_text: str) -> tuple[bytes, ...]:
    """Return the raw Ed25519 public keys found in a PEM keyring."""

    blocks = _PEM_BLOCK_RE.findall(pem_text or "")
    if not blocks:
        raise AttestationError("no PEM public key found in keyring")
    keys: list[bytes] = []
    for block in blocks:
        try:
            key = serialization.load_pem_public_key(block.encode("ascii"))
        except (ValueError, UnicodeEncodeError) as exc:
            raise AttestationError(f"failed to parse signing key: {exc}") from exc
        if not isinstance(key, Ed25519PublicKey):
            raise AttestationError("signing key is not an Ed25519 public key")
        keys.append(
            key.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        )
    return tuple(keys)


def canonical_json(value: Any) -> bytes:
    """Canonical JSON as used by in-toto to compute signatures."""

    return _encode_canonical(value).encode("utf-8")


def _encode_canonical(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode_canonical(item) for item in value) + "]"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda item: str(item[0]))
        return "{" + ",".join(f"{_encode_canonical(str(k))}:{_encode_canonical(v)}" for k, v in items) + "}"
    raise AttestationError(f"value of type {type(value).__name__} cannot be canonicalized")


@dataclass(frozen=True)
class Attestation:
    signed: Mapping[str, Any]
    signatures: tuple[tuple[str, str], ...]
    label: str = ""

    @classmethod
    def parse(cls, payload: bytes | str, *, label: str = "") -> "Attestation":
        try:
            document = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise AttestationError(f"attestation is not valid JSON: {exc}") from exc
        if not isinstance(document, Mapping):
            raise AttestationError("attestation must be a JSON object")
        signed = document.get("signed")
        if not isinstance(signed, Mapping):
            raise AttestationError("attestation has no 'signed' object")
        if signed.get("_type") != "link":
            raise AttestationError("attestation metadata is not an in-toto link")
        raw_signatures = document.get("signatures")
        if not isinstance(raw_signatures, list):
            raise AttestationError("attestation has no 'signatures' list")
        signatures: list[tuple[str, str]] = []
        for item in raw_signatures:
            if not isinstance(item, Mapping):
                continue
            keyid = str(item.get("keyid") or "")
            sig = str(item.get("sig") or "")
            if sig:
                signatures.append((keyid, sig))
        return cls(signed=signed, signatures=tuple(signatures), label=label)

    def product_digests(self) -> frozenset[str]:
        products = self.signed.get("products")
        if not isinstance(products, Mapping):
            return frozenset()
        found: set[str] = set()
        for hashes in products.values():
            if not isinstance(hashes, Mapping):
                continue
            value = hashes.get("sha256")
            if isinstance(value, str) and value.strip():
                found.add(value.strip().lower())
        return frozenset(found)

    def attests(self, digest: ArtifactDigest) -> bool:
        return digest.hexdigest in self.product_digests()

    def verified_key(self, signing_keys: Sequence[bytes]) -> bytes | None:
        """Return the first key that produced a valid signature, if any."""

        if not signing_keys or not self.signatures:
            return None
        message = canonical_json(self.signed)
        for raw_key in signing_keys:
            public_key = Ed25519PublicKey.from_public_bytes(raw_key)
            for keyid, sig in self.signatures:
                try:
                    public_key.verify(bytes.fromhex(sig), message)
                except (InvalidSignature, ValueError):
                    continue
                logger.debug("attestation %s verified with keyid=%s", self.label or "<inline>", keyid)
                return raw_key
        return None


def confirming_keys(
    attestations: Iterable[Attestation],
    signing_keys: Sequence[bytes],
    digest: ArtifactDigest,
) -> set[bytes]:
    """Distinct signing keys with at least one valid attestation for ``digest``.

    One vote per key, however many attestations it signed.
    """

    confirms: set[bytes] = set()
    candidates = [item for item in attestations if item.attests(digest)]
    for key in signing_keys:
        for attestation in candidates:
            if attestation.verified_key((key,)) is not None:
                confirms.add(key)
                break
    return confirms
