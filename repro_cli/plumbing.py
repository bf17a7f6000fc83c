"""Low-level commands for inspecting and debugging the trust policy."""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import Any

from repro_core.artifacts.inspect import inspect_artifact, inspect_deb
from repro_core.config import TrustConfig
from repro_core.errors import ArtifactError, AttestationError
from repro_core.rebuilder.attestation import Attestation, confirming_keys, load_signing_keys
from repro_core.security import redact_url
from repro_core.trust.engine import TrustEngine
from repro_core.types import ArtifactDigest, PackageIdentity

from .api import ReproCommand, reprocommand
from .commands import _PolicyAwareCommand, add_policy_arguments

logger = logging.getLogger(__name__)


def _sha256_file(path: Path) -> ArtifactDigest:
    sha256 = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            sha256.update(chunk)
    return ArtifactDigest(sha256.hexdigest())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


@reprocommand(name="verify", group="plumbing")
class VerifyCommand(ReproCommand):
    """Check offline that enough distinct keys signed attestations for a file."""

    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        parser.add_argument("file", help="Artifact to check")
        parser.add_argument(
            "-S",
            "--signing-key",
            dest="signing_keys",
            action="append",
            default=[],
            required=True,
            help="PEM file with Ed25519 public keys (repeatable)",
        )
        parser.add_argument(
            "-A",
            "--attestation",
            dest="attestations",
            action="append",
            default=[],
            required=True,
            help="in-toto link attestation file (repeatable)",
        )
        parser.add_argument("-t", "--threshold", type=int, default=1, help="Distinct keys required (default: 1)")

    def run(self, argv: Any) -> int:
        if argv.threshold < 1:
            print("error: threshold must be at least 1", file=sys.stderr)
            return 1
        try:
            digest = _sha256_file(Path(argv.file))
            keys: list[bytes] = []
            for key_path in argv.signing_keys:
                keys.extend(load_signing_keys(Path(key_path).read_text(encoding="utf-8")))
            attestations = [
                Attestation.parse(Path(path).read_bytes(), label=str(path)) for path in argv.attestations
            ]
        except (OSError, AttestationError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1

        confirmed = confirming_keys(attestations, list(dict.fromkeys(keys)), digest)
        if len(confirmed) >= argv.threshold:
            print(f"OK: {argv.file} ({digest}) attested by {len(confirmed)}/{argv.threshold} required keys")
            return 0
        print(
            f"error: {argv.file} ({digest}) attested by only {len(confirmed)}/{argv.threshold} required keys",
            file=sys.stderr,
        )
        return 1


class _InspectBase(ReproCommand):
    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        parser.add_argument("file", help="Downloaded package file")

    def _inspect(self, path: Path) -> PackageIdentity:
        return inspect_artifact(path)

    def run(self, argv: Any) -> int:
        path = Path(argv.file)
        try:
            identity = self._inspect(path)
            digest = _sha256_file(path)
        except (OSError, ArtifactError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        _print_json({**identity.to_dict(), "sha256": digest.hexdigest})
        return 0


@reprocommand(name="inspect", group="plumbing")
class InspectCommand(_InspectBase):
    """Print the package identity of a .deb or pacman package as JSON."""


@reprocommand(name="inspect-deb", group="plumbing")
class InspectDebCommand(_InspectBase):
    """Print the control fields of a .deb as JSON."""

    def _inspect(self, path: Path) -> PackageIdentity:
        return inspect_deb(path)


@reprocommand(name="list-rebuilders", group="plumbing")
class ListRebuildersCommand(_PolicyAwareCommand):
    """List the configured rebuilders and their trust groups."""

    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        add_policy_arguments(parser)
        parser.add_argument("--format", choices=["text", "json"], default="text")

    def run(self, argv: Any) -> int:
        config = self._load_config(argv)
        if argv.format == "json":
            _print_json(
                [
                    {
                        "name": rebuilder.id,
                        "url": rebuilder.endpoint,
                        "groups": sorted(rebuilder.groups),
                        "signing_keys": len(rebuilder.signing_keys),
                    }
                    for rebuilder in config.rebuilders
                ]
            )
            return 0
        for rebuilder in config.rebuilders:
            groups = ", ".join(sorted(rebuilder.groups))
            print(f"{rebuilder.id}\t{redact_url(rebuilder.endpoint)}\t[{groups}]")
        print(f"required trust groups: {config.threshold.minimum}/{len(config.groups)}")
        return 0


@reprocommand(name="check-config", group="plumbing")
class CheckConfigCommand(_PolicyAwareCommand):
    """Load and validate the configuration."""

    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        add_policy_arguments(parser)

    def run(self, argv: Any) -> int:
        config: TrustConfig = self._load_config(argv)
        print(
            f"configuration ok: {len(config.rebuilders)} rebuilder(s), "
            f"{len(config.groups)} trust group(s), threshold {config.threshold.minimum}, "
            f"aggregation {config.aggregation}"
        )
        return 0


@reprocommand(name="decide", group="plumbing")
class DecideCommand(_PolicyAwareCommand):
    """Run the trust engine for one package identity and digest."""

    @classmethod
    def configure(cls, parser: ArgumentParser) -> None:
        parser.add_argument("name")
        parser.add_argument("version")
        parser.add_argument("architecture")
        parser.add_argument("sha256", help="sha256 of the artifact (hex, optionally prefixed with 'sha256:')")
        parser.add_argument("--source", default="", help="Source package name, when it differs from the name")
        add_policy_arguments(parser)

    def run(self, argv: Any) -> int:
        try:
            identity = PackageIdentity(
                name=argv.name,
                version=argv.version,
                architecture=argv.architecture,
                source=argv.source,
            )
            digest = ArtifactDigest.parse(argv.sha256)
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        engine = TrustEngine.from_config(self._load_config(argv))
        decision = engine.decide(identity, digest)
        _print_json(decision.to_dict())
        return 0 if decision.allowed else 1
