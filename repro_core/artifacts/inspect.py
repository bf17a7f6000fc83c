"""Read the package identity out of downloaded artifacts."""

from __future__ import annotations

import io
import logging
import tarfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO
from urllib.parse import unquote, urlsplit

from ..errors import ArtifactError
from ..types import PackageIdentity

logger = logging.getLogger(__name__)

_AR_MAGIC = b"!<arch>\n"
_AR_HEADER_SIZE = 60
_CONTROL_TAR_MODES = {
    "control.tar": "r:",
    "control.tar.gz": "r:gz",
    "control.tar.xz": "r:xz",
}
_PACMAN_MARKER = ".pkg.tar"


def url_filename(url: str) -> str:
    return PurePosixPath(unquote(urlsplit(url).path)).name


def is_deb(name: str) -> bool:
    return name.endswith((".deb", ".udeb", ".ddeb"))


def is_pacman_package(name: str) -> bool:
    return _PACMAN_MARKER in name and not name.endswith(".sig")


def inspect_artifact(path: Path, *, url: str = "") -> PackageIdentity:
    name = url_filename(url) if url else path.name
    if is_pacman_package(name):
        return identity_from_pacman_filename(name)
    if is_deb(name) or _has_ar_magic(path):
        return inspect_deb(path)
    raise ArtifactError(f"do not know how to read package metadata from {name!r}")


def identity_from_pacman_filename(name: str) -> PackageIdentity:
    """Split ``name-pkgver-pkgrel-arch.pkg.tar.ext`` into its parts."""

    stem, marker, _ = name.partition(_PACMAN_MARKER)
    if not marker:
        raise ArtifactError(f"not a pacman package file name: {name!r}")
    parts = stem.rsplit("-", 3)
    if len(parts) != 4 or not all(parts):
        raise ArtifactError(f"malformed pacman package file name: {name!r}")
    pkgname, pkgver, pkgrel, arch = parts
    return PackageIdentity(name=pkgname, version=f"{pkgver}-{pkgrel}", architecture=arch)


def inspect_deb(path: Path) -> PackageIdentity:
    try:
        with path.open("rb") as handle:
            control = _extract_control(handle)
    except OSError as exc:
        raise ArtifactError(f"failed to open {path}: {exc}") from exc
    fields = parse_control(control)
    missing = [key for key in ("Package", "Version", "Architecture") if not fields.get(key)]
    if missing:
        raise ArtifactError(f"control file is missing {', '.join(missing)}")
    source = fields.get("Source", "").split(" ", 1)[0].strip()
    identity = PackageIdentity(
        name=fields["Package"],
        version=fields["Version"],
        architecture=fields["Architecture"],
        source=source or fields["Package"],
    )
    logger.debug("parsed .deb metadata: %s", identity)
    return identity


def parse_control(text: str) -> dict[str, str]:
    """Parse a single deb822 paragraph, rejecting files with more than one."""

    paragraphs: list[dict[str, str]] = []
    current: dict[str, str] = {}
    last_key: str | None = None
    for raw in text.splitlines():
        if not raw.strip():
            if current:
                paragraphs.append(current)
                current = {}
                last_key = None
            continue
        if raw[0] in (" ", "\t"):
            if last_key is None:
                raise ArtifactError("continuation line without a field in control file")
            current[last_key] = f"{current[last_key]}\n{raw.strip()}"
            continue
        key, sep, value = raw.partition(":")
        if not sep:
            raise ArtifactError(f"malformed control line: {raw!r}")
        last_key = key.strip()
        current[last_key] = value.strip()
    if current:
        paragraphs.append(current)
    if not paragraphs:
        raise ArtifactError("no paragraphs found in control file")
    if len(paragraphs) > 1:
        raise ArtifactError("more than one paragraph found in control file")
    return paragraphs[0]


def _has_ar_magic(path: Path) -> bool:
    try:
        with path.open("rb") as handle:
            return handle.read(len(_AR_MAGIC)) == _AR_MAGIC
    except OSError:
        return False


def _extract_control(handle: BinaryIO) -> str:
    if handle.read(len(_AR_MAGIC)) != _AR_MAGIC:
        raise ArtifactError("not an ar archive")
    while True:
        header = handle.read(_AR_HEADER_SIZE)
        if not header:
            break
        if len(header) != _AR_HEADER_SIZE or header[58:60] != b"`\n":
            raise ArtifactError("truncated or corrupt ar member header")
        member = header[0:16].decode("ascii", errors="replace").strip().rstrip("/")
        try:
            size = int(header[48:58].decode("ascii").strip())
        except ValueError as exc:
            raise ArtifactError("invalid ar member size") from exc
        if member.startswith("control.tar"):
            mode = _CONTROL_TAR_MODES.get(member)
            if mode is None:
                raise ArtifactError(f"found {member} with unsupported compression")
            data = handle.read(size)
            if len(data) != size:
                raise ArtifactError(f"truncated {member}")
            return _find_control_file(data, mode)
        handle.seek(size + (size % 2), io.SEEK_CUR)
    raise ArtifactError("no control.tar found in .deb")


def _find_control_file(data: bytes, mode: str) -> str:
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode=mode) as archive:
            for member in archive:
                if member.name not in ("./control", "control") or not member.isfile():
                    continue
                extracted = archive.extractfile(member)
                if extracted is None:
                    break
                return extracted.read().decode("utf-8")
    except (tarfile.TarError, EOFError, OSError, UnicodeDecodeError) as exc:
        raise ArtifactError(f"failed to read control.tar: {exc}") from exc
    raise ArtifactError("no control file found in control.tar")
