from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest

from repro_core.artifacts import (
    identity_from_pacman_filename,
    inspect_artifact,
    inspect_deb,
    is_pacman_package,
    parse_control,
    url_filename,
)
from repro_core.errors import ArtifactError

CONTROL = """Package: hello
Source: hello-src (2.10-3)
Version: 2.10-3+b1
Architecture: amd64
Maintainer: Someone <someone@example.org>
Description: example package
 with a continuation line
"""


def _tar(members: dict[str, bytes], mode: str) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _ar(members: list[tuple[str, bytes]]) -> bytes:
    out = bytearray(b"!<arch>\n")
    for name, data in members:
        header = f"{name + '/':<16}{0:<12}{0:<6}{0:<6}{'100644':<8}{len(data):<10}`\n"
        out += header.encode("ascii")
        out += data
        if len(data) % 2:
            out += b"\n"
    return bytes(out)


def _deb(tmp_path: Path, control: str = CONTROL, *, member: str = "control.tar.xz", mode: str = "w:xz") -> Path:
    payload = _ar(
        [
            ("debian-binary", b"2.0\n"),
            (member, _tar({"./control": control.encode("utf-8"), "./md5sums": b""}, mode)),
            ("data.tar.xz", _tar({}, "w:xz")),
        ]
    )
    path = tmp_path / "hello_2.10-3+b1_amd64.deb"
    path.write_bytes(payload)
    return path


@pytest.mark.parametrize(
    ("member", "mode"),
    [("control.tar.xz", "w:xz"), ("control.tar.gz", "w:gz"), ("control.tar", "w")],
)
def test_inspect_deb_reads_control_fields(tmp_path: Path, member: str, mode: str) -> None:
    identity = inspect_deb(_deb(tmp_path, member=member, mode=mode))

    assert identity.name == "hello"
    assert identity.version == "2.10-3+b1"
    assert identity.architecture == "amd64"
    assert identity.source == "hello-src"


def test_source_defaults_to_package(tmp_path: Path) -> None:
    control = "Package: tiny\nVersion: 1\nArchitecture: all\n"
    assert inspect_deb(_deb(tmp_path, control)).source == "tiny"


def test_unsupported_control_compression_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "odd.deb"
    path.write_bytes(_ar([("debian-binary", b"2.0\n"), ("control.tar.zst", b"zstd-bytes")]))

    with pytest.raises(ArtifactError, match="unsupported compression"):
        inspect_deb(path)


def test_not_an_ar_archive_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "fake.deb"
    path.write_bytes(b"<html>captive portal</html>")

    with pytest.raises(ArtifactError, match="not an ar archive"):
        inspect_deb(path)


def test_missing_fields_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ArtifactError, match="missing Architecture"):
        inspect_deb(_deb(tmp_path, "Package: tiny\nVersion: 1\n"))


def test_parse_control_rejects_multiple_paragraphs() -> None:
    with pytest.raises(ArtifactError, match="more than one paragraph"):
        parse_control("Package: a\n\nPackage: b\n")


def test_parse_control_joins_continuation_lines() -> None:
    fields = parse_control(CONTROL)
    assert fields["Description"] == "example package\nwith a continuation line"


def test_pacman_identity_comes_from_file_name() -> None:
    identity = identity_from_pacman_filename("python-foo-bar-1:2.3.4-2-x86_64.pkg.tar.zst")

    assert identity.name == "python-foo-bar"
    assert identity.version == "1:2.3.4-2"
    assert identity.architecture == "x86_64"


def test_malformed_pacman_name_is_rejected() -> None:
    with pytest.raises(ArtifactError):
        identity_from_pacman_filename("nonsense.pkg.tar.zst")


def test_pacman_package_detection() -> None:
    assert is_pacman_package("glibc-2.40-1-x86_64.pkg.tar.zst")
    assert not is_pacman_package("glibc-2.40-1-x86_64.pkg.tar.zst.sig")
    assert not is_pacman_package("core.db")


def test_inspect_artifact_dispatches_on_url(tmp_path: Path) -> None:
    download = tmp_path / "partial.tmp"
    download.write_bytes(b"zstd")
    url = "https://mirror.example/core/os/x86_64/zlib-1%3A1.3.1-2-x86_64.pkg.tar.zst"

    assert url_filename(url) == "zlib-1:1.3.1-2-x86_64.pkg.tar.zst"
    identity = inspect_artifact(download, url=url)
    assert (identity.name, identity.version) == ("zlib", "1:1.3.1-2")

    deb = _deb(tmp_path)
    assert inspect_artifact(deb, url="https://deb.example/pool/main/h/hello/hello_2.10-3%2Bb1_amd64.deb").name == "hello"


def test_inspect_artifact_rejects_unknown_formats(tmp_path: Path) -> None:
    path = tmp_path / "thing.bin"
    path.write_bytes(b"data")

    with pytest.raises(ArtifactError, match="do not know how"):
        inspect_artifact(path, url="https://example.org/thing.bin")
