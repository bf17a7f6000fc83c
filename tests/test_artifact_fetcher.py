from __future__ import annotations

import hashlib
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from socketserver import ThreadingMixIn

import pytest

from repro_core.artifacts import ArtifactFetcher, FetcherConfig, discard, promote
from repro_core.errors import ArtifactError, FetchError

LAST_MODIFIED = "Tue, 01 Oct 2024 10:00:00 GMT"


class _ThreadedServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True


class _MockMirrorHandler(BaseHTTPRequestHandler):
    server_version = "MockMirror/1.0"
    protocol_version = "HTTP/1.1"

    def do_GET(self) -> None:
        self.server.last_headers = {str(k): str(v) for k, v in self.headers.items()}
        body = self.server.files.get(self.path)
        if body is None:
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        if self.headers.get("If-Modified-Since") == LAST_MODIFIED:
            self.send_response(304)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Last-Modified", LAST_MODIFIED)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        return


def _start_mock_server(files: dict[str, bytes]) -> tuple[_ThreadedServer, str]:
    server = _ThreadedServer(("127.0.0.1", 0), _MockMirrorHandler)
    server.files = files
    server.last_headers = {}
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, f"http://127.0.0.1:{server.server_port}"


def _shutdown(server: _ThreadedServer) -> None:
    server.shutdown()
    server.server_close()


@pytest.fixture
def mirror():
    payload = b"package bytes" * 1000
    server, url = _start_mock_server({"/pool/pkg.deb": payload, "/empty.deb": b""})
    try:
        yield server, url, payload
    finally:
        _shutdown(server)


def test_fetch_hashes_into_a_temporary_sibling(mirror, tmp_path: Path) -> None:
    server, url, payload = mirror
    destination = tmp_path / "out" / "pkg.deb"
    started: list[tuple[int | None, str | None]] = []

    fetcher = ArtifactFetcher(FetcherConfig(chunk_size=1024))
    artifact = fetcher.fetch(f"{url}/pool/pkg.deb", destination, on_start=lambda size, lm: started.append((size, lm)))

    assert artifact.digest is not None
    assert artifact.digest.hexdigest == hashlib.sha256(payload).hexdigest()
    assert artifact.size == len(payload)
    assert artifact.last_modified == LAST_MODIFIED
    assert artifact.path.parent == destination.parent
    assert artifact.path != destination
    assert not destination.exists()
    assert started == [(len(payload), LAST_MODIFIED)]
    assert server.last_headers.get("User-Agent") == "repro-threshold"

    promote(artifact, destination)
    assert destination.read_bytes() == payload
    assert not artifact.path.exists()


def test_discard_removes_the_temporary_file(mirror, tmp_path: Path) -> None:
    _, url, _ = mirror
    artifact = ArtifactFetcher().fetch(f"{url}/pool/pkg.deb", tmp_path / "pkg.deb")

    discard(artifact)

    assert list(tmp_path.iterdir()) == []


def test_not_modified_is_reported_without_download(mirror, tmp_path: Path) -> None:
    server, url, _ = mirror
    destination = tmp_path / "pkg.deb"
    destination.write_bytes(b"previously verified")

    artifact = ArtifactFetcher().fetch(f"{url}/pool/pkg.deb", destination, last_modified=LAST_MODIFIED)

    assert artifact.not_modified is True
    assert artifact.size == len(b"previously verified")
    assert server.last_headers.get("If-Modified-Since") == LAST_MODIFIED
    assert destination.read_bytes() == b"previously verified"


def test_http_error_is_fetch_error(mirror, tmp_path: Path) -> None:
    _, url, _ = mirror
    with pytest.raises(FetchError, match="HTTP 404"):
        ArtifactFetcher().fetch(f"{url}/missing.deb", tmp_path / "missing.deb")
    assert list(tmp_path.iterdir()) == []


def test_empty_body_is_artifact_error(mirror, tmp_path: Path) -> None:
    _, url, _ = mirror
    with pytest.raises(ArtifactError, match="empty body"):
        ArtifactFetcher().fetch(f"{url}/empty.deb", tmp_path / "empty.deb")
    assert list(tmp_path.iterdir()) == []


def test_connection_refused_is_fetch_error(tmp_path: Path) -> None:
    server, url = _start_mock_server({})
    _shutdown(server)

    with pytest.raises(FetchError, match="failed to fetch"):
        ArtifactFetcher().fetch(f"{url}/pool/pkg.deb", tmp_path / "pkg.deb")
