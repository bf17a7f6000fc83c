from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from urllib.parse import parse_qs, urlsplit

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from repro_core.rebuilder import RebuilderClient, RebuilderClientConfig, canonical_json
from repro_core.types import ArtifactDigest, PackageIdentity, RebuilderConfig, Verdict

IDENTITY = PackageIdentity(name="pkgA", version="1.0-1", architecture="x86_64")
DIGEST = ArtifactDigest("aa" * 32)
SEARCH_PATH = "/api/v1/packages/binary"


class _ThreadedServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True


class _MockRebuilderHandler(BaseHTTPRequestHandler):
    server_version = "MockRebuilderd/1.0"
    protocol_version = "HTTP/1.1"

    def do_GET(self) -> None:
        parsed = urlsplit(self.path)
        with self.server.lock:
            self.server.hits[parsed.path] = self.server.hits.get(parsed.path, 0) + 1
            hit = self.server.hits[parsed.path]
        self.server.last_query = parse_qs(parsed.query)
        self.server.last_headers = dict(self.headers)

        failures = self.server.fail_first.get(parsed.path, 0)
        if hit <= failures:
            self._reply(503, b"busy")
            return
        delay = self.server.delays.get(parsed.path)
        if delay:
            time.sleep(delay)
        body = self.server.routes.get(parsed.path)
        if body is None:
            self._reply(404, b"not found")
            return
        self._reply(200, body)

    def _reply(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        return


def _start_mock_server(routes: dict[str, bytes]) -> tuple[_ThreadedServer, str]:
    server = _ThreadedServer(("127.0.0.1", 0), _MockRebuilderHandler)
    server.routes = routes
    server.hits = {}
    server.lock = threading.Lock()
    server.fail_first = {}
    server.delays = {}
    server.last_query = {}
    server.last_headers = {}
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, f"http://127.0.0.1:{server.server_port}"


def _shutdown(server: _ThreadedServer) -> None:
    server.shutdown()
    server.server_close()


def _search(*records: dict) -> bytes:
    return json.dumps({"records": list(records)}).encode("utf-8")


def _attestation(sha256: str, signer: Ed25519PrivateKey | None = None) -> bytes:
    signed = {"_type": "link", "name": "rebuild", "products": {"pkgA.pkg.tar.zst": {"sha256": sha256}}}
    signatures = []
    if signer is not None:
        signatures.append({"keyid": "k", "sig": signer.sign(canonical_json(signed)).hex()})
    return json.dumps({"signed": signed, "signatures": signatures}).encode("utf-8")


def _rebuilder(url: str, *, keys: tuple[bytes, ...] = ()) -> RebuilderConfig:
    return RebuilderConfig(id="local", endpoint=url + "/", groups=frozenset({"local"}), signing_keys=keys)


def _client(**kwargs) -> RebuilderClient:
    config = RebuilderClientConfig(timeout_seconds=kwargs.pop("timeout", 2.0), backoff_seconds=0.0, **kwargs)
    return RebuilderClient(config)


def test_matching_attestation_is_reproduced() -> None:
    routes = {
        SEARCH_PATH: _search({"build_id": 7, "artifact_id": 9, "status": "GOOD"}),
        "/api/v1/builds/7/artifacts/9/attestation": _attestation(DIGEST.hexdigest),
    }
    server, url = _start_mock_server(routes)
    try:
        record = _client().query(_rebuilder(url), IDENTITY, DIGEST)
        assert record.verdict is Verdict.REPRODUCED
        assert record.rebuilder_id == "local"
        assert server.last_query == {"name": ["pkgA"], "version": ["1.0-1"], "architecture": ["x86_64"]}
    finally:
        _shutdown(server)


def test_attestation_for_other_digest_is_unreproduced() -> None:
    routes = {
        SEARCH_PATH: _search({"build_id": 1, "artifact_id": 2, "status": "GOOD"}),
        "/api/v1/builds/1/artifacts/2/attestation": _attestation("bb" * 32),
    }
    server, url = _start_mock_server(routes)
    try:
        record = _client().query(_rebuilder(url), IDENTITY, DIGEST)
        assert record.verdict is Verdict.UNREPRODUCED
        assert "bb" * 32 in record.detail
    finally:
        _shutdown(server)


def test_bad_build_status_is_unreproduced() -> None:
    server, url = _start_mock_server({SEARCH_PATH: _search({"build_id": 1, "artifact_id": 2, "status": "BAD"})})
    try:
        assert _client().query(_rebuilder(url), IDENTITY, DIGEST).verdict is Verdict.UNREPRODUCED
    finally:
        _shutdown(server)


@pytest.mark.parametrize("routes", [{}, {SEARCH_PATH: _search()}])
def test_no_record_is_unknown(routes: dict[str, bytes]) -> None:
    server, url = _start_mock_server(routes)
    try:
        assert _client().query(_rebuilder(url), IDENTITY, DIGEST).verdict is Verdict.UNKNOWN
    finally:
        _shutdown(server)


def test_malformed_json_is_error() -> None:
    server, url = _start_mock_server({SEARCH_PATH: b"<html>oops</html>"})
    try:
        record = _client().query(_rebuilder(url), IDENTITY, DIGEST)
        assert record.verdict is Verdict.ERROR
        assert "invalid JSON" in record.detail
    finally:
        _shutdown(server)


def test_transient_failure_is_retried_once() -> None:
    routes = {
        SEARCH_PATH: _search({"build_id": 7, "artifact_id": 9}),
        "/api/v1/builds/7/artifacts/9/attestation": _attestation(DIGEST.hexdigest),
    }
    server, url = _start_mock_server(routes)
    server.fail_first[SEARCH_PATH] = 1
    try:
        record = _client(max_retries=1).query(_rebuilder(url), IDENTITY, DIGEST)
        assert record.verdict is Verdict.REPRODUCED
        assert server.hits[SEARCH_PATH] == 2
    finally:
        _shutdown(server)


def test_persistent_failure_is_error_after_one_retry() -> None:
    server, url = _start_mock_server({SEARCH_PATH: _search()})
    server.fail_first[SEARCH_PATH] = 10
    try:
        record = _client(max_retries=1).query(_rebuilder(url), IDENTITY, DIGEST)
        assert record.verdict is Verdict.ERROR
        assert server.hits[SEARCH_PATH] == 2
    finally:
        _shutdown(server)


def test_timeout_is_unknown() -> None:
    server, url = _start_mock_server({SEARCH_PATH: _search()})
    server.delays[SEARCH_PATH] = 1.0
    try:
        record = _client(timeout=0.2, max_retries=0).query(_rebuilder(url), IDENTITY, DIGEST)
        assert record.verdict is Verdict.UNKNOWN
        assert "timed out" in record.detail
    finally:
        _shutdown(server)


def test_unreachable_rebuilder_is_error() -> None:
    server, url = _start_mock_server({})
    _shutdown(server)

    record = _client(max_retries=0).query(_rebuilder(url), IDENTITY, DIGEST)

    assert record.verdict is Verdict.ERROR


def test_cancelled_query_does_not_hit_the_network() -> None:
    server, url = _start_mock_server({SEARCH_PATH: _search()})
    cancel = threading.Event()
    cancel.set()
    try:
        record = _client().query(_rebuilder(url), IDENTITY, DIGEST, cancel=cancel)
        assert record.verdict is Verdict.ERROR
        assert server.hits == {}
    finally:
        _shutdown(server)


def test_signed_attestation_requires_a_configured_key() -> None:
    trusted = Ed25519PrivateKey.generate()
    stranger = Ed25519PrivateKey.generate()
    trusted_raw = trusted.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    routes = {
        SEARCH_PATH: _search({"build_id": 1, "artifact_id": 1}, {"build_id": 2, "artifact_id": 2}),
        "/api/v1/builds/1/artifacts/1/attestation": _attestation(DIGEST.hexdigest, stranger),
        "/api/v1/builds/2/artifacts/2/attestation": _attestation(DIGEST.hexdigest, trusted),
    }
    server, url = _start_mock_server(routes)
    try:
        record = _client().query(_rebuilder(url, keys=(trusted_raw,)), IDENTITY, DIGEST)
        assert record.verdict is Verdict.REPRODUCED

        del routes["/api/v1/builds/2/artifacts/2/attestation"]
        routes[SEARCH_PATH] = _search({"build_id": 1, "artifact_id": 1})
        record = _client().query(_rebuilder(url, keys=(trusted_raw,)), IDENTITY, DIGEST)
        assert record.verdict is Verdict.ERROR
        assert "signature" in record.detail
    finally:
        _shutdown(server)


def test_one_client_serves_concurrent_queries() -> None:
    routes = {
        SEARCH_PATH: _search({"build_id": 7, "artifact_id": 9, "status": "GOOD"}),
        "/api/v1/builds/7/artifacts/9/attestation": _attestation(DIGEST.hexdigest),
    }
    server, url = _start_mock_server(routes)
    server.delays[SEARCH_PATH] = 0.05
    client = _client()
    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            records = list(pool.map(lambda _: client.query(_rebuilder(url), IDENTITY, DIGEST), range(16)))
        assert [record.verdict for record in records] == [Verdict.REPRODUCED] * 16
        assert server.hits[SEARCH_PATH] == 16
        assert server.last_headers.get("User-Agent") == "repro-threshold"
    finally:
        _shutdown(server)
