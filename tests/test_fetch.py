from __future__ import annotations

import hashlib
from pathlib import Path

import pytest
import requests

from achroot.modules import fetch
from achroot.modules.errors import IntegrityError, TransportError

PAYLOAD = b"#!/bin/sh\necho apk\n"
DIGEST = hashlib.sha256(PAYLOAD).hexdigest()


class FakeResponse:
    def __init__(self, chunks, status_error=None) -> None:
        self.chunks = chunks
        self.status_error = status_error

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status_error:
            raise self.status_error

    def iter_content(self, chunk_size=1):
        yield from self.chunks


@pytest.fixture
def serve(monkeypatch):
    requests_seen = []

    def install(response):
        def fake_get(url, **kwargs):
            requests_seen.append((url, kwargs))
            if isinstance(response, Exception):
                raise response
            return response

        monkeypatch.setattr(fetch.requests, "get", fake_get)
        return requests_seen

    return install


def test_fetch_returns_verified_file(serve, tmp_path: Path) -> None:
    seen = serve(FakeResponse([PAYLOAD[:5], PAYLOAD[5:]]))

    path = fetch.fetch("https://example.org/x86_64/apk.static", DIGEST.upper(), str(tmp_path))

    assert Path(path) == tmp_path / "apk.static"
    assert Path(path).read_bytes() == PAYLOAD
    assert hashlib.sha256(Path(path).read_bytes()).hexdigest() == DIGEST
    assert seen[0][1]["stream"] is True
    assert seen[0][1]["timeout"] == fetch.DEFAULT_TIMEOUT
    assert list(tmp_path.iterdir()) == [tmp_path / "apk.static"]


def test_mismatch_leaves_nothing_behind(serve, tmp_path: Path) -> None:
    serve(FakeResponse([b"tampered"]))
    (tmp_path / "apk.static").write_bytes(PAYLOAD)

    with pytest.raises(IntegrityError):
        fetch.fetch("https://example.org/apk.static", DIGEST, str(tmp_path))

    assert list(tmp_path.iterdir()) == []


def test_transport_failure(serve, tmp_path: Path) -> None:
    serve(requests.ConnectionError("connection refused"))

    with pytest.raises(TransportError):
        fetch.fetch("https://example.org/apk.static", DIGEST, str(tmp_path))

    assert list(tmp_path.iterdir()) == []


def test_http_error_is_a_transport_failure(serve, tmp_path: Path) -> None:
    serve(FakeResponse([], status_error=requests.HTTPError("404 Not Found")))

    with pytest.raises(TransportError):
        fetch.fetch("https://example.org/apk.static", DIGEST, str(tmp_path))


def test_fetch_all_stops_at_first_failure(serve, tmp_path: Path) -> None:
    serve(FakeResponse([PAYLOAD]))
    artifacts = [
        fetch.TrustedArtifact("https://example.org/a", DIGEST, str(tmp_path), name="a"),
        fetch.TrustedArtifact("https://example.org/b", "0" * 64, str(tmp_path), name="b"),
        fetch.TrustedArtifact("https://example.org/c", DIGEST, str(tmp_path), name="c"),
    ]

    with pytest.raises(IntegrityError):
        fetch.fetch_all(artifacts)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["a"]


def test_artifact_filename_ignores_query() -> None:
    artifact = fetch.TrustedArtifact("https://example.org/keys/k.rsa.pub?x=1", DIGEST, "/tmp")
    assert artifact.filename == "k.rsa.pub"
