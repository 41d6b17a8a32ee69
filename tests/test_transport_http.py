"""Tests for the httpx registry transport."""

import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import RecordingWaiter
from libartifact import digest as digests
from libartifact.credentials import Credentials
from libartifact.errors import (
    AuthenticationError,
    DigestMismatchError,
    ManifestNotFoundError,
    TerminalTransportError,
    TransientTransportError,
)
from libartifact.models import Artifact, BlobSource
from libartifact.options import ArtifactPullOptions, ArtifactPushOptions
from libartifact.reference import ArtifactReference
from libartifact.registry import create_app
from libartifact.store import LocalArtifactStore
from libartifact.sync import RegistrySyncEngine
from libartifact.transport import HttpRegistryTransport, RawArtifact, TLSPolicy

REF = ArtifactReference.parse("registry.test/demo/app:v1")
TLS = TLSPolicy()


def _raw(*payloads: bytes) -> RawArtifact:
    blobs = tuple(BlobSource(data=p, title=f"f{i}").to_blob() for i, p in enumerate(payloads))
    artifact = Artifact(name=REF.name, blobs=blobs)
    return RawArtifact(
        manifest=artifact.manifest_bytes(),
        blobs={b.digest: p for b, p in zip(blobs, payloads)},
    )


def _mock_transport(handler) -> HttpRegistryTransport:
    return HttpRegistryTransport(client=httpx.Client(transport=httpx.MockTransport(handler)))


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def http_transport(app):
    return HttpRegistryTransport(scheme="http", client=TestClient(app))


def test_upload_then_fetch_against_registry(app, http_transport):
    raw = _raw(b"alpha", b"beta")

    pushed = http_transport.upload(REF, raw, None, TLS)
    fetched = http_transport.fetch(REF, None, TLS)

    assert pushed == digests.compute(raw.manifest)
    assert fetched.manifest == raw.manifest
    assert fetched.digest == pushed
    assert fetched.blobs == raw.blobs
    assert app.state.storage.tags("demo/app") == ["v1"]


def test_upload_skips_existing_blobs(app, http_transport, monkeypatch):
    storage = app.state.storage
    raw = _raw(b"alpha")
    http_transport.upload(REF, raw, None, TLS)

    started = []
    original = storage.start_upload
    monkeypatch.setattr(storage, "start_upload", lambda repo: started.append(repo) or original(repo))
    http_transport.upload(REF.with_tag("v2"), raw, None, TLS)

    assert started == []
    assert app.state.storage.tags("demo/app") == ["v1", "v2"]


def test_fetch_manifest_only(http_transport):
    raw = _raw(b"alpha")
    http_transport.upload(REF, raw, None, TLS)
    fetched = http_transport.fetch(REF, None, TLS, manifest_only=True)
    assert fetched.blobs == {}
    assert fetched.manifest == raw.manifest


def test_fetch_unknown_manifest(http_transport):
    with pytest.raises(ManifestNotFoundError):
        http_transport.fetch(REF, None, TLS)


def test_engine_round_trip_over_http(http_transport, writer):
    store = LocalArtifactStore()
    store.create("localhost/demo:latest", [BlobSource(data=b"alpha", title="a.txt")])
    engine = RegistrySyncEngine(http_transport, waiter=RecordingWaiter())

    engine.push(store.export("demo"), REF.name, ArtifactPushOptions(writer=writer))
    engine.pull(REF.name, ArtifactPullOptions(writer=writer), store)

    assert store.get(REF.name).digest == store.get("demo").digest


@pytest.mark.parametrize("status,error", [
    (500, TransientTransportError),
    (503, TransientTransportError),
    (429, TransientTransportError),
    (408, TransientTransportError),
    (401, AuthenticationError),
    (403, AuthenticationError),
    (404, ManifestNotFoundError),
    (400, TerminalTransportError),
])
def test_status_classification(status, error):
    transport = _mock_transport(lambda request: httpx.Response(status))
    with pytest.raises(error):
        transport.fetch(REF, None, TLS)


def test_not_found_is_terminal():
    assert not issubclass(ManifestNotFoundError, TransientTransportError)
    assert issubclass(AuthenticationError, TerminalTransportError)


@pytest.mark.parametrize("exc", [
    httpx.ConnectError("connection refused"),
    httpx.ReadTimeout("timed out"),
])
def test_network_errors_are_transient(exc):
    def handler(request):
        raise exc

    with pytest.raises(TransientTransportError):
        _mock_transport(handler).fetch(REF, None, TLS)


@pytest.mark.parametrize("exc", [
    httpx.TooManyRedirects("redirect loop"),
    httpx.DecodingError("bad gzip stream"),
])
def test_other_request_errors_are_terminal(exc):
    def handler(request):
        raise exc

    with pytest.raises(TerminalTransportError) as info:
        _mock_transport(handler).fetch(REF, None, TLS)
    assert not isinstance(info.value, TransientTransportError)


def test_upload_detects_digest_mismatch():
    def handler(request):
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(201, headers={"Docker-Content-Digest": digests.compute(b"other")})

    with pytest.raises(DigestMismatchError):
        _mock_transport(handler).upload(REF, _raw(b"alpha"), None, TLS)


def test_upload_without_location_is_terminal():
    def handler(request):
        if request.method == "HEAD":
            return httpx.Response(404)
        return httpx.Response(202)

    with pytest.raises(TerminalTransportError):
        _mock_transport(handler).upload(REF, _raw(b"alpha"), None, TLS)


def test_bearer_token_challenge():
    manifest = _raw(b"alpha").manifest
    seen = {}

    def handler(request):
        if request.url.host == "auth.test":
            seen["token_auth"] = request.headers.get("Authorization")
            seen["scope"] = request.url.params.get("scope")
            return httpx.Response(200, json={"token": "tok"})
        if request.headers.get("Authorization") != "Bearer tok":
            return httpx.Response(
                401,
                headers={
                    "WWW-Authenticate": 'Bearer realm="https://auth.test/token",'
                    'service="registry.test",scope="repository:demo/app:pull"'
                },
            )
        return httpx.Response(200, content=manifest)

    fetched = _mock_transport(handler).fetch(REF, Credentials("bob", "pw"), TLS, manifest_only=True)

    assert fetched.manifest == manifest
    assert seen["scope"] == "repository:demo/app:pull"
    assert seen["token_auth"] == "Basic " + base64.b64encode(b"bob:pw").decode()


def test_basic_challenge():
    manifest = _raw(b"alpha").manifest
    expected = "Basic " + base64.b64encode(b"bob:pw").decode()

    def handler(request):
        if request.headers.get("Authorization") != expected:
            return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="registry"'})
        return httpx.Response(200, content=manifest)

    fetched = _mock_transport(handler).fetch(REF, Credentials("bob", "pw"), TLS, manifest_only=True)
    assert json.loads(fetched.manifest)["schemaVersion"] == 2


def test_basic_challenge_without_credentials_fails():
    def handler(request):
        return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="registry"'})

    with pytest.raises(AuthenticationError):
        _mock_transport(handler).fetch(REF, None, TLS)


def test_tls_policy_without_cert_dir(tmp_path):
    assert TLSPolicy(verify=True).ssl_context() is True
    assert TLSPolicy(verify=False).ssl_context() is False
    # an empty cert dir changes nothing
    assert TLSPolicy(verify=True, cert_dir=str(tmp_path)).ssl_context() is True


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
def test_bearer_token_endpoint_with_bad_body(body):
    def handler(request):
        if request.url.host == "auth.test":
            return httpx.Response(200, content=body)
        return httpx.Response(
            401, headers={"WWW-Authenticate": 'Bearer realm="https://auth.test/token",service="registry.test"'}
        )

    with pytest.raises(AuthenticationError):
        _mock_transport(handler).fetch(REF, Credentials("bob", "pw"), TLS)
