"""Registry transports: the wire side of push and pull."""

from __future__ import annotations

import base64
import json
import logging
import re
import ssl
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generator, Iterator, Optional, Protocol, Union

import httpx

from . import digest as digests
from .credentials import Credentials
from .errors import (
    AuthenticationError,
    DigestMismatchError,
    ManifestNotFoundError,
    TerminalTransportError,
    TransientTransportError,
)
from .models import EMPTY_CONFIG, EMPTY_CONFIG_DIGEST, MANIFEST_MEDIA_TYPE
from .reference import ArtifactReference

logger = logging.getLogger(__name__)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class TLSPolicy:
    """TLS settings for one registry session.

    ``cert_dir`` follows the containers layout: ``ca.crt`` for an extra CA,
    ``client.cert`` + ``client.key`` for a client certificate.
    """
    verify: bool = True
    cert_dir: Optional[str] = None

    def ssl_context(self) -> Union[bool, ssl.SSLContext]:
        cert_dir = Path(self.cert_dir).expanduser() if self.cert_dir else None
        ca_file = cert_dir / "ca.crt" if cert_dir else None
        client_cert = cert_dir / "client.cert" if cert_dir else None
        client_key = cert_dir / "client.key" if cert_dir else None
        has_ca = ca_file is not None and ca_file.is_file()
        has_client = (
            client_cert is not None and client_cert.is_file()
            and client_key is not None and client_key.is_file()
        )

        if not has_ca and not has_client:
            return self.verify

        ctx = ssl.create_default_context(cafile=str(ca_file) if has_ca else None)
        if not self.verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        if has_client:
            ctx.load_cert_chain(str(client_cert), str(client_key))
        return ctx


@dataclass(frozen=True)
class RawArtifact:
    """Manifest bytes and blob payloads as they travel over the wire."""
    manifest: bytes
    blobs: dict[str, bytes] = field(default_factory=dict)
    # Digest reported by the registry, when it sent one
    digest: Optional[str] = None


class RegistryTransport(Protocol):
    def fetch(
        self,
        reference: ArtifactReference,
        credentials: Optional[Credentials],
        tls: TLSPolicy,
        manifest_only: bool = False,
    ) -> RawArtifact:
        ...

    def upload(
        self,
        reference: ArtifactReference,
        artifact: RawArtifact,
        credentials: Optional[Credentials],
        tls: TLSPolicy,
    ) -> str:
        """Upload blobs then the manifest; return the manifest digest."""
        ...


class RegistryAuth(httpx.Auth):
    """Answers registry ``WWW-Authenticate`` challenges (basic and bearer)."""

    requires_response_body = True

    def __init__(self, credentials: Optional[Credentials] = None):
        self.credentials = credentials
        self._token: Optional[str] = None

    def _basic(self) -> Optional[str]:
        if self.credentials is None:
            return None
        raw = f"{self.credentials.username}:{self.credentials.password}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self._token:
            request.headers["Authorization"] = f"Bearer {self._token}"
        response = yield request
        if response.status_code != 401:
            return

        scheme, _, params = response.headers.get("WWW-Authenticate", "").partition(" ")
        scheme = scheme.lower()

        basic = self._basic()
        if scheme == "basic" and basic is not None:
            request.headers["Authorization"] = basic
            yield request
            return

        if scheme != "bearer":
            return

        fields = dict(_CHALLENGE_PARAM_RE.findall(params))
        realm = fields.pop("realm", None)
        if not realm:
            return

        token_request = httpx.Request("GET", realm, params=fields)
        if basic is not None:
            token_request.headers["Authorization"] = basic
        token_response = yield token_request
        if token_response.status_code != 200:
            return

        try:
            body = token_response.json()
        except ValueError as e:
            raise AuthenticationError(f"Token endpoint {realm} sent an invalid response") from e
        if not isinstance(body, dict):
            raise AuthenticationError(f"Token endpoint {realm} sent an invalid response")
        token = body.get("token") or body.get("access_token")
        if not token:
            return
        self._token = token
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


class HttpRegistryTransport:
    """OCI distribution API client over ``httpx``.

    Supports manifest GET/PUT, blob HEAD/GET and the two-step
    (POST + PUT) monolithic blob upload.
    """

    def __init__(
        self,
        scheme: str = "https",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.scheme = scheme
        self.timeout = timeout
        self._client = client

    @contextmanager
    def _session(self, tls: TLSPolicy) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(
            verify=tls.ssl_context(),
            timeout=self.timeout,
            follow_redirects=True,
        ) as client:
            yield client

    def _base_url(self, reference: ArtifactReference) -> str:
        return f"{self.scheme}://{reference.registry}/v2/{reference.repository}"

    @staticmethod
    def _send(client: httpx.Client, method: str, url: Union[str, httpx.URL], **kwargs) -> httpx.Response:
        try:
            return client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientTransportError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise TransientTransportError(f"{method} {url} failed: {e}") from e
        except httpx.RequestError as e:
            raise TerminalTransportError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _check(response: httpx.Response, what: str) -> httpx.Response:
        status = response.status_code
        if status < 400:
            return response
        message = f"{what}: HTTP {status}"
        if status in (401, 403):
            raise AuthenticationError(message)
        if status == 404:
            raise ManifestNotFoundError(message)
        if status in (408, 429) or status >= 500:
            raise TransientTransportError(message)
        raise TerminalTransportError(message)

    def fetch(
        self,
        reference: ArtifactReference,
        credentials: Optional[Credentials],
        tls: TLSPolicy,
        manifest_only: bool = False,
    ) -> RawArtifact:
        base = self._base_url(reference)
        auth = RegistryAuth(credentials)
        with self._session(tls) as client:
            response = self._check(
                self._send(
                    client, "GET", f"{base}/manifests/{reference.reference}",
                    headers={"Accept": MANIFEST_MEDIA_TYPE}, auth=auth,
                ),
                f"manifest {reference}",
            )
            manifest = response.content
            remote_digest = response.headers.get("Docker-Content-Digest")

            blobs: dict[str, bytes] = {}
            if not manifest_only:
                try:
                    layers = json.loads(manifest).get("layers") or []
                except (ValueError, AttributeError) as e:
                    raise TerminalTransportError(f"manifest {reference}: invalid JSON") from e
                for layer in layers:
                    blob_digest = layer.get("digest")
                    if not blob_digest or blob_digest in blobs:
                        continue
                    logger.debug("Fetching blob %s from %s", blob_digest, reference.repository_name)
                    blobs[blob_digest] = self._check(
                        self._send(client, "GET", f"{base}/blobs/{blob_digest}", auth=auth),
                        f"blob {blob_digest}",
                    ).content

        return RawArtifact(manifest=manifest, blobs=blobs, digest=remote_digest)

    def upload(
        self,
        reference: ArtifactReference,
        artifact: RawArtifact,
        credentials: Optional[Credentials],
        tls: TLSPolicy,
    ) -> str:
        base = self._base_url(reference)
        auth = RegistryAuth(credentials)
        manifest_digest = digests.compute(artifact.manifest)

        uploads = dict(artifact.blobs)
        uploads.setdefault(EMPTY_CONFIG_DIGEST, EMPTY_CONFIG)

        with self._session(tls) as client:
            for blob_digest, data in uploads.items():
                head = self._send(client, "HEAD", f"{base}/blobs/{blob_digest}", auth=auth)
                if head.status_code == 200:
                    logger.debug("Blob %s already present in %s", blob_digest, reference.repository_name)
                    continue
                if head.status_code != 404:
                    self._check(head, f"blob {blob_digest}")

                start = self._check(
                    self._send(client, "POST", f"{base}/blobs/uploads/", auth=auth),
                    f"blob upload {blob_digest}",
                )
                location = start.headers.get("Location")
                if not location:
                    raise TerminalTransportError(f"blob upload {blob_digest}: registry sent no Location")
                self._check(
                    self._send(
                        client, "PUT", start.url.join(location),
                        params={"digest": blob_digest},
                        content=data,
                        headers={"Content-Type": "application/octet-stream"},
                        auth=auth,
                    ),
                    f"blob upload {blob_digest}",
                )

            response = self._check(
                self._send(
                    client, "PUT", f"{base}/manifests/{reference.reference}",
                    content=artifact.manifest,
                    headers={"Content-Type": MANIFEST_MEDIA_TYPE},
                    auth=auth,
                ),
                f"manifest {reference}",
            )

        remote_digest = response.headers.get("Docker-Content-Digest")
        if remote_digest and remote_digest != manifest_digest:
            raise DigestMismatchError(
                f"Registry stored manifest as {remote_digest}, expected {manifest_digest}"
            )
        return remote_digest or manifest_digest
