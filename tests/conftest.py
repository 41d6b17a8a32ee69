from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Optional

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

# Load .env from project root (e.g. LIBARTIFACT_LOG_LEVEL=DEBUG)
load_dotenv(_PROJECT_ROOT / ".env", override=False)

from libartifact import digest as digests  # noqa: E402
from libartifact.errors import ManifestNotFoundError  # noqa: E402
from libartifact.facade import ArtifactFacade  # noqa: E402
from libartifact.models import Artifact  # noqa: E402
from libartifact.store import LocalArtifactStore  # noqa: E402
from libartifact.sync import RegistrySyncEngine  # noqa: E402
from libartifact.transport import RawArtifact  # noqa: E402


class FakeTransport:
    """In-memory registry transport that records calls and can fail on demand.

    ``failures`` is consumed one entry per call; ``None`` entries let the
    call through.
    """

    def __init__(self, failures: Optional[list] = None):
        self.failures = list(failures or [])
        self.calls: list[tuple[str, str]] = []
        self.manifests: dict[tuple[str, str], bytes] = {}
        self.blobs: dict[str, bytes] = {}
        self.credentials = []
        self.tls = []

    def _maybe_fail(self) -> None:
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure

    def upload(self, reference, artifact: RawArtifact, credentials, tls) -> str:
        self.calls.append(("upload", reference.name))
        self.credentials.append(credentials)
        self.tls.append(tls)
        self._maybe_fail()
        self.blobs.update(artifact.blobs)
        manifest_digest = digests.compute(artifact.manifest)
        self.manifests[(reference.repository_name, reference.reference)] = artifact.manifest
        self.manifests[(reference.repository_name, manifest_digest)] = artifact.manifest
        return manifest_digest

    def fetch(self, reference, credentials, tls, manifest_only: bool = False) -> RawArtifact:
        self.calls.append(("fetch", reference.name))
        self.credentials.append(credentials)
        self.tls.append(tls)
        self._maybe_fail()
        manifest = self.manifests.get((reference.repository_name, reference.reference))
        if manifest is None:
            raise ManifestNotFoundError(f"manifest {reference}: HTTP 404")
        blobs = {}
        if not manifest_only:
            artifact = Artifact.from_manifest(reference.name, manifest)
            blobs = {b.digest: self.blobs[b.digest] for b in artifact.blobs}
        return RawArtifact(manifest=manifest, blobs=blobs, digest=digests.compute(manifest))


class RecordingWaiter:
    """Stands in for ``Event.wait``: records delays instead of sleeping."""

    def __init__(self, cancel_after: Optional[int] = None):
        self.delays: list[float] = []
        self.cancel_after = cancel_after

    def __call__(self, event, seconds: float) -> bool:
        self.delays.append(seconds)
        if self.cancel_after is not None and len(self.delays) >= self.cancel_after:
            event.set()
        return event.is_set()


@pytest.fixture
def store():
    return LocalArtifactStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def waiter():
    return RecordingWaiter()


@pytest.fixture
def engine(transport, waiter):
    return RegistrySyncEngine(transport, waiter=waiter, default_retry_delay="2s")


@pytest.fixture
def facade(store, engine):
    return ArtifactFacade(store, engine)


@pytest.fixture
def writer():
    return io.StringIO()


@pytest.fixture
def make_file(tmp_path):
    def _make(name: str, content: bytes = b"data") -> Path:
        path = tmp_path / "files" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path
    return _make
