"""Content-addressed storage behind the development registry."""

from __future__ import annotations

import json
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .. import digest as digests
from ..models import MANIFEST_MEDIA_TYPE


class RegistryStorage:
    """Blobs and manifests keyed by digest, tags per repository.

    Memory-only unless ``storage_path`` is given; then blobs and manifests
    live under ``blobs/<algorithm>/<hex>`` and tags in ``index.json``.
    Upload sessions not finished within ``upload_ttl`` seconds are dropped.
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        upload_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage_path = Path(storage_path) if storage_path else None
        self.upload_ttl = upload_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._blobs: dict[str, bytes] = {}
        self._manifests: dict[str, tuple[bytes, str]] = {}
        self._tags: dict[str, dict[str, str]] = {}
        self._uploads: dict[str, tuple[str, float]] = {}
        if self.storage_path is not None:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            self._index_path = self.storage_path / "index.json"
            self._load()

    def _blob_file(self, digest: str) -> Path:
        algorithm, hex_value = digest.split(":", 1)
        return self.storage_path / "blobs" / algorithm / hex_value

    def _load(self) -> None:
        if not self._index_path.exists():
            return
        with open(self._index_path) as f:
            data = json.load(f)
        for digest in data.get("blobs", []):
            self._blobs[digest] = self._blob_file(digest).read_bytes()
        for digest, media_type in data.get("manifests", {}).items():
            self._manifests[digest] = (self._blob_file(digest).read_bytes(), media_type)
        self._tags = {repo: dict(tags) for repo, tags in data.get("tags", {}).items()}

    def _save(self) -> None:
        if self.storage_path is None:
            return
        for digest, data in list(self._blobs.items()) + [(d, m[0]) for d, m in self._manifests.items()]:
            path = self._blob_file(digest)
            if not path.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_name(path.name + ".tmp")
                tmp.write_bytes(data)
                os.replace(tmp, path)
        data = {
            "blobs": sorted(self._blobs),
            "manifests": {d: m[1] for d, m in self._manifests.items()},
            "tags": self._tags,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        tmp = self._index_path.with_name("index.json.tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self._index_path)

    # Blobs

    def has_blob(self, digest: str) -> bool:
        return digest in self._blobs or digest in self._manifests

    def get_blob(self, digest: str) -> Optional[bytes]:
        if digest in self._blobs:
            return self._blobs[digest]
        manifest = self._manifests.get(digest)
        return manifest[0] if manifest else None

    def _expire_uploads(self) -> None:
        cutoff = self._clock() - self.upload_ttl
        for upload_id in [u for u, (_, started) in self._uploads.items() if started < cutoff]:
            del self._uploads[upload_id]

    def start_upload(self, repository: str) -> str:
        upload_id = uuid.uuid4().hex
        with self._lock:
            self._expire_uploads()
            self._uploads[upload_id] = (repository, self._clock())
        return upload_id

    def finish_upload(self, repository: str, upload_id: str, digest: str, data: bytes) -> None:
        """Store an upload. Raises KeyError for unknown uploads, ValueError on digest mismatch."""
        with self._lock:
            self._expire_uploads()
            session = self._uploads.get(upload_id)
            if session is None or session[0] != repository:
                raise KeyError(upload_id)
            if not digests.validate(digest) or not digests.matches(data, digest):
                raise ValueError(f"content does not match {digest}")
            del self._uploads[upload_id]
            self._blobs[digest] = data
            self._save()

    # Manifests

    def put_manifest(self, repository: str, reference: str, data: bytes, media_type: Optional[str] = None) -> str:
        digest = digests.compute(data)
        if digests.validate(reference) and reference != digest:
            raise ValueError(f"manifest hashes to {digest}, not {reference}")
        with self._lock:
            self._manifests[digest] = (data, media_type or MANIFEST_MEDIA_TYPE)
            if not digests.validate(reference):
                self._tags.setdefault(repository, {})[reference] = digest
            self._save()
        return digest

    def get_manifest(self, repository: str, reference: str) -> Optional[tuple[bytes, str, str]]:
        digest = reference if digests.validate(reference) else self._tags.get(repository, {}).get(reference)
        if digest is None or digest not in self._manifests:
            return None
        data, media_type = self._manifests[digest]
        return data, media_type, digest

    def delete_manifest(self, repository: str, reference: str) -> bool:
        with self._lock:
            tags = self._tags.get(repository, {})
            if digests.validate(reference):
                found = [t for t, d in tags.items() if d == reference]
                if not found and reference not in self._manifests:
                    return False
                for tag in found:
                    del tags[tag]
            elif reference in tags:
                del tags[reference]
            else:
                return False
            self._save()
            return True

    def tags(self, repository: str) -> Optional[list[str]]:
        if repository not in self._tags:
            return None
        return sorted(self._tags[repository])

    def repositories(self) -> list[str]:
        return sorted(self._tags)
