"""Local artifact store."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence

from . import digest as digests
from .errors import (
    AlreadyExistsError,
    AmbiguousSelectorError,
    ConcurrentModificationError,
    NotFoundError,
    SelectorRequiredError,
    ValidationError,
)
from .models import Artifact, ArtifactBundle, ArtifactDescriptor, Blob, BlobSource
from .options import BlobSelector, DigestSelector, TitleSelector
from .reference import normalize_name

if TYPE_CHECKING:
    from .options import ArtifactInspectOptions
    from .sync import RegistrySyncEngine

logger = logging.getLogger(__name__)

_FULL_DIGEST_RE = re.compile(r"^sha(?:256|512):")
_HEX_PREFIX_RE = re.compile(r"^[a-f0-9]{3,128}$")


def select_blob(artifact: Artifact, selector: Optional[BlobSelector]) -> Blob:
    """Pick exactly one blob of ``artifact``."""
    if selector is None:
        if len(artifact.blobs) == 1:
            return artifact.blobs[0]
        raise SelectorRequiredError(
            f"Artifact has {len(artifact.blobs)} blobs; select one by title or digest"
        )

    if isinstance(selector, TitleSelector):
        matches = [b for b in artifact.blobs if b.title == selector.title]
        if not matches:
            raise NotFoundError(f"No blob with title {selector.title!r}")
        if len(matches) > 1:
            raise AmbiguousSelectorError(
                f"{len(matches)} blobs share the title {selector.title!r}"
            )
        return matches[0]

    if isinstance(selector, DigestSelector):
        wanted = digests.parse(selector.digest)
        for blob in artifact.blobs:
            if blob.digest == wanted:
                return blob
        raise NotFoundError(f"No blob with digest {wanted}")

    raise TypeError(f"Unsupported selector: {selector!r}")


@dataclass(frozen=True)
class _Record:
    artifact: Artifact
    payloads: Mapping[str, bytes]


class LocalArtifactStore:
    """Artifacts keyed by name, kept in insertion order.

    Records are immutable and swapped whole under the store lock, so readers
    never observe a half-applied append. Appends use optimistic concurrency:
    the new state is computed outside the lock and committed only if the
    artifact digest is still the one it was computed from.

    With ``storage_path`` set, manifests go to ``index.json`` and payloads
    to ``blobs/<algorithm>/<hex>``; otherwise the store is memory-only.
    """

    def __init__(self, storage_path: Optional[Path] = None):
        self.storage_path = Path(storage_path) if storage_path else None
        self._lock = threading.RLock()
        self._records: dict[str, _Record] = {}
        if self.storage_path is not None:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            self._index_path = self.storage_path / "index.json"
            self._blobs_path = self.storage_path / "blobs"
            self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _blob_file(self, digest: str) -> Path:
        algorithm, hex_value = digests.parse(digest).split(":", 1)
        return self._blobs_path / algorithm / hex_value

    def _load(self) -> None:
        if not self._index_path.exists():
            return
        with open(self._index_path) as f:
            data = json.load(f)
        for entry in data.get("artifacts", []):
            artifact = Artifact.from_manifest(entry["name"], entry["manifest"])
            payloads = {b.digest: self._blob_file(b.digest).read_bytes() for b in artifact.blobs}
            self._records[artifact.name] = _Record(artifact, payloads)
        logger.debug("Loaded %d artifacts from %s", len(self._records), self._index_path)

    def _save(self, records: Mapping[str, _Record]) -> None:
        if self.storage_path is None:
            return

        referenced: set[str] = set()
        for record in records.values():
            for blob_digest, data in record.payloads.items():
                referenced.add(blob_digest)
                path = self._blob_file(blob_digest)
                if not path.exists():
                    path.parent.mkdir(parents=True, exist_ok=True)
                    tmp = path.with_name(path.name + ".tmp")
                    tmp.write_bytes(data)
                    os.replace(tmp, path)

        data = {
            "artifacts": [
                {"name": name, "manifest": record.artifact.manifest()}
                for name, record in records.items()
            ],
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        tmp_index = self._index_path.with_name("index.json.tmp")
        with open(tmp_index, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_index, self._index_path)

        if self._blobs_path.exists():
            for path in self._blobs_path.glob("*/*"):
                if path.suffix == ".tmp":
                    continue
                if f"{path.parent.name}:{path.name}" not in referenced:
                    path.unlink()

    def _commit(self, records: dict[str, _Record]) -> None:
        """Persist ``records`` and make them current; on failure nothing changes."""
        self._save(records)
        self._records = records

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _resolve(self, ref: str) -> str:
        """Map a name, full digest or digest prefix to a record key."""
        if ref in self._records:
            return ref
        try:
            name = normalize_name(ref)
        except ValidationError:
            name = None
        if name is not None and name in self._records:
            return name

        if _FULL_DIGEST_RE.match(ref):
            wanted = digests.parse(ref)
            matches = [n for n, r in self._records.items() if r.artifact.digest == wanted]
        elif _HEX_PREFIX_RE.match(ref):
            matches = [
                n for n, r in self._records.items()
                if digests.hex_part(r.artifact.digest).startswith(ref)
            ]
        else:
            matches = []

        if not matches:
            raise NotFoundError(f"No artifact matches {ref!r}", reference=ref)
        if len(matches) > 1:
            raise AmbiguousSelectorError(
                f"{ref!r} matches {len(matches)} artifacts: {', '.join(matches)}",
                reference=ref,
            )
        return matches[0]

    def _snapshot(self, ref: str) -> tuple[str, _Record]:
        with self._lock:
            key = self._resolve(ref)
            return key, self._records[key]

    def exists(self, ref: str) -> bool:
        try:
            self._snapshot(ref)
        except NotFoundError:
            return False
        return True

    def get(self, ref: str) -> Artifact:
        return self._snapshot(ref)[1].artifact

    def list(self) -> list[Artifact]:
        with self._lock:
            return [r.artifact for r in self._records.values()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @staticmethod
    def _hash_sources(sources: Iterable[BlobSource]) -> tuple[list[Blob], dict[str, bytes]]:
        blobs: list[Blob] = []
        payloads: dict[str, bytes] = {}
        for source in sources:
            blob = source.to_blob()
            blobs.append(blob)
            payloads[blob.digest] = bytes(source.data)
        return blobs, payloads

    def create(
        self,
        name: str,
        blobs: Sequence[BlobSource],
        artifact_type: Optional[str] = None,
        annotations: Optional[Mapping[str, str]] = None,
    ) -> Artifact:
        if not blobs:
            raise ValidationError("An artifact needs at least one blob", reference=name)

        new_blobs, payloads = self._hash_sources(blobs)
        artifact = Artifact(
            name=name,
            blobs=tuple(new_blobs),
            artifact_type=artifact_type,
            annotations=dict(annotations or {}),
        )

        with self._lock:
            if name in self._records:
                raise AlreadyExistsError(
                    "Artifact already exists; use append to add blobs", reference=name
                )
            records = dict(self._records)
            records[name] = _Record(artifact, payloads)
            self._commit(records)

        logger.info("Created artifact %s (%s, %d blobs)", name, artifact.digest, len(new_blobs))
        return artifact

    def append(
        self,
        name: str,
        blobs: Sequence[BlobSource],
        annotations: Optional[Mapping[str, str]] = None,
        expected_digest: Optional[str] = None,
    ) -> Artifact:
        """Append ``blobs`` to an existing artifact.

        ``expected_digest`` pins the state the caller read; when the stored
        artifact no longer has that digest the append fails with
        ``ConcurrentModificationError`` instead of overwriting.
        """
        key, current = self._snapshot(name)
        base_digest = current.artifact.digest
        if expected_digest is not None and expected_digest != base_digest:
            raise ConcurrentModificationError(
                f"Artifact is at {base_digest}, expected {expected_digest}", reference=key
            )

        if not blobs and not annotations:
            return current.artifact

        new_blobs, new_payloads = self._hash_sources(blobs)
        artifact = current.artifact.with_blobs(new_blobs, annotations)
        payloads = dict(current.payloads)
        payloads.update(new_payloads)

        with self._lock:
            latest = self._records.get(key)
            if latest is None:
                raise NotFoundError("Artifact was removed during append", reference=key)
            if latest.artifact.digest != base_digest:
                raise ConcurrentModificationError(
                    f"Artifact changed during append ({base_digest} -> {latest.artifact.digest})",
                    reference=key,
                )
            records = dict(self._records)
            records[key] = _Record(artifact, payloads)
            self._commit(records)

        logger.info("Appended %d blobs to %s (%s)", len(new_blobs), key, artifact.digest)
        return artifact

    def import_bundle(self, name: str, bundle: ArtifactBundle) -> Artifact:
        """Store a verified bundle under ``name``, replacing any previous one."""
        bundle.verify()
        artifact = bundle.artifact.renamed(name)
        payloads = {b.digest: bundle.payload(b) for b in artifact.blobs}
        with self._lock:
            replaced = self._records.get(name)
            records = dict(self._records)
            records[name] = _Record(artifact, payloads)
            self._commit(records)
        if replaced is not None and replaced.artifact.digest != artifact.digest:
            logger.info("Replaced %s: %s -> %s", name, replaced.artifact.digest, artifact.digest)
        return artifact

    def remove(self, ref: str) -> str:
        with self._lock:
            key = self._resolve(ref)
            records = dict(self._records)
            record = records.pop(key)
            self._commit(records)
        logger.info("Removed artifact %s (%s)", key, record.artifact.digest)
        return record.artifact.digest

    def remove_all(self) -> list[str]:
        with self._lock:
            removed = [r.artifact.digest for r in self._records.values()]
            self._commit({})
        if removed:
            logger.info("Removed %d artifacts", len(removed))
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def inspect(
        self,
        ref: str,
        remote: bool = False,
        engine: Optional["RegistrySyncEngine"] = None,
        options: Optional["ArtifactInspectOptions"] = None,
    ) -> ArtifactDescriptor:
        if remote:
            if engine is None:
                raise ValidationError("Remote inspection needs a registry sync engine", reference=ref)
            return engine.inspect_remote(ref, options)
        artifact = self.get(ref)
        return ArtifactDescriptor(artifact=artifact, digest=artifact.digest)

    def extract(self, ref: str, selector: Optional[BlobSelector] = None) -> bytes:
        _, record = self._snapshot(ref)
        blob = select_blob(record.artifact, selector)
        return record.payloads[blob.digest]

    def export(self, ref: str) -> ArtifactBundle:
        _, record = self._snapshot(ref)
        return ArtifactBundle(artifact=record.artifact, payloads=dict(record.payloads))
