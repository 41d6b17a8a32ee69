"""Data models for libartifact: blobs, artifacts and their manifests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence, Union

from . import digest as digests
from .errors import DigestMismatchError, MalformedDigestError, NotFoundError, ValidationError

MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
EMPTY_CONFIG_MEDIA_TYPE = "application/vnd.oci.empty.v1+json"
EMPTY_CONFIG = b"{}"
EMPTY_CONFIG_DIGEST = digests.compute(EMPTY_CONFIG)
DEFAULT_BLOB_MEDIA_TYPE = "application/octet-stream"

# Reserved annotation used to select blobs by file name
TITLE_ANNOTATION = "org.opencontainers.image.title"


def canonical_json(obj: Any) -> bytes:
    """Stable JSON encoding: sorted keys, no whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class Blob:
    """A content-addressed payload inside an artifact."""
    digest: str
    size: int
    media_type: str = DEFAULT_BLOB_MEDIA_TYPE
    annotations: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "annotations", MappingProxyType(dict(self.annotations)))

    @property
    def title(self) -> Optional[str]:
        return self.annotations.get(TITLE_ANNOTATION)

    def to_descriptor(self) -> dict:
        data: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    @classmethod
    def from_descriptor(cls, data: Mapping[str, Any]) -> "Blob":
        try:
            return cls(
                digest=digests.parse(data["digest"]),
                size=int(data["size"]),
                media_type=data.get("mediaType", DEFAULT_BLOB_MEDIA_TYPE),
                annotations=dict(data.get("annotations") or {}),
            )
        except MalformedDigestError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid blob descriptor: {e}") from e


@dataclass(frozen=True)
class BlobSource:
    """Raw input for a blob before it is hashed into an artifact."""
    data: bytes
    title: Optional[str] = None
    media_type: Optional[str] = None
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        media_type: Optional[str] = None,
        annotations: Optional[dict[str, str]] = None,
    ) -> "BlobSource":
        path = Path(path)
        return cls(
            data=path.read_bytes(),
            title=path.name,
            media_type=media_type,
            annotations=dict(annotations or {}),
        )

    def to_blob(self) -> Blob:
        annotations = dict(self.annotations)
        if self.title:
            annotations[TITLE_ANNOTATION] = self.title
        return Blob(
            digest=digests.compute(self.data),
            size=len(self.data),
            media_type=self.media_type or DEFAULT_BLOB_MEDIA_TYPE,
            annotations=annotations,
        )


@dataclass(frozen=True)
class Artifact:
    """A named collection of blobs plus annotations.

    ``digest`` is the digest of the canonical manifest and therefore a pure
    function of the ordered blob descriptors, the artifact type and the
    annotations. The name does not take part in it.
    """
    name: str
    blobs: tuple[Blob, ...] = ()
    artifact_type: Optional[str] = None
    annotations: Mapping[str, str] = field(default_factory=dict)
    digest: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "blobs", tuple(self.blobs))
        object.__setattr__(self, "annotations", MappingProxyType(dict(self.annotations)))
        object.__setattr__(self, "digest", digests.compute(self.manifest_bytes()))

    @property
    def size(self) -> int:
        return sum(b.size for b in self.blobs)

    def manifest(self) -> dict:
        data: dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": MANIFEST_MEDIA_TYPE,
            "config": {
                "mediaType": EMPTY_CONFIG_MEDIA_TYPE,
                "digest": EMPTY_CONFIG_DIGEST,
                "size": len(EMPTY_CONFIG),
            },
            "layers": [b.to_descriptor() for b in self.blobs],
        }
        if self.artifact_type:
            data["artifactType"] = self.artifact_type
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    def manifest_bytes(self) -> bytes:
        return canonical_json(self.manifest())

    def with_blobs(
        self,
        blobs: Sequence[Blob],
        annotations: Optional[Mapping[str, str]] = None,
    ) -> "Artifact":
        """Return a copy with ``blobs`` appended and annotations merged."""
        merged = dict(self.annotations)
        merged.update(annotations or {})
        return replace(self, blobs=self.blobs + tuple(blobs), annotations=merged)

    def renamed(self, name: str) -> "Artifact":
        return replace(self, name=name)

    @classmethod
    def from_manifest(cls, name: str, manifest: Union[bytes, Mapping[str, Any]]) -> "Artifact":
        if isinstance(manifest, (bytes, bytearray)):
            try:
                data = json.loads(manifest)
            except ValueError as e:
                raise ValidationError(f"Manifest is not valid JSON: {e}") from e
        else:
            data = dict(manifest)

        if not isinstance(data, dict) or data.get("schemaVersion") != 2:
            raise ValidationError("Unsupported manifest: schemaVersion must be 2")
        layers = data.get("layers")
        if not isinstance(layers, list):
            raise ValidationError("Invalid manifest: layers must be a list")

        return cls(
            name=name,
            blobs=tuple(Blob.from_descriptor(layer) for layer in layers),
            artifact_type=data.get("artifactType"),
            annotations=dict(data.get("annotations") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "digest": self.digest,
            "manifest": self.manifest(),
        }


@dataclass(frozen=True)
class ArtifactBundle:
    """An artifact with its payload bytes keyed by blob digest."""
    artifact: Artifact
    payloads: dict[str, bytes] = field(default_factory=dict)

    def payload(self, blob: Blob) -> bytes:
        try:
            return self.payloads[blob.digest]
        except KeyError:
            raise NotFoundError(f"Missing payload for blob {blob.digest}") from None

    def verify(self) -> None:
        """Check every payload against the digest its blob announces."""
        for blob in self.artifact.blobs:
            data = self.payload(blob)
            if not digests.matches(data, blob.digest):
                raise DigestMismatchError(
                    f"Blob content does not match digest {blob.digest}"
                )

    def renamed(self, name: str) -> "ArtifactBundle":
        return replace(self, artifact=self.artifact.renamed(name))


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Metadata view of an artifact, local or remote."""
    artifact: Artifact
    digest: str
    remote: bool = False
