"""Reports returned by the public artifact operations."""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import Artifact


@dataclass
class ArtifactAddReport:
    artifact_digest: str


@dataclass
class ArtifactPushReport:
    tls_verify_skipped: bool = False


@dataclass
class ArtifactPullReport:
    tls_verify_skipped: bool = False


@dataclass
class ArtifactInspectReport:
    artifact: Artifact
    digest: str

    def to_dict(self) -> dict:
        data = self.artifact.to_dict()
        data["digest"] = self.digest
        return data


@dataclass
class ArtifactListReport:
    artifact: Artifact

    def to_dict(self) -> dict:
        return {
            "name": self.artifact.name,
            "digest": self.artifact.digest,
            "size": self.artifact.size,
            "blobs": len(self.artifact.blobs),
        }


@dataclass
class ArtifactRemoveReport:
    artifact_digests: list[str] = field(default_factory=list)
