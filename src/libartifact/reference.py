"""Artifact references: ``registry/repository[:tag][@digest]``."""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Optional

from . import digest as digests
from .errors import MalformedDigestError, ValidationError

DEFAULT_REGISTRY = "localhost"
DEFAULT_TAG = "latest"

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DOMAIN_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?(?::[0-9]+)?$")


def _looks_like_domain(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True)
class ArtifactReference:
    """A parsed, normalized artifact reference."""
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "ArtifactReference":
        raw = (value or "").strip()
        if not raw:
            raise ValidationError("Artifact reference must not be empty")

        digest_value: Optional[str] = None
        if "@" in raw:
            raw, digest_value = raw.rsplit("@", 1)
            try:
                digests.parse(digest_value)
            except MalformedDigestError as e:
                raise ValidationError(f"Invalid reference {value!r}: {e.message}") from e

        registry = DEFAULT_REGISTRY
        remainder = raw
        first, sep, rest = raw.partition("/")
        if sep and _looks_like_domain(first):
            registry, remainder = first, rest

        tag: Optional[str] = None
        head, _, last = remainder.rpartition("/")
        if ":" in last:
            last, tag = last.split(":", 1)
            remainder = f"{head}/{last}" if head else last

        if not _DOMAIN_RE.match(registry):
            raise ValidationError(f"Invalid registry in reference {value!r}")
        if not _REPOSITORY_RE.match(remainder):
            raise ValidationError(f"Invalid repository name in reference {value!r}")
        if tag is not None and not _TAG_RE.match(tag):
            raise ValidationError(f"Invalid tag in reference {value!r}")

        if tag is None and digest_value is None:
            tag = DEFAULT_TAG

        return cls(registry=registry, repository=remainder, tag=tag, digest=digest_value)

    @property
    def repository_name(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def reference(self) -> str:
        """Manifest reference to fetch: the digest when pinned, else the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def name(self) -> str:
        out = self.repository_name
        if self.tag:
            out += f":{self.tag}"
        if self.digest:
            out += f"@{self.digest}"
        return out

    def with_tag(self, tag: str) -> "ArtifactReference":
        return replace(self, tag=tag, digest=None)

    def __str__(self) -> str:
        return self.name


def normalize_name(value: str) -> str:
    """Normalize a local artifact name (adds registry and tag defaults)."""
    return ArtifactReference.parse(value).name
