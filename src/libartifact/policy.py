"""Signature policy checks (containers ``policy.json`` subset)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from .errors import PolicyDeniedError, ValidationError
from .reference import ArtifactReference

ACCEPT = "insecureAcceptAnything"
REJECT = "reject"


@dataclass
class SignaturePolicy:
    """Pull admission policy.

    Only ``default`` and the ``docker`` transport scopes are read. A scope
    matches the full repository name or any of its registry/namespace
    prefixes, the most specific one winning. ``insecureAcceptAnything``
    admits; ``reject`` and any signature requirement deny, since signatures
    are not verified on pull.
    """
    default: list[dict[str, Any]] = field(default_factory=lambda: [{"type": ACCEPT}])
    scopes: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "SignaturePolicy":
        if not isinstance(data.get("default"), list):
            raise ValidationError("Signature policy needs a 'default' requirement list")
        transports = data.get("transports") or {}
        return cls(
            default=data["default"],
            scopes=dict(transports.get("docker") or {}),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SignaturePolicy":
        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except OSError as e:
            raise ValidationError(f"Cannot read signature policy {path}: {e}") from e
        except ValueError as e:
            raise ValidationError(f"Signature policy {path} is not valid JSON") from e
        return cls.from_dict(data)

    def requirements_for(self, reference: ArtifactReference) -> list[dict[str, Any]]:
        candidates = [reference.name, reference.repository_name]
        parts = reference.repository_name.split("/")
        candidates.extend("/".join(parts[:i]) for i in range(len(parts) - 1, 0, -1))
        for scope in candidates:
            if scope in self.scopes:
                return self.scopes[scope]
        return self.default

    def check(self, reference: ArtifactReference) -> None:
        requirements = self.requirements_for(reference)
        if not requirements:
            raise PolicyDeniedError("Signature policy has an empty requirement list", reference=reference.name)
        for requirement in requirements:
            kind = requirement.get("type")
            if kind == ACCEPT:
                continue
            if kind == REJECT:
                raise PolicyDeniedError("Rejected by signature policy", reference=reference.name)
            raise PolicyDeniedError(
                f"Signature policy requires {kind!r}, which cannot be verified for artifacts",
                reference=reference.name,
            )
