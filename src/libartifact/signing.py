"""Signing of pushed artifacts."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Optional, Protocol

from .errors import SigningError

logger = logging.getLogger(__name__)

SIGNATURE_MEDIA_TYPE = "application/vnd.libartifact.signature.v1+json"


class Signer(Protocol):
    def sign(
        self,
        reference: str,
        manifest_digest: str,
        *,
        sigstore_param_file: Optional[str] = None,
        passphrase_file: Optional[str] = None,
    ) -> bytes:
        """Return the signature payload for ``reference@manifest_digest``."""
        ...


def signature_tag(manifest_digest: str) -> str:
    """Tag under which the signature of a manifest is stored."""
    return manifest_digest.replace(":", "-", 1) + ".sig"


class PassphraseSigner:
    """HMAC-SHA256 signer keyed by the contents of a passphrase file.

    Sigstore parameter files are not handled here; inject a signer that
    understands them.
    """

    def sign(
        self,
        reference: str,
        manifest_digest: str,
        *,
        sigstore_param_file: Optional[str] = None,
        passphrase_file: Optional[str] = None,
    ) -> bytes:
        if sigstore_param_file:
            raise SigningError("Sigstore signing is not supported by the passphrase signer")
        if not passphrase_file:
            raise SigningError("A passphrase file is required")

        path = Path(passphrase_file)
        try:
            secret = path.read_bytes().strip()
        except OSError as e:
            raise SigningError(f"Cannot read passphrase file {path}: {e}") from e
        if not secret:
            raise SigningError(f"Passphrase file {path} is empty")

        claim = f"{reference}@{manifest_digest}".encode("utf-8")
        signature = hmac.new(secret, claim, hashlib.sha256).hexdigest()
        logger.debug("Signed %s@%s", reference, manifest_digest)
        return json.dumps(
            {
                "critical": {
                    "identity": {"docker-reference": reference},
                    "image": {"docker-manifest-digest": manifest_digest},
                    "type": "libartifact hmac-sha256",
                },
                "signature": signature,
            },
            sort_keys=True,
        ).encode("utf-8")

    @staticmethod
    def verify(payload: bytes, passphrase: bytes) -> bool:
        data = json.loads(payload)
        critical = data["critical"]
        claim = "{}@{}".format(
            critical["identity"]["docker-reference"],
            critical["image"]["docker-manifest-digest"],
        ).encode("utf-8")
        expected = hmac.new(passphrase.strip(), claim, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, data.get("signature", ""))
