"""Exception hierarchy for libartifact."""

from __future__ import annotations

from typing import Optional


class ArtifactError(Exception):
    """Base class for all artifact errors.

    Carries the artifact reference and the operation phase (``validation``,
    ``local`` or ``attempt N of M``) so a failure can be traced back to where
    it happened.
    """

    def __init__(
        self,
        message: str,
        *,
        reference: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reference = reference
        self.phase = phase

    def with_context(
        self,
        reference: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> "ArtifactError":
        """Fill in reference/phase where they are still unset."""
        if self.reference is None and reference is not None:
            self.reference = reference
        if self.phase is None and phase is not None:
            self.phase = phase
        return self

    def __str__(self) -> str:
        parts = [p for p in (self.reference, self.phase) if p]
        parts.append(self.message)
        return ": ".join(parts)


class ValidationError(ArtifactError):
    """Bad option combination or malformed input. Never retried."""


class MalformedDigestError(ValidationError):
    """A digest string is not ``<algorithm>:<hex>``."""


class InvalidSelectorError(ValidationError):
    """Both a title and a digest were given to select a blob."""


class SelectorRequiredError(ValidationError):
    """The artifact holds several blobs and no selector was given."""


class LayerIndexOutOfRangeError(ValidationError):
    """An encrypt-layer index does not address a blob of the artifact."""


class MissingEncryptionKeyError(ValidationError):
    """Layers were selected for encryption but no key was supplied."""


class PolicyDeniedError(ValidationError):
    """The signature policy rejects the reference."""


class NotFoundError(ArtifactError):
    """No artifact or blob matches."""


class AlreadyExistsError(ArtifactError):
    """An artifact with the same name is already stored."""


class AmbiguousSelectorError(ArtifactError):
    """A selector or reference matches more than one candidate."""


class ConcurrentModificationError(ArtifactError):
    """The artifact changed between read and commit. Retry the append."""


class EncryptionError(ArtifactError):
    """Encrypting a blob failed."""


class EncryptionKeyInvalidError(EncryptionError):
    """A key specifier cannot be parsed or loaded."""


class DecryptionError(ArtifactError):
    """Decrypting a blob failed (wrong or missing key)."""


class SigningError(ArtifactError):
    """Producing a signature failed."""


class OperationCancelledError(ArtifactError):
    """The caller cancelled a push or pull."""


class TransportError(ArtifactError):
    """Base class for registry transport failures."""


class TransientTransportError(TransportError):
    """Network blip, timeout or overloaded registry. Worth retrying."""


class TerminalTransportError(TransportError):
    """Retrying cannot help."""


class AuthenticationError(TerminalTransportError):
    """The registry rejected the credentials."""


class ManifestNotFoundError(TerminalTransportError):
    """The registry has no manifest or blob for the reference."""


class DigestMismatchError(TerminalTransportError):
    """Content does not hash to the digest it was announced with."""
