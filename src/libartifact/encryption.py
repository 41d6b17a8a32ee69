"""Envelope encryption of artifact blobs for push, decryption on pull."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence

from cryptography.fernet import Fernet, InvalidToken

from . import digest as digests
from .errors import (
    DecryptionError,
    DigestMismatchError,
    EncryptionKeyInvalidError,
    LayerIndexOutOfRangeError,
    MissingEncryptionKeyError,
)
from .models import Artifact, ArtifactBundle, Blob
from .options import DecryptConfig

logger = logging.getLogger(__name__)

ENCRYPTED_SUFFIX = "+encrypted"
ENC_ANNOTATION_PREFIX = "org.opencontainers.image.enc."
ENC_KEYS_ANNOTATION = ENC_ANNOTATION_PREFIX + "keys.fernet"
ENC_PUBOPTS_ANNOTATION = ENC_ANNOTATION_PREFIX + "pubopts"

FERNET_SCHEME = "fernet"


class Encryptor(Protocol):
    def validate_keys(self, keys: Sequence[str]) -> None:
        ...

    def encrypt(self, data: bytes, keys: Sequence[str]) -> tuple[bytes, dict[str, str]]:
        """Return the ciphertext and the annotations needed to decrypt it."""
        ...


class Decryptor(Protocol):
    def decrypt(self, data: bytes, annotations: Mapping[str, str], config: DecryptConfig) -> bytes:
        ...


class FernetEnvelope:
    """Encryptor and decryptor built on ``cryptography`` Fernet.

    Every blob is encrypted with a fresh data key. The data key is then
    wrapped once per recipient key and the wrapped copies travel in the
    blob's annotations, so any one recipient key can decrypt.

    Key specifiers look like ``fernet:<path>`` (a file holding the key) or
    ``fernet:<key>`` (the urlsafe-base64 key itself).
    """

    def load_key(self, spec: str) -> bytes:
        scheme, sep, value = (spec or "").partition(":")
        if not sep or scheme != FERNET_SCHEME or not value:
            raise EncryptionKeyInvalidError(
                f"Unsupported key specifier {scheme or spec!r}; expected fernet:<path-or-key>"
            )
        path = Path(value).expanduser()
        source = str(path) if path.is_file() else "inline key"
        key = path.read_bytes().strip() if path.is_file() else value.encode()
        try:
            Fernet(key)
        except (ValueError, TypeError) as e:
            raise EncryptionKeyInvalidError(f"Invalid Fernet key ({source})") from e
        return key

    def validate_keys(self, keys: Sequence[str]) -> None:
        for spec in keys:
            self.load_key(spec)

    def encrypt(self, data: bytes, keys: Sequence[str]) -> tuple[bytes, dict[str, str]]:
        recipients = [self.load_key(spec) for spec in keys]
        data_key = Fernet.generate_key()
        ciphertext = Fernet(data_key).encrypt(data)
        wrapped = [Fernet(k).encrypt(data_key).decode("ascii") for k in recipients]
        return ciphertext, {ENC_KEYS_ANNOTATION: json.dumps(wrapped)}

    def decrypt(self, data: bytes, annotations: Mapping[str, str], config: DecryptConfig) -> bytes:
        try:
            wrapped = json.loads(annotations.get(ENC_KEYS_ANNOTATION, "[]"))
        except ValueError as e:
            raise DecryptionError("Malformed wrapped-key annotation") from e
        if not wrapped:
            raise DecryptionError("Blob carries no Fernet-wrapped keys")
        if not config.keys:
            raise DecryptionError("No decryption key supplied")

        for spec in config.keys:
            key = Fernet(self.load_key(spec))
            for token in wrapped:
                try:
                    data_key = key.decrypt(token.encode("ascii"))
                except InvalidToken:
                    continue
                try:
                    return Fernet(data_key).decrypt(data)
                except InvalidToken as e:
                    raise DecryptionError("Ciphertext is corrupted") from e

        raise DecryptionError("None of the supplied keys can decrypt the blob")


class EncryptionCoordinator:
    """Applies layer-index driven encryption to bundles.

    Never mutates its input; every operation returns a new bundle.
    """

    def __init__(
        self,
        encryptor: Optional[Encryptor] = None,
        decryptor: Optional[Decryptor] = None,
    ):
        envelope = FernetEnvelope()
        self.encryptor = encryptor or envelope
        self.decryptor = decryptor or envelope

    @staticmethod
    def resolve_layers(artifact: Artifact, layers: Sequence[int]) -> list[int]:
        """Normalize indices (negatives count from the end) and range-check them."""
        count = len(artifact.blobs)
        resolved: list[int] = []
        for index in layers:
            position = index + count if index < 0 else index
            if not 0 <= position < count:
                raise LayerIndexOutOfRangeError(
                    f"Layer index {index} out of range; artifact has {count} blobs",
                    reference=artifact.name,
                )
            if position not in resolved:
                resolved.append(position)
        return sorted(resolved)

    def validate_for_push(
        self,
        artifact: Artifact,
        layers: Sequence[int],
        keys: Sequence[str],
    ) -> list[int]:
        if not layers:
            return []
        if not keys:
            raise MissingEncryptionKeyError(
                "Layers selected for encryption but no encryption key given",
                reference=artifact.name,
            )
        indices = self.resolve_layers(artifact, layers)
        self.encryptor.validate_keys(keys)
        return indices

    def encrypt_for_push(
        self,
        bundle: ArtifactBundle,
        layers: Sequence[int],
        keys: Sequence[str],
    ) -> ArtifactBundle:
        indices = self.validate_for_push(bundle.artifact, layers, keys)
        if not indices:
            return bundle

        blobs = list(bundle.artifact.blobs)
        payloads = dict(bundle.payloads)
        for i in indices:
            blob = blobs[i]
            if blob.media_type.endswith(ENCRYPTED_SUFFIX):
                logger.debug("Layer %d of %s is already encrypted", i, bundle.artifact.name)
                continue
            ciphertext, enc_annotations = self.encryptor.encrypt(bundle.payload(blob), keys)
            annotations = dict(blob.annotations)
            annotations.update(enc_annotations)
            annotations[ENC_PUBOPTS_ANNOTATION] = json.dumps(
                {"cipher": FERNET_SCHEME, "digest": blob.digest}, sort_keys=True
            )
            encrypted = Blob(
                digest=digests.compute(ciphertext),
                size=len(ciphertext),
                media_type=blob.media_type + ENCRYPTED_SUFFIX,
                annotations=annotations,
            )
            blobs[i] = encrypted
            payloads[encrypted.digest] = ciphertext

        artifact = replace(bundle.artifact, blobs=tuple(blobs))
        logger.info("Encrypted %d of %d layers of %s", len(indices), len(blobs), artifact.name)
        return ArtifactBundle(
            artifact=artifact,
            payloads={b.digest: payloads[b.digest] for b in artifact.blobs},
        )

    def decrypt_on_pull(
        self,
        bundle: ArtifactBundle,
        config: Optional[DecryptConfig],
    ) -> ArtifactBundle:
        if config is None:
            return bundle

        blobs = list(bundle.artifact.blobs)
        payloads = dict(bundle.payloads)
        decrypted_count = 0
        for i, blob in enumerate(blobs):
            if not blob.media_type.endswith(ENCRYPTED_SUFFIX):
                continue
            plaintext = self.decryptor.decrypt(bundle.payload(blob), blob.annotations, config)
            try:
                pubopts = json.loads(blob.annotations.get(ENC_PUBOPTS_ANNOTATION, "{}"))
            except ValueError:
                pubopts = {}
            actual = digests.compute(plaintext)
            expected = pubopts.get("digest")
            if expected and expected != actual:
                raise DigestMismatchError(
                    f"Decrypted layer {i} hashes to {actual}, expected {expected}",
                    reference=bundle.artifact.name,
                )
            blobs[i] = Blob(
                digest=actual,
                size=len(plaintext),
                media_type=blob.media_type[: -len(ENCRYPTED_SUFFIX)],
                annotations={
                    k: v for k, v in blob.annotations.items()
                    if not k.startswith(ENC_ANNOTATION_PREFIX)
                },
            )
            payloads[actual] = plaintext
            decrypted_count += 1

        if not decrypted_count:
            return bundle

        artifact = replace(bundle.artifact, blobs=tuple(blobs))
        logger.info("Decrypted %d layers of %s", decrypted_count, artifact.name)
        return ArtifactBundle(
            artifact=artifact,
            payloads={b.digest: payloads[b.digest] for b in artifact.blobs},
        )
