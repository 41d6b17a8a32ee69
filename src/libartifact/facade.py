"""Single entry point for the public artifact operations."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

from . import digest as digests
from .config import ArtifactConfig
from .credentials import DefaultCredentialSource
from .errors import AmbiguousSelectorError, ArtifactError, ValidationError
from .models import TITLE_ANNOTATION, BlobSource
from .options import (
    ArtifactAddOptions,
    ArtifactExtractOptions,
    ArtifactInspectOptions,
    ArtifactListOptions,
    ArtifactPullOptions,
    ArtifactPushOptions,
    ArtifactRemoveOptions,
)
from .reference import normalize_name
from .reports import (
    ArtifactAddReport,
    ArtifactInspectReport,
    ArtifactListReport,
    ArtifactPullReport,
    ArtifactPushReport,
    ArtifactRemoveReport,
)
from .signing import PassphraseSigner, Signer
from .store import LocalArtifactStore, select_blob
from .sync import RegistrySyncEngine
from .transport import HttpRegistryTransport, RegistryTransport

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@contextmanager
def _context(reference: Optional[str], phase: Optional[str] = None) -> Iterator[None]:
    try:
        yield
    except ArtifactError as e:
        e.with_context(reference=reference, phase=phase)
        raise


class ArtifactFacade:
    """Validates option combinations and routes each operation.

    Local operations go to the store, remote ones to the sync engine. The
    facade never hashes content or touches the network itself, and only
    adds reference/phase context to errors raised below it.
    """

    def __init__(self, store: LocalArtifactStore, engine: Optional[RegistrySyncEngine] = None):
        self.store = store
        self.engine = engine

    @classmethod
    def from_config(
        cls,
        config: Optional[ArtifactConfig] = None,
        *,
        transport: Optional[RegistryTransport] = None,
        signer: Optional[Signer] = None,
    ) -> "ArtifactFacade":
        config = config or ArtifactConfig()
        store = LocalArtifactStore(config.resolved_storage_path)
        engine = RegistrySyncEngine(
            transport or HttpRegistryTransport(scheme=config.registry_scheme, timeout=config.timeout),
            credential_source=DefaultCredentialSource(config.auth_file),
            signer=signer or PassphraseSigner(),
            default_tls_verify=config.tls_verify,
            default_cert_dir=config.cert_dir,
            default_max_retries=config.retry.max_retries,
            default_retry_delay=config.retry.retry_delay,
        )
        return cls(store, engine)

    def _require_engine(self) -> RegistrySyncEngine:
        if self.engine is None:
            raise ValidationError("No registry sync engine configured", phase="validation")
        return self.engine

    # ------------------------------------------------------------------
    # Local operations
    # ------------------------------------------------------------------

    def add(
        self,
        name: str,
        files: Sequence[PathLike],
        options: Optional[ArtifactAddOptions] = None,
    ) -> ArtifactAddReport:
        options = options or ArtifactAddOptions()
        with _context(name, "validation"):
            target = normalize_name(name)
            if TITLE_ANNOTATION in options.annotations:
                raise ValidationError(
                    f"The {TITLE_ANNOTATION} annotation is set from the file name and cannot be given"
                )
            if not files and not options.append:
                raise ValidationError("At least one file is required")
            paths = [Path(f) for f in files]
            missing = [str(p) for p in paths if not p.is_file()]
            if missing:
                raise ValidationError(f"Not a regular file: {', '.join(missing)}")

        with _context(target, "local"):
            sources = [BlobSource.from_file(p, media_type=options.file_type) for p in paths]
            if options.append and self.store.exists(target):
                current = self.store.get(target)
                if options.artifact_type and options.artifact_type != current.artifact_type:
                    raise ValidationError(
                        f"Cannot change artifact type from {current.artifact_type!r} "
                        f"to {options.artifact_type!r} on append"
                    )
                artifact = self.store.append(
                    target, sources, options.annotations, expected_digest=current.digest
                )
            else:
                artifact = self.store.create(
                    target, sources, options.artifact_type, options.annotations
                )

        return ArtifactAddReport(artifact_digest=artifact.digest)

    def list(self, options: Optional[ArtifactListOptions] = None) -> list[ArtifactListReport]:
        return [ArtifactListReport(artifact=a) for a in self.store.list()]

    def inspect(self, ref: str, options: Optional[ArtifactInspectOptions] = None) -> ArtifactInspectReport:
        options = options or ArtifactInspectOptions()
        with _context(ref, "validation" if options.remote else "local"):
            engine = self._require_engine() if options.remote else self.engine
            descriptor = self.store.inspect(ref, remote=options.remote, engine=engine, options=options)
        return ArtifactInspectReport(artifact=descriptor.artifact, digest=descriptor.digest)

    def extract(self, ref: str, options: Optional[ArtifactExtractOptions] = None) -> bytes:
        options = options or ArtifactExtractOptions()
        with _context(ref, "validation"):
            selector = options.selector()
        with _context(ref, "local"):
            return self.store.extract(ref, selector)

    def extract_to(
        self,
        ref: str,
        target: PathLike,
        options: Optional[ArtifactExtractOptions] = None,
    ) -> list[Path]:
        """Write blobs to ``target``.

        A directory receives one file per blob (all blobs when no selector is
        given), named after the title annotation or the digest. Any other
        path receives exactly one blob.
        """
        options = options or ArtifactExtractOptions()
        with _context(ref, "validation"):
            selector = options.selector()

        target = Path(target)
        with _context(ref, "local"):
            bundle = self.store.export(ref)
            artifact = bundle.artifact

            if not target.is_dir():
                blob = select_blob(artifact, selector)
                target.write_bytes(bundle.payload(blob))
                return [target]

            blobs = [select_blob(artifact, selector)] if selector else list(artifact.blobs)
            names = [Path(b.title).name if b.title else digests.hex_part(b.digest) for b in blobs]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise AmbiguousSelectorError(
                    f"Several blobs would be written to the same file: {', '.join(duplicates)}"
                )

            written = []
            for blob, filename in zip(blobs, names):
                path = target / filename
                path.write_bytes(bundle.payload(blob))
                written.append(path)
            logger.debug("Extracted %d blobs of %s to %s", len(written), artifact.name, target)
            return written

    def remove(
        self,
        refs: Optional[Sequence[str]] = None,
        options: Optional[ArtifactRemoveOptions] = None,
    ) -> ArtifactRemoveReport:
        refs = list(refs or [])
        options = options or ArtifactRemoveOptions()
        with _context(", ".join(refs) or None, "validation"):
            if options.all and refs:
                raise ValidationError("--all and artifact references are mutually exclusive")
            if not options.all and not refs:
                raise ValidationError("At least one artifact reference (or --all) is required")

        if options.all:
            return ArtifactRemoveReport(artifact_digests=self.store.remove_all())

        # Resolve every reference before removing any
        names: list[str] = []
        for ref in refs:
            with _context(ref, "validation"):
                name = self.store.get(ref).name
            if name not in names:
                names.append(name)

        removed = []
        for name in names:
            with _context(name, "local"):
                removed.append(self.store.remove(name))
        return ArtifactRemoveReport(artifact_digests=removed)

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    def push(
        self,
        name: str,
        destination: Optional[str] = None,
        options: Optional[ArtifactPushOptions] = None,
    ) -> ArtifactPushReport:
        with _context(name, "validation"):
            engine = self._require_engine()
        with _context(name, "local"):
            bundle = self.store.export(name)
        return engine.push(bundle, destination or bundle.artifact.name, options)

    def pull(self, ref: str, options: Optional[ArtifactPullOptions] = None) -> ArtifactPullReport:
        with _context(ref, "validation"):
            engine = self._require_engine()
        return engine.pull(ref, options, self.store)
