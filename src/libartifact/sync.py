"""Registry sync engine: push and pull with retries, TLS policy and progress."""

from __future__ import annotations

import logging
import re
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, TypeVar

from rich.console import Console

from . import digest as digests
from .credentials import CredentialSource, Credentials, DefaultCredentialSource
from .encryption import EncryptionCoordinator
from .errors import (
    ArtifactError,
    DigestMismatchError,
    OperationCancelledError,
    SigningError,
    TerminalTransportError,
    TransientTransportError,
    ValidationError,
)
from .models import EMPTY_CONFIG_DIGEST, Artifact, ArtifactBundle, ArtifactDescriptor, BlobSource
from .options import ArtifactInspectOptions, ArtifactPullOptions, ArtifactPushOptions, RegistryOptions
from .policy import SignaturePolicy
from .reference import ArtifactReference
from .reports import ArtifactPullReport, ArtifactPushReport
from .signing import SIGNATURE_MEDIA_TYPE, Signer, signature_tag
from .transport import RawArtifact, RegistryTransport, TLSPolicy

if TYPE_CHECKING:
    from .store import LocalArtifactStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = "1s"

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse a Go-style duration (``500ms``, ``2s``, ``1m30s``) into seconds."""
    text = (value or "").strip()
    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    for m in _DURATION_PART_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()

    if not text or pos != len(text):
        raise ValidationError(f"Invalid duration {value!r} (expected e.g. 500ms, 2s, 1m30s)")
    return total


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how far apart transient failures are retried."""
    max_retries: int = DEFAULT_MAX_RETRIES
    delay: float = 1.0

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def resolve(
        cls,
        max_retries: Optional[int],
        retry_delay: Optional[str],
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        default_retry_delay: str = DEFAULT_RETRY_DELAY,
    ) -> "RetryPolicy":
        retries = default_max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValidationError(f"max retries must not be negative (got {retries})")
        delay = parse_duration(default_retry_delay if retry_delay is None else retry_delay)
        return cls(max_retries=retries, delay=delay)


class SessionState(Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRYABLE_FAILURE = "retryable_failure"
    SUCCEEDED = "succeeded"
    TERMINAL_FAILURE = "terminal_failure"


Waiter = Callable[[threading.Event, float], bool]


def wait_on_event(event: threading.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True if ``event`` was set meanwhile."""
    return event.wait(seconds)


class SyncSession:
    """One push or pull call: attempt counter, retry waits and state."""

    def __init__(
        self,
        kind: str,
        reference: ArtifactReference,
        policy: RetryPolicy,
        cancel_event: Optional[threading.Event] = None,
        waiter: Waiter = wait_on_event,
    ):
        self.kind = kind
        self.reference = reference
        self.policy = policy
        self.cancel_event = cancel_event or threading.Event()
        self.waiter = waiter
        self.attempt = 0
        self.state = SessionState.PENDING
        self.history: list[SessionState] = [SessionState.PENDING]

    @property
    def phase(self) -> str:
        return f"attempt {self.attempt} of {self.policy.total_attempts}"

    def _transition(self, state: SessionState) -> None:
        self.state = state
        self.history.append(state)

    def _cancelled(self) -> OperationCancelledError:
        self._transition(SessionState.TERMINAL_FAILURE)
        return OperationCancelledError(
            f"{self.kind} cancelled",
            reference=self.reference.name,
            phase=self.phase if self.attempt else "validation",
        )

    def run(self, operation: Callable[[], T]) -> T:
        while True:
            if self.cancel_event.is_set():
                raise self._cancelled()

            self.attempt += 1
            self._transition(SessionState.ATTEMPTING)
            try:
                result = operation()
            except TransientTransportError as e:
                e.with_context(reference=self.reference.name)
                e.phase = self.phase
                if self.attempt > self.policy.max_retries:
                    self._transition(SessionState.TERMINAL_FAILURE)
                    logger.error("%s of %s failed after %d attempts: %s", self.kind, self.reference, self.attempt, e.message)
                    raise
                self._transition(SessionState.RETRYABLE_FAILURE)
                logger.warning(
                    "%s of %s failed (%s), retrying in %.2fs (%s)",
                    self.kind, self.reference, e.message, self.policy.delay, self.phase,
                )
                if self.waiter(self.cancel_event, self.policy.delay):
                    raise self._cancelled() from e
                continue
            except ArtifactError as e:
                self._transition(SessionState.TERMINAL_FAILURE)
                e.with_context(reference=self.reference.name)
                e.phase = self.phase
                raise

            self._transition(SessionState.SUCCEEDED)
            return result


class RegistrySyncEngine:
    """Pushes and pulls artifacts through a ``RegistryTransport``.

    Everything that can be checked locally (reference, retry settings,
    encryption configuration, credentials, signing setup, signature policy)
    is checked before the first transport call.
    """

    def __init__(
        self,
        transport: RegistryTransport,
        *,
        credential_source: Optional[CredentialSource] = None,
        encryption: Optional[EncryptionCoordinator] = None,
        signer: Optional[Signer] = None,
        default_tls_verify: bool = True,
        default_cert_dir: Optional[str] = None,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        default_retry_delay: str = DEFAULT_RETRY_DELAY,
        waiter: Waiter = wait_on_event,
    ):
        self.transport = transport
        self.credential_source = credential_source or DefaultCredentialSource()
        self.encryption = encryption or EncryptionCoordinator()
        self.signer = signer
        self.default_tls_verify = default_tls_verify
        self.default_cert_dir = default_cert_dir
        self.default_max_retries = default_max_retries
        self.default_retry_delay = default_retry_delay
        self.waiter = waiter

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _retry_policy(self, options: RegistryOptions) -> RetryPolicy:
        return RetryPolicy.resolve(
            options.max_retries,
            options.retry_delay,
            default_max_retries=self.default_max_retries,
            default_retry_delay=self.default_retry_delay,
        )

    def _tls_policy(self, options: RegistryOptions, cli_verify: Optional[bool] = None) -> TLSPolicy:
        if cli_verify is not None:
            verify = cli_verify
        elif options.insecure_skip_tls_verify is not None:
            verify = not options.insecure_skip_tls_verify
        else:
            verify = self.default_tls_verify
        return TLSPolicy(verify=verify, cert_dir=options.cert_dir_path or self.default_cert_dir)

    @staticmethod
    def _console(options: RegistryOptions) -> Console:
        return Console(
            file=options.writer or sys.stderr,
            quiet=options.quiet,
            highlight=False,
            soft_wrap=True,
            emoji=False,
        )

    @staticmethod
    def _announce_tls(reference: ArtifactReference, tls: TLSPolicy, console: Console) -> bool:
        if tls.verify:
            return False
        logger.warning("TLS verification disabled for %s", reference.registry)
        console.print(f"WARNING: TLS verification disabled for {reference.registry}", markup=False)
        return True

    def _session(self, kind: str, reference: ArtifactReference, policy: RetryPolicy, options: RegistryOptions) -> SyncSession:
        return SyncSession(kind, reference, policy, cancel_event=options.cancel_event, waiter=self.waiter)

    @staticmethod
    def _to_bundle(reference: ArtifactReference, raw: RawArtifact) -> ArtifactBundle:
        manifest_digest = digests.compute(raw.manifest)
        for announced in (reference.digest, raw.digest):
            if announced and announced != manifest_digest:
                raise DigestMismatchError(f"Manifest hashes to {manifest_digest}, expected {announced}")

        artifact = Artifact.from_manifest(reference.name, raw.manifest)
        missing = [b.digest for b in artifact.blobs if b.digest not in raw.blobs]
        if missing:
            raise TerminalTransportError(f"Registry did not return blobs: {', '.join(missing)}")
        bundle = ArtifactBundle(artifact=artifact, payloads=dict(raw.blobs))
        bundle.verify()
        return bundle

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        bundle: ArtifactBundle,
        destination: str,
        options: Optional[ArtifactPushOptions] = None,
    ) -> ArtifactPushReport:
        options = options or ArtifactPushOptions()
        try:
            reference = ArtifactReference.parse(destination)
            policy = self._retry_policy(options)
            self.encryption.validate_for_push(bundle.artifact, options.encrypt_layers, options.encryption_keys)
            signing = bool(options.sign_by_sigstore_param_file or options.sign_passphrase_file)
            if signing and self.signer is None:
                raise ValidationError("Signing requested but no signer is configured")
            credentials = self.credential_source.resolve(reference.registry, options)
            tls = self._tls_policy(options, options.tls_verify_cli)
        except ArtifactError as e:
            e.with_context(reference=destination, phase="validation")
            raise

        console = self._console(options)
        tls_skipped = self._announce_tls(reference, tls, console)

        try:
            outgoing = self.encryption.encrypt_for_push(bundle, options.encrypt_layers, options.encryption_keys)
        except ArtifactError as e:
            e.with_context(reference=reference.name, phase="local")
            raise
        raw = RawArtifact(
            manifest=outgoing.artifact.manifest_bytes(),
            blobs={b.digest: outgoing.payload(b) for b in outgoing.artifact.blobs},
        )

        def upload() -> str:
            console.print("Getting image source signatures")
            for blob in outgoing.artifact.blobs:
                console.print(f"Copying blob {digests.short(blob.digest)}")
            console.print(f"Copying config {digests.short(EMPTY_CONFIG_DIGEST)}")
            pushed = self.transport.upload(reference, raw, credentials, tls)
            console.print("Writing manifest to image destination")
            return pushed

        pushed_digest = self._session("push", reference, policy, options).run(upload)

        if signing:
            self._push_signature(reference, pushed_digest, options, policy, credentials, tls, console)

        if options.digest_file:
            Path(options.digest_file).write_text(pushed_digest)

        logger.info("Pushed %s (%s)", reference, pushed_digest)
        return ArtifactPushReport(tls_verify_skipped=tls_skipped)

    def _push_signature(
        self,
        reference: ArtifactReference,
        manifest_digest: str,
        options: ArtifactPushOptions,
        policy: RetryPolicy,
        credentials: Optional[Credentials],
        tls: TLSPolicy,
        console: Console,
    ) -> None:
        if self.signer is None:
            raise SigningError("No signer is configured", reference=reference.name, phase="local")
        try:
            payload = self.signer.sign(
                reference.name,
                manifest_digest,
                sigstore_param_file=options.sign_by_sigstore_param_file,
                passphrase_file=options.sign_passphrase_file,
            )
        except SigningError as e:
            e.with_context(reference=reference.name, phase="local")
            raise

        blob = BlobSource(data=payload, media_type=SIGNATURE_MEDIA_TYPE).to_blob()
        sig_reference = reference.with_tag(signature_tag(manifest_digest))
        sig_artifact = Artifact(name=sig_reference.name, blobs=(blob,), artifact_type=SIGNATURE_MEDIA_TYPE)
        raw = RawArtifact(manifest=sig_artifact.manifest_bytes(), blobs={blob.digest: payload})

        def upload() -> str:
            console.print("Storing signatures")
            return self.transport.upload(sig_reference, raw, credentials, tls)

        self._session("signature push", sig_reference, policy, options).run(upload)
        logger.info("Stored signature for %s at %s", reference, sig_reference)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def _fetch(self, source: str, options: ArtifactPullOptions) -> tuple[ArtifactBundle, bool]:
        try:
            reference = ArtifactReference.parse(source)
            policy = self._retry_policy(options)
            if options.signature_policy_path:
                SignaturePolicy.load(options.signature_policy_path).check(reference)
            credentials = self.credential_source.resolve(reference.registry, options)
            tls = self._tls_policy(options)
        except ArtifactError as e:
            e.with_context(reference=source, phase="validation")
            raise

        console = self._console(options)
        tls_skipped = self._announce_tls(reference, tls, console)

        def fetch() -> ArtifactBundle:
            console.print(f"Trying to pull {reference}...")
            raw = self.transport.fetch(reference, credentials, tls)
            console.print("Getting image source signatures")
            bundle = self._to_bundle(reference, raw)
            for blob in bundle.artifact.blobs:
                console.print(f"Copying blob {digests.short(blob.digest)}")
            bundle = self.encryption.decrypt_on_pull(bundle, options.decrypt_config)
            console.print("Writing manifest to image destination")
            return bundle

        bundle = self._session("pull", reference, policy, options).run(fetch)
        return bundle, tls_skipped

    def fetch(self, source: str, options: Optional[ArtifactPullOptions] = None) -> ArtifactBundle:
        """Download (and decrypt) an artifact without storing it."""
        return self._fetch(source, options or ArtifactPullOptions())[0]

    def pull(
        self,
        source: str,
        options: Optional[ArtifactPullOptions],
        store: "LocalArtifactStore",
    ) -> ArtifactPullReport:
        bundle, tls_skipped = self._fetch(source, options or ArtifactPullOptions())
        artifact = store.import_bundle(bundle.artifact.name, bundle)
        logger.info("Pulled %s (%s)", artifact.name, artifact.digest)
        return ArtifactPullReport(tls_verify_skipped=tls_skipped)

    # ------------------------------------------------------------------
    # Inspect
    # ------------------------------------------------------------------

    def inspect_remote(
        self,
        source: str,
        options: Optional[ArtifactInspectOptions] = None,
    ) -> ArtifactDescriptor:
        options = options or ArtifactInspectOptions(remote=True)
        try:
            reference = ArtifactReference.parse(source)
            policy = self._retry_policy(options)
            credentials = self.credential_source.resolve(reference.registry, options)
            tls = self._tls_policy(options)
        except ArtifactError as e:
            e.with_context(reference=source, phase="validation")
            raise

        self._announce_tls(reference, tls, self._console(options))

        def fetch_manifest() -> ArtifactDescriptor:
            raw = self.transport.fetch(reference, credentials, tls, manifest_only=True)
            manifest_digest = digests.compute(raw.manifest)
            for announced in (reference.digest, raw.digest):
                if announced and announced != manifest_digest:
                    raise DigestMismatchError(f"Manifest hashes to {manifest_digest}, expected {announced}")
            artifact = Artifact.from_manifest(reference.name, raw.manifest)
            return ArtifactDescriptor(artifact=artifact, digest=manifest_digest, remote=True)

        return self._session("inspect", reference, policy, options).run(fetch_manifest)
