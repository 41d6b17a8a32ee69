"""Options accepted by the public artifact operations."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional, TextIO, Union

from . import digest as digests
from .errors import InvalidSelectorError


@dataclass(frozen=True)
class TitleSelector:
    """Select the blob whose title annotation equals ``title``."""
    title: str


@dataclass(frozen=True)
class DigestSelector:
    """Select the blob with the given content digest."""
    digest: str


BlobSelector = Union[TitleSelector, DigestSelector]


@dataclass
class ArtifactAddOptions:
    annotations: dict[str, str] = field(default_factory=dict)
    artifact_type: Optional[str] = None
    append: bool = False
    # Media type applied to every added blob
    file_type: Optional[str] = None


@dataclass
class ArtifactExtractOptions:
    """Blob selection for extract. ``title`` and ``digest`` conflict."""
    title: Optional[str] = None
    digest: Optional[str] = None

    def selector(self) -> Optional[BlobSelector]:
        if self.title and self.digest:
            raise InvalidSelectorError("title and digest are mutually exclusive")
        if self.title:
            return TitleSelector(self.title)
        if self.digest:
            return DigestSelector(digests.parse(self.digest))
        return None


@dataclass
class RegistryOptions:
    """Settings shared by every operation that talks to a registry."""
    auth_file_path: Optional[str] = None
    cert_dir_path: Optional[str] = None
    credentials_cli: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    # None means "use the configured default"
    insecure_skip_tls_verify: Optional[bool] = None
    max_retries: Optional[int] = None
    retry_delay: Optional[str] = None
    quiet: bool = False
    writer: Optional[TextIO] = None
    cancel_event: Optional[threading.Event] = None


@dataclass
class ArtifactInspectOptions(RegistryOptions):
    remote: bool = False


@dataclass
class ArtifactListOptions:
    pass


@dataclass
class DecryptConfig:
    """Key specifiers tried, in order, to unwrap encrypted blobs."""
    keys: list[str] = field(default_factory=list)


@dataclass
class ArtifactPullOptions(RegistryOptions):
    # Artifacts are single-manifest; accepted for parity with image pulls
    architecture: Optional[str] = None
    signature_policy_path: Optional[str] = None
    decrypt_config: Optional[DecryptConfig] = None


@dataclass
class ArtifactPushOptions(RegistryOptions):
    digest_file: Optional[str] = None
    encrypt_layers: list[int] = field(default_factory=list)
    encryption_keys: list[str] = field(default_factory=list)
    sign_by_sigstore_param_file: Optional[str] = None
    sign_passphrase_file: Optional[str] = None
    # Set only by the CLI; overrides insecure_skip_tls_verify
    tls_verify_cli: Optional[bool] = None


@dataclass
class ArtifactRemoveOptions:
    all: bool = False
