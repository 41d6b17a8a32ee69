"""libartifact – content-addressable artifact store with registry push/pull"""

__version__ = "0.1.0"

from .config import ArtifactConfig, RetryConfig, load_config
from .encryption import EncryptionCoordinator, FernetEnvelope
from .errors import (
    AlreadyExistsError,
    AmbiguousSelectorError,
    ArtifactError,
    AuthenticationError,
    ConcurrentModificationError,
    DecryptionError,
    DigestMismatchError,
    EncryptionError,
    EncryptionKeyInvalidError,
    InvalidSelectorError,
    LayerIndexOutOfRangeError,
    MalformedDigestError,
    ManifestNotFoundError,
    MissingEncryptionKeyError,
    NotFoundError,
    OperationCancelledError,
    PolicyDeniedError,
    SelectorRequiredError,
    SigningError,
    TerminalTransportError,
    TransientTransportError,
    TransportError,
    ValidationError,
)
from .facade import ArtifactFacade
from .models import Artifact, ArtifactBundle, ArtifactDescriptor, Blob, BlobSource
from .options import (
    ArtifactAddOptions,
    ArtifactExtractOptions,
    ArtifactInspectOptions,
    ArtifactListOptions,
    ArtifactPullOptions,
    ArtifactPushOptions,
    ArtifactRemoveOptions,
    DecryptConfig,
    DigestSelector,
    TitleSelector,
)
from .reference import ArtifactReference
from .reports import (
    ArtifactAddReport,
    ArtifactInspectReport,
    ArtifactListReport,
    ArtifactPullReport,
    ArtifactPushReport,
    ArtifactRemoveReport,
)
from .store import LocalArtifactStore
from .sync import RegistrySyncEngine, RetryPolicy, SessionState, parse_duration
from .transport import HttpRegistryTransport, RawArtifact, TLSPolicy

__all__ = [
    # Facade
    "ArtifactFacade",
    # Components
    "LocalArtifactStore",
    "RegistrySyncEngine",
    "EncryptionCoordinator",
    "FernetEnvelope",
    "HttpRegistryTransport",
    "RawArtifact",
    "TLSPolicy",
    "RetryPolicy",
    "SessionState",
    "parse_duration",
    # Models
    "Artifact",
    "ArtifactBundle",
    "ArtifactDescriptor",
    "ArtifactReference",
    "Blob",
    "BlobSource",
    # Options
    "ArtifactAddOptions",
    "ArtifactExtractOptions",
    "ArtifactInspectOptions",
    "ArtifactListOptions",
    "ArtifactPullOptions",
    "ArtifactPushOptions",
    "ArtifactRemoveOptions",
    "DecryptConfig",
    "DigestSelector",
    "TitleSelector",
    # Reports
    "ArtifactAddReport",
    "ArtifactInspectReport",
    "ArtifactListReport",
    "ArtifactPullReport",
    "ArtifactPushReport",
    "ArtifactRemoveReport",
    # Config
    "ArtifactConfig",
    "RetryConfig",
    "load_config",
    # Errors
    "ArtifactError",
    "ValidationError",
    "MalformedDigestError",
    "InvalidSelectorError",
    "SelectorRequiredError",
    "LayerIndexOutOfRangeError",
    "MissingEncryptionKeyError",
    "PolicyDeniedError",
    "NotFoundError",
    "AlreadyExistsError",
    "AmbiguousSelectorError",
    "ConcurrentModificationError",
    "EncryptionError",
    "EncryptionKeyInvalidError",
    "DecryptionError",
    "SigningError",
    "OperationCancelledError",
    "TransportError",
    "TransientTransportError",
    "TerminalTransportError",
    "AuthenticationError",
    "ManifestNotFoundError",
    "DigestMismatchError",
]
