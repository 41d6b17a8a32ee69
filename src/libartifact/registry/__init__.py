"""libartifact registry - development OCI registry for local testing."""

from .server import create_app
from .storage import RegistryStorage

__all__ = [
    "create_app",
    "RegistryStorage",
]
