"""Configuration for libartifact."""

import os

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .sync import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY

DEFAULT_STORAGE_PATH = "~/.local/share/libartifact"


@dataclass
class RetryConfig:
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: str = DEFAULT_RETRY_DELAY


@dataclass
class ArtifactConfig:
    """Defaults applied when an operation's options leave a setting unset."""
    storage_path: Optional[str] = DEFAULT_STORAGE_PATH
    tls_verify: bool = True
    cert_dir: Optional[str] = None
    auth_file: Optional[str] = None
    registry_scheme: str = "https"
    timeout: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    log_level: str = "INFO"

    @property
    def resolved_storage_path(self) -> Optional[Path]:
        if not self.storage_path:
            return None
        return Path(self.storage_path).expanduser()

    @classmethod
    def from_dict(cls, data: dict) -> "ArtifactConfig":
        retry_data = data.get("retry", {}) or {}
        return cls(
            storage_path=data.get("storage_path", DEFAULT_STORAGE_PATH),
            tls_verify=data.get("tls_verify", True),
            cert_dir=data.get("cert_dir"),
            auth_file=data.get("auth_file"),
            registry_scheme=data.get("registry_scheme", "https"),
            timeout=float(data.get("timeout", 30.0)),
            retry=RetryConfig(
                max_retries=int(retry_data.get("max_retries", DEFAULT_MAX_RETRIES)),
                retry_delay=str(retry_data.get("retry_delay", DEFAULT_RETRY_DELAY)),
            ),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None, base: Optional["ArtifactConfig"] = None) -> "ArtifactConfig":
        """Overlay ``LIBARTIFACT_*`` variables on ``base`` (or the defaults)."""
        src = os.environ if env is None else env
        config = base or cls()

        def clean(name: str) -> Optional[str]:
            value = src.get(name)
            if value is None:
                return None
            v = str(value).strip()
            return v or None

        if clean("LIBARTIFACT_STORAGE_PATH"):
            config.storage_path = clean("LIBARTIFACT_STORAGE_PATH")
        if clean("LIBARTIFACT_TLS_VERIFY"):
            config.tls_verify = clean("LIBARTIFACT_TLS_VERIFY").lower() not in ("0", "false", "no", "off")
        if clean("LIBARTIFACT_CERT_DIR"):
            config.cert_dir = clean("LIBARTIFACT_CERT_DIR")
        auth_file = clean("LIBARTIFACT_AUTH_FILE") or clean("REGISTRY_AUTH_FILE")
        if auth_file:
            config.auth_file = auth_file
        if clean("LIBARTIFACT_REGISTRY_SCHEME"):
            config.registry_scheme = clean("LIBARTIFACT_REGISTRY_SCHEME")
        if clean("LIBARTIFACT_TIMEOUT"):
            config.timeout = float(clean("LIBARTIFACT_TIMEOUT"))
        if clean("LIBARTIFACT_MAX_RETRIES"):
            config.retry.max_retries = int(clean("LIBARTIFACT_MAX_RETRIES"))
        if clean("LIBARTIFACT_RETRY_DELAY"):
            config.retry.retry_delay = clean("LIBARTIFACT_RETRY_DELAY")
        if clean("LIBARTIFACT_LOG_LEVEL"):
            config.log_level = clean("LIBARTIFACT_LOG_LEVEL").upper()
        return config

    def to_dict(self) -> dict:
        return asdict(self)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)


def load_config(config_path: Optional[str | Path] = None) -> ArtifactConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        return ArtifactConfig.from_env()
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    return ArtifactConfig.from_env(base=ArtifactConfig.from_dict(data))
