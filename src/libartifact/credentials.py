"""Registry credential resolution."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from .errors import ValidationError
from .options import RegistryOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


class CredentialSource(Protocol):
    def resolve(self, registry: str, options: RegistryOptions) -> Optional[Credentials]:
        ...


def _split_user_pass(value: str, origin: str) -> Credentials:
    username, sep, password = value.partition(":")
    if not sep or not username:
        raise ValidationError(f"{origin} must have the form USERNAME:PASSWORD")
    return Credentials(username=username, password=password)


class DefaultCredentialSource:
    """Resolves credentials from options, then from a containers auth file.

    Lookup order: ``credentials_cli`` ("user:pass"), ``username`` +
    ``password``, the ``auths`` entry for the registry in
    ``auth_file_path`` (or ``default_auth_file``). No match means anonymous.
    """

    def __init__(self, default_auth_file: Optional[str] = None):
        self.default_auth_file = default_auth_file

    def resolve(self, registry: str, options: RegistryOptions) -> Optional[Credentials]:
        if options.credentials_cli and (options.username or options.password):
            raise ValidationError("credentials and username/password are mutually exclusive")

        if options.credentials_cli:
            return _split_user_pass(options.credentials_cli, "credentials")

        if options.username or options.password:
            if not options.username or options.password is None:
                raise ValidationError("username and password must be given together")
            return Credentials(username=options.username, password=options.password)

        auth_file = options.auth_file_path or self.default_auth_file
        if not auth_file:
            return None
        return self._from_auth_file(Path(auth_file).expanduser(), registry, explicit=bool(options.auth_file_path))

    def _from_auth_file(self, path: Path, registry: str, explicit: bool) -> Optional[Credentials]:
        if not path.exists():
            if explicit:
                raise ValidationError(f"Auth file not found: {path}")
            return None

        try:
            data = json.loads(path.read_text())
        except ValueError as e:
            raise ValidationError(f"Auth file {path} is not valid JSON") from e

        entry = (data.get("auths") or {}).get(registry)
        if not entry or not entry.get("auth"):
            logger.debug("No credentials for %s in %s", registry, path)
            return None

        try:
            decoded = base64.b64decode(entry["auth"], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValidationError(f"Auth entry for {registry} in {path} is not valid base64") from e
        return _split_user_pass(decoded, f"Auth entry for {registry}")
