"""Content digests: compute and validate ``<algorithm>:<hex>`` strings."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Union

from .errors import MalformedDigestError

DEFAULT_ALGORITHM = "sha256"

# Hex length per supported algorithm
_HEX_LENGTHS = {
    "sha256": 64,
    "sha512": 128,
}

_DIGEST_RE = re.compile(r"^(?P<algorithm>[a-z0-9]+):(?P<hex>[a-f0-9]+)$")

_CHUNK_SIZE = 1024 * 1024


def compute(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    if algorithm not in _HEX_LENGTHS:
        raise ValueError(f"Unsupported digest algorithm: {algorithm}")
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def compute_file(path: Union[str, Path], algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Digest a file without loading it into memory."""
    if algorithm not in _HEX_LENGTHS:
        raise ValueError(f"Unsupported digest algorithm: {algorithm}")
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            h.update(chunk)
    return f"{algorithm}:{h.hexdigest()}"


def validate(value: str) -> bool:
    if not isinstance(value, str):
        return False
    m = _DIGEST_RE.match(value)
    if not m:
        return False
    expected = _HEX_LENGTHS.get(m.group("algorithm"))
    return expected is not None and len(m.group("hex")) == expected


def parse(value: str) -> str:
    """Return ``value`` unchanged if it is a well-formed digest."""
    if not validate(value):
        raise MalformedDigestError(f"Malformed digest: {value!r}")
    return value


def algorithm_of(value: str) -> str:
    return parse(value).split(":", 1)[0]


def hex_part(value: str) -> str:
    return parse(value).split(":", 1)[1]


def short(value: str, length: int = 12) -> str:
    """Abbreviated hex for display."""
    return hex_part(value)[:length]


def matches(data: bytes, value: str) -> bool:
    """True when ``data`` hashes to ``value``."""
    return compute(data, algorithm_of(value)) == value
