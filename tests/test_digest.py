"""Tests for content digests."""

import hashlib

import pytest

from libartifact import digest as digests
from libartifact.errors import MalformedDigestError, ValidationError


def test_compute_sha256():
    expected = "sha256:" + hashlib.sha256(b"hello").hexdigest()
    assert digests.compute(b"hello") == expected


def test_compute_sha512():
    value = digests.compute(b"hello", "sha512")
    assert value.startswith("sha512:")
    assert len(digests.hex_part(value)) == 128


def test_compute_rejects_unknown_algorithm():
    with pytest.raises(ValueError):
        digests.compute(b"x", "md5")


def test_compute_file_matches_compute(tmp_path):
    path = tmp_path / "big.bin"
    data = b"0123456789" * 300_000
    path.write_bytes(data)
    assert digests.compute_file(path) == digests.compute(data)


@pytest.mark.parametrize("value", [
    "",
    "sha256",
    "sha256:",
    "sha256:xyz",
    "sha256:" + "a" * 63,
    "sha256:" + "A" * 64,
    "md5:" + "a" * 32,
    "sha512:" + "a" * 64,
])
def test_validate_rejects_malformed(value):
    assert digests.validate(value) is False
    with pytest.raises(MalformedDigestError):
        digests.parse(value)


def test_malformed_digest_is_a_validation_error():
    with pytest.raises(ValidationError):
        digests.parse("nope")


def test_parse_returns_value():
    value = digests.compute(b"abc")
    assert digests.parse(value) == value
    assert digests.algorithm_of(value) == "sha256"


def test_short_and_matches():
    value = digests.compute(b"abc")
    assert digests.short(value) == digests.hex_part(value)[:12]
    assert digests.matches(b"abc", value)
    assert not digests.matches(b"abd", value)
