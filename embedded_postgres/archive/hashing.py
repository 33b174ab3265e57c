"""Hashing helpers for archive verification."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

from embedded_postgres.errors import IntegrityError


_SHA256_PATTERN = re.compile(r"[0-9a-f]{64}")


def calculate_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as source:
        for chunk in iter(lambda: source.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def parse_hash_text(text: str) -> str:
    for token in text.split():
        if token:
            return normalise_digest(token)
    raise IntegrityError("Hash file did not contain a digest")


def normalise_digest(value: str) -> str:
    """Return ``value`` as a lower-case SHA-256 hex string.

    Accepts the ``sha256:<hex>`` and ``sha256=<hex>`` forms published by
    release APIs.
    """

    digest = value.strip()
    for separator in (":", "="):
        if separator in digest:
            algorithm, digest = digest.split(separator, 1)
            if algorithm.strip().lower() != "sha256":
                raise IntegrityError(f"Unsupported digest algorithm: {algorithm.strip()}")
            break
    digest = digest.strip().lower()
    if not _SHA256_PATTERN.fullmatch(digest):
        raise IntegrityError(f"Not a SHA-256 digest: {value.strip()!r}")
    return digest


def verify_digest(expected: str, actual: str) -> None:
    expected_normalised = normalise_digest(expected)
    if expected_normalised != actual.lower():
        raise IntegrityError(
            f"Archive hash mismatch: expected {expected_normalised} but received {actual}",
            expected=expected_normalised,
            actual=actual,
        )
