"""Credential fingerprints: notice a rotated key without keeping the key itself."""

from __future__ import annotations

import hashlib


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def credential_fingerprint(value: str | None) -> str | None:
    """Digest of a credential value, or ``None`` when it is unset or blank.

    Surrounding whitespace is ignored so a trailing newline in an exported
    variable does not read as a rotation.
    """

    if value is None or not value.strip():
        return None
    return sha256_text(value.strip())


__all__ = ["credential_fingerprint", "sha256_text"]
