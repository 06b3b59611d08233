"""
docgen-orchestrator - secret redaction

File: src/docgen_orchestrator/security/redaction.py
Last updated: 2026-10-19

Purpose
- Keep backend credentials out of log lines, classified backend errors and
  diagnostics snapshots.

What should be included in this file
- Key-name rules (``api_key``, ``clientSecret``, ``*_token`` ...).
- Text patterns for the vendor key formats the adapters handle.

Functional requirements
- Redacting an already redacted value is a no-op.
- Token counts and budgets (``max_output_tokens``) are not mistaken for secrets.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "bearer_token",
        "client_secret",
        "credential",
        "credentials",
        "password",
        "private_key",
        "refresh_token",
        "secret",
        "secret_key",
        "token",
    }
)

_SENSITIVE_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_password",
    "_secret",
    "_token",
)

# Every pattern exposes the part to mask as the ``secret`` group; text around it is kept.
_SECRET_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"(?i)\bbearer\s+(?P<secret>[A-Za-z0-9\-._~+/=]{8,})"),
    re.compile(
        r"(?i)\b(?:password|secret|api[_-]?key|client[_-]?secret|access[_-]?token|token)\b"
        r"\s*[:=]\s*[\"']?(?P<secret>[A-Za-z0-9._~+/=-]{6,})"
    ),
    re.compile(r"\b(?P<secret>sk-ant-[A-Za-z0-9_-]{20,255})\b"),
    re.compile(r"\b(?P<secret>sk-[A-Za-z0-9_-]{20,255})\b"),
    re.compile(r"\b(?P<secret>AIza[0-9A-Za-z_-]{35})\b"),
    re.compile(r"\b(?P<secret>gh[pousr]_[A-Za-z0-9]{20,255})\b"),
)

_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_WORD_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[^a-z0-9]+")


def is_sensitive_key(key: str) -> bool:
    """True for key names whose values must never be emitted."""

    snake = _WORD_BOUNDARY.sub(r"\1_\2", _ACRONYM_BOUNDARY.sub(r"\1_\2", key.strip()))
    snake = _SEPARATORS.sub("_", snake.lower()).strip("_")
    return snake in DEFAULT_SENSITIVE_KEY_DENYLIST or snake.endswith(_SENSITIVE_SUFFIXES)


def redact_text(text: str, *, replacement: str = REDACTED_VALUE) -> str:
    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    def mask(match: re.Match[str]) -> str:
        start, end = match.span("secret")
        whole_start = match.start()
        whole = match.group(0)
        return whole[: start - whole_start] + replacement + whole[end - whole_start :]

    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(mask, text)
    return text


def redact_structure(value: object, *, replacement: str = REDACTED_VALUE) -> object:
    """Deep copy of ``value`` with sensitive keys and secret-shaped strings masked.

    Mapping keys come back sorted; lists stay lists and tuples stay tuples.
    """

    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        return {
            key: replacement
            if isinstance(key, str) and is_sensitive_key(key)
            else redact_structure(value[key], replacement=replacement)
            for key in sorted(value, key=str)
        }
    if isinstance(value, list):
        return [redact_structure(item, replacement=replacement) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_structure(item, replacement=replacement) for item in value)
    return value


__all__ = [
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
