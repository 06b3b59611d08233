"""
docgen-orchestrator - backend capability and shared error taxonomy

File: src/docgen_orchestrator/synthesis_plane/backends/base.py
Last updated: 2026-10-19

Purpose
- Uniform ``send(messages, max_tokens)`` capability implemented once per AI backend.
- Normalized request/response models and the classified error taxonomy.

What should be included in this file
- Role-tagged message model and normalized response/usage models.
- Error classes carrying machine-readable kind and retryability.
- Vendor exception classification shared by every adapter.
- Registry mapping adapter names to backend factories.

Functional requirements
- The orchestrator is written only against ``BackendProtocol``.

Non-functional requirements
- Error details must never carry raw credentials.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Final, Protocol, TypeAlias, runtime_checkable

from docgen_orchestrator.security.redaction import redact_text

if TYPE_CHECKING:
    from docgen_orchestrator.synthesis_plane.registry import BackendConfig

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

MESSAGE_ROLES: Final[tuple[str, ...]] = ("system", "user", "assistant")


def _validate_non_empty_str(value: str, field_name: str, *, strip: bool = True) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip() if strip else value
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


@dataclass(frozen=True, slots=True)
class Message:
    """One role-tagged chat message."""

    role: str
    content: str

    def __post_init__(self) -> None:
        role = _validate_non_empty_str(self.role, "Message.role").lower()
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Message.role must be one of {', '.join(MESSAGE_ROLES)}")
        object.__setattr__(self, "role", role)
        if not isinstance(self.content, str):
            raise TypeError("Message.content must be a string")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class BackendUsage:
    """Token accounting for one backend response."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")
        if self.total_tokens < 0:
            raise ValueError("total_tokens must be >= 0")
        if self.total_tokens == 0 and (self.input_tokens or self.output_tokens):
            object.__setattr__(self, "total_tokens", self.input_tokens + self.output_tokens)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class BackendResponse:
    """Normalized backend reply: text plus optional usage metadata."""

    text: str
    usage: BackendUsage | None = None
    model: str | None = None
    finish_reason: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            raise TypeError("BackendResponse.text must be a string")
        if self.usage is not None and not isinstance(self.usage, BackendUsage):
            raise TypeError("BackendResponse.usage must be BackendUsage")

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"text": self.text}
        if self.usage is not None:
            payload["usage"] = self.usage.to_dict()
        if self.model is not None:
            payload["model"] = self.model
        if self.finish_reason is not None:
            payload["finish_reason"] = self.finish_reason
        if self.request_id is not None:
            payload["request_id"] = self.request_id
        return payload


@runtime_checkable
class BackendProtocol(Protocol):
    """Capability implemented by every concrete backend adapter."""

    async def send(self, messages: Sequence[Message], max_tokens: int) -> BackendResponse:
        """Send one role-tagged conversation and return the normalized reply."""


# Factories receive the environment the registry checks credentials against.
BackendFactory: TypeAlias = Callable[["BackendConfig", Mapping[str, str]], BackendProtocol]


class ErrorKind(StrEnum):
    """Machine-readable error classification."""

    CONFIGURATION = "configuration"
    AUTH = "auth"
    REJECTED = "rejected"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    CIRCUIT_OPEN = "circuit_open"


FATAL_ERROR_KINDS: Final[frozenset[ErrorKind]] = frozenset(
    {ErrorKind.CONFIGURATION, ErrorKind.AUTH, ErrorKind.REJECTED}
)


class BackendError(RuntimeError):
    """Base classified backend error with deterministic machine-readable fields."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        retryable: bool = False,
        http_status: int | None = None,
    ) -> None:
        self.backend = _validate_non_empty_str(backend, "backend")
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [
            f"backend={self.backend}",
            f"kind={self.kind.value}",
            f"retryable={str(self.retryable).lower()}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_ERROR_KINDS

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "backend": self.backend,
            "kind": self.kind.value,
            "retryable": self.retryable,
            "detail": self.detail,
        }
        if self.http_status is not None:
            payload["http_status"] = self.http_status
        return payload


class ConfigurationError(BackendError):
    """Missing or invalid backend configuration. Fatal and surfaced immediately."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, detail: str, *, backend: str = "backend") -> None:
        super().__init__(detail, backend=backend, retryable=False)


class AuthError(BackendError):
    """Credentials rejected by the backend. Fatal; the backend is quarantined."""

    kind = ErrorKind.AUTH

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        http_status: int | None = None,
    ) -> None:
        super().__init__(detail, backend=backend, retryable=False, http_status=http_status)


class RequestRejectedError(BackendError):
    """Backend refused this request (unknown model, prompt too long, other 4xx).

    Not retried on the same backend, but the next backend may still accept it.
    """

    kind = ErrorKind.REJECTED

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        http_status: int | None = None,
    ) -> None:
        super().__init__(detail, backend=backend, retryable=False, http_status=http_status)


class RateLimitError(BackendError):
    """Backend signaled throttling; retried honoring ``retry_after_seconds``."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        retry_after_seconds: float | None = None,
        http_status: int | None = 429,
    ) -> None:
        if retry_after_seconds is not None and retry_after_seconds < 0:
            raise ValueError("retry_after_seconds must be >= 0")
        self.retry_after_seconds = retry_after_seconds
        super().__init__(detail, backend=backend, retryable=True, http_status=http_status)

    def to_dict(self) -> dict[str, JSONValue]:
        payload = super().to_dict()
        if self.retry_after_seconds is not None:
            payload["retry_after_seconds"] = self.retry_after_seconds
        return payload


class TransientError(BackendError):
    """Timeouts, dropped connections, and 5xx-class failures."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        http_status: int | None = None,
    ) -> None:
        super().__init__(detail, backend=backend, retryable=True, http_status=http_status)


class CircuitOpenError(BackendError):
    """Breaker rejected the call without contacting the backend."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(
        self,
        detail: str = "circuit breaker is open",
        *,
        backend: str = "backend",
        retry_at: float | None = None,
    ) -> None:
        self.retry_at = retry_at
        super().__init__(detail, backend=backend, retryable=False)


def is_retryable_error(error: BaseException) -> bool:
    """Return retryability classification for classified backend errors."""

    return isinstance(error, BackendError) and error.retryable


def classify_exception(exc: BaseException, *, backend: str) -> BackendError:
    """Map an arbitrary SDK/transport exception onto the backend error taxonomy."""

    if isinstance(exc, BackendError):
        return exc

    status_code = read_status_code(exc)
    class_name = exc.__class__.__name__.lower()
    detail = _exception_detail(exc)

    if status_code in {401, 403} or "auth" in class_name or "permission" in class_name:
        return AuthError(detail, backend=backend, http_status=status_code)

    if status_code == 429 or "ratelimit" in class_name:
        return RateLimitError(
            detail,
            backend=backend,
            retry_after_seconds=read_retry_after(exc),
            http_status=status_code,
        )

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or "timeout" in class_name:
        return TransientError(detail, backend=backend, http_status=status_code)

    if status_code is not None and status_code >= 500:
        return TransientError(detail, backend=backend, http_status=status_code)

    if status_code in {400, 404, 409, 413, 422} or "badrequest" in class_name:
        return RequestRejectedError(detail, backend=backend, http_status=status_code)

    if isinstance(exc, (ConnectionError, OSError)) or "connection" in class_name:
        return TransientError(detail, backend=backend, http_status=status_code)

    return TransientError(detail, backend=backend, http_status=status_code)


def read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int) and not isinstance(nested, bool):
            return nested
    return None


def read_retry_after(exc: BaseException) -> float | None:
    """Return the server ``Retry-After`` hint in seconds, if one is attached."""

    direct = getattr(exc, "retry_after", None)
    if isinstance(direct, (int, float)) and not isinstance(direct, bool) and direct >= 0:
        return float(direct)

    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not isinstance(headers, Mapping):
        return None
    for header in ("retry-after", "Retry-After", "retry-after-ms"):
        raw = headers.get(header)
        if raw is None:
            continue
        try:
            parsed = float(str(raw).strip())
        except ValueError:
            continue
        if parsed < 0:
            continue
        return parsed / 1000.0 if header.endswith("-ms") else parsed
    return None


class AdapterRegistry:
    """Registry mapping adapter names (``openai``, ``anthropic``...) to backend factories."""

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}

    def register(self, name: str, factory: BackendFactory, *, overwrite: bool = False) -> None:
        normalized = _validate_non_empty_str(name, "name").lower()
        if normalized in self._factories and not overwrite:
            raise ValueError(f"adapter already registered: {normalized}")
        self._factories[normalized] = factory

    def is_registered(self, name: str) -> bool:
        return _validate_non_empty_str(name, "name").lower() in self._factories

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def create(
        self, config: BackendConfig, *, environ: Mapping[str, str] | None = None
    ) -> BackendProtocol:
        normalized = config.adapter.lower()
        factory = self._factories.get(normalized)
        if factory is None:
            raise ConfigurationError(
                f"adapter {normalized!r} is not registered",
                backend=config.name,
            )
        adapter = factory(config, os.environ if environ is None else environ)
        if not isinstance(adapter, BackendProtocol):
            raise TypeError(f"adapter factory returned invalid backend for {config.name}")
        return adapter


def _exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return text
    return exc.__class__.__name__


def _normalize_detail(value: object) -> str:
    text = redact_text(str(value)).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


__all__ = [
    "AdapterRegistry",
    "AuthError",
    "BackendError",
    "BackendFactory",
    "BackendProtocol",
    "BackendResponse",
    "BackendUsage",
    "CircuitOpenError",
    "ConfigurationError",
    "ErrorKind",
    "FATAL_ERROR_KINDS",
    "JSONValue",
    "MESSAGE_ROLES",
    "Message",
    "RateLimitError",
    "RequestRejectedError",
    "TransientError",
    "classify_exception",
    "is_retryable_error",
    "read_retry_after",
    "read_status_code",
]
