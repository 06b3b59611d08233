"""
docgen-orchestrator - backend registry

File: src/docgen_orchestrator/synthesis_plane/registry.py
Last updated: 2026-10-19

Purpose
- Hold the configured AI backends and answer "which backends are usable right now".

What should be included in this file
- Immutable ``BackendConfig`` records.
- Credential-presence filtering and stable priority ordering.
- Quarantine of backends whose credentials were rejected.

Functional requirements
- Credentials are late-bound: presence is re-checked against the live environment.
- A quarantined backend becomes usable again once its credential value changes.

Non-functional requirements
- Pure data filtering; no network calls. Credential values are never stored.
"""

from __future__ import annotations

import os
import re
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from docgen_orchestrator.constants import (
    DEFAULT_BACKEND_TIMEOUT_SECONDS,
    DEFAULT_MAX_OUTPUT_TOKENS,
)
from docgen_orchestrator.synthesis_plane.backends.base import ConfigurationError
from docgen_orchestrator.utils.hashing import credential_fingerprint

_ENV_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_BACKEND_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{field_name} cannot be empty")
    return parsed


@dataclass(frozen=True, slots=True)
class BackendConfig:
    """One configured AI backend. Immutable after load."""

    name: str
    model: str
    priority: int = 100
    credential_env: str | None = None
    timeout_seconds: float = DEFAULT_BACKEND_TIMEOUT_SECONDS
    adapter: str = "openai"
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    base_url: str | None = None

    def __post_init__(self) -> None:
        name = _validate_non_empty_str(self.name, "BackendConfig.name").lower()
        if not _BACKEND_NAME_PATTERN.fullmatch(name):
            raise ValueError(
                "BackendConfig.name must contain only lowercase letters, digits, '.', '_' or '-'"
            )
        object.__setattr__(self, "name", name)
        object.__setattr__(
            self, "model", _validate_non_empty_str(self.model, "BackendConfig.model")
        )
        object.__setattr__(
            self, "adapter", _validate_non_empty_str(self.adapter, "BackendConfig.adapter").lower()
        )

        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise TypeError("BackendConfig.priority must be an integer")

        if self.credential_env is not None:
            env_name = _validate_non_empty_str(self.credential_env, "BackendConfig.credential_env")
            if not _ENV_NAME_PATTERN.fullmatch(env_name):
                raise ValueError("BackendConfig.credential_env must be an env var name")
            object.__setattr__(self, "credential_env", env_name)

        if isinstance(self.timeout_seconds, bool) or not isinstance(
            self.timeout_seconds, (int, float)
        ):
            raise TypeError("BackendConfig.timeout_seconds must be numeric")
        if self.timeout_seconds <= 0:
            raise ValueError("BackendConfig.timeout_seconds must be > 0")
        object.__setattr__(self, "timeout_seconds", float(self.timeout_seconds))

        if isinstance(self.max_output_tokens, bool) or not isinstance(self.max_output_tokens, int):
            raise TypeError("BackendConfig.max_output_tokens must be an integer")
        if self.max_output_tokens <= 0:
            raise ValueError("BackendConfig.max_output_tokens must be > 0")

        if self.base_url is not None:
            object.__setattr__(
                self, "base_url", _validate_non_empty_str(self.base_url, "BackendConfig.base_url")
            )

    @property
    def requires_credentials(self) -> bool:
        return self.credential_env is not None

    def has_credentials(self, environ: Mapping[str, str]) -> bool:
        """Return whether the referenced credential is present (non-blank)."""

        if self.credential_env is None:
            return True
        value = environ.get(self.credential_env)
        return value is not None and bool(value.strip())

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "model": self.model,
            "priority": self.priority,
            "credential_env": self.credential_env,
            "timeout_seconds": self.timeout_seconds,
            "adapter": self.adapter,
            "max_output_tokens": self.max_output_tokens,
            "base_url": self.base_url,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> BackendConfig:
        known = {
            "name",
            "model",
            "priority",
            "credential_env",
            "timeout_seconds",
            "adapter",
            "max_output_tokens",
            "base_url",
        }
        unknown = sorted(key for key in payload if key not in known)
        if unknown:
            raise ValueError(f"unknown backend fields: {', '.join(unknown)}")
        return cls(**{key: payload[key] for key in known if key in payload})


@dataclass(frozen=True, slots=True)
class _Quarantine:
    reason: str
    credential_fingerprint: str | None


class BackendRegistry:
    """Registered backends in registration order, filtered by live credential state."""

    def __init__(
        self,
        backends: Iterable[BackendConfig] = (),
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._environ = environ
        self._backends: dict[str, BackendConfig] = {}
        self._quarantine: dict[str, _Quarantine] = {}
        self._lock = threading.Lock()
        for backend in backends:
            self.register(backend)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
    ) -> BackendRegistry:
        """Build a registry from a loaded config mapping (``[[backends]]`` tables)."""

        raw_backends = config.get("backends", ())
        if not isinstance(raw_backends, Sequence) or isinstance(raw_backends, (str, bytes)):
            raise ConfigurationError("backends must be an array of tables", backend="config")
        backends: list[BackendConfig] = []
        for index, entry in enumerate(raw_backends):
            if not isinstance(entry, Mapping):
                raise ConfigurationError(f"backends[{index}] must be a table", backend="config")
            try:
                backends.append(BackendConfig.from_mapping(entry))
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"backends[{index}]: {exc}", backend="config") from exc
        return cls(backends, environ=environ)

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def register(self, backend: BackendConfig) -> None:
        if not isinstance(backend, BackendConfig):
            raise TypeError("backend must be a BackendConfig")
        with self._lock:
            if backend.name in self._backends:
                raise ValueError(f"backend already registered: {backend.name}")
            self._backends[backend.name] = backend

    def get(self, name: str) -> BackendConfig:
        key = _validate_non_empty_str(name, "name").lower()
        with self._lock:
            backend = self._backends.get(key)
        if backend is None:
            raise KeyError(f"unknown backend: {key}")
        return backend

    def names(self) -> tuple[str, ...]:
        """Registered backend names in registration order."""

        with self._lock:
            return tuple(self._backends)

    def __len__(self) -> int:
        with self._lock:
            return len(self._backends)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        with self._lock:
            return name.strip().lower() in self._backends

    def list_usable_backends(self) -> list[BackendConfig]:
        """Usable backends sorted by ascending priority, ties in registration order."""

        with self._lock:
            registered = list(self._backends.values())
        usable = [backend for backend in registered if self._is_usable(backend)]
        # list.sort is stable, so equal priorities keep registration order.
        usable.sort(key=lambda backend: backend.priority)
        return usable

    def validate(self, name: str) -> bool:
        """Re-check whether ``name`` is usable given credentials available right now."""

        try:
            backend = self.get(name)
        except KeyError:
            return False
        return self._is_usable(backend)

    def unusable_reason(self, name: str) -> str | None:
        """Human-readable reason ``name`` is filtered out, ``None`` when usable."""

        try:
            backend = self.get(name)
        except KeyError:
            return "not registered"
        if not backend.has_credentials(self.environ):
            return f"missing credential {backend.credential_env}"
        quarantine = self._active_quarantine(backend)
        if quarantine is not None:
            return f"quarantined: {quarantine.reason}"
        return None

    def quarantine(self, name: str, reason: str) -> None:
        """Mark ``name`` unusable until its credential is reconfigured."""

        backend = self.get(name)
        with self._lock:
            self._quarantine[backend.name] = _Quarantine(
                reason=_validate_non_empty_str(reason, "reason"),
                credential_fingerprint=self._credential_fingerprint(backend),
            )

    def release(self, name: str) -> None:
        backend = self.get(name)
        with self._lock:
            self._quarantine.pop(backend.name, None)

    def is_quarantined(self, name: str) -> bool:
        return self._active_quarantine(self.get(name)) is not None

    def _is_usable(self, backend: BackendConfig) -> bool:
        if not backend.has_credentials(self.environ):
            return False
        return self._active_quarantine(backend) is None

    def _active_quarantine(self, backend: BackendConfig) -> _Quarantine | None:
        with self._lock:
            entry = self._quarantine.get(backend.name)
            if entry is None:
                return None
            if entry.credential_fingerprint != self._credential_fingerprint(backend):
                # Credential rotated since the rejection: give the backend another chance.
                del self._quarantine[backend.name]
                return None
            return entry

    def _credential_fingerprint(self, backend: BackendConfig) -> str | None:
        if backend.credential_env is None:
            return None
        return credential_fingerprint(self.environ.get(backend.credential_env))


__all__ = ["BackendConfig", "BackendRegistry"]
