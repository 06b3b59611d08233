"""
docgen-orchestrator - shared plumbing for vendor SDK adapters

File: src/docgen_orchestrator/synthesis_plane/backends/sdk.py
Last updated: 2026-10-19

Purpose
- Hold what the OpenAI and Anthropic adapters have in common: lazy SDK import,
  credential lookup, exception classification, and tolerant response readers.

Functional requirements
- The SDK is imported on first send, so the package works without the extras.
- The credential is read when the client is built, from the same environment
  mapping the backend registry checks, so a rotated key is picked up by a fresh
  adapter without a restart.
- SDK responses may be objects or plain mappings (injected test clients).
"""

from __future__ import annotations

import importlib
import os
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, ClassVar

from docgen_orchestrator.synthesis_plane.backends.base import (
    BackendError,
    BackendResponse,
    ConfigurationError,
    Message,
    classify_exception,
)

if TYPE_CHECKING:
    from typing import Self

    from docgen_orchestrator.synthesis_plane.registry import BackendConfig


class SdkBackend:
    """Template for adapters that wrap an async vendor client.

    Subclasses name the SDK module, client class and default key variable, and
    implement ``_request`` and ``_parse``.
    """

    adapter_name: ClassVar[str]
    sdk_module: ClassVar[str]
    client_class: ClassVar[str]
    default_key_env: ClassVar[str]

    def __init__(
        self,
        *,
        model: str,
        name: str | None = None,
        api_key: str | None = None,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        client: object | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.model = _required(model, "model")
        self.name = _required(self.adapter_name if name is None else name, "name")
        self._api_key = _optional(api_key, "api_key")
        self._api_key_env = _optional(api_key_env, "api_key_env") or self.default_key_env
        self._base_url = _optional(base_url, "base_url")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._environ = environ

    @classmethod
    def from_config(
        cls, config: BackendConfig, environ: Mapping[str, str] | None = None
    ) -> Self:
        return cls(
            model=config.model,
            name=config.name,
            api_key_env=config.credential_env,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            environ=environ,
        )

    async def send(self, messages: Sequence[Message], max_tokens: int) -> BackendResponse:
        if max_tokens <= 0:
            raise ConfigurationError(
                f"max_tokens must be positive, got {max_tokens}", backend=self.name
            )
        request = self._request(messages, max_tokens)
        try:
            client = self._client if self._client is not None else self._connect()
            raw = await self._call(client, request)
        except BackendError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise classify_exception(exc, backend=self.name) from exc
        return self._parse(raw)

    def _request(self, messages: Sequence[Message], max_tokens: int) -> dict[str, object]:
        raise NotImplementedError

    async def _call(self, client: object, request: dict[str, object]) -> object:
        raise NotImplementedError

    def _parse(self, raw: object) -> BackendResponse:
        raise NotImplementedError

    def _client_options(self) -> dict[str, object]:
        options: dict[str, object] = {"api_key": self._credential()}
        if self._base_url is not None:
            options["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            options["timeout"] = self._timeout_seconds
        return options

    def _connect(self) -> object:
        try:
            module = importlib.import_module(self.sdk_module)
        except ImportError as exc:
            raise ConfigurationError(
                f"{self.sdk_module} SDK is not installed "
                f"(pip install docgen-orchestrator[{self.sdk_module}])",
                backend=self.name,
            ) from exc
        factory = getattr(module, self.client_class, None)
        if factory is None:
            raise ConfigurationError(
                f"{self.sdk_module} SDK has no {self.client_class}", backend=self.name
            )
        self._client = factory(**self._client_options())
        return self._client

    def _credential(self) -> str:
        if self._api_key is not None:
            return self._api_key
        environ = os.environ if self._environ is None else self._environ
        value = environ.get(self._api_key_env, "")
        if not value.strip():
            raise ConfigurationError(
                f"env var {self._api_key_env} holds no API key", backend=self.name
            )
        return value


def field_of(source: object, key: str) -> object | None:
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def items_of(source: object, key: str) -> tuple[object, ...]:
    value = field_of(source, key)
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return tuple(value)
    return ()


def text_of(source: object, key: str) -> str | None:
    value = field_of(source, key)
    return value if isinstance(value, str) and value.strip() else None


def count_of(source: object, key: str) -> int | None:
    value = field_of(source, key)
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _required(value: str, label: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{label} must be a string")
    if not value.strip():
        raise ValueError(f"{label} cannot be empty")
    return value.strip()


def _optional(value: str | None, label: str) -> str | None:
    return None if value is None else _required(value, label)


__all__ = ["SdkBackend", "count_of", "field_of", "items_of", "text_of"]
