"""
docgen-orchestrator - backend orchestrator

File: src/docgen_orchestrator/synthesis_plane/dispatch.py
Last updated: 2026-10-19

Purpose
- Route one generation request across the usable backends in priority order,
  falling back when a backend is exhausted, rejected, or circuit-open.

What should be included in this file
- Request/failure models and the composite ``BackendExhaustedError``.
- Adapter instance caching, credential quarantine, and a bounded fallback history.
- Diagnostics merging breaker state, metrics and registry usability.

Functional requirements
- First success wins; ``ConfigurationError`` is surfaced immediately.
- ``RequestRejectedError`` is fatal for the backend that raised it only.
- Tailored requests are rebuilt for every backend tried.
- ``AuthError`` quarantines the backend and moves on to the next one.

Non-functional requirements
- Safe for concurrent ``dispatch`` calls on one event loop.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog

from docgen_orchestrator.constants import DEFAULT_FALLBACK_HISTORY_LIMIT
from docgen_orchestrator.observability.logging import correlation_scope
from docgen_orchestrator.observability.metrics import MetricsStore
from docgen_orchestrator.synthesis_plane.backends.base import (
    AdapterRegistry,
    AuthError,
    BackendError,
    BackendProtocol,
    BackendResponse,
    ConfigurationError,
    ErrorKind,
    Message,
)
from docgen_orchestrator.synthesis_plane.circuit_breaker import CircuitBreakerBoard
from docgen_orchestrator.synthesis_plane.registry import BackendConfig, BackendRegistry
from docgen_orchestrator.synthesis_plane.retry import CallOutcome, RetryController
from docgen_orchestrator.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    """Conversation to send plus optional routing hints.

    With ``tailor`` set, the conversation is rebuilt for each backend tried, so
    a fallback to a model with a smaller window gets a prompt that fits it.
    """

    messages: tuple[Message, ...] = ()
    max_tokens: int | None = None
    preferred_backend: str | None = None
    tailor: Callable[[BackendConfig], Sequence[Message]] | None = None

    def __post_init__(self) -> None:
        messages = tuple(self.messages)
        if not messages and self.tailor is None:
            raise ValueError("messages cannot be empty")
        object.__setattr__(self, "messages", _checked_messages(messages))
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.preferred_backend is not None:
            preferred = self.preferred_backend.strip().lower()
            if not preferred:
                raise ValueError("preferred_backend cannot be empty")
            object.__setattr__(self, "preferred_backend", preferred)

    def messages_for(self, backend: BackendConfig) -> tuple[Message, ...]:
        if self.tailor is None:
            return self.messages
        tailored = tuple(self.tailor(backend))
        if not tailored:
            raise ValueError(f"tailored conversation for {backend.name} is empty")
        return _checked_messages(tailored)


def _checked_messages(messages: tuple[Message, ...]) -> tuple[Message, ...]:
    for message in messages:
        if not isinstance(message, Message):
            raise TypeError("messages must contain Message items")
    return messages


@dataclass(frozen=True, slots=True)
class BackendFailure:
    """Why one backend did not produce a response during a dispatch."""

    backend: str
    error_kind: ErrorKind
    message: str
    attempts: int

    def to_dict(self) -> dict[str, object]:
        return {
            "backend": self.backend,
            "error_kind": self.error_kind.value,
            "message": self.message,
            "attempts": self.attempts,
        }


class BackendExhaustedError(BackendError):
    """Every usable backend failed or was circuit-open."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, failures: Sequence[BackendFailure]) -> None:
        self.failures = tuple(failures)
        if self.failures:
            summary = "; ".join(
                f"{failure.backend}: {failure.error_kind.value} after "
                f"{failure.attempts} attempt(s) ({failure.message})"
                for failure in self.failures
            )
        else:
            summary = "no backend attempted"
        super().__init__(
            f"all backends exhausted: {summary}",
            backend="orchestrator",
            retryable=False,
        )

    @property
    def backends_tried(self) -> tuple[str, ...]:
        return tuple(failure.backend for failure in self.failures)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(super().to_dict())
        payload["failures"] = [failure.to_dict() for failure in self.failures]
        return payload


@dataclass(frozen=True, slots=True)
class FallbackEvent:
    """One hop from a failed backend to the next candidate."""

    from_backend: str
    to_backend: str | None
    error_kind: ErrorKind
    detail: str
    occurred_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        return {
            "from_backend": self.from_backend,
            "to_backend": self.to_backend,
            "error_kind": self.error_kind.value,
            "detail": self.detail,
            "occurred_at": self.occurred_at,
        }


class BackendOrchestrator:
    """Priority-ordered dispatch with per-backend breakers, retries and metrics."""

    def __init__(
        self,
        registry: BackendRegistry,
        adapters: AdapterRegistry,
        retry: RetryController,
        *,
        fallback_history_limit: int = DEFAULT_FALLBACK_HISTORY_LIMIT,
        wall_clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        if fallback_history_limit < 0:
            raise ValueError("fallback_history_limit must be >= 0")
        self.registry = registry
        self.adapters = adapters
        self.retry = retry
        self.fallback_history_limit = fallback_history_limit
        self._wall_clock = wall_clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._instances: dict[str, BackendProtocol] = {}
        self._instances_lock = threading.Lock()
        self._fallbacks: deque[FallbackEvent] = deque(maxlen=fallback_history_limit)

    @property
    def breakers(self) -> CircuitBreakerBoard:
        return self.retry.breakers

    @property
    def metrics(self) -> MetricsStore:
        return self.retry.metrics

    async def dispatch(
        self,
        request: DispatchRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> CallOutcome:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        candidates = self._ordered_candidates(request.preferred_backend)
        if not candidates:
            raise ConfigurationError(
                "no usable backends: every backend is missing credentials or quarantined",
                backend="orchestrator",
            )

        failures: list[BackendFailure] = []
        for index, backend in enumerate(candidates):
            adapter = self._adapter_for(backend)
            max_tokens = _effective_max_tokens(request.max_tokens, backend)
            messages = request.messages_for(backend)

            with correlation_scope(backend=backend.name):
                outcome = await self.retry.execute(
                    backend,
                    partial(adapter.send, messages, max_tokens),
                    cancel_token=cancel_token,
                )

            if outcome.success:
                if failures:
                    self._logger.info(
                        "dispatch_recovered",
                        backend=backend.name,
                        failed_backends=[failure.backend for failure in failures],
                    )
                return outcome

            error = outcome.error
            if error is None:
                raise RuntimeError(f"failed outcome for {backend.name} carries no error")
            failures.append(
                BackendFailure(
                    backend=backend.name,
                    error_kind=error.kind,
                    message=error.detail,
                    attempts=outcome.attempts,
                )
            )

            if isinstance(error, ConfigurationError):
                self._logger.warning(
                    "dispatch_configuration_error",
                    backend=backend.name,
                    detail=error.detail,
                )
                raise error

            if isinstance(error, AuthError):
                self.registry.quarantine(backend.name, error.detail)
                self._evict_adapter(backend.name)
                self._logger.warning(
                    "backend_quarantined",
                    backend=backend.name,
                    detail=error.detail,
                )

            next_backend = candidates[index + 1].name if index + 1 < len(candidates) else None
            self._record_fallback(backend.name, next_backend, error)

        exhausted = BackendExhaustedError(failures)
        self._logger.warning(
            "dispatch_exhausted",
            backends=list(exhausted.backends_tried),
            failures=[failure.to_dict() for failure in failures],
        )
        raise exhausted

    async def send(
        self,
        messages: Sequence[Message],
        *,
        max_tokens: int | None = None,
        preferred_backend: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BackendResponse:
        """Convenience wrapper returning only the winning response."""

        outcome = await self.dispatch(
            DispatchRequest(
                messages=tuple(messages),
                max_tokens=max_tokens,
                preferred_backend=preferred_backend,
            ),
            cancel_token=cancel_token,
        )
        if outcome.response is None:
            raise RuntimeError("successful outcome carries no response")
        return outcome.response

    def best_backend(self, preferred: str | None = None) -> BackendConfig | None:
        """First usable backend whose breaker currently admits calls."""

        for backend in self._ordered_candidates(preferred):
            if self.breakers.get(backend.name).allows_request():
                return backend
        return None

    def fallback_history(self) -> tuple[FallbackEvent, ...]:
        return tuple(self._fallbacks)

    def snapshot(self) -> dict[str, Any]:
        """Per-backend diagnostics combining breaker, metrics and registry state."""

        per_backend: dict[str, dict[str, Any]] = {}
        for name in self.registry.names():
            breaker = self.breakers.get(name).snapshot()
            metrics = self.metrics.get(name)
            backend = self.registry.get(name)
            per_backend[name] = {
                "state": breaker.state.value,
                "calls": metrics.calls,
                "errors": metrics.errors,
                "avg_latency_ms": metrics.avg_latency_ms,
                "consecutive_failures": breaker.consecutive_failures,
                "last_error": metrics.last_error,
                "recent_errors": list(metrics.recent_errors),
                "usable": self.registry.validate(name),
                "unusable_reason": self.registry.unusable_reason(name),
                "priority": backend.priority,
                "model": backend.model,
                "circuit_rejections": metrics.circuit_rejections,
                "success_rate": metrics.success_rate,
                "cooldown_deadline": breaker.cooldown_deadline,
            }
        return {
            "per_backend": per_backend,
            "fallback_history": [event.to_dict() for event in self._fallbacks],
        }

    def _ordered_candidates(self, preferred: str | None) -> list[BackendConfig]:
        usable = self.registry.list_usable_backends()
        if preferred is None:
            return usable
        key = preferred.strip().lower()
        for index, backend in enumerate(usable):
            if backend.name == key:
                return [backend, *usable[:index], *usable[index + 1 :]]
        return usable

    def _adapter_for(self, backend: BackendConfig) -> BackendProtocol:
        with self._instances_lock:
            adapter = self._instances.get(backend.name)
            if adapter is None:
                adapter = self.adapters.create(backend, environ=self.registry.environ)
                self._instances[backend.name] = adapter
            return adapter

    def _evict_adapter(self, name: str) -> None:
        # Clients cache resolved credentials; rebuild after the key is rotated.
        with self._instances_lock:
            self._instances.pop(name, None)

    def _record_fallback(
        self, from_backend: str, to_backend: str | None, error: BackendError
    ) -> None:
        event = FallbackEvent(
            from_backend=from_backend,
            to_backend=to_backend,
            error_kind=error.kind,
            detail=error.detail,
            occurred_at=self._wall_clock(),
        )
        self._fallbacks.append(event)
        self._logger.info(
            "backend_fallback",
            from_backend=from_backend,
            to_backend=to_backend,
            error_kind=error.kind.value,
        )


def _effective_max_tokens(requested: int | None, backend: BackendConfig) -> int:
    if requested is None:
        return backend.max_output_tokens
    return min(requested, backend.max_output_tokens)


__all__ = [
    "BackendExhaustedError",
    "BackendFailure",
    "BackendOrchestrator",
    "DispatchRequest",
    "FallbackEvent",
]
