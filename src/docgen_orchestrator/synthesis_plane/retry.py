"""
docgen-orchestrator - retry controller

File: src/docgen_orchestrator/synthesis_plane/retry.py
Last updated: 2026-10-19

Purpose
- Run one backend call under its breaker, timeout and retry policy and report a
  classified ``CallOutcome``.

What should be included in this file
- Bounded exponential backoff with symmetric jitter.
- Rate-limit handling that honors server ``Retry-After`` hints.
- Breaker and metrics bookkeeping for every attempt.

Functional requirements
- Fatal errors (configuration, auth) are never retried.
- Cancellation propagates immediately and is not counted as a failure anywhere.

Non-functional requirements
- Clock, sleep and randomness are injectable for deterministic tests.
"""

from __future__ import annotations

import asyncio
import random as random_module
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

import structlog

from docgen_orchestrator.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_JITTER_RATIO,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_RETRY_AFTER_SECONDS,
)
from docgen_orchestrator.observability.metrics import MetricsStore
from docgen_orchestrator.synthesis_plane.backends.base import (
    BackendError,
    BackendResponse,
    BackendUsage,
    CircuitOpenError,
    ErrorKind,
    RateLimitError,
    TransientError,
    classify_exception,
    is_retryable_error,
)
from docgen_orchestrator.synthesis_plane.circuit_breaker import CircuitBreakerBoard
from docgen_orchestrator.synthesis_plane.registry import BackendConfig
from docgen_orchestrator.utils.concurrency import (
    CancellationToken,
    run_with_timeout,
    sleep_with_cancellation,
)

Clock: TypeAlias = Callable[[], float]
SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]
Operation: TypeAlias = Callable[[], Awaitable[BackendResponse]]


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    jitter_ratio: float = DEFAULT_JITTER_RATIO

    def __post_init__(self) -> None:
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt cap plus delay policy applied to one backend per dispatch."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    max_retry_after_seconds: float = DEFAULT_MAX_RETRY_AFTER_SECONDS

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise TypeError("max_attempts must be an integer")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.max_retry_after_seconds < 0:
            raise ValueError("max_retry_after_seconds must be >= 0")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> RetryPolicy:
        """Build from a ``[resilience]`` config table, ignoring breaker-only keys."""

        backoff_kwargs: dict[str, float] = {}
        for source_key, target_key in (
            ("initial_delay_seconds", "initial_delay_seconds"),
            ("backoff_multiplier", "multiplier"),
            ("max_delay_seconds", "max_delay_seconds"),
            ("jitter_ratio", "jitter_ratio"),
        ):
            if source_key in payload:
                backoff_kwargs[target_key] = float(payload[source_key])

        kwargs: dict[str, Any] = {"backoff": BackoffConfig(**backoff_kwargs)}
        if "max_attempts" in payload:
            kwargs["max_attempts"] = payload["max_attempts"]
        if "max_retry_after_seconds" in payload:
            kwargs["max_retry_after_seconds"] = float(payload["max_retry_after_seconds"])
        return cls(**kwargs)


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Return bounded exponential backoff delay for retry attempt N (1-based)."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    base_delay = config.initial_delay_seconds * (config.multiplier ** (retry_number - 1))
    bounded_delay = min(base_delay, config.max_delay_seconds)

    if config.jitter_ratio == 0.0:
        return bounded_delay

    random_value = random_fn()
    if not (0.0 <= random_value <= 1.0):
        raise ValueError("random_fn must return values in [0.0, 1.0]")

    max_jitter = bounded_delay * config.jitter_ratio
    jitter = ((random_value * 2.0) - 1.0) * max_jitter
    return max(0.0, min(config.max_delay_seconds, bounded_delay + jitter))


@dataclass(frozen=True, slots=True)
class CallOutcome:
    """Result of running one backend through the retry loop."""

    backend: str
    success: bool
    latency_ms: float
    attempts: int
    error: BackendError | None = None
    usage: BackendUsage | None = None
    response: BackendResponse | None = None
    circuit_rejected: bool = False

    def __post_init__(self) -> None:
        if self.success and self.response is None:
            raise ValueError("successful outcome requires a response")
        if not self.success and self.error is None:
            raise ValueError("failed outcome requires an error")
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")

    @property
    def error_kind(self) -> ErrorKind | None:
        return None if self.error is None else self.error.kind

    @property
    def text(self) -> str | None:
        return None if self.response is None else self.response.text

    def to_dict(self) -> dict[str, object]:
        return {
            "backend": self.backend,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "attempts": self.attempts,
            "error_kind": None if self.error is None else self.error.kind.value,
            "error": None if self.error is None else self.error.detail,
            "usage": None if self.usage is None else self.usage.to_dict(),
            "circuit_rejected": self.circuit_rejected,
        }


class RetryController:
    """Executes backend operations with breaker gating, timeouts and bounded retries."""

    def __init__(
        self,
        breakers: CircuitBreakerBoard,
        metrics: MetricsStore,
        policy: RetryPolicy | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        random_fn: RandomFn = random_module.random,
        logger: Any | None = None,
    ) -> None:
        self.breakers = breakers
        self.metrics = metrics
        self.policy = policy if policy is not None else RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._random_fn = random_fn
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def execute(
        self,
        backend: BackendConfig,
        operation: Operation,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> CallOutcome:
        breaker = self.breakers.get(backend.name)
        attempts = 0
        total_latency_ms = 0.0
        last_error: BackendError | None = None

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            try:
                breaker.acquire()
            except CircuitOpenError as rejection:
                self.metrics.record_circuit_rejection(backend.name)
                self._logger.info(
                    "backend_call_rejected",
                    backend=backend.name,
                    attempts=attempts,
                    retry_at=rejection.retry_at,
                )
                return CallOutcome(
                    backend=backend.name,
                    success=False,
                    latency_ms=total_latency_ms,
                    attempts=attempts,
                    error=last_error if last_error is not None else rejection,
                    circuit_rejected=True,
                )

            attempts += 1
            started = self._clock()
            try:
                response = await run_with_timeout(
                    operation(),
                    backend.timeout_seconds,
                    cancel_token,
                )
            except asyncio.CancelledError:
                breaker.release()
                self._logger.info("backend_call_cancelled", backend=backend.name, attempt=attempts)
                raise
            except TimeoutError:
                error: BackendError = TransientError(
                    f"timed out after {backend.timeout_seconds:g} seconds",
                    backend=backend.name,
                )
            except BackendError as exc:
                error = exc
            except Exception as exc:  # noqa: BLE001
                error = classify_exception(exc, backend=backend.name)
            else:
                latency_ms = _elapsed_ms(started, self._clock())
                total_latency_ms += latency_ms
                breaker.record_success()
                usage = response.usage
                self.metrics.record_success(
                    backend.name,
                    latency_ms=latency_ms,
                    input_tokens=usage.input_tokens if usage is not None else 0,
                    output_tokens=usage.output_tokens if usage is not None else 0,
                )
                return CallOutcome(
                    backend=backend.name,
                    success=True,
                    latency_ms=total_latency_ms,
                    attempts=attempts,
                    usage=usage,
                    response=response,
                )

            latency_ms = _elapsed_ms(started, self._clock())
            total_latency_ms += latency_ms
            breaker.record_failure()
            self.metrics.record_failure(
                backend.name,
                latency_ms=latency_ms,
                category=error.kind.value,
                detail=error.detail,
            )
            last_error = error

            if error.fatal or not is_retryable_error(error) or attempts >= self.policy.max_attempts:
                self._logger.info(
                    "backend_call_failed",
                    backend=backend.name,
                    attempts=attempts,
                    error_kind=error.kind.value,
                    retryable=error.retryable,
                )
                return CallOutcome(
                    backend=backend.name,
                    success=False,
                    latency_ms=total_latency_ms,
                    attempts=attempts,
                    error=error,
                )

            delay_seconds = self.retry_delay(error, retry_number=attempts)
            self._logger.info(
                "backend_retry_scheduled",
                backend=backend.name,
                attempt=attempts,
                error_kind=error.kind.value,
                delay_seconds=delay_seconds,
            )
            await sleep_with_cancellation(self._sleep, delay_seconds, cancel_token)

    def retry_delay(self, error: BackendError, *, retry_number: int) -> float:
        """Delay before retry ``retry_number``; server hints win over backoff when present."""

        if isinstance(error, RateLimitError) and error.retry_after_seconds is not None:
            return min(error.retry_after_seconds, self.policy.max_retry_after_seconds)
        return compute_backoff_delay(
            retry_number=retry_number,
            config=self.policy.backoff,
            random_fn=self._random_fn,
        )


def _elapsed_ms(started: float, finished: float) -> float:
    return max(0.0, finished - started) * 1000.0


__all__ = [
    "BackoffConfig",
    "CallOutcome",
    "Operation",
    "RetryController",
    "RetryPolicy",
    "compute_backoff_delay",
]
