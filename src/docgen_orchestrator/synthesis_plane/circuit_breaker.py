"""
docgen-orchestrator - per-backend circuit breaker

File: src/docgen_orchestrator/synthesis_plane/circuit_breaker.py
Last updated: 2026-10-19

Purpose
- Stop sending traffic to a backend after repeated consecutive failures and probe it
  again once a cooldown window has elapsed.

What should be included in this file
- ``CircuitState`` and the CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN state machine.
- Exponential cooldown growth on failed probes, capped by ``max_cooldown_seconds``.
- A board that lazily creates one breaker per backend.

Functional requirements
- HALF_OPEN admits exactly one trial call; concurrent callers are rejected.
- A cancelled attempt releases its slot without counting as success or failure.

Non-functional requirements
- Each breaker owns its lock; unrelated backends never contend.
- Clock is injectable so state transitions are testable without sleeping.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from docgen_orchestrator.constants import (
    DEFAULT_COOLDOWN_MULTIPLIER,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_MAX_COOLDOWN_SECONDS,
)
from docgen_orchestrator.synthesis_plane.backends.base import CircuitOpenError

Clock = Callable[[], float]


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Thresholds and cooldown policy shared by every breaker on a board."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS
    max_cooldown_seconds: float = DEFAULT_MAX_COOLDOWN_SECONDS
    cooldown_multiplier: float = DEFAULT_COOLDOWN_MULTIPLIER

    def __post_init__(self) -> None:
        if isinstance(self.failure_threshold, bool) or not isinstance(self.failure_threshold, int):
            raise TypeError("failure_threshold must be an integer")
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        if self.max_cooldown_seconds < self.cooldown_seconds:
            raise ValueError("max_cooldown_seconds must be >= cooldown_seconds")
        if self.cooldown_multiplier < 1.0:
            raise ValueError("cooldown_multiplier must be >= 1.0")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> CircuitBreakerConfig:
        """Build from a ``[resilience]`` config table, ignoring retry-only keys."""

        kwargs: dict[str, Any] = {}
        if "failure_threshold" in payload:
            kwargs["failure_threshold"] = payload["failure_threshold"]
        for key in ("cooldown_seconds", "max_cooldown_seconds", "cooldown_multiplier"):
            if key in payload:
                kwargs[key] = float(payload[key])
        return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class CircuitSnapshot:
    """Point-in-time view of one breaker."""

    backend: str
    state: CircuitState
    consecutive_failures: int
    last_failure_at: float | None
    cooldown_deadline: float | None
    cooldown_seconds: float
    trial_in_flight: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "backend": self.backend,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_at": self.last_failure_at,
            "cooldown_deadline": self.cooldown_deadline,
            "cooldown_seconds": self.cooldown_seconds,
            "trial_in_flight": self.trial_in_flight,
        }


class CircuitBreaker:
    """Consecutive-failure circuit breaker for a single backend."""

    def __init__(
        self,
        backend: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if not isinstance(backend, str) or not backend.strip():
            raise ValueError("backend must be a non-empty string")
        self.backend = backend.strip()
        self.config = config if config is not None else CircuitBreakerConfig()
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._cooldown_deadline: float | None = None
        self._cooldown_seconds = self.config.cooldown_seconds
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            transition = self._refresh_locked()
            state = self._state
        self._log_transition(transition)
        return state

    def allows_request(self) -> bool:
        """Return whether ``acquire`` would currently succeed, without taking a slot."""

        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                return self._cooldown_elapsed_locked()
            return not self._trial_in_flight

    def acquire(self) -> None:
        """Admit one call or raise ``CircuitOpenError``."""

        with self._lock:
            transition = self._refresh_locked()
            rejection: CircuitOpenError | None = None
            if self._state is CircuitState.OPEN:
                rejection = CircuitOpenError(
                    f"circuit open until cooldown elapses ({self._cooldown_seconds:g}s window)",
                    backend=self.backend,
                    retry_at=self._cooldown_deadline,
                )
            elif self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    rejection = CircuitOpenError(
                        "circuit half-open trial already in flight",
                        backend=self.backend,
                        retry_at=self._cooldown_deadline,
                    )
                else:
                    self._trial_in_flight = True
        self._log_transition(transition)
        if rejection is not None:
            raise rejection

    def record_success(self) -> None:
        with self._lock:
            transition: tuple[CircuitState, CircuitState] | None = None
            if self._state is CircuitState.HALF_OPEN:
                transition = (self._state, CircuitState.CLOSED)
                self._state = CircuitState.CLOSED
                self._cooldown_deadline = None
                self._cooldown_seconds = self.config.cooldown_seconds
                self._trial_in_flight = False
                self._consecutive_failures = 0
            elif self._state is CircuitState.CLOSED:
                self._consecutive_failures = 0
            # A late success from a call admitted before the circuit opened leaves OPEN as is.
        self._log_transition(transition)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._consecutive_failures += 1
            self._last_failure_at = now
            transition: tuple[CircuitState, CircuitState] | None = None

            if self._state is CircuitState.HALF_OPEN:
                self._cooldown_seconds = min(
                    self.config.max_cooldown_seconds,
                    self._cooldown_seconds * self.config.cooldown_multiplier,
                )
                transition = (self._state, CircuitState.OPEN)
                self._open_locked(now)
            elif (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                transition = (self._state, CircuitState.OPEN)
                self._open_locked(now)
        self._log_transition(transition)

    def release(self) -> None:
        """Give back an admitted slot whose call was cancelled before completing."""

        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            previous = self._state
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._last_failure_at = None
            self._cooldown_deadline = None
            self._cooldown_seconds = self.config.cooldown_seconds
            self._trial_in_flight = False
        if previous is not CircuitState.CLOSED:
            self._log_transition((previous, CircuitState.CLOSED))

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            transition = self._refresh_locked()
            snapshot = CircuitSnapshot(
                backend=self.backend,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                last_failure_at=self._last_failure_at,
                cooldown_deadline=self._cooldown_deadline,
                cooldown_seconds=self._cooldown_seconds,
                trial_in_flight=self._trial_in_flight,
            )
        self._log_transition(transition)
        return snapshot

    def _open_locked(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._cooldown_deadline = now + self._cooldown_seconds
        self._trial_in_flight = False

    def _cooldown_elapsed_locked(self) -> bool:
        return self._cooldown_deadline is None or self._clock() >= self._cooldown_deadline

    def _refresh_locked(self) -> tuple[CircuitState, CircuitState] | None:
        if self._state is CircuitState.OPEN and self._cooldown_elapsed_locked():
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            return (CircuitState.OPEN, CircuitState.HALF_OPEN)
        return None

    def _log_transition(self, transition: tuple[CircuitState, CircuitState] | None) -> None:
        if transition is None:
            return
        previous, current = transition
        self._logger.info(
            "circuit_state_changed",
            backend=self.backend,
            from_state=previous.value,
            to_state=current.value,
            consecutive_failures=self._consecutive_failures,
            cooldown_seconds=self._cooldown_seconds,
        )


class CircuitBreakerBoard:
    """Lazily created breaker per backend name sharing one config and clock."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self.config = config if config is not None else CircuitBreakerConfig()
        self._clock = clock
        self._logger = logger
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, backend: str) -> CircuitBreaker:
        breaker = self._breakers.get(backend)
        if breaker is not None:
            return breaker
        with self._lock:
            breaker = self._breakers.get(backend)
            if breaker is None:
                breaker = CircuitBreaker(
                    backend,
                    self.config,
                    clock=self._clock,
                    logger=self._logger,
                )
                self._breakers[backend] = breaker
            return breaker

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._breakers))

    def snapshot(self) -> dict[str, CircuitSnapshot]:
        with self._lock:
            breakers = sorted(self._breakers.items())
        return {name: breaker.snapshot() for name, breaker in breakers}

    def reset(self) -> None:
        with self._lock:
            breakers = tuple(self._breakers.values())
        for breaker in breakers:
            breaker.reset()


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerBoard",
    "CircuitBreakerConfig",
    "CircuitSnapshot",
    "CircuitState",
]
