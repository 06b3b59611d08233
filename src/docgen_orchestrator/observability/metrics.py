"""Thread-safe per-backend call metrics with deterministic JSON export."""

from __future__ import annotations

import json
import math
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from docgen_orchestrator.constants import DEFAULT_MAX_RECENT_ERRORS

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_BACKEND_NAME_MAX_LEN: Final[int] = 128
_ERROR_DETAIL_MAX_LEN: Final[int] = 512


@dataclass(slots=True)
class _DistributionState:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None
    last: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.last = value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0.0

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.average,
            "last": self.last,
        }


@dataclass(slots=True)
class _BackendCounters:
    calls: int = 0
    successes: int = 0
    errors: int = 0
    circuit_rejections: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: _DistributionState = field(default_factory=_DistributionState)
    last_error: str | None = None
    last_error_kind: str | None = None
    last_success_at: float | None = None
    last_failure_at: float | None = None
    recent_errors: OrderedDict[str, None] = field(default_factory=OrderedDict)


@dataclass(frozen=True, slots=True)
class BackendMetrics:
    """Immutable point-in-time view of one backend's counters."""

    backend: str
    calls: int
    successes: int
    errors: int
    circuit_rejections: int
    cumulative_latency_ms: float
    avg_latency_ms: float
    input_tokens: int
    output_tokens: int
    last_error: str | None
    last_error_kind: str | None
    last_success_at: float | None
    last_failure_at: float | None
    recent_errors: tuple[str, ...]

    @property
    def success_rate(self) -> float:
        if self.calls == 0:
            return 1.0
        return self.successes / self.calls

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "calls": self.calls,
            "successes": self.successes,
            "errors": self.errors,
            "circuit_rejections": self.circuit_rejections,
            "cumulative_latency_ms": self.cumulative_latency_ms,
            "avg_latency_ms": self.avg_latency_ms,
            "success_rate": self.success_rate,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "last_error": self.last_error,
            "last_error_kind": self.last_error_kind,
            "last_success_at": self.last_success_at,
            "last_failure_at": self.last_failure_at,
            "recent_errors": list(self.recent_errors),
        }


class MetricsStore:
    """Process-wide per-backend counters.

    Each backend owns its own lock; ``_registry_lock`` only guards creation of
    a backend entry so traffic to unrelated backends never serializes.
    """

    def __init__(
        self,
        *,
        max_recent_errors: int = DEFAULT_MAX_RECENT_ERRORS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_recent_errors <= 0:
            raise ValueError("max_recent_errors must be > 0")
        self._max_recent_errors = max_recent_errors
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._entries: dict[str, tuple[threading.Lock, _BackendCounters]] = {}
        self._created_at = datetime.now(tz=UTC)

    @property
    def max_recent_errors(self) -> int:
        return self._max_recent_errors

    def record_success(
        self,
        backend: str,
        *,
        latency_ms: float,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        """Record one successful backend call."""

        latency = _as_non_negative_float(latency_ms, path="latency_ms")
        lock, counters = self._entry(backend)
        now = self._clock()
        with lock:
            counters.calls += 1
            counters.successes += 1
            counters.input_tokens += max(0, int(input_tokens))
            counters.output_tokens += max(0, int(output_tokens))
            counters.latency_ms.observe(latency)
            counters.last_success_at = now

    def record_failure(
        self,
        backend: str,
        *,
        latency_ms: float,
        category: str,
        detail: str | None = None,
    ) -> None:
        """Record one failed backend call and remember its error category."""

        latency = _as_non_negative_float(latency_ms, path="latency_ms")
        category_name = _validate_non_empty(category, "category")
        lock, counters = self._entry(backend)
        now = self._clock()
        with lock:
            counters.calls += 1
            counters.errors += 1
            counters.latency_ms.observe(latency)
            counters.last_failure_at = now
            counters.last_error_kind = category_name
            counters.last_error = _truncate(detail) if detail else category_name
            recent = counters.recent_errors
            recent.pop(category_name, None)
            recent[category_name] = None
            while len(recent) > self._max_recent_errors:
                recent.popitem(last=False)

    def record_circuit_rejection(self, backend: str) -> None:
        """Count a call rejected by an open breaker. Not a backend call or error."""

        lock, counters = self._entry(backend)
        with lock:
            counters.circuit_rejections += 1

    def get(self, backend: str) -> BackendMetrics:
        lock, counters = self._entry(backend)
        with lock:
            return _freeze(backend, counters)

    def backends(self) -> tuple[str, ...]:
        with self._registry_lock:
            return tuple(sorted(self._entries))

    def reset(self, backend: str | None = None) -> None:
        if backend is None:
            with self._registry_lock:
                self._entries.clear()
                self._created_at = datetime.now(tz=UTC)
            return
        lock, counters = self._entry(backend)
        with lock:
            fresh = _BackendCounters()
            for name in counters.__slots__:
                setattr(counters, name, getattr(fresh, name))

    def snapshot(self) -> dict[str, JSONValue]:
        """Return deterministic snapshot with stable key ordering."""

        with self._registry_lock:
            created_at = self._created_at
            entries = tuple(sorted(self._entries.items()))

        per_backend: dict[str, JSONValue] = {}
        for name, (lock, counters) in entries:
            with lock:
                per_backend[name] = _freeze(name, counters).to_dict()

        now = datetime.now(tz=UTC)
        return {
            "metadata": {
                "created_at": created_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
                "snapshot_at": now.isoformat(timespec="seconds").replace("+00:00", "Z"),
                "uptime_seconds": max(0.0, (now - created_at).total_seconds()),
            },
            "per_backend": per_backend,
        }

    def to_json(self, *, indent: int | None = None) -> str:
        payload = self.snapshot()
        if indent is None:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False)

    def export_json(self, path: str | Path, *, indent: int = 2) -> Path:
        """Write snapshot JSON to ``path`` and return normalized path."""

        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(self.to_json(indent=indent), encoding="utf-8")
        return output_path

    def _entry(self, backend: str) -> tuple[threading.Lock, _BackendCounters]:
        name = _validate_backend_name(backend)
        entry = self._entries.get(name)
        if entry is not None:
            return entry
        with self._registry_lock:
            entry = self._entries.get(name)
            if entry is None:
                entry = (threading.Lock(), _BackendCounters())
                self._entries[name] = entry
            return entry


def _freeze(backend: str, counters: _BackendCounters) -> BackendMetrics:
    return BackendMetrics(
        backend=backend,
        calls=counters.calls,
        successes=counters.successes,
        errors=counters.errors,
        circuit_rejections=counters.circuit_rejections,
        cumulative_latency_ms=counters.latency_ms.total,
        avg_latency_ms=counters.latency_ms.average,
        input_tokens=counters.input_tokens,
        output_tokens=counters.output_tokens,
        last_error=counters.last_error,
        last_error_kind=counters.last_error_kind,
        last_success_at=counters.last_success_at,
        last_failure_at=counters.last_failure_at,
        recent_errors=tuple(counters.recent_errors),
    )


def _validate_backend_name(name: str) -> str:
    normalized = _validate_non_empty(name, "backend name")
    if len(normalized) > _BACKEND_NAME_MAX_LEN:
        raise ValueError(f"backend name must be <= {_BACKEND_NAME_MAX_LEN} characters")
    return normalized


def _validate_non_empty(value: str, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path} must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{path} must not be empty")
    return normalized


def _truncate(detail: str) -> str:
    flattened = " ".join(detail.split())
    if len(flattened) <= _ERROR_DETAIL_MAX_LEN:
        return flattened
    return flattened[: _ERROR_DETAIL_MAX_LEN - 3] + "..."


def _as_non_negative_float(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    if parsed < 0:
        raise ValueError(f"{path} must be >= 0")
    return parsed


__all__ = ["BackendMetrics", "JSONScalar", "JSONValue", "MetricsStore"]
