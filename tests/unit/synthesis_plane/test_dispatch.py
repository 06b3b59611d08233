"""
docgen-orchestrator - unit tests for backend dispatch

File: tests/unit/synthesis_plane/test_dispatch.py
Last updated: 2026-10-19

Purpose
- Validate priority-ordered fallback across scripted backends.

What this test file should cover
- Strict priority order and stop at first success.
- Credential rejection quarantines a backend after exactly one call.
- Configuration errors surface immediately.
- Exhaustion error enumerates every backend tried.
- Fallback history and diagnostics snapshot.
- Rejected requests fall back without retrying.
- Exact metric and breaker accounting under concurrent dispatches.

Functional requirements
- No real network calls.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from docgen_orchestrator.observability.metrics import MetricsStore
from docgen_orchestrator.synthesis_plane.backends.base import (
    AdapterRegistry,
    AuthError,
    BackendResponse,
    ConfigurationError,
    ErrorKind,
    Message,
    TransientError,
)
from docgen_orchestrator.synthesis_plane.backends.scripted import ScriptedBackend, ScriptStep
from docgen_orchestrator.synthesis_plane.circuit_breaker import (
    CircuitBreakerBoard,
    CircuitBreakerConfig,
    CircuitState,
)
from docgen_orchestrator.synthesis_plane.dispatch import (
    BackendExhaustedError,
    BackendOrchestrator,
    DispatchRequest,
)
from docgen_orchestrator.synthesis_plane.registry import BackendConfig, BackendRegistry
from docgen_orchestrator.synthesis_plane.retry import BackoffConfig, RetryController, RetryPolicy

MESSAGES = (Message(role="user", content="write the overview"),)


@dataclass(slots=True)
class FakeClock:
    current: float = 0.0
    sleep_calls: list[float] = field(default_factory=list)

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


@dataclass(slots=True)
class Harness:
    orchestrator: BackendOrchestrator
    backends: dict[str, ScriptedBackend]
    clock: FakeClock
    env: dict[str, str]


def _harness(
    scripts: dict[str, list[ScriptStep]],
    *,
    max_attempts: int = 1,
    failure_threshold: int = 5,
    credentials: dict[str, str] | None = None,
    env: dict[str, str] | None = None,
    fallback_history_limit: int = 100,
) -> Harness:
    clock = FakeClock()
    environ = env if env is not None else {}
    credentials = credentials or {}
    configs = [
        BackendConfig(
            name=name,
            model=f"{name}-model",
            priority=index,
            credential_env=credentials.get(name),
            adapter="scripted",
            max_output_tokens=512,
        )
        for index, name in enumerate(scripts)
    ]
    backends = {
        name: ScriptedBackend(name=name, model=f"{name}-model", script=steps)
        for name, steps in scripts.items()
    }
    adapters = AdapterRegistry()
    adapters.register("scripted", lambda config, environ: backends[config.name])
    retry = RetryController(
        CircuitBreakerBoard(
            CircuitBreakerConfig(failure_threshold=failure_threshold, cooldown_seconds=30.0),
            clock=clock.now,
        ),
        MetricsStore(clock=clock.now),
        RetryPolicy(max_attempts=max_attempts, backoff=BackoffConfig(jitter_ratio=0.0)),
        clock=clock.now,
        sleep=clock.sleep,
    )
    orchestrator = BackendOrchestrator(
        BackendRegistry(configs, environ=environ),
        adapters,
        retry,
        fallback_history_limit=fallback_history_limit,
        wall_clock=clock.now,
    )
    return Harness(orchestrator=orchestrator, backends=backends, clock=clock, env=environ)


@pytest.mark.asyncio
async def test_dispatch_uses_priority_order_and_stops_at_first_success() -> None:
    harness = _harness(
        {
            "first": [TransientError("down", backend="first")],
            "second": ["from second"],
            "third": ["from third"],
        }
    )

    outcome = await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))

    assert outcome.backend == "second"
    assert outcome.text == "from second"
    assert harness.backends["first"].call_count == 1
    assert harness.backends["second"].call_count == 1
    assert harness.backends["third"].call_count == 0
    history = harness.orchestrator.fallback_history()
    assert len(history) == 1
    assert (history[0].from_backend, history[0].to_backend) == ("first", "second")
    assert history[0].error_kind is ErrorKind.TRANSIENT


@pytest.mark.asyncio
async def test_auth_error_quarantines_backend_after_one_call() -> None:
    harness = _harness(
        {
            "primary": [AuthError("bad key", backend="primary", http_status=401)],
            "secondary": ["ok", "ok again"],
        },
        max_attempts=3,
        credentials={"primary": "PRIMARY_KEY"},
        env={"PRIMARY_KEY": "sk-old"},
    )

    outcome = await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))

    assert outcome.backend == "secondary"
    assert harness.backends["primary"].call_count == 1
    assert harness.orchestrator.registry.is_quarantined("primary") is True

    await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))
    assert harness.backends["primary"].call_count == 1

    harness.env["PRIMARY_KEY"] = "sk-rotated"
    assert harness.orchestrator.registry.validate("primary") is True


@pytest.mark.asyncio
async def test_configuration_error_surfaces_immediately() -> None:
    harness = _harness(
        {
            "primary": [ConfigurationError("context window exceeded", backend="primary")],
            "secondary": ["never used"],
        }
    )

    with pytest.raises(ConfigurationError, match="context window exceeded"):
        await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))
    assert harness.backends["secondary"].call_count == 0


class _HttpStatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 404, 413, 422])
async def test_rejected_request_falls_back_without_retrying(status_code: int) -> None:
    harness = _harness(
        {
            "primary": [_HttpStatusError("model not found", status_code)],
            "secondary": ["from secondary"],
        },
        max_attempts=3,
    )

    outcome = await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))

    assert outcome.backend == "secondary"
    assert outcome.text == "from secondary"
    assert harness.backends["primary"].call_count == 1
    assert harness.clock.sleep_calls == []
    event = harness.orchestrator.fallback_history()[-1]
    assert event.from_backend == "primary"
    assert event.error_kind is ErrorKind.REJECTED


@pytest.mark.asyncio
async def test_tailored_request_is_rebuilt_for_each_backend() -> None:
    harness = _harness({"first": [TransientError("down", backend="first")], "second": ["ok"]})
    seen: list[str] = []

    def tailor(backend: BackendConfig) -> tuple[Message, ...]:
        seen.append(backend.name)
        return (Message(role="user", content=f"sized for {backend.model}"),)

    outcome = await harness.orchestrator.dispatch(DispatchRequest(tailor=tailor))

    assert outcome.backend == "second"
    assert seen == ["first", "second"]
    first_messages, _ = harness.backends["first"].calls[0]
    second_messages, _ = harness.backends["second"].calls[0]
    assert first_messages[0].content == "sized for first-model"
    assert second_messages[0].content == "sized for second-model"


def test_request_needs_messages_or_tailor() -> None:
    with pytest.raises(ValueError, match="messages cannot be empty"):
        DispatchRequest()


@pytest.mark.asyncio
async def test_no_usable_backend_is_a_configuration_error() -> None:
    harness = _harness({"primary": ["ok"]}, credentials={"primary": "MISSING_KEY"})

    with pytest.raises(ConfigurationError, match="no usable backends"):
        await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))


@pytest.mark.asyncio
async def test_exhaustion_lists_every_backend_and_reason() -> None:
    harness = _harness(
        {
            "first": [TransientError("502 bad gateway", backend="first")] * 2,
            "second": [TransientError("connection reset", backend="second")] * 2,
        },
        max_attempts=2,
    )

    with pytest.raises(BackendExhaustedError) as excinfo:
        await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))

    error = excinfo.value
    assert error.backends_tried == ("first", "second")
    assert [failure.attempts for failure in error.failures] == [2, 2]
    assert "first: transient after 2 attempt(s) (502 bad gateway)" in str(error)
    assert "second: transient" in str(error)
    assert error.to_dict()["failures"][1]["message"] == "connection reset"
    assert harness.orchestrator.fallback_history()[-1].to_backend is None


@pytest.mark.asyncio
async def test_open_circuit_is_skipped_and_reported() -> None:
    harness = _harness(
        {"first": ["unused"], "second": [TransientError("down", backend="second")]},
        failure_threshold=1,
    )
    harness.orchestrator.breakers.get("first").record_failure()

    with pytest.raises(BackendExhaustedError) as excinfo:
        await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))

    kinds = {failure.backend: failure.error_kind for failure in excinfo.value.failures}
    assert kinds == {"first": ErrorKind.CIRCUIT_OPEN, "second": ErrorKind.TRANSIENT}
    assert harness.backends["first"].call_count == 0
    assert harness.orchestrator.best_backend() is None


@pytest.mark.asyncio
async def test_preferred_backend_moves_to_front_and_max_tokens_clamped() -> None:
    harness = _harness({"first": ["a"], "second": ["b"]})

    outcome = await harness.orchestrator.dispatch(
        DispatchRequest(messages=MESSAGES, max_tokens=9999, preferred_backend="second")
    )

    assert outcome.backend == "second"
    assert harness.backends["second"].calls[0][1] == 512
    response = await harness.orchestrator.send(MESSAGES, max_tokens=100)
    assert response.text == "a"
    assert harness.backends["first"].calls[0][1] == 100


@pytest.mark.asyncio
async def test_snapshot_reports_per_backend_diagnostics() -> None:
    harness = _harness(
        {"first": [TransientError("flaky", backend="first")], "second": ["ok"]},
        credentials={"second": "SECOND_KEY"},
        env={"SECOND_KEY": "value"},
    )
    await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))

    snapshot = harness.orchestrator.snapshot()
    first = snapshot["per_backend"]["first"]
    second = snapshot["per_backend"]["second"]

    assert first["state"] == "closed"
    assert (first["calls"], first["errors"], first["consecutive_failures"]) == (1, 1, 1)
    assert first["recent_errors"] == ["transient"]
    assert first["last_error"] == "flaky"
    assert (second["calls"], second["errors"], second["usable"]) == (1, 0, True)
    assert len(snapshot["fallback_history"]) == 1

    harness.env.pop("SECOND_KEY")
    assert harness.orchestrator.snapshot()["per_backend"]["second"]["usable"] is False


@pytest.mark.asyncio
async def test_fallback_history_is_bounded() -> None:
    harness = _harness(
        {"first": [], "second": []},
        fallback_history_limit=3,
        failure_threshold=100,
    )
    for _ in range(5):
        harness.backends["first"].push(TransientError("down", backend="first"))
        harness.backends["second"].push("ok")
        await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))

    assert len(harness.orchestrator.fallback_history()) == 3


@given(
    failing_prefix=st.integers(min_value=0, max_value=4),
    total=st.integers(min_value=1, max_value=5),
)
@settings(max_examples=30, deadline=None)
def test_first_success_after_failing_prefix_property(failing_prefix: int, total: int) -> None:
    names = [f"backend-{index}" for index in range(total)]
    scripts: dict[str, list[ScriptStep]] = {
        name: [TransientError("down", backend=name)] if index < failing_prefix else [f"ok-{index}"]
        for index, name in enumerate(names)
    }
    harness = _harness(scripts, failure_threshold=100)

    async def run() -> str | None:
        try:
            outcome = await harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES))
        except BackendExhaustedError:
            return None
        return outcome.backend

    winner = asyncio.run(run())

    if failing_prefix >= total:
        assert winner is None
        assert all(harness.backends[name].call_count == 1 for name in names)
    else:
        assert winner == names[failing_prefix]
        called = [harness.backends[name].call_count for name in names]
        assert called == [1] * (failing_prefix + 1) + [0] * (total - failing_prefix - 1)


class GatedBackend:
    """Holds every call until ``parties`` calls are in flight, then fails the chosen ones."""

    def __init__(self, name: str, *, parties: int, failing: set[int]) -> None:
        self.name = name
        self.model = f"{name}-model"
        self._parties = parties
        self._failing = failing
        self._arrived = 0
        self._in_flight = 0
        self._gate = asyncio.Event()
        self.peak_in_flight = 0

    async def send(self, messages: tuple[Message, ...], max_tokens: int) -> BackendResponse:
        index = self._arrived
        self._arrived += 1
        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
        if self._arrived >= self._parties:
            self._gate.set()
        await self._gate.wait()
        self._in_flight -= 1
        if index in self._failing:
            raise TransientError(f"call {index} failed", backend=self.name)
        return BackendResponse(text=f"reply {index}", model=self.model)


def _gated_harness(gated: GatedBackend, *, failure_threshold: int) -> Harness:
    harness = _harness({gated.name: []}, failure_threshold=failure_threshold)
    backends: dict[str, Any] = harness.backends
    backends[gated.name] = gated
    return harness


@pytest.mark.asyncio
async def test_concurrent_dispatches_account_every_call_exactly() -> None:
    parties = 12
    failing = {1, 4, 7, 10}
    gated = GatedBackend("solo", parties=parties, failing=failing)
    harness = _gated_harness(gated, failure_threshold=100)

    requests = [
        harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES)) for _ in range(parties)
    ]
    results = await asyncio.gather(*requests, return_exceptions=True)

    assert gated.peak_in_flight == parties
    exhausted = [result for result in results if isinstance(result, BackendExhaustedError)]
    succeeded = [result for result in results if not isinstance(result, BaseException)]
    assert len(exhausted) == len(failing)
    assert len(succeeded) == parties - len(failing)
    assert len({outcome.text for outcome in succeeded}) == len(succeeded)

    metrics = harness.orchestrator.metrics.get("solo")
    assert metrics.calls == parties
    assert metrics.successes == parties - len(failing)
    assert metrics.errors == len(failing)
    assert len(harness.orchestrator.fallback_history()) == len(failing)


@pytest.mark.asyncio
async def test_concurrent_failures_reach_the_breaker_exactly_once_each() -> None:
    parties = 8
    gated = GatedBackend("solo", parties=parties, failing=set(range(parties)))
    harness = _gated_harness(gated, failure_threshold=parties + 1)

    requests = [
        harness.orchestrator.dispatch(DispatchRequest(messages=MESSAGES)) for _ in range(parties)
    ]
    results = await asyncio.gather(*requests, return_exceptions=True)

    assert all(isinstance(result, BackendExhaustedError) for result in results)
    snapshot = harness.orchestrator.breakers.get("solo").snapshot()
    assert snapshot.consecutive_failures == parties
    assert snapshot.state is CircuitState.CLOSED
    assert harness.orchestrator.metrics.get("solo").errors == parties
