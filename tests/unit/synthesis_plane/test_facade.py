"""
docgen-orchestrator - unit tests for the request facade

File: tests/unit/synthesis_plane/test_facade.py
Last updated: 2026-10-19

Purpose
- Validate assembly-then-dispatch generation through scripted backends.

What this test file should cover
- Budget clamping against the target model's context window.
- Message layout (system, context block, instructions).
- Result shape and error propagation.
- Re-assembly for a fallback backend with a smaller context window.
"""

from __future__ import annotations

import asyncio

import pytest

from docgen_orchestrator.observability.metrics import MetricsStore
from docgen_orchestrator.synthesis_plane.backends.base import (
    AdapterRegistry,
    BackendResponse,
    BackendUsage,
    Message,
    TransientError,
)
from docgen_orchestrator.synthesis_plane.backends.scripted import ScriptedBackend, ScriptStep
from docgen_orchestrator.synthesis_plane.circuit_breaker import (
    CircuitBreakerBoard,
    CircuitBreakerConfig,
)
from docgen_orchestrator.synthesis_plane.context_assembler import (
    ContextAssembler,
    ContextSource,
    SourceKind,
    estimate_tokens,
)
from docgen_orchestrator.synthesis_plane.dispatch import BackendExhaustedError, BackendOrchestrator
from docgen_orchestrator.synthesis_plane.facade import (
    PromptParts,
    RequestFacade,
    build_messages,
    prompt_overhead_tokens,
)
from docgen_orchestrator.synthesis_plane.model_catalog import ModelCatalog, ModelInfo
from docgen_orchestrator.synthesis_plane.registry import BackendConfig, BackendRegistry
from docgen_orchestrator.synthesis_plane.retry import BackoffConfig, RetryController, RetryPolicy
from docgen_orchestrator.utils.concurrency import CancellationToken

CATALOG = ModelCatalog(
    version="1",
    last_updated="2026-10-19",
    models=(
        ModelInfo(provider="openai", model="small-model", max_context_tokens=1000),
        ModelInfo(provider="google", model="huge-model", max_context_tokens=2_000_000),
    ),
)


async def _no_sleep(seconds: float) -> None:
    _ = seconds
    await asyncio.sleep(0)


def _facade(
    scripts: dict[str, tuple[str, list[ScriptStep]]],
    *,
    output_token_reserve: int = 200,
    failure_threshold: int = 5,
) -> tuple[RequestFacade, dict[str, ScriptedBackend]]:
    backends = {
        name: ScriptedBackend(name=name, model=model, script=steps)
        for name, (model, steps) in scripts.items()
    }
    adapters = AdapterRegistry()
    adapters.register("scripted", lambda config, environ: backends[config.name])
    registry = BackendRegistry(
        [
            BackendConfig(name=name, model=model, priority=index, adapter="scripted")
            for index, (name, (model, _)) in enumerate(scripts.items())
        ],
        environ={},
    )
    retry = RetryController(
        CircuitBreakerBoard(CircuitBreakerConfig(failure_threshold=failure_threshold)),
        MetricsStore(),
        RetryPolicy(max_attempts=1, backoff=BackoffConfig(jitter_ratio=0.0)),
        sleep=_no_sleep,
    )
    facade = RequestFacade(
        BackendOrchestrator(registry, adapters, retry),
        ContextAssembler(catalog=CATALOG),
        output_token_reserve=output_token_reserve,
    )
    return facade, backends


SOURCES = (
    ContextSource(source_id="readme", kind=SourceKind.PROJECT, text="r" * 400, quality=0.9),
    ContextSource(source_id="design", kind=SourceKind.TEMPLATE, text="s" * 2000, quality=0.8),
    ContextSource(source_id="lib", kind=SourceKind.DEPENDENCY, text="d" * 200, quality=0.3),
)


@pytest.mark.asyncio
async def test_generate_assembles_context_and_returns_result() -> None:
    reply = BackendResponse(
        text="# Overview",
        usage=BackendUsage(input_tokens=120, output_tokens=30),
        model="small-model",
    )
    facade, backends = _facade({"primary": ("small-model", [reply])})

    result = await facade.generate(
        PromptParts(
            instructions="Write the overview.", system="You write docs.", document_id="doc-1"
        ),
        SOURCES,
        5000,
    )

    # 1000-token window, 200-token output reserve, 10 tokens of system and instructions
    assert result.token_budget == 790
    assert result.content == "# Overview"
    assert result.provider_used == "primary"
    assert result.model == "small-model"
    assert result.tokens_used == 150
    assert result.attempts == 1
    assert result.context_tokens == 650
    assert [entry.source_id for entry in result.trace] == ["readme", "design", "lib"]
    assert all(entry.included for entry in result.trace)

    messages, max_tokens = backends["primary"].calls[0]
    assert max_tokens == 4096
    assert messages[0] == Message(role="system", content="You write docs.")
    assert messages[1].role == "user"
    assert messages[1].content.startswith("=== PROJECT CONTEXT: readme ===")
    assert messages[1].content.endswith("\n\nWrite the overview.")

    assert result.utilization == round(650 / 790, 6)
    assert 0.0 < result.quality_score <= 1.0
    payload = result.to_dict()
    assert set(payload) >= {
        "content",
        "provider_used",
        "tokens_used",
        "trace",
        "quality_score",
        "utilization",
        "recommendations",
    }


@pytest.mark.asyncio
async def test_budget_is_clamped_by_window_and_explicit_output_tokens() -> None:
    facade, _ = _facade({"primary": ("small-model", ["ok"])})

    result = await facade.generate(
        PromptParts(instructions="Summarize."), SOURCES, 5000, max_output_tokens=850
    )

    # "Summarize." plus the blank line before it costs 4 tokens
    assert result.token_budget == 146
    assert result.trace[0].included is True
    assert result.trace[1].reason == "excluded: exceeds remaining budget (500 > 46)"
    assert result.trace[2].reason == "excluded: exceeds remaining budget (50 > 46)"
    assert result.recommendations[0] == "2 source(s) excluded due to token budget"


@pytest.mark.asyncio
async def test_large_context_model_defaults_to_quality_first() -> None:
    facade, _ = _facade({"primary": ("huge-model", ["ok"])})

    result = await facade.generate(PromptParts(instructions="Go."), SOURCES, 10_000)

    assert result.strategy == "quality-first"
    assert result.token_budget == 10_000


@pytest.mark.asyncio
async def test_tokens_used_falls_back_to_estimate_without_usage() -> None:
    facade, _ = _facade({"primary": ("unknown-model", ["abcdefgh"])})

    result = await facade.generate(PromptParts(instructions="abcd"), [], 100)

    assert result.tokens_used == 1 + 2
    assert result.model == "unknown-model"


@pytest.mark.asyncio
async def test_assembly_targets_next_backend_when_first_circuit_is_open() -> None:
    facade, backends = _facade(
        {"first": ("small-model", ["unused"]), "second": ("huge-model", ["from second"])},
        failure_threshold=1,
    )
    facade.orchestrator.breakers.get("first").record_failure()

    result = await facade.generate(PromptParts(instructions="Go."), SOURCES, 10_000)

    assert result.provider_used == "second"
    assert result.token_budget == 10_000
    assert backends["first"].call_count == 0


@pytest.mark.asyncio
async def test_backend_errors_propagate_unchanged() -> None:
    facade, _ = _facade({"primary": ("small-model", [TransientError("down", backend="primary")])})

    with pytest.raises(BackendExhaustedError):
        await facade.generate(PromptParts(instructions="Go."), SOURCES, 100)


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_dispatch() -> None:
    facade, backends = _facade({"primary": ("small-model", ["ok"])})
    token = CancellationToken()
    token.cancel()

    with pytest.raises(asyncio.CancelledError):
        await facade.generate(PromptParts(instructions="Go."), SOURCES, 100, cancel_token=token)
    assert backends["primary"].call_count == 0


def test_build_messages_without_context_or_system() -> None:
    messages = build_messages(PromptParts(instructions="  Only instructions.  "), "")

    assert messages == (Message(role="user", content="Only instructions."),)
    with pytest.raises(ValueError):
        PromptParts(instructions="   ")


def _prompt_tokens(messages: tuple[Message, ...]) -> int:
    return sum(estimate_tokens(message.content) for message in messages)


@pytest.mark.asyncio
async def test_fallback_to_smaller_window_reassembles_context() -> None:
    sources = [
        ContextSource(source_id=f"part-{index}", kind=SourceKind.PROJECT, text="p" * 1600)
        for index in range(3)
    ]
    facade, backends = _facade(
        {
            "wide": ("huge-model", [TransientError("503 unavailable", backend="wide")]),
            "narrow": ("small-model", ["fits"]),
        }
    )

    result = await facade.generate(PromptParts(instructions="Go."), sources, 5000)

    assert result.provider_used == "narrow"
    # 1000 window, 200 reserve, 2 tokens for "Go." and the blank line before it
    assert result.token_budget == 798
    assert result.context_tokens == 400
    assert sum(entry.included for entry in result.trace) == 1

    wide_messages, _ = backends["wide"].calls[0]
    narrow_messages, _ = backends["narrow"].calls[0]
    assert _prompt_tokens(wide_messages) > 1000
    assert _prompt_tokens(narrow_messages) + 200 <= 1000


@pytest.mark.asyncio
async def test_rendered_context_is_shrunk_to_fit_the_window() -> None:
    sources = [
        ContextSource(source_id=f"note-{index:02d}", kind=SourceKind.PROJECT, text="abcd")
        for index in range(20)
    ]
    facade, backends = _facade({"primary": ("small-model", ["ok"])})
    parts = PromptParts(instructions="Go.")

    result = await facade.generate(parts, sources, 5000, max_output_tokens=936)

    limit = 1000 - 936 - prompt_overhead_tokens(parts)
    # twenty 1-token sources fit the raw budget but not once their headers are rendered
    assert result.token_budget < limit
    messages, max_tokens = backends["primary"].calls[0]
    assert max_tokens == 936
    assert _prompt_tokens(messages) + 936 <= 1000


@pytest.mark.asyncio
async def test_backends_with_equal_windows_receive_the_same_prompt() -> None:
    facade, backends = _facade(
        {
            "first": ("small-model", [TransientError("down", backend="first")]),
            "second": ("small-model", ["ok"]),
        }
    )

    result = await facade.generate(PromptParts(instructions="Go."), SOURCES, 5000)

    assert result.provider_used == "second"
    first_messages, _ = backends["first"].calls[0]
    second_messages, _ = backends["second"].calls[0]
    assert first_messages == second_messages


def test_prompt_overhead_counts_system_instructions_and_blank_line() -> None:
    parts = PromptParts(instructions="Write the overview.", system="You write docs.")

    assert prompt_overhead_tokens(parts) == 4 + 5 + 1
