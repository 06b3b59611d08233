"""
docgen-orchestrator - engine wiring

File: src/docgen_orchestrator/synthesis_plane/engine.py
Last updated: 2026-10-19

Purpose
- Build a fully wired engine (registry, breakers, retry, dispatch, assembly,
  facade) from one validated config mapping.

What should be included in this file
- ``Engine`` container and ``build_engine`` factory.
- Registration of config-declared assembly strategies.

Functional requirements
- Config sections map one-to-one onto component settings; nothing is read from
  the environment except backend credentials.
- Clock, sleep and randomness are injectable for deterministic tests.
"""

from __future__ import annotations

import asyncio
import random as random_module
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from docgen_orchestrator.config.schema import assert_valid_config, default_config, merge_config
from docgen_orchestrator.observability.metrics import MetricsStore
from docgen_orchestrator.synthesis_plane.backends import default_adapter_registry
from docgen_orchestrator.synthesis_plane.backends.base import AdapterRegistry
from docgen_orchestrator.synthesis_plane.circuit_breaker import (
    CircuitBreakerBoard,
    CircuitBreakerConfig,
)
from docgen_orchestrator.synthesis_plane.context_assembler import (
    AssemblyStrategy,
    ContextAssembler,
    ContextSource,
    StrategyRegistry,
)
from docgen_orchestrator.synthesis_plane.dispatch import BackendOrchestrator
from docgen_orchestrator.synthesis_plane.facade import (
    GenerationResult,
    PromptParts,
    RequestFacade,
)
from docgen_orchestrator.synthesis_plane.model_catalog import ModelCatalog
from docgen_orchestrator.synthesis_plane.registry import BackendRegistry
from docgen_orchestrator.synthesis_plane.retry import (
    Clock,
    RandomFn,
    RetryController,
    RetryPolicy,
    SleepFn,
)
from docgen_orchestrator.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class Engine:
    registry: BackendRegistry
    breakers: CircuitBreakerBoard
    metrics: MetricsStore
    retry: RetryController
    orchestrator: BackendOrchestrator
    assembler: ContextAssembler
    facade: RequestFacade

    async def generate(
        self,
        prompt_parts: PromptParts,
        candidate_sources: Iterable[ContextSource],
        token_budget: int | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        strategy: str | None = None,
        max_output_tokens: int | None = None,
    ) -> GenerationResult:
        return await self.facade.generate(
            prompt_parts,
            candidate_sources,
            token_budget,
            cancel_token=cancel_token,
            strategy=strategy,
            max_output_tokens=max_output_tokens,
        )

    def snapshot(self) -> dict[str, Any]:
        return self.orchestrator.snapshot()


def build_engine(
    config: Mapping[str, object] | None = None,
    *,
    adapters: AdapterRegistry | None = None,
    environ: Mapping[str, str] | None = None,
    catalog: ModelCatalog | None = None,
    clock: Clock = time.monotonic,
    wall_clock: Clock = time.time,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    logger: Any | None = None,
) -> Engine:
    """Wire every component from a config mapping; partial mappings are merged onto defaults."""

    effective = assert_valid_config(merge_config(default_config(), config or {}))
    resilience = effective["resilience"]
    context = effective["context"]
    metrics_section = effective["metrics"]

    registry = BackendRegistry.from_config(effective, environ=environ)
    breakers = CircuitBreakerBoard(
        CircuitBreakerConfig.from_mapping(resilience), clock=clock, logger=logger
    )
    metrics = MetricsStore(
        max_recent_errors=metrics_section["max_recent_errors"], clock=wall_clock
    )
    retry = RetryController(
        breakers,
        metrics,
        RetryPolicy.from_mapping(resilience),
        clock=clock,
        sleep=sleep,
        random_fn=random_fn,
        logger=logger,
    )
    orchestrator = BackendOrchestrator(
        registry,
        adapters if adapters is not None else default_adapter_registry(),
        retry,
        fallback_history_limit=metrics_section["fallback_history_limit"],
        wall_clock=wall_clock,
        logger=logger,
    )

    strategies = StrategyRegistry()
    for name, weights in sorted(context.get("strategies", {}).items()):
        strategies.register(
            AssemblyStrategy(
                name=name,
                quality_weight=weights["quality_weight"],
                freshness_weight=weights["freshness_weight"],
            )
        )
    assembler = ContextAssembler(
        strategies=strategies,
        catalog=catalog,
        default_strategy=context["default_strategy"],
        logger=logger,
    )
    facade = RequestFacade(
        orchestrator,
        assembler,
        output_token_reserve=context["output_token_reserve"],
        default_token_budget=context["default_token_budget"],
        logger=logger,
    )
    return Engine(
        registry=registry,
        breakers=breakers,
        metrics=metrics,
        retry=retry,
        orchestrator=orchestrator,
        assembler=assembler,
        facade=facade,
    )


__all__ = ["Engine", "build_engine"]
