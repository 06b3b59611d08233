"""
docgen-orchestrator - synthesis plane

File: src/docgen_orchestrator/synthesis_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Backend routing, resilience, context assembly, and the generation facade.

Functional requirements
- Must be backend-agnostic through adapters.
"""

from docgen_orchestrator.synthesis_plane.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerBoard,
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
)
from docgen_orchestrator.synthesis_plane.context_assembler import (
    AssemblyStrategy,
    BudgetExceededError,
    ContextAssembler,
    ContextBuildResult,
    ContextSource,
    SourceKind,
    StrategyRegistry,
    TraceEntry,
    estimate_tokens,
)
from docgen_orchestrator.synthesis_plane.dispatch import (
    BackendExhaustedError,
    BackendFailure,
    BackendOrchestrator,
    DispatchRequest,
    FallbackEvent,
)
from docgen_orchestrator.synthesis_plane.engine import Engine, build_engine
from docgen_orchestrator.synthesis_plane.facade import GenerationResult, PromptParts, RequestFacade
from docgen_orchestrator.synthesis_plane.model_catalog import (
    ModelCatalog,
    ModelInfo,
    load_model_catalog,
)
from docgen_orchestrator.synthesis_plane.registry import BackendConfig, BackendRegistry
from docgen_orchestrator.synthesis_plane.retry import (
    BackoffConfig,
    CallOutcome,
    RetryController,
    RetryPolicy,
    compute_backoff_delay,
)

__all__ = [
    "AssemblyStrategy",
    "BackendConfig",
    "BackendExhaustedError",
    "BackendFailure",
    "BackendOrchestrator",
    "BackendRegistry",
    "BackoffConfig",
    "BudgetExceededError",
    "CallOutcome",
    "CircuitBreaker",
    "CircuitBreakerBoard",
    "CircuitBreakerConfig",
    "CircuitSnapshot",
    "CircuitState",
    "ContextAssembler",
    "ContextBuildResult",
    "ContextSource",
    "DispatchRequest",
    "Engine",
    "FallbackEvent",
    "GenerationResult",
    "ModelCatalog",
    "ModelInfo",
    "PromptParts",
    "RequestFacade",
    "RetryController",
    "RetryPolicy",
    "SourceKind",
    "StrategyRegistry",
    "TraceEntry",
    "build_engine",
    "compute_backoff_delay",
    "estimate_tokens",
    "load_model_catalog",
]
