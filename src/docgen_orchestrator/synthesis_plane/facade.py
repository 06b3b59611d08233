"""
docgen-orchestrator - request facade

File: src/docgen_orchestrator/synthesis_plane/facade.py
Last updated: 2026-10-19

Purpose
- Single entry point for document generation: assemble context for each
  backend tried, build the conversation, and dispatch it with fallback.

What should be included in this file
- Prompt and result models.
- Budget clamping against each model's context window, output reserve and
  prompt overhead.
- Per-backend assembly cache so a fallback never receives a prompt sized for
  a larger window.

Functional requirements
- Backend errors propagate unchanged to the caller.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from docgen_orchestrator.constants import DEFAULT_OUTPUT_TOKEN_RESERVE, DEFAULT_TOKEN_BUDGET
from docgen_orchestrator.observability.logging import correlation_scope
from docgen_orchestrator.synthesis_plane.backends.base import Message
from docgen_orchestrator.synthesis_plane.context_assembler import (
    ContextAssembler,
    ContextBuildResult,
    ContextSource,
    TraceEntry,
    estimate_tokens,
)
from docgen_orchestrator.synthesis_plane.dispatch import BackendOrchestrator, DispatchRequest
from docgen_orchestrator.synthesis_plane.registry import BackendConfig
from docgen_orchestrator.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class PromptParts:
    """Caller-supplied prompt pieces; the assembled context goes between them."""

    instructions: str
    system: str | None = None
    document_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.instructions, str) or not self.instructions.strip():
            raise ValueError("PromptParts.instructions must be a non-empty string")
        if self.system is not None and not self.system.strip():
            object.__setattr__(self, "system", None)


@dataclass(frozen=True, slots=True)
class GenerationResult:
    content: str
    provider_used: str
    model: str
    tokens_used: int
    trace: tuple[TraceEntry, ...]
    context_tokens: int
    attempts: int
    strategy: str
    token_budget: int
    quality_score: float = 0.0
    utilization: float = 0.0
    recommendations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "content": self.content,
            "provider_used": self.provider_used,
            "tokens_used": self.tokens_used,
            "trace": [entry.to_dict() for entry in self.trace],
            "model": self.model,
            "context_tokens": self.context_tokens,
            "attempts": self.attempts,
            "strategy": self.strategy,
            "token_budget": self.token_budget,
            "quality_score": self.quality_score,
            "utilization": self.utilization,
            "recommendations": list(self.recommendations),
        }


class RequestFacade:
    """Context assembly followed by resilient dispatch."""

    def __init__(
        self,
        orchestrator: BackendOrchestrator,
        assembler: ContextAssembler,
        *,
        output_token_reserve: int = DEFAULT_OUTPUT_TOKEN_RESERVE,
        default_token_budget: int = DEFAULT_TOKEN_BUDGET,
        logger: Any | None = None,
    ) -> None:
        if output_token_reserve < 0:
            raise ValueError("output_token_reserve must be >= 0")
        if default_token_budget < 0:
            raise ValueError("default_token_budget must be >= 0")
        self.orchestrator = orchestrator
        self.assembler = assembler
        self.output_token_reserve = output_token_reserve
        self.default_token_budget = default_token_budget
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

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
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        target = self.orchestrator.best_backend()
        if target is None:
            # Every breaker is open; prefer the top-priority backend anyway.
            usable = self.orchestrator.registry.list_usable_backends()
            target = usable[0] if usable else None

        requested_budget = self.default_token_budget if token_budget is None else token_budget
        if requested_budget < 0:
            raise ValueError("token_budget must be >= 0")
        sources = tuple(candidate_sources)
        prompt_overhead = prompt_overhead_tokens(prompt_parts)
        assemblies: dict[str, _Assembly] = {}

        def tailor(backend: BackendConfig) -> tuple[Message, ...]:
            assembly = assemblies.get(backend.name)
            if assembly is None:
                assembly = self._assemble(
                    prompt_parts,
                    sources,
                    backend,
                    requested_budget,
                    strategy=strategy,
                    max_output_tokens=max_output_tokens,
                    prompt_overhead=prompt_overhead,
                )
                assemblies[backend.name] = assembly
            return assembly.messages

        with correlation_scope(
            request_id=uuid.uuid4().hex,
            document_id=prompt_parts.document_id,
        ):
            outcome = await self.orchestrator.dispatch(
                DispatchRequest(
                    max_tokens=max_output_tokens,
                    preferred_backend=target.name if target is not None else None,
                    tailor=tailor,
                ),
                cancel_token=cancel_token,
            )

        response = outcome.response
        if response is None:
            raise RuntimeError("successful outcome carries no response")
        assembly = assemblies[outcome.backend]
        context = assembly.context

        if outcome.usage is not None and outcome.usage.total_tokens:
            tokens_used = outcome.usage.total_tokens
        else:
            prompt_tokens = sum(estimate_tokens(message.content) for message in assembly.messages)
            tokens_used = prompt_tokens + estimate_tokens(response.text)

        model = response.model or self.orchestrator.registry.get(outcome.backend).model
        self._logger.info(
            "generation_completed",
            backend=outcome.backend,
            model=model,
            attempts=outcome.attempts,
            context_tokens=context.total_tokens,
            assemblies=len(assemblies),
            tokens_used=tokens_used,
        )
        return GenerationResult(
            content=response.text,
            provider_used=outcome.backend,
            model=model,
            tokens_used=tokens_used,
            trace=context.trace,
            context_tokens=context.total_tokens,
            attempts=outcome.attempts,
            strategy=context.strategy,
            token_budget=assembly.token_budget,
            quality_score=context.quality_score,
            utilization=context.utilization,
            recommendations=context.recommendations,
        )

    def effective_budget(
        self,
        token_budget: int,
        target_model: str | None,
        max_output_tokens: int | None = None,
        *,
        prompt_overhead: int = 0,
    ) -> int:
        """Clamp ``token_budget`` so prompt, context and output fit the model's window."""

        if token_budget < 0:
            raise ValueError("token_budget must be >= 0")
        limit = self.window_limit(target_model, max_output_tokens, prompt_overhead=prompt_overhead)
        return token_budget if limit is None else min(token_budget, limit)

    def window_limit(
        self,
        target_model: str | None,
        max_output_tokens: int | None = None,
        *,
        prompt_overhead: int = 0,
    ) -> int | None:
        """Tokens left for rendered context in the model's window, or None if unknown."""

        if target_model is None:
            return None
        window = self.assembler.catalog.context_window(target_model)
        if window is None:
            return None
        reserve = self.output_token_reserve if max_output_tokens is None else max_output_tokens
        return max(0, window - reserve - prompt_overhead)

    def _assemble(
        self,
        prompt_parts: PromptParts,
        sources: Sequence[ContextSource],
        backend: BackendConfig,
        requested_budget: int,
        *,
        strategy: str | None,
        max_output_tokens: int | None,
        prompt_overhead: int,
    ) -> _Assembly:
        limit = self.window_limit(
            backend.model, max_output_tokens, prompt_overhead=prompt_overhead
        )
        budget = requested_budget if limit is None else min(requested_budget, limit)
        context = self.assembler.build(
            backend.name, backend.model, sources, budget, strategy=strategy
        )
        # Separators are not part of the source budget; shrink until the rendered block fits.
        while limit is not None and budget > 0:
            overflow = context.rendered_tokens - limit
            if overflow <= 0:
                break
            budget = max(0, budget - overflow)
            context = self.assembler.build(
                backend.name, backend.model, sources, budget, strategy=strategy
            )
        self._logger.debug(
            "context_assembled_for_backend",
            backend=backend.name,
            model=backend.model,
            token_budget=budget,
            rendered_tokens=context.rendered_tokens,
        )
        return _Assembly(
            context=context,
            token_budget=budget,
            messages=build_messages(prompt_parts, context.context),
        )


@dataclass(frozen=True, slots=True)
class _Assembly:
    context: ContextBuildResult
    token_budget: int
    messages: tuple[Message, ...]


def prompt_overhead_tokens(prompt_parts: PromptParts) -> int:
    """Estimated prompt tokens outside the context block, including its trailing blank line."""

    messages = build_messages(prompt_parts, "")
    return sum(estimate_tokens(message.content) for message in messages) + estimate_tokens("\n\n")


def build_messages(prompt_parts: PromptParts, context: str) -> tuple[Message, ...]:
    """Optional system message, then one user message: context block then instructions."""

    messages: list[Message] = []
    if prompt_parts.system is not None:
        messages.append(Message(role="system", content=prompt_parts.system))
    user_content = prompt_parts.instructions.strip()
    if context:
        user_content = f"{context}\n\n{user_content}"
    messages.append(Message(role="user", content=user_content))
    return tuple(messages)


__all__ = [
    "GenerationResult",
    "PromptParts",
    "RequestFacade",
    "build_messages",
    "prompt_overhead_tokens",
]
