"""
docgen-orchestrator - context assembler

File: src/docgen_orchestrator/synthesis_plane/context_assembler.py
Last updated: 2026-10-19

Purpose
- Select which candidate context sources go into a prompt under a token budget and
  explain every decision.

What should be included in this file
- Scoring strategies (quality vs freshness weighting) behind a pluggable registry.
- Greedy best-fit selection that skips, never truncates, oversized sources.
- A per-source trace in input order and a kind-labeled context string in selection order.
- Aggregate quality, budget utilization and short recommendations for each build.

Functional requirements
- Total included tokens never exceed the budget.
- Every candidate appears exactly once in the trace.

Non-functional requirements
- Pure and deterministic for identical inputs; no shared mutable state.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

import structlog

from docgen_orchestrator.constants import DEFAULT_CHARS_PER_TOKEN
from docgen_orchestrator.synthesis_plane.model_catalog import ModelCatalog, load_model_catalog

QUALITY_FIRST: Final[str] = "quality-first"
BALANCED: Final[str] = "balanced"
FRESHNESS_FIRST: Final[str] = "freshness-first"
AUTO_STRATEGY: Final[str] = "auto"

REASON_FIRST_INCLUDED: Final[str] = "included: highest quality match"
REASON_INCLUDED: Final[str] = "included: fits remaining budget"
REASON_BUDGET_EXHAUSTED: Final[str] = "excluded: token budget exhausted"
REASON_EMPTY: Final[str] = "excluded: empty content"

HIGH_QUALITY_THRESHOLD: Final[float] = 0.8
LOW_QUALITY_THRESHOLD: Final[float] = 0.5


def estimate_tokens(text: str) -> int:
    """Character-based token estimate: ``ceil(len(text) / 4)``."""

    if not text:
        return 0
    return (len(text) + DEFAULT_CHARS_PER_TOKEN - 1) // DEFAULT_CHARS_PER_TOKEN


class SourceKind(StrEnum):
    PROJECT = "project"
    TEMPLATE = "template"
    DEPENDENCY = "dependency"


_KIND_PRECEDENCE: Final[Mapping[SourceKind, int]] = {
    SourceKind.PROJECT: 0,
    SourceKind.TEMPLATE: 1,
    SourceKind.DEPENDENCY: 2,
}

_SEPARATOR_LABELS: Final[Mapping[SourceKind, str]] = {
    SourceKind.PROJECT: "PROJECT CONTEXT",
    SourceKind.TEMPLATE: "TEMPLATE CONTENT",
    SourceKind.DEPENDENCY: "DEPENDENCY CONTENT",
}


class BudgetExceededError(RuntimeError):
    """Assembled context exceeded its token budget."""

    def __init__(self, total_tokens: int, token_budget: int) -> None:
        self.total_tokens = total_tokens
        self.token_budget = token_budget
        super().__init__(
            f"assembled context uses {total_tokens} tokens, budget is {token_budget}"
        )


def _validate_unit_interval(value: float, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{field_name} must be numeric")
    parsed = float(value)
    if not (0.0 <= parsed <= 1.0):
        raise ValueError(f"{field_name} must be between 0.0 and 1.0")
    return parsed


@dataclass(frozen=True, slots=True)
class ContextSource:
    """One candidate piece of context offered to the assembler."""

    source_id: str
    kind: SourceKind
    text: str
    estimated_tokens: int | None = None
    quality: float = 0.5
    freshness: float = 0.5

    def __post_init__(self) -> None:
        if not isinstance(self.source_id, str) or not self.source_id.strip():
            raise ValueError("ContextSource.source_id must be a non-empty string")
        object.__setattr__(self, "source_id", self.source_id.strip())
        object.__setattr__(self, "kind", SourceKind(self.kind))
        if not isinstance(self.text, str):
            raise TypeError("ContextSource.text must be a string")
        object.__setattr__(
            self, "quality", _validate_unit_interval(self.quality, "ContextSource.quality")
        )
        object.__setattr__(
            self, "freshness", _validate_unit_interval(self.freshness, "ContextSource.freshness")
        )
        if self.estimated_tokens is None:
            object.__setattr__(self, "estimated_tokens", estimate_tokens(self.text))
        elif isinstance(self.estimated_tokens, bool) or not isinstance(self.estimated_tokens, int):
            raise TypeError("ContextSource.estimated_tokens must be an integer")
        elif self.estimated_tokens < 0:
            raise ValueError("ContextSource.estimated_tokens must be >= 0")

    @property
    def tokens(self) -> int:
        return self.estimated_tokens if self.estimated_tokens is not None else 0

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> ContextSource:
        return cls(
            source_id=str(payload["source_id"]),
            kind=SourceKind(str(payload["kind"])),
            text=str(payload.get("text", "")),
            estimated_tokens=payload.get("estimated_tokens"),
            quality=payload.get("quality", 0.5),
            freshness=payload.get("freshness", 0.5),
        )


@dataclass(frozen=True, slots=True)
class TraceEntry:
    """Why one candidate source was included or excluded."""

    source_id: str
    kind: SourceKind
    included: bool
    tokens_used: int
    quality_contribution: float
    reason: str
    score: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "source_id": self.source_id,
            "kind": self.kind.value,
            "included": self.included,
            "tokens_used": self.tokens_used,
            "quality_contribution": self.quality_contribution,
            "reason": self.reason,
            "score": self.score,
        }


@dataclass(frozen=True, slots=True)
class ContextBuildResult:
    """Assembled context plus its accounting and trace.

    ``total_tokens`` counts source text only. The separators and blank lines of
    the rendered ``context`` add a few tokens per source; ``rendered_tokens``
    is the estimate for the whole string.
    """

    context: str
    total_tokens: int
    token_budget: int
    strategy: str
    trace: tuple[TraceEntry, ...]
    target_backend: str | None = None
    target_model: str | None = None
    quality_score: float = 0.0
    utilization: float = 0.0
    recommendations: tuple[str, ...] = ()

    @property
    def rendered_tokens(self) -> int:
        return estimate_tokens(self.context)

    @property
    def included_ids(self) -> tuple[str, ...]:
        return tuple(entry.source_id for entry in self.trace if entry.included)

    @property
    def excluded_ids(self) -> tuple[str, ...]:
        return tuple(entry.source_id for entry in self.trace if not entry.included)

    def to_dict(self) -> dict[str, object]:
        return {
            "context": self.context,
            "total_tokens": self.total_tokens,
            "token_budget": self.token_budget,
            "strategy": self.strategy,
            "target_backend": self.target_backend,
            "target_model": self.target_model,
            "quality_score": self.quality_score,
            "utilization": self.utilization,
            "recommendations": list(self.recommendations),
            "rendered_tokens": self.rendered_tokens,
            "trace": [entry.to_dict() for entry in self.trace],
        }


@dataclass(frozen=True, slots=True)
class AssemblyStrategy:
    """Linear scoring weights applied to source quality and freshness."""

    name: str
    quality_weight: float
    freshness_weight: float

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("AssemblyStrategy.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip().lower())
        for field_name in ("quality_weight", "freshness_weight"):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"AssemblyStrategy.{field_name} must be numeric")
            if value < 0:
                raise ValueError(f"AssemblyStrategy.{field_name} must be >= 0")
            object.__setattr__(self, field_name, float(value))
        if self.quality_weight + self.freshness_weight <= 0:
            raise ValueError("AssemblyStrategy weights must not both be zero")

    def score(self, source: ContextSource) -> float:
        return self.quality_weight * source.quality + self.freshness_weight * source.freshness


BUILTIN_STRATEGIES: Final[tuple[AssemblyStrategy, ...]] = (
    AssemblyStrategy(QUALITY_FIRST, quality_weight=0.8, freshness_weight=0.2),
    AssemblyStrategy(BALANCED, quality_weight=0.5, freshness_weight=0.5),
    AssemblyStrategy(FRESHNESS_FIRST, quality_weight=0.2, freshness_weight=0.8),
)


class StrategyRegistry:
    """Named assembly strategies; built-ins are present unless ``include_builtins=False``."""

    def __init__(self, *, include_builtins: bool = True) -> None:
        self._strategies: dict[str, AssemblyStrategy] = {}
        self._lock = threading.Lock()
        if include_builtins:
            for strategy in BUILTIN_STRATEGIES:
                self.register(strategy)

    def register(self, strategy: AssemblyStrategy, *, overwrite: bool = False) -> None:
        if not isinstance(strategy, AssemblyStrategy):
            raise TypeError("strategy must be an AssemblyStrategy")
        if strategy.name == AUTO_STRATEGY:
            raise ValueError(f"{AUTO_STRATEGY!r} is reserved for catalog-based selection")
        with self._lock:
            if strategy.name in self._strategies and not overwrite:
                raise ValueError(f"strategy already registered: {strategy.name}")
            self._strategies[strategy.name] = strategy

    def get(self, name: str) -> AssemblyStrategy:
        key = name.strip().lower() if isinstance(name, str) else ""
        with self._lock:
            strategy = self._strategies.get(key)
            known = sorted(self._strategies)
        if strategy is None:
            raise KeyError(f"unknown assembly strategy {name!r}; known: {', '.join(known)}")
        return strategy

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._strategies))

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        with self._lock:
            return name.strip().lower() in self._strategies


class ContextAssembler:
    """Budgeted, traceable selection of context sources."""

    def __init__(
        self,
        *,
        strategies: StrategyRegistry | None = None,
        catalog: ModelCatalog | None = None,
        default_strategy: str | None = None,
        catalog_loader: Callable[[], ModelCatalog] = load_model_catalog,
        logger: Any | None = None,
    ) -> None:
        self.strategies = strategies if strategies is not None else StrategyRegistry()
        self._catalog = catalog
        self._catalog_loader = catalog_loader
        if default_strategy is not None and default_strategy.strip().lower() == AUTO_STRATEGY:
            default_strategy = None
        if default_strategy is not None:
            self.strategies.get(default_strategy)
        self._default_strategy = default_strategy
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def catalog(self) -> ModelCatalog:
        if self._catalog is None:
            self._catalog = self._catalog_loader()
        return self._catalog

    def resolve_strategy(
        self, target_model: str | None, strategy: str | None = None
    ) -> AssemblyStrategy:
        """Explicit name, else configured default, else chosen from the model's context window."""

        if strategy is not None and strategy.strip().lower() != AUTO_STRATEGY:
            return self.strategies.get(strategy)
        if self._default_strategy is not None:
            return self.strategies.get(self._default_strategy)
        info = self.catalog.get(target_model) if target_model else None
        if info is not None and info.is_large_context:
            return self.strategies.get(QUALITY_FIRST)
        return self.strategies.get(BALANCED)

    def build(
        self,
        target_backend: str | None,
        target_model: str | None,
        candidate_sources: Iterable[ContextSource],
        token_budget: int,
        *,
        strategy: str | None = None,
    ) -> ContextBuildResult:
        if isinstance(token_budget, bool) or not isinstance(token_budget, int):
            raise TypeError("token_budget must be an integer")
        if token_budget < 0:
            raise ValueError("token_budget must be >= 0")

        sources = tuple(candidate_sources)
        _reject_duplicate_ids(sources)
        resolved = self.resolve_strategy(target_model, strategy)

        scores = [resolved.score(source) for source in sources]
        ranked = sorted(
            range(len(sources)),
            key=lambda index: (-scores[index], _KIND_PRECEDENCE[sources[index].kind], index),
        )

        remaining = token_budget
        selected: list[ContextSource] = []
        entries: dict[int, TraceEntry] = {}
        for index in ranked:
            source = sources[index]
            included = False
            if source.is_empty:
                reason = REASON_EMPTY
            elif source.tokens > remaining:
                reason = (
                    REASON_BUDGET_EXHAUSTED
                    if remaining <= 0
                    else f"excluded: exceeds remaining budget ({source.tokens} > {remaining})"
                )
            else:
                included = True
                reason = REASON_INCLUDED if selected else REASON_FIRST_INCLUDED
                remaining -= source.tokens
                selected.append(source)

            entries[index] = TraceEntry(
                source_id=source.source_id,
                kind=source.kind,
                included=included,
                tokens_used=source.tokens if included else 0,
                quality_contribution=source.quality,
                reason=reason,
                score=round(scores[index], 6),
            )

        total_tokens = sum(source.tokens for source in selected)
        if total_tokens > token_budget:
            self._logger.error(
                "context_budget_exceeded",
                target_backend=target_backend,
                total_tokens=total_tokens,
                token_budget=token_budget,
            )
            raise BudgetExceededError(total_tokens, token_budget)

        trace = tuple(entries[index] for index in range(len(sources)))
        quality_score = _quality_score(selected)
        utilization = round(total_tokens / token_budget, 6) if token_budget else 0.0
        self._logger.info(
            "context_assembled",
            target_backend=target_backend,
            target_model=target_model,
            strategy=resolved.name,
            candidates=len(sources),
            included=len(selected),
            total_tokens=total_tokens,
            token_budget=token_budget,
            quality_score=quality_score,
        )
        return ContextBuildResult(
            context=render_context(selected),
            total_tokens=total_tokens,
            token_budget=token_budget,
            strategy=resolved.name,
            trace=trace,
            target_backend=target_backend,
            target_model=target_model,
            quality_score=quality_score,
            utilization=utilization,
            recommendations=_recommendations(sources, trace, quality_score),
        )


def render_context(sources: Sequence[ContextSource]) -> str:
    """Join sources in the given order under kind-labeled separators."""

    blocks = [
        f"=== {_SEPARATOR_LABELS[source.kind]}: {source.source_id} ===\n{source.text.strip()}"
        for source in sources
    ]
    return "\n\n".join(blocks)


def _quality_score(selected: Sequence[ContextSource]) -> float:
    """Token-weighted mean quality of the included sources."""

    if not selected:
        return 0.0
    weight = sum(source.tokens for source in selected)
    if weight == 0:
        return round(sum(source.quality for source in selected) / len(selected), 6)
    return round(sum(source.quality * source.tokens for source in selected) / weight, 6)


def _recommendations(
    sources: Sequence[ContextSource], trace: Sequence[TraceEntry], quality_score: float
) -> tuple[str, ...]:
    advice: list[str] = []
    over_budget = [
        source
        for source, entry in zip(sources, trace, strict=True)
        if not entry.included and entry.reason != REASON_EMPTY
    ]
    if over_budget:
        advice.append(f"{len(over_budget)} source(s) excluded due to token budget")
        strong = sum(1 for source in over_budget if source.quality >= HIGH_QUALITY_THRESHOLD)
        if strong:
            advice.append(
                f"{strong} high-quality source(s) excluded; "
                "a larger token budget would include them"
            )
    empty = sum(1 for entry in trace if entry.reason == REASON_EMPTY)
    if empty:
        advice.append(f"{empty} empty source(s) skipped")
    if any(entry.included for entry in trace) and quality_score < LOW_QUALITY_THRESHOLD:
        advice.append(
            f"low context quality ({quality_score:.2f}); add higher-quality sources"
        )
    return tuple(advice)


def _reject_duplicate_ids(sources: Sequence[ContextSource]) -> None:
    seen: set[str] = set()
    for source in sources:
        if not isinstance(source, ContextSource):
            raise TypeError("candidate_sources must contain ContextSource items")
        if source.source_id in seen:
            raise ValueError(f"duplicate context source id: {source.source_id}")
        seen.add(source.source_id)


__all__ = [
    "AUTO_STRATEGY",
    "BALANCED",
    "BUILTIN_STRATEGIES",
    "FRESHNESS_FIRST",
    "QUALITY_FIRST",
    "AssemblyStrategy",
    "BudgetExceededError",
    "ContextAssembler",
    "ContextBuildResult",
    "ContextSource",
    "SourceKind",
    "StrategyRegistry",
    "TraceEntry",
    "estimate_tokens",
    "render_context",
]
