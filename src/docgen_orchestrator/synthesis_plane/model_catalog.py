"""
docgen-orchestrator - model context-window catalog

File: src/docgen_orchestrator/synthesis_plane/model_catalog.py
Last updated: 2026-10-19

Purpose
- Tell context assembly how many tokens a target model can accept.

What should be included in this file
- The ``model_catalog.yaml`` reader shipped with the package.
- Lookup by model id or alias, ignoring case.

Functional requirements
- A model missing from the catalog yields ``None``; callers fall back to the
  configured token budget.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Final

import yaml

from docgen_orchestrator.constants import LARGE_CONTEXT_WINDOW_TOKENS

BUNDLED_CATALOG: Final[Path] = Path(__file__).resolve().with_name("model_catalog.yaml")


def _text(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{label} must be a string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{label} cannot be empty")
    return stripped


@dataclass(frozen=True, slots=True)
class ModelInfo:
    """Context window of one model, plus the other names it is known by."""

    provider: str
    model: str
    max_context_tokens: int
    aliases: tuple[str, ...] = ()
    notes: str | None = None

    def __post_init__(self) -> None:
        window = self.max_context_tokens
        if isinstance(window, bool) or not isinstance(window, int):
            raise TypeError("max_context_tokens must be an integer")
        if window <= 0:
            raise ValueError(f"max_context_tokens must be positive, got {window}")

        aliases = tuple(_text(alias, "alias") for alias in self.aliases)
        if len({alias.lower() for alias in aliases}) < len(aliases):
            raise ValueError(f"model {self.model!r} lists the same alias twice")

        object.__setattr__(self, "provider", _text(self.provider, "provider").lower())
        object.__setattr__(self, "model", _text(self.model, "model"))
        object.__setattr__(self, "aliases", aliases)
        if self.notes is not None:
            object.__setattr__(self, "notes", _text(self.notes, "notes"))

    @property
    def names(self) -> tuple[str, ...]:
        return (self.model, *self.aliases)

    @property
    def is_large_context(self) -> bool:
        return self.max_context_tokens >= LARGE_CONTEXT_WINDOW_TOKENS


@dataclass(frozen=True, slots=True)
class ModelCatalog:
    version: str
    last_updated: str
    models: tuple[ModelInfo, ...]
    _index: Mapping[str, ModelInfo] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "version", _text(self.version, "version"))
        object.__setattr__(self, "last_updated", _text(self.last_updated, "last_updated"))
        if not self.models:
            raise ValueError("model catalog lists no models")

        index: dict[str, ModelInfo] = {}
        for info in self.models:
            for name in info.names:
                owner = index.setdefault(name.lower(), info)
                if owner is not info:
                    raise ValueError(
                        f"duplicate model name {name!r} ({owner.model} and {info.model})"
                    )
        object.__setattr__(self, "_index", MappingProxyType(index))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> ModelCatalog:
        for required in ("version", "last_updated"):
            if payload.get(required) is None:
                raise ValueError(f"{required} is required")
        entries = payload.get("models")
        if not isinstance(entries, list):
            raise TypeError("models must be a list")
        return cls(
            version=str(payload["version"]),
            last_updated=str(payload["last_updated"]),
            models=tuple(_parse_entry(entry, index) for index, entry in enumerate(entries)),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ModelCatalog:
        source = Path(path).expanduser().resolve()
        try:
            payload = yaml.safe_load(source.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ValueError(f"unable to read model catalog {source}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ValueError(f"{source}: invalid YAML ({exc})") from exc
        if not isinstance(payload, Mapping):
            raise ValueError(f"{source}: model catalog must be a mapping")
        return cls.from_mapping(payload)

    def get(self, model: str) -> ModelInfo | None:
        if not isinstance(model, str):
            return None
        return self._index.get(model.strip().lower())

    def context_window(self, model: str) -> int | None:
        info = self.get(model)
        return info.max_context_tokens if info is not None else None

    def __contains__(self, model: object) -> bool:
        return isinstance(model, str) and self.get(model) is not None


def _parse_entry(entry: object, index: int) -> ModelInfo:
    if not isinstance(entry, Mapping):
        raise TypeError(f"models[{index}] must be a mapping")
    aliases = entry.get("aliases") or ()
    if isinstance(aliases, str) or not isinstance(aliases, Iterable):
        raise TypeError(f"models[{index}].aliases must be a list")
    notes = entry.get("notes")
    return ModelInfo(
        provider=str(entry.get("provider", "")),
        model=str(entry.get("model", "")),
        max_context_tokens=entry.get("max_context_tokens"),  # type: ignore[arg-type]
        aliases=tuple(str(alias) for alias in aliases),
        notes=None if notes is None else str(notes),
    )


@lru_cache(maxsize=8)
def load_model_catalog(path: str | Path | None = None) -> ModelCatalog:
    """Read a catalog file once per path; ``None`` means the bundled catalog."""

    return ModelCatalog.from_file(BUNDLED_CATALOG if path is None else path)


__all__ = ["BUNDLED_CATALOG", "ModelCatalog", "ModelInfo", "load_model_catalog"]
