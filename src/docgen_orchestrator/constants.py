"""Defaults shared by the config schema, the resilience layer and context assembly."""

from __future__ import annotations

from typing import Final

# Config discovery.
DEFAULT_CONFIG_FILE: Final[str] = "docgen.toml"
ENV_PREFIX: Final[str] = "DOCGEN_"

# Schema versions.
CONFIG_SCHEMA_VERSION: Final[int] = 1
MODEL_CATALOG_SCHEMA_VERSION: Final[int] = 1

# Circuit breaker defaults.
DEFAULT_FAILURE_THRESHOLD: Final[int] = 5
DEFAULT_COOLDOWN_SECONDS: Final[float] = 30.0
DEFAULT_MAX_COOLDOWN_SECONDS: Final[float] = 600.0
DEFAULT_COOLDOWN_MULTIPLIER: Final[float] = 2.0

# Retry defaults.
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_INITIAL_DELAY_SECONDS: Final[float] = 0.5
DEFAULT_BACKOFF_MULTIPLIER: Final[float] = 2.0
DEFAULT_MAX_DELAY_SECONDS: Final[float] = 30.0
DEFAULT_JITTER_RATIO: Final[float] = 0.2
DEFAULT_MAX_RETRY_AFTER_SECONDS: Final[float] = 60.0

# Backend defaults.
DEFAULT_BACKEND_TIMEOUT_SECONDS: Final[float] = 60.0
DEFAULT_MAX_OUTPUT_TOKENS: Final[int] = 4096

# Diagnostics retention.
DEFAULT_MAX_RECENT_ERRORS: Final[int] = 10
DEFAULT_FALLBACK_HISTORY_LIMIT: Final[int] = 100

# Context assembly.
DEFAULT_CHARS_PER_TOKEN: Final[int] = 4
DEFAULT_TOKEN_BUDGET: Final[int] = 32_000
DEFAULT_OUTPUT_TOKEN_RESERVE: Final[int] = 4096
LARGE_CONTEXT_WINDOW_TOKENS: Final[int] = 1_000_000

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_BACKEND_TIMEOUT_SECONDS",
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_CHARS_PER_TOKEN",
    "DEFAULT_COOLDOWN_MULTIPLIER",
    "DEFAULT_COOLDOWN_SECONDS",
    "DEFAULT_FAILURE_THRESHOLD",
    "DEFAULT_FALLBACK_HISTORY_LIMIT",
    "DEFAULT_INITIAL_DELAY_SECONDS",
    "DEFAULT_JITTER_RATIO",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_COOLDOWN_SECONDS",
    "DEFAULT_MAX_DELAY_SECONDS",
    "DEFAULT_MAX_OUTPUT_TOKENS",
    "DEFAULT_MAX_RECENT_ERRORS",
    "DEFAULT_MAX_RETRY_AFTER_SECONDS",
    "DEFAULT_OUTPUT_TOKEN_RESERVE",
    "DEFAULT_TOKEN_BUDGET",
    "ENV_PREFIX",
    "LARGE_CONTEXT_WINDOW_TOKENS",
    "MODEL_CATALOG_SCHEMA_VERSION",
]
