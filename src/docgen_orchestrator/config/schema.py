"""
docgen-orchestrator - configuration schema and validation.

File: src/docgen_orchestrator/config/schema.py
Last updated: 2026-10-19

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for backends, resilience, context assembly, metrics and logging.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Credentials are only ever referenced by env var name, never embedded.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from docgen_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BACKEND_TIMEOUT_SECONDS,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_COOLDOWN_MULTIPLIER,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_FALLBACK_HISTORY_LIMIT,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_JITTER_RATIO,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_COOLDOWN_SECONDS,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_MAX_RECENT_ERRORS,
    DEFAULT_MAX_RETRY_AFTER_SECONDS,
    DEFAULT_OUTPUT_TOKEN_RESERVE,
    DEFAULT_TOKEN_BUDGET,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("fast-fail", "patient")
BUILTIN_STRATEGY_NAMES: Final[tuple[str, ...]] = (
    "auto",
    "balanced",
    "freshness-first",
    "quality-first",
)
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_BACKEND_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "password",
        "passwd",
        "api",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

_OVERLAY_SECTIONS: Final[tuple[str, ...]] = ("context", "metrics", "observability", "resilience")


class MetaConfig(TypedDict):
    schema_version: int


class BackendEntry(TypedDict):
    name: str
    model: str
    priority: NotRequired[int]
    credential_env: NotRequired[str]
    timeout_seconds: NotRequired[float]
    adapter: NotRequired[str]
    max_output_tokens: NotRequired[int]
    base_url: NotRequired[str]


class ResilienceConfig(TypedDict):
    failure_threshold: int
    cooldown_seconds: float
    max_cooldown_seconds: float
    cooldown_multiplier: float
    max_attempts: int
    initial_delay_seconds: float
    backoff_multiplier: float
    max_delay_seconds: float
    jitter_ratio: float
    max_retry_after_seconds: float


class StrategyWeights(TypedDict):
    quality_weight: float
    freshness_weight: float


class ContextConfig(TypedDict):
    default_strategy: str
    default_token_budget: int
    output_token_reserve: int
    strategies: dict[str, StrategyWeights]


class MetricsConfig(TypedDict):
    max_recent_errors: int
    fallback_history_limit: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    resilience: dict[str, object]
    context: dict[str, object]
    metrics: dict[str, object]
    observability: dict[str, object]


class DocgenConfig(TypedDict):
    meta: MetaConfig
    backends: list[BackendEntry]
    resilience: ResilienceConfig
    context: ContextConfig
    metrics: MetricsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[DocgenConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "backends": [],
    "resilience": {
        "failure_threshold": DEFAULT_FAILURE_THRESHOLD,
        "cooldown_seconds": DEFAULT_COOLDOWN_SECONDS,
        "max_cooldown_seconds": DEFAULT_MAX_COOLDOWN_SECONDS,
        "cooldown_multiplier": DEFAULT_COOLDOWN_MULTIPLIER,
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "initial_delay_seconds": DEFAULT_INITIAL_DELAY_SECONDS,
        "backoff_multiplier": DEFAULT_BACKOFF_MULTIPLIER,
        "max_delay_seconds": DEFAULT_MAX_DELAY_SECONDS,
        "jitter_ratio": DEFAULT_JITTER_RATIO,
        "max_retry_after_seconds": DEFAULT_MAX_RETRY_AFTER_SECONDS,
    },
    "context": {
        "default_strategy": "auto",
        "default_token_budget": DEFAULT_TOKEN_BUDGET,
        "output_token_reserve": DEFAULT_OUTPUT_TOKEN_RESERVE,
        "strategies": {},
    },
    "metrics": {
        "max_recent_errors": DEFAULT_MAX_RECENT_ERRORS,
        "fallback_history_limit": DEFAULT_FALLBACK_HISTORY_LIMIT,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "fast-fail": {
            "resilience": {
                "max_attempts": 1,
                "failure_threshold": 2,
                "cooldown_seconds": 60.0,
            },
        },
        "patient": {
            "resilience": {
                "max_attempts": 5,
                "max_delay_seconds": 60.0,
                "max_retry_after_seconds": 120.0,
            },
        },
    },
}


_EMBEDDED_SECRET_MESSAGE: Final[str] = (
    "embedded secret values are forbidden; reference an env var via credential_env"
)

_FieldKind = Literal["int", "float", "bool", "str", "env", "path", "level"]


@dataclass(frozen=True, slots=True)
class _Field:
    kind: _FieldKind
    minimum: float | None = None
    maximum: float | None = None
    required: bool = True
    lower: bool = False


_META_FIELDS: Final[Mapping[str, _Field]] = {"schema_version": _Field("int", minimum=1)}

_BACKEND_FIELDS: Final[Mapping[str, _Field]] = {
    "name": _Field("str", lower=True),
    "model": _Field("str"),
    "priority": _Field("int", required=False),
    "credential_env": _Field("env", required=False),
    "timeout_seconds": _Field("float", minimum=0.001, required=False),
    "adapter": _Field("str", required=False, lower=True),
    "max_output_tokens": _Field("int", minimum=1, required=False),
    "base_url": _Field("str", required=False),
}
_BACKEND_DEFAULTS: Final[Mapping[str, object]] = {
    "timeout_seconds": DEFAULT_BACKEND_TIMEOUT_SECONDS,
    "max_output_tokens": DEFAULT_MAX_OUTPUT_TOKENS,
}

_STRATEGY_FIELDS: Final[Mapping[str, _Field]] = {
    "quality_weight": _Field("float", minimum=0.0),
    "freshness_weight": _Field("float", minimum=0.0),
}

_SECTION_FIELDS: Final[Mapping[str, Mapping[str, _Field]]] = {
    "resilience": {
        "failure_threshold": _Field("int", minimum=1),
        "cooldown_seconds": _Field("float", minimum=0.0),
        "max_cooldown_seconds": _Field("float", minimum=0.0),
        "cooldown_multiplier": _Field("float", minimum=1.0),
        "max_attempts": _Field("int", minimum=1),
        "initial_delay_seconds": _Field("float", minimum=0.0),
        "backoff_multiplier": _Field("float", minimum=1.0),
        "max_delay_seconds": _Field("float", minimum=0.0),
        "jitter_ratio": _Field("float", minimum=0.0, maximum=1.0),
        "max_retry_after_seconds": _Field("float", minimum=0.0),
    },
    "context": {
        "default_strategy": _Field("str", lower=True),
        "default_token_budget": _Field("int", minimum=0),
        "output_token_reserve": _Field("int", minimum=0),
    },
    "metrics": {
        "max_recent_errors": _Field("int", minimum=1),
        "fallback_history_limit": _Field("int", minimum=0),
    },
    "observability": {
        "log_level": _Field("level"),
        "log_dir": _Field("path"),
        "log_to_stdout": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}

_ROOT_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "backends",
    "resilience",
    "context",
    "metrics",
    "observability",
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` holds the normalized mapping only when ``issues`` is empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Config failed validation; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        listing = "\n".join(f"- {issue.path}: {issue.message}" for issue in self.issues)
        super().__init__("invalid config:\n" + (listing or "unknown validation failure"))


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


def default_config() -> DocgenConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Tell the operator which side (config file or runtime) needs upgrading."""

    if found_version == ConfigSchemaVersion:
        return "schema version is current"
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade docgen.toml to the current schema"
        )
    return (
        f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
        "upgrade the docgen-orchestrator runtime"
    )


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; lists and scalars are replaced whole."""

    merged = _copy_value(base)
    for key in sorted(overlay):
        incoming = overlay[key]
        current = merged.get(key)
        if isinstance(incoming, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, incoming)
        else:
            merged[key] = _copy_value(incoming)
    return merged  # type: ignore[no-any-return]


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named ``[profiles.<name>]`` overlay and re-validate."""

    base = merge_config({}, config)
    name = (profile or "").strip()
    if not name:
        return base

    profiles = base.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {name!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(base, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check ``config`` and, when ``active_profile`` is given, the config with it applied."""

    issues = _Issues()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    checked = _check_root(root, issues)
    profile = (active_profile or "").strip()
    if profile:
        overlay = checked.get("profiles", {}).get(profile)
        if overlay is None:
            issues.add("profiles", f"profile {profile!r} is not defined")
        else:
            _check_root(merge_config(checked, overlay), issues)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=checked, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy safe to log: secret-looking keys and ``*_env`` values read ``<redacted>``."""

    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)  # type: ignore[no-any-return]


def _check_root(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    _check_keys(payload, {*_ROOT_SECTIONS, "profiles"}, "", issues)

    checked: dict[str, Any] = {}
    for name in _ROOT_SECTIONS:
        if name not in payload:
            issues.add(name, "missing required field")
        elif name == "backends":
            checked[name] = _check_backends(payload[name], issues)
        else:
            section = _as_object(payload[name], name, issues)
            if section is not None:
                checked[name] = _check_section(name, section, name, issues, partial=False)

    if "profiles" in payload:
        profiles = _as_object(payload["profiles"], "profiles", issues)
        if profiles is not None:
            checked["profiles"] = _check_profiles(profiles, issues)

    _check_cross_fields(checked, issues)
    return checked


def _check_section(
    name: str,
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    if name == "meta":
        checked = _check_fields(payload, _META_FIELDS, path, issues)
        version = checked.get("schema_version")
        if version is not None and version != ConfigSchemaVersion:
            issues.add(_join(path, "schema_version"), migration_guidance(version))
        return checked

    if name != "context":
        return _check_fields(payload, _SECTION_FIELDS[name], path, issues, partial=partial)

    checked = _check_fields(
        payload, _SECTION_FIELDS[name], path, issues, partial=partial, extra_keys=("strategies",)
    )
    strategies_path = _join(path, "strategies")
    if "strategies" in payload:
        strategies = _as_object(payload["strategies"], strategies_path, issues)
        if strategies is not None:
            checked["strategies"] = _check_strategies(strategies, strategies_path, issues)
    elif not partial:
        checked["strategies"] = {}
    return checked


def _check_backends(value: object, issues: _Issues) -> list[dict[str, Any]]:
    if not isinstance(value, (list, tuple)):
        issues.add("backends", f"expected array of tables, got {type(value).__name__}")
        return []

    checked: list[dict[str, Any]] = []
    seen: set[str] = set()
    for index, raw in enumerate(value):
        entry_path = f"backends[{index}]"
        entry = _as_object(raw, entry_path, issues)
        if entry is None:
            continue
        backend = {**_BACKEND_DEFAULTS, **_check_fields(entry, _BACKEND_FIELDS, entry_path, issues)}
        name = backend.get("name")
        if name is not None:
            name_path = _join(entry_path, "name")
            if not _BACKEND_NAME_PATTERN.fullmatch(name):
                issues.add(name_path, f"must match {_BACKEND_NAME_PATTERN.pattern}")
                del backend["name"]
            elif name in seen:
                issues.add(name_path, f"duplicate backend name {name!r}")
            else:
                seen.add(name)
        checked.append(backend)
    return checked


def _check_strategies(
    payload: Mapping[str, object], path: str, issues: _Issues
) -> dict[str, dict[str, float]]:
    checked: dict[str, dict[str, float]] = {}
    for raw_name in sorted(payload):
        name = raw_name.strip().lower()
        strategy_path = _join(path, raw_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.add(strategy_path, f"strategy name must match {_PROFILE_NAME_PATTERN.pattern}")
            continue
        if name in BUILTIN_STRATEGY_NAMES:
            issues.add(strategy_path, "cannot redefine a built-in strategy")
            continue
        weights = _as_object(payload[raw_name], strategy_path, issues)
        if weights is None:
            continue
        parsed = _check_fields(weights, _STRATEGY_FIELDS, strategy_path, issues)
        if len(parsed) != len(_STRATEGY_FIELDS):
            continue
        if parsed["quality_weight"] + parsed["freshness_weight"] <= 0:
            issues.add(strategy_path, "weights must not both be zero")
            continue
        checked[name] = parsed
    return checked


def _check_profiles(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    # Overlays are partial: only the keys they set are type-checked.
    checked: dict[str, Any] = {}
    for name in sorted(payload):
        profile_path = _join("profiles", name)
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.add(profile_path, f"profile name must match {_PROFILE_NAME_PATTERN.pattern}")
            continue
        overlay = _as_object(payload[name], profile_path, issues)
        if overlay is None:
            continue
        _check_keys(overlay, set(_OVERLAY_SECTIONS), profile_path, issues)
        sections: dict[str, Any] = {}
        for section in _OVERLAY_SECTIONS:
            if section not in overlay:
                continue
            section_path = _join(profile_path, section)
            body = _as_object(overlay[section], section_path, issues)
            if body is not None:
                sections[section] = _check_section(
                    section, body, section_path, issues, partial=True
                )
        checked[name] = sections
    return checked


def _check_cross_fields(checked: Mapping[str, Any], issues: _Issues) -> None:
    resilience = checked.get("resilience", {})
    if resilience.get("max_cooldown_seconds", math.inf) < resilience.get("cooldown_seconds", 0.0):
        issues.add("resilience.max_cooldown_seconds", "must be >= cooldown_seconds")
    if resilience.get("initial_delay_seconds", 0.0) > resilience.get("max_delay_seconds", math.inf):
        issues.add("resilience.initial_delay_seconds", "must be <= max_delay_seconds")

    context = checked.get("context", {})
    selected = context.get("default_strategy")
    if selected is None:
        return
    known = {*BUILTIN_STRATEGY_NAMES, *context.get("strategies", {})}
    if selected not in known:
        issues.add(
            "context.default_strategy",
            f"invalid value {selected!r}; expected one of: {', '.join(sorted(known))}",
        )


def _check_fields(
    payload: Mapping[str, object],
    fields: Mapping[str, _Field],
    path: str,
    issues: _Issues,
    *,
    partial: bool = False,
    extra_keys: Iterable[str] = (),
) -> dict[str, Any]:
    _check_keys(payload, {*fields, *extra_keys}, path, issues)
    checked: dict[str, Any] = {}
    for name, rule in fields.items():
        field_path = _join(path, name)
        if name not in payload:
            if rule.required and not partial:
                issues.add(field_path, "missing required field")
            continue
        value = _coerce(payload[name], rule, field_path, issues)
        if value is not None:
            checked[name] = value
    return checked


def _coerce(value: object, rule: _Field, path: str, issues: _Issues) -> object | None:
    if rule.kind == "bool":
        if isinstance(value, bool):
            return value
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None

    if rule.kind in ("int", "float"):
        integral = rule.kind == "int"
        if isinstance(value, bool) or not isinstance(value, int if integral else (int, float)):
            expected = "integer" if integral else "number"
            issues.add(path, f"expected {expected}, got {type(value).__name__}")
            return None
        number: int | float = value if integral else float(value)
        if not math.isfinite(number):
            issues.add(path, "must be finite")
            return None
        if rule.minimum is not None and number < rule.minimum:
            issues.add(path, f"must be >= {rule.minimum}")
            return None
        if rule.maximum is not None and number > rule.maximum:
            issues.add(path, f"must be <= {rule.maximum}")
            return None
        return number

    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    text = value.strip()
    if not text:
        issues.add(path, "must not be empty")
        return None
    if rule.kind == "level":
        text = text.upper()
        if text not in LOG_LEVELS:
            expected = ", ".join(sorted(LOG_LEVELS))
            issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
            return None
    elif rule.kind == "env" and not _ENV_NAME_PATTERN.fullmatch(text):
        issues.add(path, "must be an env var name (example: OPENAI_API_KEY)")
        return None
    elif rule.kind == "path" and "\x00" in text:
        issues.add(path, "must not contain NUL bytes")
        return None
    return text.lower() if rule.lower else text


def _as_object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    for key in value:
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _check_keys(
    payload: Mapping[str, object], allowed: Iterable[str], path: str, issues: _Issues
) -> None:
    for key in sorted(set(payload) - set(allowed)):
        message = _EMBEDDED_SECRET_MESSAGE if _looks_sensitive_key(key) else "unknown field"
        issues.add(_join(path, key), message)


def _looks_sensitive_key(key: str) -> bool:
    snake = _snake_case(key)
    if snake.endswith("_env"):
        return False
    return (
        any(phrase in snake for phrase in _SENSITIVE_KEY_PHRASES)
        or snake == "token"
        or snake.endswith("_token")
        or not _SENSITIVE_KEY_TOKENS.isdisjoint(snake.split("_"))
    )


def _snake_case(key: str) -> str:
    spaced = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", spaced.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _copy_value(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, list):
        return [_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redacted(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>"
            if _snake_case(str(key)).endswith("_env") or _looks_sensitive_key(str(key))
            else _redacted(value[key])
            for key in sorted(value, key=str)
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "BUILTIN_STRATEGY_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DocgenConfig",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
