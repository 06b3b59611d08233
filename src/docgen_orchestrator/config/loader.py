"""
docgen-orchestrator - runtime config loader

File: src/docgen_orchestrator/config/loader.py
Last updated: 2026-10-19

Purpose
- Produce the effective config mapping that ``build_engine`` consumes.

What should be included in this file
- Layering: built-in defaults, then ``docgen.toml``, then the selected profile,
  then ``DOCGEN_*`` environment variables, then CLI overrides.
- Environment bindings derived from the scalar fields of the file-level config.
- ``log_dir`` resolved against the directory holding the config file.
- A redacted JSON dump for diagnostics.

Functional requirements
- The ``[[backends]]`` list is file-only; environment variables never replace it.
- Credentials are checked for presence only when the caller asks for it.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from docgen_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from docgen_orchestrator.constants import DEFAULT_CONFIG_FILE, ENV_PREFIX

_BOOL_WORDS: Final[Mapping[str, bool]] = {
    **dict.fromkeys(("1", "true", "t", "yes", "y", "on"), True),
    **dict.fromkeys(("0", "false", "f", "no", "n", "off"), False),
}

# Sections that describe overlays or metadata rather than live settings.
_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """The config file is unreadable or an override cannot be coerced."""


@dataclass(frozen=True, slots=True)
class EnvBinding:
    """One ``DOCGEN_*`` variable mapped onto a dotted config path."""

    env_name: str
    path: tuple[str, ...]
    kind: type

    @property
    def dotted_path(self) -> str:
        return ".".join(self.path)

    def coerce(self, raw: str) -> object:
        text = raw.strip()
        if self.kind is bool:
            try:
                return _BOOL_WORDS[text.lower()]
            except KeyError:
                raise ConfigLoadError(
                    f"{self.env_name} -> {self.dotted_path} must be a boolean "
                    "(true/false/1/0/yes/no/on/off)"
                ) from None
        if self.kind is int or self.kind is float:
            try:
                return self.kind(text)
            except ValueError as exc:
                noun = "an integer" if self.kind is int else "a number"
                raise ConfigLoadError(
                    f"{self.env_name} -> {self.dotted_path} must be {noun}"
                ) from exc
        return text


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    require_secret_env_values: bool = False,
) -> dict[str, Any]:
    """Load and validate the effective config.

    When ``config_path`` is omitted, ``./docgen.toml`` is read if present and
    the built-in defaults are used otherwise. ``environ`` defaults to
    ``os.environ``; tests pass an explicit mapping.
    """

    explicit_path = config_path is not None
    path = Path(config_path if explicit_path else Path.cwd() / DEFAULT_CONFIG_FILE)
    path = path.expanduser().resolve()
    env = os.environ if environ is None else environ
    cli = dict(cli_overrides or {})

    active_profile = _select_profile(profile, cli, env)
    config = assert_valid_config(merge_config(default_config(), _read_toml(path, explicit_path)))
    if active_profile is not None:
        config = apply_profile_overlay(config, active_profile)

    env_layer: dict[str, Any] = {}
    for binding in env_bindings(config):
        raw = env.get(binding.env_name)
        if raw is not None:
            _assign(env_layer, binding.path, binding.coerce(raw))
    config = merge_config(config, env_layer)
    config = merge_config(config, _cli_layer(cli))
    config = normalize_paths(
        assert_valid_config(config, active_profile=active_profile), base_dir=path.parent
    )

    if require_secret_env_values:
        _require_credentials(config, env)
    return config


def env_bindings(config: Mapping[str, object]) -> tuple[EnvBinding, ...]:
    """Every scalar setting of ``config`` reachable through a ``DOCGEN_*`` variable."""

    bindings = []
    for path, value in _scalar_leaves(config):
        if path[0] in _UNBOUND_SECTIONS or not isinstance(value, (bool, int, float, str)):
            continue
        env_name = ENV_PREFIX + "_".join(part.upper().replace("-", "_") for part in path)
        bindings.append(EnvBinding(env_name=env_name, path=path, kind=type(value)))
    return tuple(sorted(bindings, key=lambda binding: binding.env_name))


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve path settings (including inside profiles) against ``base_dir``."""

    result = merge_config({}, config)
    profiles = result.get("profiles")
    overlay_names = sorted(profiles) if isinstance(profiles, Mapping) else []
    for path in (
        *PATH_FIELDS,
        *(("profiles", name, *field) for name in overlay_names for field in PATH_FIELDS),
    ):
        current = _lookup(result, path)
        if isinstance(current, str):
            _assign(result, path, _resolved_path(current, base_dir))
    return result


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Canonical JSON of ``config`` with secrets and credential env names hidden."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, cli: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    if explicit is not None:
        chosen: object = explicit
    elif "profile" in cli:
        chosen = cli["profile"]
        if not isinstance(chosen, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        chosen = env.get(f"{ENV_PREFIX}PROFILE", "")
    return str(chosen).strip() or None


def _cli_layer(cli: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted in sorted(cli):
        if dotted == "profile":
            continue
        path = tuple(part for part in dotted.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        value = cli[dotted]
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _scalar_leaves(
    node: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            yield from _scalar_leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    *parents, leaf = path
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


def _lookup(node: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]  # type: ignore[assignment]
    return node


def _resolved_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _require_credentials(config: Mapping[str, object], env: Mapping[str, str]) -> None:
    backends = config.get("backends")
    missing = sorted(
        f"backends.{backend.get('name')}.credential_env -> {backend['credential_env']}"
        for backend in (backends if isinstance(backends, list) else [])
        if isinstance(backend, Mapping)
        and isinstance(backend.get("credential_env"), str)
        and not env.get(backend["credential_env"], "").strip()
    )
    if missing:
        raise ConfigLoadError(
            "missing required secret environment variable values: " + ", ".join(missing)
        )


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvBinding",
    "dump_effective_config",
    "env_bindings",
    "load_config",
    "normalize_paths",
]
