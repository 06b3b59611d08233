"""
docgen-orchestrator - unit tests for the backend registry

File: tests/unit/synthesis_plane/test_registry.py
Last updated: 2026-10-19

Purpose
- Validate credential filtering, priority ordering and quarantine handling.

What this test file should cover
- Stable priority sort with registration-order tie-break.
- Late-bound credential checks against a live environment mapping.
- Quarantine after credential rejection and lift on credential rotation.

Functional requirements
- No network calls; credentials come from injected mappings.
"""

from __future__ import annotations

import pytest

from docgen_orchestrator.synthesis_plane.backends.base import ConfigurationError
from docgen_orchestrator.synthesis_plane.registry import BackendConfig, BackendRegistry


def _backend(name: str, priority: int, credential_env: str | None = None) -> BackendConfig:
    return BackendConfig(
        name=name,
        model=f"{name}-model",
        priority=priority,
        credential_env=credential_env,
        adapter="scripted",
    )


def test_usable_backends_sorted_by_priority_with_stable_ties() -> None:
    registry = BackendRegistry(
        [
            _backend("gamma", 20),
            _backend("alpha", 10),
            _backend("beta", 20),
            _backend("delta", 5),
        ],
        environ={},
    )

    assert [backend.name for backend in registry.list_usable_backends()] == [
        "delta",
        "alpha",
        "gamma",
        "beta",
    ]


def test_backends_without_credentials_are_filtered() -> None:
    env: dict[str, str] = {"PRIMARY_KEY": "sk-primary"}
    registry = BackendRegistry(
        [
            _backend("primary", 1, "PRIMARY_KEY"),
            _backend("secondary", 2, "SECONDARY_KEY"),
            _backend("local", 3),
        ],
        environ=env,
    )

    assert [backend.name for backend in registry.list_usable_backends()] == ["primary", "local"]
    assert registry.unusable_reason("secondary") == "missing credential SECONDARY_KEY"


def test_validate_rechecks_late_bound_credentials() -> None:
    env: dict[str, str] = {}
    registry = BackendRegistry([_backend("primary", 1, "PRIMARY_KEY")], environ=env)
    assert registry.validate("primary") is False

    env["PRIMARY_KEY"] = "sk-late"
    assert registry.validate("primary") is True

    env["PRIMARY_KEY"] = "   "
    assert registry.validate("primary") is False
    assert registry.validate("unknown") is False


def test_quarantine_lifts_when_credential_changes() -> None:
    env = {"PRIMARY_KEY": "sk-old"}
    registry = BackendRegistry([_backend("primary", 1, "PRIMARY_KEY")], environ=env)

    registry.quarantine("primary", "invalid api key")
    assert registry.is_quarantined("primary") is True
    assert registry.list_usable_backends() == []
    assert registry.unusable_reason("primary") == "quarantined: invalid api key"

    env["PRIMARY_KEY"] = "sk-new"
    assert registry.is_quarantined("primary") is False
    assert [backend.name for backend in registry.list_usable_backends()] == ["primary"]


def test_release_clears_quarantine() -> None:
    registry = BackendRegistry([_backend("local", 1)], environ={})
    registry.quarantine("local", "rejected")
    assert registry.validate("local") is False

    registry.release("local")
    assert registry.validate("local") is True


def test_register_rejects_duplicates_and_get_unknown_raises() -> None:
    registry = BackendRegistry([_backend("alpha", 1)], environ={})

    with pytest.raises(ValueError, match="already registered"):
        registry.register(_backend("alpha", 2))
    with pytest.raises(KeyError):
        registry.get("missing")
    assert "ALPHA" in registry
    assert len(registry) == 1


def test_backend_config_validation() -> None:
    config = BackendConfig(name="  Primary ", model="gpt-4o", credential_env="OPENAI_API_KEY")
    assert config.name == "primary"
    assert config.requires_credentials is True
    assert config.to_dict()["adapter"] == "openai"

    with pytest.raises(ValueError):
        BackendConfig(name="bad name", model="m")
    with pytest.raises(ValueError):
        BackendConfig(name="ok", model="m", credential_env="sk-not-an-env-name")
    with pytest.raises(ValueError):
        BackendConfig(name="ok", model="m", timeout_seconds=0)
    with pytest.raises(TypeError):
        BackendConfig(name="ok", model="m", priority=True)


def test_from_config_builds_registry_and_reports_bad_entries() -> None:
    registry = BackendRegistry.from_config(
        {
            "backends": [
                {"name": "openai", "model": "gpt-4o", "priority": 1},
                {"name": "claude", "model": "claude-3-opus", "priority": 2, "adapter": "anthropic"},
            ]
        },
        environ={},
    )
    assert registry.names() == ("openai", "claude")
    assert registry.get("claude").adapter == "anthropic"

    with pytest.raises(ConfigurationError, match=r"backends\[0\]"):
        BackendRegistry.from_config({"backends": [{"name": "x", "model": "m", "api_key": "sk"}]})
