"""
docgen-orchestrator - backend adapters and shared backend API

File: src/docgen_orchestrator/synthesis_plane/backends/__init__.py
Last updated: 2026-10-19

Purpose
- Backend adapters (OpenAI, Anthropic, scripted) behind one ``send`` capability.

Functional requirements
- Must normalize responses (text, usage) into a common format.

Non-functional requirements
- Must never log secrets or raw API keys.
"""

from docgen_orchestrator.synthesis_plane.backends.anthropic_adapter import AnthropicBackend
from docgen_orchestrator.synthesis_plane.backends.base import (
    AdapterRegistry,
    AuthError,
    BackendError,
    BackendFactory,
    BackendProtocol,
    BackendResponse,
    BackendUsage,
    CircuitOpenError,
    ConfigurationError,
    ErrorKind,
    Message,
    RateLimitError,
    RequestRejectedError,
    TransientError,
    classify_exception,
    is_retryable_error,
)
from docgen_orchestrator.synthesis_plane.backends.openai_adapter import OpenAIBackend
from docgen_orchestrator.synthesis_plane.backends.scripted import ScriptedBackend, ScriptStep
from docgen_orchestrator.synthesis_plane.backends.sdk import SdkBackend


def default_adapter_registry() -> AdapterRegistry:
    """Return an adapter registry with the built-in adapters registered."""

    registry = AdapterRegistry()
    registry.register(OpenAIBackend.adapter_name, OpenAIBackend.from_config)
    registry.register(AnthropicBackend.adapter_name, AnthropicBackend.from_config)
    registry.register(ScriptedBackend.adapter_name, ScriptedBackend.from_config)
    return registry


__all__ = [
    "AdapterRegistry",
    "AnthropicBackend",
    "AuthError",
    "BackendError",
    "BackendFactory",
    "BackendProtocol",
    "BackendResponse",
    "BackendUsage",
    "CircuitOpenError",
    "ConfigurationError",
    "ErrorKind",
    "Message",
    "OpenAIBackend",
    "RateLimitError",
    "RequestRejectedError",
    "ScriptStep",
    "ScriptedBackend",
    "SdkBackend",
    "TransientError",
    "classify_exception",
    "default_adapter_registry",
    "is_retryable_error",
]
