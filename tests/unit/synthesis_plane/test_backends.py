"""
Unit tests for backend adapters and the shared error taxonomy.

Coverage:
- Exception classification onto auth/rejected/rate-limit/transient kinds.
- Retry-After extraction from SDK exceptions.
- OpenAI/Anthropic adapter payloads and response normalization via injected clients.
- Missing SDK or credential surfaces as a configuration error.
- Adapter registry and the scripted backend.
"""

from __future__ import annotations

import sys
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field

import pytest

from docgen_orchestrator.synthesis_plane.backends import (
    AnthropicBackend,
    OpenAIBackend,
    ScriptedBackend,
    default_adapter_registry,
)
from docgen_orchestrator.synthesis_plane.backends.base import (
    AdapterRegistry,
    AuthError,
    BackendProtocol,
    BackendResponse,
    BackendUsage,
    ConfigurationError,
    ErrorKind,
    Message,
    RateLimitError,
    RequestRejectedError,
    TransientError,
    classify_exception,
    read_retry_after,
)
from docgen_orchestrator.synthesis_plane.registry import BackendConfig

CONVERSATION = (
    Message(role="system", content="You write docs."),
    Message(role="user", content="Describe the module."),
)


@dataclass(slots=True)
class _ScriptedCreate:
    outcomes: deque[object]
    calls: list[dict[str, object]] = field(default_factory=list)

    async def create(self, **kwargs: object) -> object:
        self.calls.append(dict(kwargs))
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@dataclass(slots=True)
class _FakeOpenAIChat:
    completions: _ScriptedCreate


@dataclass(slots=True)
class _FakeOpenAIClient:
    chat: _FakeOpenAIChat


@dataclass(slots=True)
class _FakeAnthropicClient:
    messages: _ScriptedCreate


@dataclass(slots=True)
class _FakeHTTPResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)


class RateLimitExceeded(Exception):
    status_code = 429

    def __init__(self, message: str, *, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.response = _FakeHTTPResponse(429, headers or {})


class AuthenticationError(Exception):
    status_code = 401


class APIConnectionError(Exception):
    pass


class BadRequest(Exception):
    status_code = 400


class NotFound(Exception):
    status_code = 404


class ServiceUnavailable(Exception):
    status_code = 503


def _openai(outcomes: list[object]) -> tuple[OpenAIBackend, _ScriptedCreate]:
    create = _ScriptedCreate(deque(outcomes))
    backend = OpenAIBackend(
        model="gpt-4o",
        name="primary",
        client=_FakeOpenAIClient(chat=_FakeOpenAIChat(completions=create)),
    )
    return backend, create


def _anthropic(outcomes: list[object]) -> tuple[AnthropicBackend, _ScriptedCreate]:
    create = _ScriptedCreate(deque(outcomes))
    backend = AnthropicBackend(
        model="claude-3-haiku",
        name="secondary",
        client=_FakeAnthropicClient(messages=create),
    )
    return backend, create


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (AuthenticationError("invalid key"), ErrorKind.AUTH),
        (RateLimitExceeded("slow down"), ErrorKind.RATE_LIMIT),
        (ServiceUnavailable("upstream down"), ErrorKind.TRANSIENT),
        (APIConnectionError("reset by peer"), ErrorKind.TRANSIENT),
        (TimeoutError(), ErrorKind.TRANSIENT),
        (BadRequest("context length exceeded"), ErrorKind.REJECTED),
        (NotFound("no such model"), ErrorKind.REJECTED),
        (ValueError("something odd"), ErrorKind.TRANSIENT),
    ],
)
def test_classify_exception_maps_onto_error_kinds(exc: Exception, kind: ErrorKind) -> None:
    classified = classify_exception(exc, backend="primary")

    assert classified.kind is kind
    assert classified.backend == "primary"
    assert classified.fatal is (kind in {ErrorKind.AUTH, ErrorKind.REJECTED})


def test_classified_errors_pass_through_and_redact_secrets() -> None:
    original = TransientError("already classified", backend="primary")
    assert classify_exception(original, backend="other") is original

    leaked = classify_exception(
        AuthenticationError("bad key sk-abcdefghijklmnopqrstuvwxyz123456"), backend="primary"
    )
    assert "sk-abcdefghijklmnopqrstuvwxyz123456" not in leaked.detail
    assert leaked.to_dict()["http_status"] == 401


def test_rejected_request_carries_status_and_is_not_retryable() -> None:
    classified = classify_exception(NotFound("model gpt-x does not exist"), backend="primary")

    assert isinstance(classified, RequestRejectedError)
    assert classified.retryable is False
    assert classified.to_dict()["http_status"] == 404
    assert not isinstance(classified, ConfigurationError)


def test_read_retry_after_from_headers_and_attributes() -> None:
    assert read_retry_after(RateLimitExceeded("x", headers={"retry-after": "12"})) == 12.0
    assert read_retry_after(RateLimitExceeded("x", headers={"retry-after-ms": "1500"})) == 1.5
    assert read_retry_after(RateLimitExceeded("x", headers={"retry-after": "soon"})) is None

    class WithHint(Exception):
        retry_after = 3

    assert read_retry_after(WithHint()) == 3.0

    classified = classify_exception(
        RateLimitExceeded("throttled", headers={"Retry-After": "4"}), backend="primary"
    )
    assert isinstance(classified, RateLimitError)
    assert classified.retry_after_seconds == 4.0


@pytest.mark.asyncio
async def test_openai_adapter_sends_payload_and_normalizes_response() -> None:
    backend, create = _openai(
        [
            {
                "id": "chatcmpl-1",
                "model": "gpt-4o-2024-08-06",
                "choices": [{"message": {"content": "Module overview."}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 20, "completion_tokens": 5, "total_tokens": 25},
            }
        ]
    )

    response = await backend.send(CONVERSATION, 256)

    assert response.text == "Module overview."
    assert response.usage == BackendUsage(input_tokens=20, output_tokens=5, total_tokens=25)
    assert response.model == "gpt-4o-2024-08-06"
    assert response.finish_reason == "stop"
    assert response.request_id == "chatcmpl-1"
    assert create.calls == [
        {
            "model": "gpt-4o",
            "messages": [
                {"role": "system", "content": "You write docs."},
                {"role": "user", "content": "Describe the module."},
            ],
            "max_tokens": 256,
        }
    ]
    assert isinstance(backend, BackendProtocol)


@pytest.mark.asyncio
async def test_openai_adapter_classifies_sdk_errors_and_empty_text() -> None:
    backend, _ = _openai(
        [
            AuthenticationError("invalid api key"),
            {"choices": [{"message": {"content": "   "}}]},
        ]
    )

    with pytest.raises(AuthError):
        await backend.send(CONVERSATION, 64)
    with pytest.raises(TransientError, match="does not contain text"):
        await backend.send(CONVERSATION, 64)
    with pytest.raises(ConfigurationError):
        await backend.send(CONVERSATION, 0)


@pytest.mark.asyncio
async def test_anthropic_adapter_moves_system_prompt_and_reads_text_blocks() -> None:
    backend, create = _anthropic(
        [
            {
                "id": "msg_1",
                "model": "claude-3-haiku",
                "stop_reason": "end_turn",
                "content": [
                    {"type": "text", "text": "Part one."},
                    {"type": "tool_use", "name": "ignored"},
                    {"type": "text", "text": "Part two."},
                ],
                "usage": {"input_tokens": 11, "output_tokens": 4},
            }
        ]
    )

    response = await backend.send(CONVERSATION, 128)

    assert response.text == "Part one.\nPart two."
    assert response.usage is not None and response.usage.total_tokens == 15
    assert response.finish_reason == "end_turn"
    payload = create.calls[0]
    assert payload["system"] == "You write docs."
    assert payload["messages"] == [{"role": "user", "content": "Describe the module."}]


@pytest.mark.asyncio
async def test_anthropic_adapter_requires_a_non_system_message() -> None:
    backend, create = _anthropic([])

    with pytest.raises(ConfigurationError, match="non-system message"):
        await backend.send((Message(role="system", content="only system"),), 64)
    assert create.calls == []


@pytest.mark.asyncio
async def test_missing_sdk_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "openai", None)
    monkeypatch.setitem(sys.modules, "anthropic", None)

    with pytest.raises(ConfigurationError, match="openai SDK is not installed"):
        await OpenAIBackend(model="gpt-4o").send(CONVERSATION, 64)
    with pytest.raises(ConfigurationError, match="anthropic SDK is not installed"):
        await AnthropicBackend(model="claude-3-haiku").send(CONVERSATION, 64)


@pytest.mark.asyncio
async def test_missing_api_key_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    class _FakeSDK:
        class AsyncOpenAI:
            def __init__(self, **kwargs: object) -> None:
                self.kwargs = kwargs
                self.chat = object()

    monkeypatch.setitem(sys.modules, "openai", _FakeSDK)
    monkeypatch.delenv("DOCS_OPENAI_KEY", raising=False)
    backend = OpenAIBackend.from_config(
        BackendConfig(name="primary", model="gpt-4o", credential_env="DOCS_OPENAI_KEY")
    )

    with pytest.raises(ConfigurationError, match="DOCS_OPENAI_KEY"):
        await backend.send(CONVERSATION, 64)


def test_adapter_registry_creates_registered_adapters() -> None:
    registry = default_adapter_registry()
    assert registry.names() == ("anthropic", "openai", "scripted")

    created = registry.create(BackendConfig(name="local", model="m", adapter="Scripted"))
    assert isinstance(created, ScriptedBackend)

    with pytest.raises(ConfigurationError, match="not registered"):
        AdapterRegistry().create(BackendConfig(name="local", model="m", adapter="scripted"))
    with pytest.raises(ValueError, match="already registered"):
        registry.register("openai", OpenAIBackend.from_config)


def test_adapter_registry_hands_the_environment_to_factories() -> None:
    registry = AdapterRegistry()
    seen: list[dict[str, str]] = []

    def factory(config: BackendConfig, environ: Mapping[str, str]) -> ScriptedBackend:
        seen.append(dict(environ))
        return ScriptedBackend(name=config.name, model=config.model)

    registry.register("scripted", factory)
    registry.create(
        BackendConfig(name="local", model="m", adapter="scripted"), environ={"KEY": "value"}
    )

    assert seen == [{"KEY": "value"}]


@pytest.mark.asyncio
async def test_openai_adapter_prefers_injected_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    built: list[dict[str, object]] = []
    reply = {"choices": [{"message": {"content": "hi"}}]}

    class _FakeSDK:
        class AsyncOpenAI:
            def __init__(self, **kwargs: object) -> None:
                built.append(kwargs)
                self.chat = _FakeOpenAIChat(
                    completions=_ScriptedCreate(deque([reply]))
                )

    monkeypatch.setitem(sys.modules, "openai", _FakeSDK)
    monkeypatch.setenv("DOCS_OPENAI_KEY", "sk-from-process")
    backend = default_adapter_registry().create(
        BackendConfig(
            name="primary", model="gpt-4o", adapter="openai", credential_env="DOCS_OPENAI_KEY"
        ),
        environ={"DOCS_OPENAI_KEY": "sk-from-registry"},
    )

    response = await backend.send(CONVERSATION, 64)

    assert response.text == "hi"
    assert [kwargs["api_key"] for kwargs in built] == ["sk-from-registry"]


@pytest.mark.asyncio
async def test_scripted_backend_replays_steps_then_echoes() -> None:
    reply = BackendResponse(text="fixed")
    backend = ScriptedBackend(
        name="fake", script=["first", TransientError("boom", backend="fake"), reply]
    )

    assert (await backend.send(CONVERSATION, 10)).text == "first"
    with pytest.raises(TransientError):
        await backend.send(CONVERSATION, 10)
    assert await backend.send(CONVERSATION, 10) is reply

    echoed = await backend.send(CONVERSATION, 10)
    assert echoed.text == "[fake] Describe the module."
    assert echoed.usage is not None and echoed.usage.input_tokens == 5
    assert backend.call_count == 4

    strict = ScriptedBackend(echo_when_exhausted=False)
    with pytest.raises(RuntimeError, match="no scripted outcomes"):
        await strict.send(CONVERSATION, 10)
