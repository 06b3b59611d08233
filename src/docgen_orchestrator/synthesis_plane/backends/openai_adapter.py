"""
docgen-orchestrator - OpenAI backend adapter

File: src/docgen_orchestrator/synthesis_plane/backends/openai_adapter.py
Last updated: 2026-10-19

Purpose
- Send a conversation through the OpenAI chat-completions API.

Functional requirements
- Choices are joined in order; the first finish reason wins.
- Usage accepts both ``prompt/completion`` and ``input/output`` token names.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from docgen_orchestrator.synthesis_plane.backends.base import (
    BackendResponse,
    BackendUsage,
    Message,
    TransientError,
)
from docgen_orchestrator.synthesis_plane.backends.sdk import (
    SdkBackend,
    count_of,
    field_of,
    items_of,
    text_of,
)


class OpenAIBackend(SdkBackend):
    adapter_name = "openai"
    sdk_module = "openai"
    client_class = "AsyncOpenAI"
    default_key_env = "OPENAI_API_KEY"

    def __init__(self, *, organization: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._organization = organization.strip() if organization else None

    def _client_options(self) -> dict[str, object]:
        options = super()._client_options()
        if self._organization:
            options["organization"] = self._organization
        return options

    def _request(self, messages: Sequence[Message], max_tokens: int) -> dict[str, object]:
        return {
            "model": self.model,
            "messages": [message.to_dict() for message in messages],
            "max_tokens": max_tokens,
        }

    async def _call(self, client: object, request: dict[str, object]) -> object:
        return await client.chat.completions.create(**request)  # type: ignore[attr-defined]

    def _parse(self, raw: object) -> BackendResponse:
        choices = items_of(raw, "choices")
        parts = [
            content
            for choice in choices
            if (content := text_of(field_of(choice, "message"), "content")) is not None
        ]
        if not parts:
            raise TransientError("response does not contain text", backend=self.name)
        finish = next(
            (reason for choice in choices if (reason := text_of(choice, "finish_reason"))), None
        )
        return BackendResponse(
            text="\n".join(parts),
            usage=_usage(field_of(raw, "usage")),
            model=text_of(raw, "model") or self.model,
            finish_reason=finish,
            request_id=text_of(raw, "id"),
        )


def _usage(payload: object | None) -> BackendUsage | None:
    if payload is None:
        return None
    prompt = count_of(payload, "prompt_tokens")
    if prompt is None:
        prompt = count_of(payload, "input_tokens") or 0
    completion = count_of(payload, "completion_tokens")
    if completion is None:
        completion = count_of(payload, "output_tokens") or 0
    total = count_of(payload, "total_tokens")
    return BackendUsage(
        input_tokens=prompt,
        output_tokens=completion,
        total_tokens=prompt + completion if total is None else total,
    )


__all__ = ["OpenAIBackend"]
