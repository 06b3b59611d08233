"""
docgen-orchestrator - Anthropic backend adapter

File: src/docgen_orchestrator/synthesis_plane/backends/anthropic_adapter.py
Last updated: 2026-10-19

Purpose
- Send a conversation through the Anthropic messages API.

Functional requirements
- System messages travel in the top-level ``system`` field, joined by blank lines.
- Only ``text`` content blocks contribute to the response text.
"""

from __future__ import annotations

from collections.abc import Sequence

from docgen_orchestrator.synthesis_plane.backends.base import (
    BackendResponse,
    BackendUsage,
    ConfigurationError,
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


class AnthropicBackend(SdkBackend):
    adapter_name = "anthropic"
    sdk_module = "anthropic"
    client_class = "AsyncAnthropic"
    default_key_env = "ANTHROPIC_API_KEY"

    def _request(self, messages: Sequence[Message], max_tokens: int) -> dict[str, object]:
        system = [message.content for message in messages if message.role == "system"]
        turns = [message.to_dict() for message in messages if message.role != "system"]
        if not turns:
            raise ConfigurationError(
                "at least one non-system message is required", backend=self.name
            )
        request: dict[str, object] = {
            "model": self.model,
            "messages": turns,
            "max_tokens": max_tokens,
        }
        if system:
            request["system"] = "\n\n".join(system)
        return request

    async def _call(self, client: object, request: dict[str, object]) -> object:
        return await client.messages.create(**request)  # type: ignore[attr-defined]

    def _parse(self, raw: object) -> BackendResponse:
        blocks = [
            text
            for block in items_of(raw, "content")
            if (text_of(block, "type") or "").lower() == "text"
            and (text := text_of(block, "text")) is not None
        ]
        if not blocks:
            raise TransientError("response does not contain text", backend=self.name)

        return BackendResponse(
            text="\n".join(blocks),
            usage=_usage(field_of(raw, "usage")),
            model=text_of(raw, "model") or self.model,
            finish_reason=text_of(raw, "stop_reason"),
            request_id=text_of(raw, "id"),
        )


def _usage(payload: object | None) -> BackendUsage | None:
    if payload is None:
        return None
    tokens_in = count_of(payload, "input_tokens") or 0
    tokens_out = count_of(payload, "output_tokens") or 0
    return BackendUsage(
        input_tokens=tokens_in, output_tokens=tokens_out, total_tokens=tokens_in + tokens_out
    )


__all__ = ["AnthropicBackend"]
