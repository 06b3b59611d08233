"""Deterministic scripted backend for offline runs and tests."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING

from docgen_orchestrator.synthesis_plane.backends.base import (
    BackendResponse,
    BackendUsage,
    Message,
)

if TYPE_CHECKING:
    from docgen_orchestrator.synthesis_plane.registry import BackendConfig

ScriptStep = BackendResponse | BaseException | str


class ScriptedBackend:
    """Replays scripted outcomes in order, then echoes once the script runs out.

    Each step is a ``BackendResponse``, a plain reply string, or an exception
    instance that ``send`` raises.
    """

    adapter_name = "scripted"

    def __init__(
        self,
        *,
        name: str = "scripted",
        model: str = "scripted-model",
        script: Iterable[ScriptStep] = (),
        echo_when_exhausted: bool = True,
    ) -> None:
        self.name = name
        self.model = model
        self._script: deque[ScriptStep] = deque(script)
        self._echo_when_exhausted = echo_when_exhausted
        self.calls: list[tuple[tuple[Message, ...], int]] = []

    @classmethod
    def from_config(
        cls, config: BackendConfig, environ: Mapping[str, str] | None = None
    ) -> ScriptedBackend:
        return cls(name=config.name, model=config.model)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def push(self, *steps: ScriptStep) -> None:
        self._script.extend(steps)

    async def send(self, messages: Sequence[Message], max_tokens: int) -> BackendResponse:
        self.calls.append((tuple(messages), max_tokens))
        if not self._script:
            if not self._echo_when_exhausted:
                raise RuntimeError(f"scripted backend {self.name} has no scripted outcomes left")
            return self._echo(messages)

        step = self._script.popleft()
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, str):
            return BackendResponse(text=step, model=self.model)
        return step

    def _echo(self, messages: Sequence[Message]) -> BackendResponse:
        prompt = next(
            (message.content for message in reversed(messages) if message.role == "user"),
            "",
        )
        input_tokens = max(1, len(prompt) // 4)
        text = f"[{self.name}] {prompt[-200:]}".strip()
        return BackendResponse(
            text=text,
            usage=BackendUsage(input_tokens=input_tokens, output_tokens=max(1, len(text) // 4)),
            model=self.model,
            finish_reason="stop",
        )


__all__ = ["ScriptStep", "ScriptedBackend"]
