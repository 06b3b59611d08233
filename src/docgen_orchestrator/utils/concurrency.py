"""Async cancellation and timeout primitives shared by the dispatch path."""

from __future__ import annotations

import asyncio
import inspect
import time
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    An optional ``deadline`` (in ``clock`` units) makes the token report
    cancellation once the deadline passes, without anyone calling ``cancel``.
    """

    def __init__(
        self,
        *,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = asyncio.Event()
        self._deadline = deadline
        self._clock = clock

    @classmethod
    def with_timeout(
        cls,
        seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> CancellationToken:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        return cls(deadline=clock() + seconds, clock=clock)

    def cancel(self) -> None:
        self._event.set()

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def deadline_exceeded(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set() or self.deadline_exceeded

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` when no deadline is set."""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    async def wait(self) -> None:
        if self._deadline is None:
            await self._event.wait()
            return
        remaining = self.remaining()
        if not remaining:
            return
        with suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=remaining)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")
        if self.deadline_exceeded:
            raise asyncio.CancelledError("operation deadline exceeded")


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Run ``coroutine`` with timeout and cooperative cancellation support."""
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError("operation cancelled")

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    cancel_wait_task = asyncio.create_task(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            return await task

        if cancel_wait_task in done and token.is_cancelled:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            raise asyncio.CancelledError("operation cancelled")

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def sleep_with_cancellation(
    sleep: Callable[[float], Awaitable[None]],
    delay_seconds: float,
    cancel_token: CancellationToken | None,
) -> None:
    """Sleep via ``sleep`` but wake and raise as soon as ``cancel_token`` fires."""

    if delay_seconds <= 0:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return
    if cancel_token is None:
        await sleep(delay_seconds)
        return

    cancel_token.raise_if_cancelled()
    sleep_task = asyncio.create_task(_await_value(sleep(delay_seconds)))
    cancel_wait_task = asyncio.create_task(cancel_token.wait())
    try:
        done, _ = await asyncio.wait(
            {sleep_task, cancel_wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if sleep_task in done:
            await sleep_task
        cancel_token.raise_if_cancelled()
    finally:
        for pending in (sleep_task, cancel_wait_task):
            if not pending.done():
                pending.cancel()
                with suppress(asyncio.CancelledError):
                    await pending


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Raw coroutine objects rejected before scheduling are closed so CPython does not
    # emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "run_with_timeout",
    "sleep_with_cancellation",
]
