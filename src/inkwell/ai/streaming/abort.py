"""Cooperative cancellation for in-flight reads and remote tool calls."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, TypeVar

__all__ = ["AbortSignal", "AbortedError"]

T = TypeVar("T")

_EXHAUSTED: Any = object()


async def _next_or_sentinel(iterator: AsyncIterator[T]) -> T:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class AbortedError(Exception):
    """Raised by :class:`AbortSignal` helpers once the signal has fired."""

    def __init__(self, reason: str = "aborted") -> None:
        super().__init__(reason)
        self.reason = reason


class AbortSignal:
    """One-shot flag that in-flight awaits race against.

    Each round gets a fresh signal; firing it makes the pending read (or remote
    call) raise :class:`AbortedError` instead of waiting for more data.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise AbortedError(self.reason or "aborted")

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first."""

        task = asyncio.ensure_future(awaitable)
        if self.aborted:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise AbortedError(self.reason or "aborted")
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise AbortedError(self.reason or "aborted")

    async def iterate(self, iterable: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield from ``iterable``, racing every step against the signal."""

        iterator = iterable.__aiter__()
        try:
            while True:
                item = await self.race(_next_or_sentinel(iterator))
                if item is _EXHAUSTED:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(RuntimeError):
                    await aclose()
