from __future__ import annotations

import asyncio
import contextlib
from typing import Any, AsyncIterator, Awaitable, Optional, Tuple, TypeVar

T = TypeVar("T")


async def _next_item(iterator: AsyncIterator[Any]) -> Tuple[bool, Any]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, None


class AbortedError(Exception):
    """Raised when a user-initiated cancellation interrupts work. Never retried."""

    def __init__(self, message: str = "Operation aborted") -> None:
        super().__init__(message)


class CancellationToken:
    """
    Cooperative cancellation signal shared by model calls, tool calls and sync.

    Holders either poll `raise_if_cancelled()` at safe points or race an
    awaitable against the token with `guard()`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Operation aborted") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AbortedError(self.reason or "Operation aborted")

    def _get_event(self) -> asyncio.Event:
        # Created lazily so the token can be built outside a running loop.
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    async def wait(self) -> None:
        await self._get_event().wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, cancelling it and raising AbortedError if the token fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
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
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise AbortedError(self.reason or "Operation aborted")

    async def iterate(self, source: AsyncIterator[T]) -> AsyncIterator[T]:
        """Re-yield `source`, aborting a pending `__anext__` when the token fires."""
        iterator = source.__aiter__()
        try:
            while True:
                has_item, item = await self.guard(_next_item(iterator))
                if not has_item:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early with AbortedError on cancellation."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        await self.guard(asyncio.sleep(seconds))
