"""Single-consumer async queue that feeds prompts into one live connection."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_END = object()


class AsyncInputQueue(Generic[T]):
    """Async-iterable FIFO with explicit end/fail.

    Producers call ``enqueue``; exactly one consumer iterates.  Once ended,
    iteration stops (``end``) or raises the stored error (``fail``) after the
    buffered items are drained, and further enqueues are dropped.

    Waiters are plain futures so a hand-off never requires a loop turn
    between ``enqueue`` and the consumer observing the item.
    """

    def __init__(self) -> None:
        self._values: deque[T] = deque()
        self._waiters: deque[asyncio.Future[Any]] = deque()
        self._ended = False
        self._error: BaseException | None = None

    @property
    def ended(self) -> bool:
        return self._ended

    def enqueue(self, value: T) -> None:
        if self._ended:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(value)
                return
        self._values.append(value)

    def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._wake_waiters()

    def fail(self, error: BaseException) -> None:
        if self._ended:
            return
        self._ended = True
        self._error = error
        self._wake_waiters()

    def _wake_waiters(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            if self._error is not None:
                waiter.set_exception(self._error)
            else:
                waiter.set_result(_END)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        if self._values:
            return self._values.popleft()
        if self._ended:
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        value = await waiter
        if value is _END:
            raise StopAsyncIteration
        return value

    async def aclose(self) -> None:
        """Consumer-side shutdown; same as ``end``."""
        self.end()
