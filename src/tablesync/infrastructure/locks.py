"""Per-key FIFO mutual exclusion for coroutines."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable


class KeyedLock:
    """Lock registry mapping an arbitrary key to a queue of waiters.

    At most one holder per key; waiters are served in arrival order and
    different keys never block each other.  A key's entry is dropped once
    its queue drains.

    Example::

        release = await locks.lock("index:dat://abc")
        try:
            ...
        finally:
            release()
    """

    def __init__(self) -> None:
        self._queues: dict[str, deque[asyncio.Future[None]]] = {}

    def locked(self, key: str) -> bool:
        return key in self._queues

    def pending(self, key: str) -> int:
        """Number of callers holding or waiting for *key*."""
        return len(self._queues.get(key, ()))

    async def lock(self, key: str) -> Callable[[], None]:
        """Wait for our turn on *key* and return the release callable."""
        loop = asyncio.get_running_loop()
        queue = self._queues.setdefault(key, deque())
        waiter: asyncio.Future[None] = loop.create_future()
        queue.append(waiter)
        if len(queue) == 1:
            waiter.set_result(None)

        try:
            await waiter
        except asyncio.CancelledError:
            self._abandon(key, waiter)
            raise

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._queues[key].popleft()
            self._advance(key)

        return release

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold *key* for the duration of the ``async with`` block."""
        release = await self.lock(key)
        try:
            yield
        finally:
            release()

    def _abandon(self, key: str, waiter: asyncio.Future[None]) -> None:
        queue = self._queues.get(key)
        if queue is None or waiter not in queue:
            return
        was_head = queue[0] is waiter
        queue.remove(waiter)
        if was_head:
            self._advance(key)
        elif not queue:
            del self._queues[key]

    def _advance(self, key: str) -> None:
        queue = self._queues[key]
        # Waiters cancelled before their turn are skipped.
        while queue and queue[0].cancelled():
            queue.popleft()
        if not queue:
            del self._queues[key]
            return
        queue[0].set_result(None)
