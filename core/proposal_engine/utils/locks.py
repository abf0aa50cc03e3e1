"""Per-thread asyncio locks."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ThreadLocks:
    """
    One asyncio.Lock per workflow thread, created on first use.

    A lock is dropped as soon as nobody holds it or waits for it, so the
    map only ever contains threads with work in progress.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        self._users[thread_id] = self._users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[thread_id] -= 1
            if not self._users[thread_id]:
                del self._users[thread_id]
                del self._locks[thread_id]

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)
