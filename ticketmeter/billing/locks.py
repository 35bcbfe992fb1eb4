"""Per-key asyncio locks for serializing work on one subscription."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Registry of asyncio.Lock objects keyed by string.

    A lock exists only while some coroutine holds or waits on it; the entry
    is dropped when the last one leaves, so the registry does not grow with
    the number of keys ever seen.

    Locks are process-local: they serialize coroutines inside one event
    loop, not separate worker processes.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
