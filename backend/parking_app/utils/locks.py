from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable
from weakref import WeakValueDictionary


class KeyedLocks:
    """One asyncio.Lock per key, created on demand and dropped once nobody holds a reference."""

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[Hashable, asyncio.Lock] = WeakValueDictionary()

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self.get(key)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


spot_locks = KeyedLocks()
