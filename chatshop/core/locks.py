"""
ChatShop - In-process keyed locks

Serializes mutations of one session or one ingredient inside this worker.
Cross-worker safety comes from the version checks underneath; these locks only
keep same-process writers from burning the optimistic retry budget on each other.
"""
import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable


class KeyedLocks:
    """asyncio.Lock per key, dropped automatically once no task holds a reference."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.get(key)
        async with lock:
            yield

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        # Sorted acquisition order so two multi-key holders never deadlock.
        locks = [self.get(key) for key in sorted(set(keys))]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
