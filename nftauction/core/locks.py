"""
Keyed critical sections for cooperative (asyncio) scheduling.

One asyncio.Lock per key (auction id, bidder address). A lock exists only
while some coroutine holds or waits for it: hold() counts its users and
the last one out removes the entry, so the registry does not grow with
every bidder ever seen.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLocks:
    """Registry of per-key asyncio locks."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        # key -> coroutines holding or waiting for the lock
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
