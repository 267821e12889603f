"""
Per-key asyncio locks.

Serializes work on one key (a batch id, a check date) while different keys
proceed concurrently. Locks are reference counted and dropped once no task
holds or waits on them, so the registry does not grow with every batch ever
touched.

These only coordinate tasks inside one process. Cross-process safety comes
from the database: row locks (SELECT ... FOR UPDATE) for batches and a
unique claim column for check runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


batch_locks = KeyedLock()
check_date_locks = KeyedLock()
product_locks = KeyedLock()
