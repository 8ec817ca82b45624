"""Keyed in-process locks.

Serializes work on one alert, one alert family of an owner, or one feed
connection, while unrelated keys proceed in parallel. Database constraints
remain the cross-process backstop.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Registry of asyncio.Lock objects created on demand per key.

    Entries are dropped once no task holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


locks = KeyedLocks()


def alert_key(alert_id) -> str:
    return f"alert:{alert_id}"


def family_key(owner_id, family) -> str:
    return f"family:{owner_id}:{getattr(family, 'value', family)}"


def sync_key(owner_id, connection_type) -> str:
    return f"sync:{owner_id}:{getattr(connection_type, 'value', connection_type)}"


def timeline_key(owner_id) -> str:
    return f"timeline:{owner_id}"
