import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedAsyncLock:
    """Per-key asyncio locks, released from the registry once unused."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._guard = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._waiters[key] = self._waiters.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            async with self._guard:
                remaining = self._waiters[key] - 1
                if remaining:
                    self._waiters[key] = remaining
                else:
                    self._waiters.pop(key, None)
                    self._locks.pop(key, None)

    def active_keys(self) -> int:
        return len(self._locks)
