"""Per-key asyncio locks for single-writer-per-record discipline."""

from __future__ import annotations

import asyncio
from typing import Dict


class KeyedLock:
    """Hand out one ``asyncio.Lock`` per key.

    Locks are created on first use and dropped again once nobody holds or waits
    on them, so the map does not grow with every record ever touched.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __call__(self, key: str) -> "_KeyedLockContext":
        return _KeyedLockContext(self, key)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)

    def _acquire_handle(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release_handle(self, key: str) -> None:
        remaining = self._users.get(key, 1) - 1
        if remaining <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._users[key] = remaining


class _KeyedLockContext:
    def __init__(self, owner: KeyedLock, key: str) -> None:
        self._owner = owner
        self._key = key
        self._lock: asyncio.Lock | None = None

    async def __aenter__(self) -> None:
        self._lock = self._owner._acquire_handle(self._key)
        try:
            await self._lock.acquire()
        except BaseException:
            self._owner._release_handle(self._key)
            raise

    async def __aexit__(self, exc_type, exc, tb) -> None:
        assert self._lock is not None
        self._lock.release()
        self._owner._release_handle(self._key)
