"""Per-expedition locking so each party acts as a serial state machine."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

__all__ = ["SessionLocks"]


class SessionLocks:
    """Hand out one :class:`asyncio.Lock` per expedition id.

    Actions on the same expedition queue behind each other while unrelated
    expeditions proceed concurrently. The registry itself is guarded by a
    separate lock so two interactions never create competing locks for the
    same key.
    """

    __slots__ = ("_locks", "_lock")

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def make_key(expedition_id: str) -> str:
        """Normalise ``expedition_id`` into a registry key."""

        key = expedition_id.strip().upper()
        if not key:
            raise ValueError("expedition_id is required to build a session key")
        return key

    async def get(self, expedition_id: str) -> asyncio.Lock:
        key = self.make_key(expedition_id)
        async with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    @asynccontextmanager
    async def hold(self, expedition_id: str) -> AsyncIterator[None]:
        lock = await self.get(expedition_id)
        async with lock:
            yield

    async def discard(self, expedition_id: str) -> bool:
        """Forget the lock for a finished expedition unless it is still held."""

        key = self.make_key(expedition_id)
        async with self._lock:
            lock = self._locks.get(key)
            if lock is None or lock.locked():
                return False
            del self._locks[key]
            return True

    async def keys(self) -> Tuple[str, ...]:
        async with self._lock:
            return tuple(self._locks.keys())
