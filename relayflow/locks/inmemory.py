"""In-process lock manager."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from ..errors import LockAcquisitionError
from .base import BaseLockManager


class InMemoryLockManager(BaseLockManager):
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits for it.

    Only serializes callers within a single process and event loop.
    """

    def __init__(self, blocking_timeout: Optional[float] = None) -> None:
        self._blocking_timeout = blocking_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._blocking_timeout)
            except asyncio.TimeoutError:
                raise LockAcquisitionError(
                    f"Could not lock transaction {key} within {self._blocking_timeout}s"
                ) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def held_keys(self) -> list[str]:
        return [key for key, lock in self._locks.items() if lock.locked()]
