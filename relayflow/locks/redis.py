"""Redis-backed lock manager for coordinating several processes."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import LockError

from ..errors import LockAcquisitionError
from .base import BaseLockManager

logger = logging.getLogger(__name__)


class RedisLockManager(BaseLockManager):
    """Distributed per-transaction locks using ``redis.asyncio`` locks.

    ``timeout`` bounds how long a lock may be held. It should exceed the
    longest drive of a transaction, otherwise another process can take the
    lock while the first still works. Losing the lock is logged on release.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        timeout: float = 300.0,
        blocking_timeout: Optional[float] = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        if not self._redis:
            await self.connect()

        lock = self._redis.lock(
            f"relayflow:lock:{key}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not await lock.acquire():
            raise LockAcquisitionError(
                f"Could not lock transaction {key} within {self.blocking_timeout}s"
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # the work under the lock has already committed; keep its result
                logger.warning(
                    f"Lock for transaction {key} expired before release "
                    f"(timeout {self.timeout}s): {exc}"
                )
