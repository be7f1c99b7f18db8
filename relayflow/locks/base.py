"""Base interface for per-transaction locks."""

from __future__ import annotations

import abc
from typing import AsyncContextManager


class BaseLockManager(metaclass=abc.ABCMeta):
    """Hands out mutual exclusion keyed by transaction id.

    Locks are per key only: holders of different keys never wait on each
    other.
    """

    async def connect(self) -> None:
        """Open connection to the lock backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the lock backend (no-op by default)."""
        pass

    @abc.abstractmethod
    def acquire(self, key: str) -> AsyncContextManager[None]:
        """Return an async context manager holding the lock for ``key``.

        Raises:
            LockAcquisitionError: If the lock cannot be taken in time.
        """
        raise NotImplementedError
