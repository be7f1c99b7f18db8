"""Lock manager factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RelayflowConfig, load_config
from .base import BaseLockManager
from .inmemory import InMemoryLockManager


def get_lock_manager(
    backend: Optional[str] = None, config: Optional[RelayflowConfig] = None
) -> BaseLockManager:
    """Factory function to get the configured lock manager."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("RELAYFLOW_LOCKS")
        or config.locks.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryLockManager(blocking_timeout=config.locks.blocking_timeout_seconds)
    elif backend == "redis":
        from .redis import RedisLockManager

        redis_conf = config.locks.redis
        return RedisLockManager(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            timeout=config.locks.timeout_seconds,
            blocking_timeout=config.locks.blocking_timeout_seconds,
        )
    else:
        raise ValueError(f"Unsupported lock backend: {backend}")


__all__ = ["BaseLockManager", "InMemoryLockManager", "get_lock_manager"]
