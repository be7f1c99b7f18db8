"""Event transports.

The backend comes from the ``backend`` argument, ``RELAYFLOW_TRANSPORT`` or
``transport.backend`` in the configuration, in that order.
"""

from __future__ import annotations

import os
from typing import Optional

from ..config import RelayflowConfig, load_config
from .base import BaseTransport
from .inmemory import EventDelivery, InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[RelayflowConfig] = None
) -> BaseTransport:
    """Build the event transport for the selected backend."""
    config = config or load_config()
    name = (backend or os.getenv("RELAYFLOW_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport(**config.transport.redis.model_dump())
    raise ValueError(f"Unknown event transport '{name}', expected 'inmemory' or 'redis'")


__all__ = ["BaseTransport", "EventDelivery", "InMemoryTransport", "get_transport"]
