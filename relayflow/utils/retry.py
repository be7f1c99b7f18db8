from __future__ import annotations

import asyncio
import random
from typing import Optional

from ..config import RetryConfig


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: Optional[float] = None,
) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, config: Optional[RetryConfig] = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    config = config or RetryConfig()
    delay = compute_backoff(
        attempt, base=config.backoff_base, jitter=config.jitter, max_delay=config.max_delay
    )
    if delay > 0:
        await asyncio.sleep(delay)
