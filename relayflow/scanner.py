"""Deadline scanner expiring async steps that were never signalled."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class DeadlineScanner:
    """Periodically fails transactions parked past their deadline.

    Deadlines live in the transaction store, so any process running a scanner
    against the same store picks them up, including after a restart.
    """

    def __init__(self, orchestrator: Orchestrator, interval_seconds: float = 30.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._orchestrator = orchestrator
        self.interval_seconds = interval_seconds

    async def scan_once(self, now: Optional[datetime] = None) -> List[str]:
        """Expire every overdue transaction and return their ids."""
        expired = await self._orchestrator.expire_overdue(now)
        if expired:
            logger.info(f"Expired {len(expired)} overdue transaction(s): {', '.join(expired)}")
        return expired

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Scan every ``interval_seconds`` until ``lifespan`` seconds have passed.

        Args:
            lifespan: Maximum time in seconds to keep scanning. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            try:
                await self.scan_once()
            except Exception:
                logger.exception("Deadline scan failed")

            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                await asyncio.sleep(min(self.interval_seconds, remaining))
            else:
                await asyncio.sleep(self.interval_seconds)
