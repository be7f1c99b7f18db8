"""Redis event transport for delivery across processes.

Each topic is a Redis list ``relayflow:events:<topic>``. Receiving moves an
event to ``relayflow:events:<topic>:processing`` in one step and
acknowledging removes it from there, so events a crashed subscriber never
acknowledged stay in Redis.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import WorkflowEvent
from .base import BaseTransport, subscription_deadline, time_left

logger = logging.getLogger(__name__)

KEY_PREFIX = "relayflow:events"

# (processing list, raw event JSON)
RedisDelivery = Tuple[str, str]


def topic_key(topic: str) -> str:
    return f"{KEY_PREFIX}:{topic}"


def processing_key(topic: str) -> str:
    return f"{KEY_PREFIX}:{topic}:processing"


class RedisTransport(BaseTransport[RedisDelivery]):
    """Workflow events on Redis lists with explicit acknowledgement."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        poll_seconds: float = 1.0,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.poll_seconds = poll_seconds
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.rpush(topic_key(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RedisDelivery, WorkflowEvent]]:
        if not self._redis:
            await self.connect()

        source, processing = topic_key(topic), processing_key(topic)
        deadline = subscription_deadline(lifespan)
        while True:
            left = time_left(deadline)
            if left == 0:
                return
            wait = self.poll_seconds if left is None else min(self.poll_seconds, left)
            payload = await self._redis.blmove(source, processing, wait, "LEFT", "RIGHT")
            if payload is None:
                continue
            try:
                event = WorkflowEvent.from_json(payload)
            except ValidationError as e:
                logger.error(f"Dropping malformed event on {source}: {e}")
                await self._redis.lrem(processing, 1, payload)
                continue
            yield (processing, payload), event

    async def ack(self, delivery: RedisDelivery) -> None:
        processing, payload = delivery
        await self._redis.lrem(processing, 1, payload)

    async def requeue_unacked(self, topic: str) -> int:
        """Put events received but never acknowledged back on ``topic``.

        Only call this while no subscriber of ``topic`` is running.
        """
        if not self._redis:
            await self.connect()
        moved = 0
        while await self._redis.lmove(processing_key(topic), topic_key(topic), "LEFT", "RIGHT"):
            moved += 1
        if moved:
            logger.info(f"Requeued {moved} unacknowledged events on {topic_key(topic)}")
        return moved
