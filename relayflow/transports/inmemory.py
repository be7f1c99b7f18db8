"""Process-local event transport, used by default and in tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, NamedTuple, Optional, Tuple

from ..contracts import WorkflowEvent
from .base import BaseTransport, subscription_deadline, time_left


class EventDelivery(NamedTuple):
    topic: str
    sequence: int
    event: WorkflowEvent


class InMemoryTransport(BaseTransport[EventDelivery]):
    """Keeps published events per topic inside this process.

    Subscribers are woken as soon as an event is published. A received event
    stays in flight until it is acknowledged.
    """

    def __init__(self) -> None:
        self._topics: Dict[str, Deque[EventDelivery]] = defaultdict(deque)
        self._in_flight: Dict[int, EventDelivery] = {}
        self._sequence = 0
        self._published = asyncio.Condition()

    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        async with self._published:
            self._sequence += 1
            self._topics[topic].append(EventDelivery(topic, self._sequence, event))
            self._published.notify_all()

    def pending(self, topic: str) -> list[WorkflowEvent]:
        """Events published on ``topic`` that no subscriber has received yet."""
        return [delivery.event for delivery in self._topics[topic]]

    def in_flight(self, topic: str) -> list[WorkflowEvent]:
        """Events received from ``topic`` but not acknowledged."""
        return [d.event for d in self._in_flight.values() if d.topic == topic]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[EventDelivery, WorkflowEvent]]:
        deadline = subscription_deadline(lifespan)
        while True:
            async with self._published:
                while not self._topics[topic]:
                    if time_left(deadline) == 0:
                        return
                    try:
                        await asyncio.wait_for(self._published.wait(), time_left(deadline))
                    except asyncio.TimeoutError:
                        return
                delivery = self._topics[topic].popleft()
                self._in_flight[delivery.sequence] = delivery
            yield delivery, delivery.event
            if time_left(deadline) == 0:
                return

    async def ack(self, delivery: EventDelivery) -> None:
        self._in_flight.pop(delivery.sequence, None)
