"""Event transport interface.

Steps emit :class:`WorkflowEvent` instances which are published on a topic
named after the event (``post.published``). Signal events share the same
machinery on a dedicated topic.
"""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import WorkflowEvent

DeliveryT = TypeVar("DeliveryT")


class BaseTransport(Generic[DeliveryT], metaclass=abc.ABCMeta):
    """Topic-based delivery of workflow events.

    Subscribers receive ``(delivery, event)`` pairs. ``delivery`` is the
    backend's handle for one received event and goes back to :meth:`ack`
    once the event is handled. Delivery is at-least-once.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def publish_event(self, event: WorkflowEvent) -> None:
        """Publish ``event`` on the topic named after it."""
        await self.publish(event.name, event)

    @abc.abstractmethod
    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        """Append ``event`` to ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[DeliveryT, WorkflowEvent]]:
        """Receive events from ``topic`` in publish order.

        Args:
            topic: Event name to receive.
            lifespan: Seconds after which the subscription ends. ``None``
                keeps it open until the caller stops iterating.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, delivery: DeliveryT) -> None:
        """Mark a received event as handled."""
        raise NotImplementedError


def subscription_deadline(lifespan: Optional[float]) -> Optional[float]:
    """Loop time at which a subscription with ``lifespan`` ends."""
    if lifespan is None:
        return None
    return asyncio.get_running_loop().time() + lifespan


def time_left(deadline: Optional[float]) -> Optional[float]:
    """Seconds until ``deadline``, never negative; ``None`` means unbounded."""
    if deadline is None:
        return None
    return max(0.0, deadline - asyncio.get_running_loop().time())
