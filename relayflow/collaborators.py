"""Contracts of the services steps receive through their execution context.

Implementations live outside relayflow. They are handed to
``Orchestrator(services={...})`` under a name, and a step lists the names it
needs in ``requires``.
"""

from __future__ import annotations

from typing import Any, Dict, Protocol, runtime_checkable

DATA_MUTATION = "data"
NOTIFICATIONS = "notifications"


@runtime_checkable
class DataMutationService(Protocol):
    """Applies entity changes on behalf of steps."""

    async def apply(self, operation: Dict[str, Any]) -> Any:
        """Perform ``operation`` and return the resulting entity."""
        ...

    async def revert(self, prior: Any) -> None:
        """Restore an entity to ``prior``. Must be idempotent."""
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Sends templated notifications to recipients."""

    async def send(self, to: str, template: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver a notification and return at least ``{"id": ...}``."""
        ...


__all__ = [
    "DATA_MUTATION",
    "NOTIFICATIONS",
    "DataMutationService",
    "NotificationDispatcher",
]
