"""Entry point for external actors reporting async step outcomes."""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from .contracts import StepOutcome, WorkflowEvent
from .errors import RelayflowError
from .orchestrator import Orchestrator
from .persistence import TransactionRecord

logger = logging.getLogger(__name__)

# Topic on which signals arrive when they are delivered through a transport.
SIGNAL_TOPIC = "relayflow.signals"


def signal_event(
    transaction_id: str,
    step_name: str,
    outcome: Union[StepOutcome, str],
    payload: Any = None,
) -> WorkflowEvent:
    """Build the event :meth:`SignalHandler.listen` understands."""
    return WorkflowEvent(
        name=SIGNAL_TOPIC,
        transaction_id=transaction_id,
        step_name=step_name,
        data={"outcome": StepOutcome(outcome).value, "payload": payload},
    )


class SignalHandler:
    """Reports step outcomes to an orchestrator.

    Signals can be delivered directly through :meth:`report` or as events on
    the orchestrator's transport, consumed by :meth:`listen`.
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self._orchestrator = orchestrator

    async def report(
        self,
        transaction_id: str,
        step_name: str,
        outcome: Union[StepOutcome, str],
        payload: Any = None,
    ) -> TransactionRecord:
        return await self._orchestrator.report_step_outcome(
            transaction_id, step_name, outcome, payload
        )

    async def publish(
        self,
        transaction_id: str,
        step_name: str,
        outcome: Union[StepOutcome, str],
        payload: Any = None,
    ) -> None:
        """Queue a signal on the transport instead of applying it here."""
        event = signal_event(transaction_id, step_name, outcome, payload)
        await self._orchestrator.transport.publish(SIGNAL_TOPIC, event)

    async def listen(self, lifespan: Optional[float] = None) -> int:
        """Apply signals arriving on the transport; returns how many were applied.

        A signal that cannot be applied (unknown transaction, transaction not
        waiting at that step) is logged and acknowledged so it is not
        redelivered.
        """
        transport = self._orchestrator.transport
        applied = 0
        async for raw_message, event in transport.subscribe(SIGNAL_TOPIC, lifespan=lifespan):
            try:
                await self._handle(event)
                applied += 1
            except RelayflowError as e:
                logger.warning(f"Ignoring signal {event.message_id}: {e}")
            await transport.ack(raw_message)
        return applied

    async def _handle(self, event: WorkflowEvent) -> None:
        if not event.transaction_id or not event.step_name:
            raise RelayflowError("Signal event is missing transaction_id or step_name")
        await self.report(
            event.transaction_id,
            event.step_name,
            event.data.get("outcome", ""),
            event.data.get("payload"),
        )
