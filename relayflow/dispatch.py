"""Caller-facing entry points for running and signalling workflows."""

from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field

from .contracts import StepOutcome, define_step
from .orchestrator import Orchestrator
from .persistence import (
    StepExecutionRecord,
    TransactionError,
    TransactionRecord,
    TransactionState,
)
from .workflow import WorkflowDefinition, define_workflow

_orchestrator_instance: Orchestrator | None = None


class RunResult(BaseModel):
    """Outcome of :func:`run_workflow`.

    ``state`` is ``waiting-external`` when the run parked at an async step;
    ``result`` is only set once the transaction is done.
    """

    transaction_id: str
    state: TransactionState
    result: Any = None
    errors: List[TransactionError] = Field(default_factory=list)


class SignalResult(BaseModel):
    transaction_id: str
    state: TransactionState


class TransactionStatus(BaseModel):
    transaction_id: str
    workflow_id: str
    state: TransactionState
    step_executions: List[StepExecutionRecord] = Field(default_factory=list)
    result: Any = None
    error: Optional[TransactionError] = None
    waiting_step: Optional[str] = None


def get_orchestrator() -> Orchestrator:
    """Return the process-wide orchestrator, creating it from configuration."""
    global _orchestrator_instance
    if _orchestrator_instance is None:
        _orchestrator_instance = Orchestrator()
    return _orchestrator_instance


def set_orchestrator(orchestrator: Orchestrator | None) -> None:
    """Replace the process-wide orchestrator (``None`` resets it)."""
    global _orchestrator_instance
    _orchestrator_instance = orchestrator


async def run_workflow(
    definition: WorkflowDefinition,
    input: Any = None,
    transaction_id: Optional[str] = None,
    orchestrator: Orchestrator | None = None,
) -> RunResult:
    """Start a transaction of ``definition`` and drive it as far as it goes.

    Raises:
        WorkflowValidationError: If the input or required services are
            invalid. No transaction is created in that case.
    """
    orchestrator = orchestrator or get_orchestrator()
    orchestrator.register(definition)
    transaction = await orchestrator.start(definition.id, input, transaction_id)
    return _run_result(transaction)


async def report_step_outcome(
    transaction_id: str,
    step_name: str,
    outcome: Union[StepOutcome, str],
    payload: Any = None,
    orchestrator: Orchestrator | None = None,
) -> SignalResult:
    """Report the outcome of an async step.

    Raises:
        TransactionNotWaitingError: If the transaction is not parked at
            ``step_name``.
    """
    orchestrator = orchestrator or get_orchestrator()
    transaction = await orchestrator.report_step_outcome(
        transaction_id, step_name, outcome, payload
    )
    return SignalResult(transaction_id=transaction.transaction_id, state=transaction.state)


async def get_transaction_status(
    transaction_id: str, orchestrator: Orchestrator | None = None
) -> TransactionStatus:
    orchestrator = orchestrator or get_orchestrator()
    transaction = await orchestrator.get_status(transaction_id)
    return TransactionStatus(
        transaction_id=transaction.transaction_id,
        workflow_id=transaction.workflow_id,
        state=transaction.state,
        step_executions=transaction.step_executions,
        result=transaction.result,
        error=transaction.error,
        waiting_step=transaction.waiting_step,
    )


def _run_result(transaction: TransactionRecord) -> RunResult:
    return RunResult(
        transaction_id=transaction.transaction_id,
        state=transaction.state,
        result=transaction.result if transaction.state == TransactionState.DONE else None,
        errors=[transaction.error] if transaction.error is not None else [],
    )


__all__ = [
    "RunResult",
    "SignalResult",
    "TransactionStatus",
    "define_step",
    "define_workflow",
    "get_orchestrator",
    "get_transaction_status",
    "report_step_outcome",
    "run_workflow",
    "set_orchestrator",
]
