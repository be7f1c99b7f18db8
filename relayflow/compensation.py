"""Unwinding of failed transactions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .config import RetryConfig
from .contracts import ExecutionContext
from .errors import UnknownStepError
from .persistence import (
    CompensationFailure,
    StepExecutionRecord,
    StepStatus,
    TransactionRecord,
    TransactionRepository,
)
from .utils.calls import call_maybe_async, describe_error
from .utils.retry import schedule_retry
from .workflow import WorkflowDefinition

logger = logging.getLogger(__name__)

# COMPENSATING is included so an unwind interrupted by a crash is picked up again.
_UNWINDABLE = (StepStatus.SUCCEEDED, StepStatus.COMPENSATING)


class CompensationController:
    """Runs compensate functions of succeeded steps in reverse order.

    Compensation is best effort: a compensate function that keeps failing is
    recorded as ``compensation_failed`` and the unwind moves on to the
    remaining steps. ``invoke`` is never called during an unwind.
    """

    def __init__(
        self,
        repository: TransactionRepository,
        services: Optional[Dict[str, Any]] = None,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        self._repository = repository
        self._services = services or {}
        self._retry = retry or RetryConfig()

    async def unwind(
        self, transaction: TransactionRecord, definition: WorkflowDefinition
    ) -> List[CompensationFailure]:
        """Compensate every succeeded step of ``transaction``, latest first."""
        failures: List[CompensationFailure] = []
        candidates = [r for r in transaction.step_executions if r.status in _UNWINDABLE]

        for record in reversed(candidates):
            failure = await self._compensate(transaction, definition, record)
            if failure is not None:
                failures.append(failure)

        if failures:
            logger.error(
                f"Transaction {transaction.transaction_id} reverted with "
                f"{len(failures)} failed compensation(s): "
                + ", ".join(f.step_name for f in failures)
            )
        return failures

    async def _compensate(
        self,
        transaction: TransactionRecord,
        definition: WorkflowDefinition,
        record: StepExecutionRecord,
    ) -> Optional[CompensationFailure]:
        try:
            step = definition.steps.get(record.step_name)
        except UnknownStepError as exc:
            return await self._mark_failed(record, describe_error(exc))

        if not step.has_compensation:
            return None

        record.status = StepStatus.COMPENSATING
        await self._repository.update_step_execution(record)

        attempt = 1
        while True:
            ctx = ExecutionContext.for_step(
                step,
                transaction.transaction_id,
                transaction.workflow_id,
                self._services,
                attempt=attempt,
            )
            try:
                await call_maybe_async(step.compensate, record.compensation_input, ctx)
            except Exception as exc:
                message = describe_error(exc)
                if attempt <= step.max_retries:
                    logger.warning(
                        f"Compensation of {step.name} failed for transaction "
                        f"{transaction.transaction_id} (attempt {attempt}): {message}; retrying"
                    )
                    await schedule_retry(attempt, self._retry)
                    attempt += 1
                    continue
                logger.exception(
                    f"Compensation of {step.name} failed for transaction "
                    f"{transaction.transaction_id}"
                )
                return await self._mark_failed(record, message)
            break

        record.status = StepStatus.COMPENSATED
        await self._repository.update_step_execution(record)
        logger.info(f"Compensated {step.name} for transaction {transaction.transaction_id}")
        return None

    async def _mark_failed(
        self, record: StepExecutionRecord, message: str
    ) -> CompensationFailure:
        record.status = StepStatus.COMPENSATION_FAILED
        record.error = message
        await self._repository.update_step_execution(record)
        return CompensationFailure(step_name=record.step_name, message=message)
