"""Execution engine driving relayflow transactions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from .compensation import CompensationController
from .config import RelayflowConfig, load_config
from .contracts import ExecutionContext, StepOutcome, StepResponse, WorkflowEvent
from .errors import (
    RelayflowError,
    StepTimeoutError,
    TransactionNotFoundError,
    TransactionNotWaitingError,
    UnknownWorkflowError,
    WorkflowValidationError,
    is_retryable,
)
from .locks import BaseLockManager, get_lock_manager
from .persistence import (
    ErrorKind,
    StepExecutionRecord,
    StepStatus,
    TransactionError,
    TransactionRecord,
    TransactionRepository,
    TransactionState,
    create_repository,
    get_repository,
)
from .persistence.models import utcnow
from .registry import REGISTRY, WorkflowRegistry
from .transports import BaseTransport, get_transport
from .utils.calls import call_maybe_async, describe_error
from .utils.retry import schedule_retry
from .workflow import (
    INPUT_KEY,
    BranchNode,
    Node,
    StepNode,
    TransformNode,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)


class _Flow(Enum):
    CONTINUE = "continue"
    PARKED = "parked"
    FAILED = "failed"


class Orchestrator:
    """Runs transactions of registered workflow definitions.

    Steps execute inside the coroutine that calls :meth:`start`,
    :meth:`resume` or :meth:`report_step_outcome`; there is no background
    scheduler. Every mutation of a transaction happens while holding the
    per-transaction lock from the configured lock manager.

    Collaborator services are injected here and handed to each step through
    its :class:`ExecutionContext`, restricted to the names the step lists in
    ``requires``.
    """

    def __init__(
        self,
        repository: TransactionRepository | None = None,
        transport: BaseTransport | None = None,
        locks: BaseLockManager | None = None,
        services: Optional[Dict[str, Any]] = None,
        registry: WorkflowRegistry | None = None,
        config: RelayflowConfig | None = None,
    ) -> None:
        self._config = config or load_config()
        if repository is None:
            # an explicit database gets its own repository; otherwise share the cached one
            if config is not None and config.database_url:
                repository = create_repository(config.database_url)
            else:
                repository = get_repository()
        self._repository = repository
        self._transport = (
            transport if transport is not None else get_transport(config=self._config)
        )
        self._locks = locks if locks is not None else get_lock_manager(config=self._config)
        self._services = dict(services or {})
        self._registry = registry if registry is not None else REGISTRY
        self._compensation = CompensationController(
            self._repository, self._services, self._config.retry
        )

    @property
    def repository(self) -> TransactionRepository:
        return self._repository

    @property
    def registry(self) -> WorkflowRegistry:
        return self._registry

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Make ``definition`` resolvable by id for this orchestrator."""
        return self._registry.register(definition)

    # ------------------------------------------------------------------
    # Public API
    async def start(
        self,
        workflow_id: str,
        input: Any = None,
        transaction_id: Optional[str] = None,
    ) -> TransactionRecord:
        """Start a transaction, or pick up an existing one with the same id.

        Validation happens before anything is persisted. Starting with the id
        of a finished, reverted or waiting transaction returns it unchanged;
        an interrupted running transaction is resumed.

        Raises:
            UnknownWorkflowError: If ``workflow_id`` is not registered.
            WorkflowValidationError: If the input or the injected services do
                not satisfy the workflow.
        """
        definition = self._registry.get(workflow_id)
        payload = definition.validate_input(input)
        self._check_services(definition)
        transaction_id = transaction_id or str(uuid.uuid4())

        async with self._locks.acquire(transaction_id):
            transaction = await self._repository.get_transaction(transaction_id)
            if transaction is not None:
                if transaction.workflow_id != workflow_id:
                    raise WorkflowValidationError(
                        f"Transaction {transaction_id} belongs to workflow "
                        f"'{transaction.workflow_id}', not '{workflow_id}'"
                    )
                logger.info(
                    f"Transaction {transaction_id} already exists "
                    f"(state: {transaction.state.value})"
                )
                await self._pick_up(transaction, definition)
            else:
                transaction = TransactionRecord(
                    transaction_id=transaction_id,
                    workflow_id=workflow_id,
                    input=payload,
                )
                await self._repository.create_transaction(transaction)
                logger.info(f"Started transaction {transaction_id} of workflow '{workflow_id}'")
                await self._drive(transaction, definition)

        return transaction.model_copy(deep=True)

    async def resume(self, transaction_id: str) -> TransactionRecord:
        """Continue a transaction from its persisted step records.

        Succeeded steps are never invoked again. A transaction that is
        done, reverted or genuinely waiting is returned unchanged.
        """
        async with self._locks.acquire(transaction_id):
            transaction = await self._load(transaction_id)
            definition = self._registry.get(transaction.workflow_id)
            await self._pick_up(transaction, definition)
        return transaction.model_copy(deep=True)

    async def get_status(self, transaction_id: str) -> TransactionRecord:
        """Read-only view of a transaction."""
        return await self._load(transaction_id)

    async def report_step_outcome(
        self,
        transaction_id: str,
        step_name: str,
        outcome: Union[StepOutcome, str],
        payload: Any = None,
    ) -> TransactionRecord:
        """Complete the async step a transaction is parked at.

        On success ``payload`` becomes the step output (a
        :class:`StepResponse` may be passed to set a distinct compensation
        input or emit events) and the transaction continues. On failure the
        step is marked failed and the transaction is unwound.

        Raises:
            WorkflowValidationError: If ``outcome`` is not success or failure.
            TransactionNotFoundError: If the transaction does not exist.
            TransactionNotWaitingError: If the transaction is not parked at
                ``step_name``. Nothing is changed in that case.
        """
        try:
            outcome = StepOutcome(outcome)
        except ValueError:
            raise WorkflowValidationError(
                f"Unknown step outcome '{outcome}', expected 'success' or 'failure'"
            ) from None

        async with self._locks.acquire(transaction_id):
            transaction = await self._load(transaction_id)
            definition = self._registry.get(transaction.workflow_id)
            if self._has_stale_wait(transaction):
                await self._settle_stale_wait(transaction, definition)
            if not transaction.is_waiting_at(step_name):
                raise TransactionNotWaitingError(
                    transaction_id, step_name, transaction.state.value
                )
            record = self._parked_record(transaction, step_name)

            if outcome is StepOutcome.SUCCESS:
                response = (
                    payload if isinstance(payload, StepResponse) else StepResponse(output=payload)
                )
                await self._mark_succeeded(record, response)
                self._clear_wait(transaction, TransactionState.RUNNING)
                await self._repository.save_transaction(transaction)
                logger.info(
                    f"Step {step_name} of transaction {transaction_id} signalled success"
                )
                await self._dispatch_events(transaction, step_name, response.events)
                await self._drive(transaction, definition)
            else:
                message = _payload_message(payload) or f"Step '{step_name}' reported failure"
                await self._mark_failed(record, message)
                logger.warning(
                    f"Step {step_name} of transaction {transaction_id} signalled failure: {message}"
                )
                await self._fail(
                    transaction, definition, step_name, message, ErrorKind.SIGNAL_FAILURE
                )

        return transaction.model_copy(deep=True)

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """Fail every waiting step whose deadline has passed.

        This is the timeout path used by the deadline scanner. It behaves like
        a failure signal for the parked step. Returns the ids of the expired
        transactions.
        """
        now = now or utcnow()
        expired: List[str] = []
        for transaction_id in await self._repository.list_overdue(now):
            try:
                if await self._expire(transaction_id, now):
                    expired.append(transaction_id)
            except RelayflowError as e:
                logger.error(f"Cannot expire transaction {transaction_id}: {e}")
        return expired

    async def recover(self) -> List[str]:
        """Pick up transactions interrupted by a process restart.

        Running transactions are driven forward, failed ones have their
        unwind completed, and waiting ones whose signal was recorded but not
        yet acted on continue. Returns the ids that were picked up.
        """
        recovered: List[str] = []
        for state in (
            TransactionState.RUNNING,
            TransactionState.FAILED,
            TransactionState.WAITING_EXTERNAL,
        ):
            for stored in await self._repository.list_transactions(state):
                try:
                    picked_up = await self._recover(stored.transaction_id)
                except RelayflowError as e:
                    logger.error(f"Cannot recover transaction {stored.transaction_id}: {e}")
                    continue
                if picked_up:
                    recovered.append(stored.transaction_id)
        return recovered

    # ------------------------------------------------------------------
    # Driving
    async def _expire(self, transaction_id: str, now: datetime) -> bool:
        async with self._locks.acquire(transaction_id):
            transaction = await self._repository.get_transaction(transaction_id)
            if (
                transaction is None
                or transaction.state != TransactionState.WAITING_EXTERNAL
                or transaction.deadline_at is None
                or transaction.deadline_at > now
            ):
                return False
            definition = self._registry.get(transaction.workflow_id)
            if self._has_stale_wait(transaction):
                # the signal arrived in time; only its bookkeeping was lost
                await self._settle_stale_wait(transaction, definition)
                return False

            step_name = transaction.waiting_step
            step = definition.steps.get(step_name)
            record = self._parked_record(transaction, step_name)
            error = StepTimeoutError(step_name, step.timeout_seconds)
            await self._mark_failed(record, describe_error(error))
            logger.warning(f"Transaction {transaction_id}: {error}")
            await self._fail(transaction, definition, step_name, error, ErrorKind.TIMEOUT)
            return True

    async def _recover(self, transaction_id: str) -> bool:
        async with self._locks.acquire(transaction_id):
            transaction = await self._load(transaction_id)
            if transaction.state == TransactionState.WAITING_EXTERNAL and not (
                self._has_stale_wait(transaction)
            ):
                return False
            definition = self._registry.get(transaction.workflow_id)
            await self._pick_up(transaction, definition)
            return True

    async def _pick_up(
        self, transaction: TransactionRecord, definition: WorkflowDefinition
    ) -> None:
        if self._has_stale_wait(transaction):
            await self._settle_stale_wait(transaction, definition)
        elif transaction.state == TransactionState.RUNNING:
            await self._drive(transaction, definition)
        elif transaction.state == TransactionState.FAILED:
            await self._unwind(transaction, definition)

    async def _drive(
        self, transaction: TransactionRecord, definition: WorkflowDefinition
    ) -> None:
        outputs: Dict[str, Any] = {INPUT_KEY: transaction.input}
        flow = await self._walk(transaction, definition, definition.nodes, outputs)
        if flow is not _Flow.CONTINUE:
            return

        try:
            transaction.result = definition.compute_result(outputs)
        except Exception as exc:
            await self._fail(transaction, definition, None, exc, ErrorKind.TRANSFORM_FAILED)
            return
        transaction.state = TransactionState.DONE
        await self._repository.save_transaction(transaction)
        logger.info(f"Transaction {transaction.transaction_id} done")

    async def _walk(
        self,
        transaction: TransactionRecord,
        definition: WorkflowDefinition,
        nodes: Sequence[Node],
        outputs: Dict[str, Any],
    ) -> _Flow:
        for node in nodes:
            if isinstance(node, StepNode):
                flow = await self._run_step(transaction, definition, node, outputs)
            elif isinstance(node, TransformNode):
                flow = await self._run_transform(transaction, definition, node, outputs)
            else:
                flow = await self._run_branch(transaction, definition, node, outputs)
            if flow is not _Flow.CONTINUE:
                return flow
        return _Flow.CONTINUE

    async def _run_transform(
        self,
        transaction: TransactionRecord,
        definition: WorkflowDefinition,
        node: TransformNode,
        outputs: Dict[str, Any],
    ) -> _Flow:
        try:
            outputs[node.name] = node.fn(outputs)
        except Exception as exc:
            return await self._fail(
                transaction, definition, node.name, exc, ErrorKind.TRANSFORM_FAILED
            )
        return _Flow.CONTINUE

    async def _run_branch(
        self,
        transaction: TransactionRecord,
        definition: WorkflowDefinition,
        node: BranchNode,
        outputs: Dict[str, Any],
    ) -> _Flow:
        decision = transaction.branch_decisions.get(node.name)
        if decision is None:
            try:
                decision = node.decide(outputs)
            except Exception as exc:
                return await self._fail(
                    transaction, definition, node.name, exc, ErrorKind.TRANSFORM_FAILED
                )
            transaction.branch_decisions[node.name] = decision
            await self._repository.save_transaction(transaction)
            logger.debug(
                f"Transaction {transaction.transaction_id} branch {node.name} took path {decision}"
            )
        return await self._walk(transaction, definition, node.nodes_for(decision), outputs)

    async def _run_step(
        self,
        transaction: TransactionRecord,
        definition: WorkflowDefinition,
        node: StepNode,
        outputs: Dict[str, Any],
    ) -> _Flow:
        step = node.step
        done = transaction.succeeded_record(step.name)
        if done is not None:
            outputs[step.name] = done.output
            return _Flow.CONTINUE
        if transaction.is_waiting_at(step.name):
            return _Flow.PARKED

        await self._abandon_interrupted(transaction, step.name)
        try:
            step_input = node.resolve_input(outputs)
        except Exception as exc:
            return await self._fail(
                transaction, definition, step.name, exc, ErrorKind.TRANSFORM_FAILED
            )

        attempt = len(transaction.records_for(step.name)) + 1
        while True:
            record = StepExecutionRecord(
                transaction_id=transaction.transaction_id,
                step_name=step.name,
                attempt=attempt,
                status=StepStatus.PENDING,
                input=step_input,
                started_at=utcnow(),
            )
            await self._repository.add_step_execution(record)
            transaction.step_executions.append(record)
            record.status = StepStatus.INVOKING
            await self._repository.update_step_execution(record)

            ctx = ExecutionContext.for_step(
                step,
                transaction.transaction_id,
                transaction.workflow_id,
                self._services,
                attempt=attempt,
            )
            try:
                returned = await call_maybe_async(step.invoke, step_input, ctx)
            except Exception as exc:
                await self._mark_failed(record, describe_error(exc))
                if is_retryable(exc) and attempt <= step.max_retries:
                    logger.warning(
                        f"Step {step.name} of transaction {transaction.transaction_id} "
                        f"failed (attempt {attempt}): {describe_error(exc)}; retrying"
                    )
                    await schedule_retry(attempt, self._config.retry)
                    attempt += 1
                    continue
                logger.error(
                    f"Step {step.name} of transaction {transaction.transaction_id} "
                    f"failed permanently (attempt {attempt}): {describe_error(exc)}"
                )
                return await self._fail(
                    transaction, definition, step.name, exc, ErrorKind.STEP_FAILED
                )
            break

        if step.is_async and returned is None:
            transaction.state = TransactionState.WAITING_EXTERNAL
            transaction.waiting_step = step.name
            if step.timeout_seconds is not None:
                transaction.deadline_at = utcnow() + timedelta(seconds=step.timeout_seconds)
            await self._repository.save_transaction(transaction)
            logger.info(
                f"Transaction {transaction.transaction_id} waiting at step {step.name}"
                + (f" until {transaction.deadline_at.isoformat()}" if transaction.deadline_at else "")
            )
            return _Flow.PARKED

        response = returned if isinstance(returned, StepResponse) else StepResponse(output=returned)
        await self._mark_succeeded(record, response)
        outputs[step.name] = response.output
        await self._dispatch_events(transaction, step.name, response.events)
        return _Flow.CONTINUE

    # ------------------------------------------------------------------
    # Failure handling
    async def _fail(
        self,
        transaction: TransactionRecord,
        definition: WorkflowDefinition,
        step_name: Optional[str],
        error: Union[BaseException, str],
        kind: ErrorKind,
    ) -> _Flow:
        message = error if isinstance(error, str) else describe_error(error)
        self._clear_wait(transaction, TransactionState.FAILED)
        transaction.error = TransactionError(message=message, step_name=step_name, kind=kind)
        await self._repository.save_transaction(transaction)
        logger.error(
            f"Transaction {transaction.transaction_id} failed at "
            f"{step_name or 'result'}: {message}"
        )
        await self._unwind(transaction, definition)
        return _Flow.FAILED

    async def _unwind(
        self, transaction: TransactionRecord, definition: WorkflowDefinition
    ) -> None:
        failures = await self._compensation.unwind(transaction, definition)
        if transaction.error is None:
            transaction.error = TransactionError(message="Transaction failed")
        transaction.error.compensation_failures.extend(failures)
        transaction.state = TransactionState.REVERTED
        await self._repository.save_transaction(transaction)
        logger.info(f"Transaction {transaction.transaction_id} reverted")

    async def _abandon_interrupted(
        self, transaction: TransactionRecord, step_name: str
    ) -> None:
        for record in transaction.records_for(step_name):
            if record.status in (StepStatus.PENDING, StepStatus.INVOKING):
                logger.warning(
                    f"Step {step_name} attempt {record.attempt} of transaction "
                    f"{transaction.transaction_id} was interrupted"
                )
                await self._mark_failed(record, "interrupted before completion")

    # ------------------------------------------------------------------
    # Helpers
    async def _load(self, transaction_id: str) -> TransactionRecord:
        transaction = await self._repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _check_services(self, definition: WorkflowDefinition) -> None:
        missing = sorted(definition.required_services() - set(self._services))
        if missing:
            raise WorkflowValidationError(
                f"Workflow '{definition.id}' requires services not provided to the "
                f"orchestrator: {', '.join(missing)}"
            )

    @staticmethod
    def _parked_record(
        transaction: TransactionRecord, step_name: str
    ) -> StepExecutionRecord:
        record = transaction.latest_record(step_name)
        if record is None or record.status != StepStatus.INVOKING:
            raise RelayflowError(
                f"Transaction {transaction.transaction_id} has no open record for "
                f"step '{step_name}'"
            )
        return record

    @staticmethod
    def _has_stale_wait(transaction: TransactionRecord) -> bool:
        """True when the parked step already succeeded but the wait was never cleared.

        This is what a crash between recording a success signal and saving
        the transaction leaves behind.
        """
        if transaction.state != TransactionState.WAITING_EXTERNAL:
            return False
        record = transaction.latest_record(transaction.waiting_step or "")
        return record is not None and record.status == StepStatus.SUCCEEDED

    async def _settle_stale_wait(
        self, transaction: TransactionRecord, definition: WorkflowDefinition
    ) -> None:
        logger.warning(
            f"Transaction {transaction.transaction_id} was still waiting at "
            f"{transaction.waiting_step} after it succeeded; continuing"
        )
        self._clear_wait(transaction, TransactionState.RUNNING)
        await self._repository.save_transaction(transaction)
        await self._drive(transaction, definition)

    @staticmethod
    def _clear_wait(transaction: TransactionRecord, state: TransactionState) -> None:
        transaction.state = state
        transaction.waiting_step = None
        transaction.deadline_at = None

    async def _mark_succeeded(
        self, record: StepExecutionRecord, response: StepResponse
    ) -> None:
        record.status = StepStatus.SUCCEEDED
        record.output = response.output
        record.compensation_input = response.compensation_value
        record.finished_at = utcnow()
        await self._repository.update_step_execution(record)

    async def _mark_failed(self, record: StepExecutionRecord, message: str) -> None:
        record.status = StepStatus.FAILED
        record.error = message
        record.finished_at = utcnow()
        await self._repository.update_step_execution(record)

    async def _dispatch_events(
        self,
        transaction: TransactionRecord,
        step_name: str,
        events: Sequence[WorkflowEvent],
    ) -> None:
        for event in events:
            event = event.model_copy(
                update={
                    "transaction_id": transaction.transaction_id,
                    "workflow_id": transaction.workflow_id,
                    "step_name": step_name,
                }
            )
            try:
                await self._transport.publish_event(event)
            except Exception:
                # the step is already committed; a lost event must not undo it
                logger.exception(
                    f"Failed to publish event {event.name} from step {step_name} "
                    f"of transaction {transaction.transaction_id}"
                )


def _payload_message(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        for key in ("error", "message", "reason"):
            if payload.get(key):
                return str(payload[key])
    return str(payload)
