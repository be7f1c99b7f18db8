"""Exception types raised by relayflow."""

from __future__ import annotations

from typing import Any, Optional


class RelayflowError(Exception):
    """Base class for all relayflow errors."""


class WorkflowValidationError(RelayflowError):
    """Bad input to a workflow operation, rejected before anything runs."""

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.details = details


class DuplicateStepNameError(WorkflowValidationError):
    """A step or node name is already used within the workflow."""


class UnknownStepError(RelayflowError):
    """A step name is not registered within the workflow."""


class UnknownWorkflowError(RelayflowError):
    """No workflow definition is registered under the given id."""


class TransactionNotFoundError(RelayflowError):
    """No transaction exists with the given id."""


class TransactionNotWaitingError(RelayflowError):
    """The transaction is not parked at the step a signal refers to."""

    def __init__(self, transaction_id: str, step_name: str, state: str) -> None:
        super().__init__(
            f"Transaction {transaction_id} is not waiting at step '{step_name}' "
            f"(state: {state})"
        )
        self.transaction_id = transaction_id
        self.step_name = step_name
        self.state = state


class LockAcquisitionError(RelayflowError):
    """The per-transaction lock could not be taken in time."""


class StepFailed(RelayflowError):
    """Raised by a step to signal failure.

    ``retryable=False`` skips the remaining retries and fails the transaction
    immediately. Any other exception raised by a step counts as retryable.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StepTimeoutError(StepFailed):
    """An async step was not signalled before its deadline."""

    def __init__(self, step_name: str, timeout_seconds: Optional[float]) -> None:
        super().__init__(
            f"Step '{step_name}' timed out after {timeout_seconds} seconds",
            retryable=False,
        )
        self.step_name = step_name
        self.timeout_seconds = timeout_seconds


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` if a step exception may be retried."""
    return getattr(exc, "retryable", True)
