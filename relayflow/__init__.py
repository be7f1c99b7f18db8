"""relayflow: durable step workflows with compensation and external signals."""

from .compensation import CompensationController
from .contracts import (
    ExecutionContext,
    StepDefinition,
    StepOutcome,
    StepResponse,
    WorkflowEvent,
    define_step,
)
from .dispatch import (
    RunResult,
    SignalResult,
    TransactionStatus,
    get_transaction_status,
    report_step_outcome,
    run_workflow,
)
from .errors import (
    DuplicateStepNameError,
    LockAcquisitionError,
    RelayflowError,
    StepFailed,
    StepTimeoutError,
    TransactionNotFoundError,
    TransactionNotWaitingError,
    UnknownStepError,
    UnknownWorkflowError,
    WorkflowValidationError,
)
from .locks import get_lock_manager
from .orchestrator import Orchestrator
from .persistence import TransactionState, get_repository
from .registry import REGISTRY
from .scanner import DeadlineScanner
from .signals import SignalHandler
from .transports import get_transport
from .workflow import WorkflowBuilder, WorkflowDefinition, case, compute, define_workflow, use

__version__ = "0.1.0"
__all__ = [
    "CompensationController",
    "DeadlineScanner",
    "DuplicateStepNameError",
    "ExecutionContext",
    "LockAcquisitionError",
    "Orchestrator",
    "REGISTRY",
    "RelayflowError",
    "RunResult",
    "SignalHandler",
    "SignalResult",
    "StepDefinition",
    "StepFailed",
    "StepOutcome",
    "StepResponse",
    "StepTimeoutError",
    "TransactionNotFoundError",
    "TransactionNotWaitingError",
    "TransactionState",
    "TransactionStatus",
    "UnknownStepError",
    "UnknownWorkflowError",
    "WorkflowBuilder",
    "WorkflowDefinition",
    "WorkflowEvent",
    "WorkflowValidationError",
    "case",
    "compute",
    "define_step",
    "define_workflow",
    "get_lock_manager",
    "get_repository",
    "get_transaction_status",
    "get_transport",
    "report_step_outcome",
    "run_workflow",
    "use",
]
