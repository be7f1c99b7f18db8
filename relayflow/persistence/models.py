"""Data models for persisted transaction state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionState(str, Enum):
    RUNNING = "running"
    WAITING_EXTERNAL = "waiting-external"
    DONE = "done"
    FAILED = "failed"
    REVERTED = "reverted"


class StepStatus(str, Enum):
    PENDING = "pending"
    INVOKING = "invoking"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class ErrorKind(str, Enum):
    STEP_FAILED = "step_failed"
    TIMEOUT = "timeout"
    SIGNAL_FAILURE = "signal_failure"
    TRANSFORM_FAILED = "transform_failed"


class CompensationFailure(BaseModel):
    """A compensation that could not be completed."""

    step_name: str
    message: str


class TransactionError(BaseModel):
    """Terminal error of a failed or reverted transaction."""

    message: str
    step_name: Optional[str] = None
    kind: ErrorKind = ErrorKind.STEP_FAILED
    compensation_failures: List[CompensationFailure] = Field(default_factory=list)


class StepExecutionRecord(BaseModel):
    """Record of one attempt of one step within one transaction."""

    id: Optional[int] = None
    transaction_id: str
    step_name: str
    attempt: int = 1
    status: StepStatus = StepStatus.PENDING
    input: Any = None
    output: Any = None
    compensation_input: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class TransactionRecord(BaseModel):
    """Persisted transaction (one run of a workflow definition)."""

    transaction_id: str
    workflow_id: str
    state: TransactionState = TransactionState.RUNNING
    input: Any = None
    result: Any = None
    error: Optional[TransactionError] = None
    waiting_step: Optional[str] = None
    deadline_at: Optional[datetime] = None
    branch_decisions: Dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    step_executions: List[StepExecutionRecord] = Field(default_factory=list)

    def records_for(self, step_name: str) -> List[StepExecutionRecord]:
        return [r for r in self.step_executions if r.step_name == step_name]

    def latest_record(self, step_name: str) -> Optional[StepExecutionRecord]:
        records = self.records_for(step_name)
        return records[-1] if records else None

    def succeeded_record(self, step_name: str) -> Optional[StepExecutionRecord]:
        for record in self.records_for(step_name):
            if record.status in (
                StepStatus.SUCCEEDED,
                StepStatus.COMPENSATING,
                StepStatus.COMPENSATED,
                StepStatus.COMPENSATION_FAILED,
            ):
                return record
        return None

    def is_waiting_at(self, step_name: str) -> bool:
        return (
            self.state == TransactionState.WAITING_EXTERNAL
            and self.waiting_step == step_name
        )
