"""Core step contracts for the relayflow workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import WorkflowValidationError


StepFunction = Callable[..., Any]


class WorkflowEvent(BaseModel):
    """Event emitted by a step, dispatched once the step has committed."""

    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: Optional[str] = None
    workflow_id: Optional[str] = None
    step_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)


class StepResponse(BaseModel):
    """Explicit result of a step invocation.

    ``output`` is fed forward to later steps and persisted on the execution
    record. ``compensation_input`` is handed to the step's compensate function
    and defaults to ``output`` when not given.
    """

    output: Any = None
    compensation_input: Any = None
    events: List[WorkflowEvent] = Field(default_factory=list)

    @property
    def compensation_value(self) -> Any:
        if "compensation_input" in self.model_fields_set:
            return self.compensation_input
        return self.output


class ExecutionContext(BaseModel):
    """Information handed to ``invoke`` and ``compensate``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    transaction_id: str
    workflow_id: str
    step_name: str
    attempt: int = 1
    services: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_step(
        cls,
        step: "StepDefinition",
        transaction_id: str,
        workflow_id: str,
        services: Dict[str, Any],
        attempt: int = 1,
    ) -> "ExecutionContext":
        """Build a context exposing only the services ``step`` requires."""
        return cls(
            transaction_id=transaction_id,
            workflow_id=workflow_id,
            step_name=step.name,
            attempt=attempt,
            services={name: services[name] for name in step.requires if name in services},
        )

    def service(self, name: str) -> Any:
        """Return the collaborator injected under ``name``."""
        try:
            return self.services[name]
        except KeyError:
            raise KeyError(
                f"Step '{self.step_name}' did not declare service '{name}' in requires"
            ) from None


class StepDefinition(BaseModel):
    """Defines one step of a workflow."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    invoke: StepFunction
    compensate: Optional[StepFunction] = None
    is_async: bool = False
    timeout_seconds: Optional[float] = None
    max_retries: int = 0
    requires: Tuple[str, ...] = ()

    @property
    def has_compensation(self) -> bool:
        return self.compensate is not None


def define_step(
    name: str,
    invoke: StepFunction,
    *,
    compensate: Optional[StepFunction] = None,
    is_async: bool = False,
    timeout_seconds: Optional[float] = None,
    max_retries: int = 0,
    requires: Tuple[str, ...] | List[str] = (),
) -> StepDefinition:
    """Create a :class:`StepDefinition`, validating its metadata.

    Raises:
        WorkflowValidationError: If the name is empty, retries are negative,
            or a timeout is given for a step that is not async.
    """
    if not name or not name.strip():
        raise WorkflowValidationError("Step name must be a non-empty string")
    if not callable(invoke):
        raise WorkflowValidationError(f"Step '{name}' invoke must be callable")
    if compensate is not None and not callable(compensate):
        raise WorkflowValidationError(f"Step '{name}' compensate must be callable")
    if max_retries < 0:
        raise WorkflowValidationError(f"Step '{name}' max_retries must be >= 0")
    if timeout_seconds is not None:
        if not is_async:
            raise WorkflowValidationError(
                f"Step '{name}' sets timeout_seconds but is not async"
            )
        if timeout_seconds <= 0:
            raise WorkflowValidationError(f"Step '{name}' timeout_seconds must be > 0")

    return StepDefinition(
        name=name,
        invoke=invoke,
        compensate=compensate,
        is_async=is_async,
        timeout_seconds=timeout_seconds,
        max_retries=max_retries,
        requires=tuple(requires),
    )


class StepOutcome(str, Enum):
    """Outcome of an async step reported by an external actor."""

    SUCCESS = "success"
    FAILURE = "failure"
