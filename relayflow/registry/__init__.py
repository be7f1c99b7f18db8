"""Step and workflow registries."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterator, List

from ..contracts import StepDefinition
from ..errors import DuplicateStepNameError, UnknownStepError, UnknownWorkflowError

if TYPE_CHECKING:
    from ..workflow import WorkflowDefinition

logger = logging.getLogger(__name__)


class StepRegistry:
    """Step definitions of one workflow, looked up by name."""

    def __init__(self) -> None:
        self._steps: Dict[str, StepDefinition] = {}

    def register(self, step: StepDefinition) -> StepDefinition:
        """Add ``step``; names must be unique within the workflow."""
        if step.name in self._steps:
            raise DuplicateStepNameError(
                f"Step '{step.name}' is already registered in this workflow"
            )
        self._steps[step.name] = step
        return step

    def get(self, name: str) -> StepDefinition:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownStepError(f"Unknown step '{name}'") from None

    def names(self) -> List[str]:
        return list(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __iter__(self) -> Iterator[StepDefinition]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)


class WorkflowRegistry:
    """Workflow definitions by id.

    Transactions only persist the workflow id, so the definition has to be
    found here again when a transaction is resumed or signalled, possibly in a
    different process than the one that started it.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, "WorkflowDefinition"] = {}

    def register(self, definition: "WorkflowDefinition") -> "WorkflowDefinition":
        existing = self._workflows.get(definition.id)
        if existing is not None and existing is not definition:
            logger.debug(f"Replacing workflow definition '{definition.id}'")
        self._workflows[definition.id] = definition
        return definition

    def get(self, workflow_id: str) -> "WorkflowDefinition":
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise UnknownWorkflowError(f"Unknown workflow '{workflow_id}'") from None

    def ids(self) -> List[str]:
        return list(self._workflows)

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._workflows


# Process-wide registry that ``define_workflow`` registers into by default.
REGISTRY = WorkflowRegistry()


__all__ = [
    "StepRegistry",
    "WorkflowRegistry",
    "REGISTRY",
]
