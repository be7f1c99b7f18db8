"""Workflow definitions and the builder used to compose them."""

from __future__ import annotations

from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .contracts import StepDefinition
from .errors import DuplicateStepNameError, WorkflowValidationError
from .registry import REGISTRY, StepRegistry, WorkflowRegistry

INPUT_KEY = "input"

Outputs = Mapping[str, Any]
InputWiring = Union[str, Callable[[Outputs], Any], None]
Guard = Callable[[Outputs], bool]

# Branch decision stored when no case matched and there is no ``otherwise``.
NO_BRANCH = -1


class StepNode(BaseModel):
    """A step placed in a workflow together with its input wiring.

    ``input`` selects what the step receives: ``None`` for the workflow input,
    a string for one entry of the accumulated outputs, or a pure function of
    the accumulated outputs.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    step: StepDefinition
    input: InputWiring = None

    @property
    def name(self) -> str:
        return self.step.name

    def resolve_input(self, outputs: Outputs) -> Any:
        if self.input is None:
            return outputs[INPUT_KEY]
        if isinstance(self.input, str):
            if self.input not in outputs:
                raise KeyError(f"Step '{self.name}' input '{self.input}' is not available")
            return outputs[self.input]
        return self.input(outputs)


class TransformNode(BaseModel):
    """Pure mapping over the accumulated outputs, stored under ``name``."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    fn: Callable[[Outputs], Any]


class BranchCase(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    guard: Guard
    nodes: Tuple["Node", ...] = ()


class BranchNode(BaseModel):
    """First-match-wins conditional over a list of cases."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    cases: Tuple[BranchCase, ...]
    otherwise: Tuple["Node", ...] = ()

    def decide(self, outputs: Outputs) -> int:
        """Evaluate guards left to right and return the index of the taken path."""
        for index, branch_case in enumerate(self.cases):
            if branch_case.guard(outputs):
                return index
        if self.otherwise:
            return len(self.cases)
        return NO_BRANCH

    def nodes_for(self, decision: int) -> Tuple["Node", ...]:
        if decision == NO_BRANCH:
            return ()
        if decision == len(self.cases):
            return self.otherwise
        return self.cases[decision].nodes


Node = Union[StepNode, TransformNode, BranchNode]
NodeLike = Union[StepDefinition, StepNode, TransformNode, BranchNode]

BranchCase.model_rebuild()
BranchNode.model_rebuild()


def use(step: StepDefinition, input: InputWiring = None) -> StepNode:
    """Place ``step`` in a workflow with explicit input wiring."""
    return StepNode(step=step, input=input)


def compute(name: str, fn: Callable[[Outputs], Any]) -> TransformNode:
    """Create a transform node, for use inside branch cases."""
    return TransformNode(name=name, fn=fn)


def case(guard: Guard, *items: NodeLike) -> BranchCase:
    """Create a branch case executing ``items`` when ``guard`` holds."""
    return BranchCase(guard=guard, nodes=_normalize(items))


def _normalize(items: Sequence[NodeLike]) -> Tuple[Node, ...]:
    nodes: List[Node] = []
    for item in items:
        if isinstance(item, StepDefinition):
            nodes.append(StepNode(step=item))
        elif isinstance(item, (StepNode, TransformNode, BranchNode)):
            nodes.append(item)
        else:
            raise WorkflowValidationError(
                f"Cannot place {type(item).__name__} in a workflow"
            )
    return tuple(nodes)


class WorkflowDefinition(BaseModel):
    """An immutable, named composition of steps."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    nodes: Tuple[Node, ...]
    steps: StepRegistry
    input_model: Optional[Type[BaseModel]] = None
    result_fn: Optional[Callable[[Outputs], Any]] = Field(default=None, repr=False)

    def validate_input(self, data: Any) -> Any:
        """Validate ``data`` against ``input_model`` and return it JSON-ready."""
        if self.input_model is None:
            return data
        if isinstance(data, self.input_model):
            return data.model_dump(mode="json")
        try:
            return self.input_model.model_validate(data).model_dump(mode="json")
        except ValidationError as exc:
            raise WorkflowValidationError(
                f"Invalid input for workflow '{self.id}'", details=exc.errors()
            ) from exc

    def required_services(self) -> Set[str]:
        services: Set[str] = set()
        for step in self.steps:
            services.update(step.requires)
        return services

    def compute_result(self, outputs: Outputs) -> Any:
        if self.result_fn is not None:
            return self.result_fn(outputs)
        return {key: value for key, value in outputs.items() if key != INPUT_KEY}

    def iter_nodes(self) -> Iterator[Node]:
        """Yield every node depth first, including those inside branches."""
        yield from _walk(self.nodes)


def _walk(nodes: Sequence[Node]) -> Iterator[Node]:
    for node in nodes:
        yield node
        if isinstance(node, BranchNode):
            for branch_case in node.cases:
                yield from _walk(branch_case.nodes)
            yield from _walk(node.otherwise)


class WorkflowBuilder:
    """Collects nodes for :func:`define_workflow`.

    Building is pure data construction; nothing is executed.
    """

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        self._nodes: List[Node] = []
        self._steps = StepRegistry()
        self._names: Set[str] = {INPUT_KEY}
        self._result_fn: Optional[Callable[[Outputs], Any]] = None

    def _claim(self, name: str) -> None:
        if not name:
            raise WorkflowValidationError("Node names must be non-empty")
        if name in self._names:
            raise DuplicateStepNameError(
                f"Name '{name}' is already used in workflow '{self.workflow_id}'"
            )
        self._names.add(name)

    def _register(self, node: Node) -> None:
        if isinstance(node, StepNode):
            self._claim(node.name)
            self._steps.register(node.step)
        elif isinstance(node, TransformNode):
            self._claim(node.name)
        else:
            self._claim(node.name)
            for branch_case in node.cases:
                for child in branch_case.nodes:
                    self._register(child)
            for child in node.otherwise:
                self._register(child)

    def _append(self, node: Node) -> Node:
        self._register(node)
        self._nodes.append(node)
        return node

    def step(self, step: StepDefinition, input: InputWiring = None) -> StepNode:
        """Append a single step."""
        return self._append(use(step, input))

    def sequence(self, *items: NodeLike) -> List[Node]:
        """Append ``items`` in order."""
        return [self._append(node) for node in _normalize(items)]

    def transform(self, name: str, fn: Callable[[Outputs], Any]) -> TransformNode:
        """Append a pure transform whose value is stored under ``name``."""
        return self._append(compute(name, fn))

    def branch(
        self,
        name: str,
        cases: Sequence[Union[BranchCase, Tuple[Guard, Sequence[NodeLike]]]],
        otherwise: Optional[Sequence[NodeLike]] = None,
    ) -> BranchNode:
        """Append a conditional; the first case whose guard holds is taken."""
        built = []
        for item in cases:
            if isinstance(item, BranchCase):
                built.append(item)
            else:
                guard, items = item
                built.append(case(guard, *items))
        if not built:
            raise WorkflowValidationError(f"Branch '{name}' needs at least one case")
        node = BranchNode(name=name, cases=tuple(built), otherwise=_normalize(otherwise or ()))
        return self._append(node)

    def when(
        self,
        name: str,
        guard: Guard,
        then: Sequence[NodeLike],
        otherwise: Optional[Sequence[NodeLike]] = None,
    ) -> BranchNode:
        """Append a single-case conditional."""
        return self.branch(name, [case(guard, *then)], otherwise=otherwise)

    def returns(self, fn: Callable[[Outputs], Any]) -> None:
        """Set the function computing the workflow result from the outputs."""
        self._result_fn = fn

    def build(self, input_model: Optional[Type[BaseModel]] = None) -> WorkflowDefinition:
        if not self._nodes:
            raise WorkflowValidationError(
                f"Workflow '{self.workflow_id}' must contain at least one node"
            )
        return WorkflowDefinition(
            id=self.workflow_id,
            nodes=tuple(self._nodes),
            steps=self._steps,
            input_model=input_model,
            result_fn=self._result_fn,
        )


def define_workflow(
    workflow_id: str,
    builder_fn: Callable[[WorkflowBuilder], Optional[Callable[[Outputs], Any]]],
    *,
    input_model: Optional[Type[BaseModel]] = None,
    registry: Optional[WorkflowRegistry] = None,
) -> WorkflowDefinition:
    """Build a workflow with ``builder_fn`` and register it by id.

    ``builder_fn`` receives a :class:`WorkflowBuilder`. If it returns a
    callable, that callable computes the workflow result from the outputs.
    """
    if not workflow_id or not workflow_id.strip():
        raise WorkflowValidationError("Workflow id must be a non-empty string")

    builder = WorkflowBuilder(workflow_id)
    returned = builder_fn(builder)
    if callable(returned) and builder._result_fn is None:
        builder.returns(returned)
    definition = builder.build(input_model=input_model)
    (registry if registry is not None else REGISTRY).register(definition)
    return definition
