import pytest

from relayflow import (
    DuplicateStepNameError,
    UnknownStepError,
    UnknownWorkflowError,
    WorkflowValidationError,
    case,
    compute,
    define_step,
    define_workflow,
    use,
)
from relayflow.registry import StepRegistry, WorkflowRegistry
from relayflow.workflow import NO_BRANCH, BranchNode, StepNode, TransformNode


async def noop(value, ctx):
    return value


def test_step_registry_rejects_duplicates_and_unknown_names():
    registry = StepRegistry()
    step = define_step("charge", noop)
    registry.register(step)

    assert registry.get("charge") is step
    assert "charge" in registry
    assert registry.names() == ["charge"]
    with pytest.raises(DuplicateStepNameError):
        registry.register(define_step("charge", noop))
    with pytest.raises(UnknownStepError):
        registry.get("refund")


def test_workflow_registry_lookup():
    registry = WorkflowRegistry()
    wf = define_workflow("wf", lambda b: b.step(define_step("s", noop)), registry=registry)

    assert registry.get("wf") is wf
    assert "wf" in registry
    with pytest.raises(UnknownWorkflowError):
        registry.get("nope")


def test_duplicate_names_across_node_kinds_are_rejected():
    registry = WorkflowRegistry()

    with pytest.raises(DuplicateStepNameError):
        define_workflow(
            "dup",
            lambda b: b.sequence(define_step("s", noop), define_step("s", noop)),
            registry=registry,
        )

    def transform_clash(b):
        b.step(define_step("s", noop))
        b.transform("s", lambda out: 1)

    with pytest.raises(DuplicateStepNameError):
        define_workflow("dup2", transform_clash, registry=registry)

    def nested_clash(b):
        b.step(define_step("s", noop))
        b.when("gate", lambda out: True, then=[define_step("s", noop)])

    with pytest.raises(DuplicateStepNameError):
        define_workflow("dup3", nested_clash, registry=registry)

    with pytest.raises(DuplicateStepNameError):
        define_workflow(
            "dup4", lambda b: b.transform("input", lambda out: 1), registry=registry
        )
    assert registry.ids() == []


def test_empty_workflow_and_bad_ids_are_rejected():
    registry = WorkflowRegistry()
    with pytest.raises(WorkflowValidationError):
        define_workflow("empty", lambda b: None, registry=registry)
    with pytest.raises(WorkflowValidationError):
        define_workflow(" ", lambda b: b.step(define_step("s", noop)), registry=registry)


def test_nodes_and_steps_are_collected():
    registry = WorkflowRegistry()
    a, b_step, c = (define_step(n, noop) for n in ("a", "b", "c"))

    def build(b):
        b.step(a)
        b.transform("t", lambda out: out["a"])
        b.branch("pick", [case(lambda out: True, use(b_step, "t"))], otherwise=[c])

    wf = define_workflow("collect", build, registry=registry)

    assert [type(n) for n in wf.nodes] == [StepNode, TransformNode, BranchNode]
    assert sorted(wf.steps.names()) == ["a", "b", "c"]
    assert [getattr(n, "name") for n in wf.iter_nodes()] == ["a", "t", "pick", "b", "c"]


def test_branch_decide_is_first_match_wins():
    node = BranchNode(
        name="b",
        cases=(case(lambda out: out["x"] > 1), case(lambda out: out["x"] > 0)),
    )
    assert node.decide({"x": 5}) == 0
    assert node.decide({"x": 1}) == 1
    assert node.decide({"x": 0}) == NO_BRANCH
    assert node.nodes_for(NO_BRANCH) == ()

    with_otherwise = BranchNode(
        name="b", cases=node.cases, otherwise=(compute("fallback", lambda out: 0),)
    )
    assert with_otherwise.decide({"x": 0}) == 2
    assert with_otherwise.nodes_for(2)[0].name == "fallback"


def test_branch_requires_a_case():
    registry = WorkflowRegistry()
    with pytest.raises(WorkflowValidationError):
        define_workflow("nocase", lambda b: b.branch("x", []), registry=registry)


def test_step_input_resolution():
    step = define_step("s", noop)
    outputs = {"input": {"a": 1}, "prev": 2}

    assert use(step).resolve_input(outputs) == {"a": 1}
    assert use(step, "prev").resolve_input(outputs) == 2
    assert use(step, lambda out: out["prev"] + 1).resolve_input(outputs) == 3
    with pytest.raises(KeyError):
        use(step, "later").resolve_input(outputs)


def test_builder_function_return_sets_result():
    registry = WorkflowRegistry()

    def build(b):
        b.step(define_step("s", noop))
        return lambda out: out["s"]

    wf = define_workflow("result", build, registry=registry)
    assert wf.compute_result({"input": 1, "s": 9}) == 9


def test_required_services_union():
    registry = WorkflowRegistry()
    wf = define_workflow(
        "svc",
        lambda b: b.sequence(
            define_step("a", noop, requires=["data"]),
            define_step("b", noop, requires=("data", "notifications")),
        ),
        registry=registry,
    )
    assert wf.required_services() == {"data", "notifications"}
