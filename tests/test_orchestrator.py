"""Engine behaviour: ordering, retries, branches, compensation and events."""

import pytest
from pydantic import BaseModel

from relayflow import (
    StepFailed,
    StepResponse,
    WorkflowEvent,
    WorkflowValidationError,
    case,
    compute,
    define_step,
    define_workflow,
    run_workflow,
    use,
)
from relayflow.persistence import ErrorKind, StepStatus, TransactionState


def recording_step(name, calls, output=None, compensations=None, **kwargs):
    async def invoke(value, ctx):
        calls.append(name)
        return output if output is not None else f"{name}-out"

    compensate = None
    if compensations is not None:

        async def compensate(value, ctx):
            compensations.append((name, value))

    return define_step(name, invoke, compensate=compensate, **kwargs)


@pytest.mark.asyncio
async def test_steps_run_in_definition_order(orchestrator, registry):
    calls = []
    s1, s2, s3 = (recording_step(n, calls) for n in ("s1", "s2", "s3"))
    wf = define_workflow("ordered", lambda b: b.sequence(s1, s2, s3), registry=registry)

    result = await run_workflow(wf, {"x": 1}, orchestrator=orchestrator)

    assert result.state == TransactionState.DONE
    assert result.errors == []
    assert calls == ["s1", "s2", "s3"]
    assert result.result == {"s1": "s1-out", "s2": "s2-out", "s3": "s3-out"}

    tx = await orchestrator.get_status(result.transaction_id)
    records = tx.step_executions
    assert [r.step_name for r in records] == ["s1", "s2", "s3"]
    for earlier, later in zip(records, records[1:]):
        assert earlier.finished_at <= later.started_at
        assert later.started_at <= later.finished_at


@pytest.mark.asyncio
async def test_successful_run_has_exactly_one_succeeded_record_per_step(
    orchestrator, registry, repo
):
    calls = []
    steps = [recording_step(n, calls) for n in ("a", "b", "c")]
    wf = define_workflow("once", lambda b: b.sequence(*steps), registry=registry)

    result = await run_workflow(wf, None, orchestrator=orchestrator)

    tx = await orchestrator.get_status(result.transaction_id)
    for name in ("a", "b", "c"):
        succeeded = [r for r in tx.records_for(name) if r.status == StepStatus.SUCCEEDED]
        assert len(succeeded) == 1
    assert await repo.count_step_executions(result.transaction_id) == 3


@pytest.mark.asyncio
async def test_retry_then_success(orchestrator, registry):
    calls = []
    attempts = {"charge": 0}

    async def charge(value, ctx):
        attempts["charge"] += 1
        if attempts["charge"] == 1:
            raise RuntimeError("card processor unavailable")
        return {"charged": value["amount"]}

    validate = recording_step("validate", calls)
    charge_step = define_step("charge", charge, max_retries=1)
    ship = recording_step("ship", calls)
    wf = define_workflow(
        "checkout", lambda b: b.sequence(validate, charge_step, ship), registry=registry
    )

    result = await run_workflow(wf, {"amount": 10}, orchestrator=orchestrator)

    assert result.state == TransactionState.DONE
    tx = await orchestrator.get_status(result.transaction_id)
    charge_records = tx.records_for("charge")
    assert [r.status for r in charge_records] == [StepStatus.FAILED, StepStatus.SUCCEEDED]
    assert [r.attempt for r in charge_records] == [1, 2]
    assert charge_records[0].error == "card processor unavailable"
    assert calls == ["validate", "ship"]
    assert len(tx.records_for("ship")) == 1
    assert result.result["charge"] == {"charged": 10}


@pytest.mark.asyncio
async def test_non_retryable_failure_skips_remaining_retries(orchestrator, registry):
    attempts = []

    async def reject(value, ctx):
        attempts.append(ctx.attempt)
        raise StepFailed("declined", retryable=False)

    wf = define_workflow(
        "declined",
        lambda b: b.step(define_step("charge", reject, max_retries=3)),
        registry=registry,
    )

    result = await run_workflow(wf, None, orchestrator=orchestrator)

    assert result.state == TransactionState.REVERTED
    assert attempts == [1]
    assert result.errors[0].message == "declined"
    assert result.errors[0].kind == ErrorKind.STEP_FAILED


@pytest.mark.asyncio
async def test_failure_compensates_in_reverse_order(orchestrator, registry):
    calls = []
    compensations = []

    async def boom(value, ctx):
        raise RuntimeError("s4 exploded")

    steps = [
        recording_step(n, calls, output={"id": n}, compensations=compensations)
        for n in ("s1", "s2", "s3")
    ]
    failing = define_step(
        "s4", boom, compensate=lambda value, ctx: compensations.append(("s4", value))
    )
    after = recording_step("s5", calls, compensations=compensations)
    wf = define_workflow(
        "unwind", lambda b: b.sequence(*steps, failing, after), registry=registry
    )

    result = await run_workflow(wf, None, orchestrator=orchestrator)

    assert result.state == TransactionState.REVERTED
    assert calls == ["s1", "s2", "s3"]
    assert compensations == [("s3", {"id": "s3"}), ("s2", {"id": "s2"}), ("s1", {"id": "s1"})]
    error = result.errors[0]
    assert error.step_name == "s4"
    assert error.message == "s4 exploded"
    assert error.compensation_failures == []

    tx = await orchestrator.get_status(result.transaction_id)
    assert {r.step_name: r.status for r in tx.step_executions} == {
        "s1": StepStatus.COMPENSATED,
        "s2": StepStatus.COMPENSATED,
        "s3": StepStatus.COMPENSATED,
        "s4": StepStatus.FAILED,
    }


@pytest.mark.asyncio
async def test_compensation_input_from_step_response(orchestrator, registry):
    compensated = []

    async def reserve(value, ctx):
        return StepResponse(output={"reserved": 3}, compensation_input={"prior_stock": 10})

    async def restore(value, ctx):
        compensated.append(value)

    async def fail(value, ctx):
        raise StepFailed("nope", retryable=False)

    wf = define_workflow(
        "stock",
        lambda b: b.sequence(
            define_step("reserve", reserve, compensate=restore),
            define_step("fail", fail),
        ),
        registry=registry,
    )

    await run_workflow(wf, None, orchestrator=orchestrator)

    assert compensated == [{"prior_stock": 10}]


@pytest.mark.asyncio
async def test_compensation_failure_is_reported_and_unwind_continues(orchestrator, registry):
    compensations = []

    async def ok(value, ctx):
        return "ok"

    async def undo_first(value, ctx):
        compensations.append("first")

    async def undo_second(value, ctx):
        compensations.append("second")
        raise RuntimeError("partner API down")

    async def fail(value, ctx):
        raise StepFailed("stop", retryable=False)

    wf = define_workflow(
        "partial-unwind",
        lambda b: b.sequence(
            define_step("first", ok, compensate=undo_first),
            define_step("second", ok, compensate=undo_second, max_retries=1),
            define_step("third", fail),
        ),
        registry=registry,
    )

    result = await run_workflow(wf, None, orchestrator=orchestrator)

    assert result.state == TransactionState.REVERTED
    # second is retried once before giving up, then first is still compensated
    assert compensations == ["second", "second", "first"]
    failures = result.errors[0].compensation_failures
    assert [(f.step_name, f.message) for f in failures] == [("second", "partner API down")]

    tx = await orchestrator.get_status(result.transaction_id)
    assert tx.latest_record("second").status == StepStatus.COMPENSATION_FAILED
    assert tx.latest_record("first").status == StepStatus.COMPENSATED


@pytest.mark.asyncio
async def test_branch_first_matching_case_wins(orchestrator, registry):
    calls = []
    big = recording_step("big", calls)
    medium = recording_step("medium", calls)
    small = recording_step("small", calls)

    def build(b):
        b.branch(
            "size",
            [
                case(lambda out: out["input"]["n"] > 100, big),
                case(lambda out: out["input"]["n"] > 10, medium),
            ],
            otherwise=[small],
        )

    wf = define_workflow("sizes", build, registry=registry)

    result = await run_workflow(wf, {"n": 500}, orchestrator=orchestrator)
    assert calls == ["big"]
    tx = await orchestrator.get_status(result.transaction_id)
    assert tx.branch_decisions == {"size": 0}

    calls.clear()
    result = await run_workflow(wf, {"n": 50}, orchestrator=orchestrator)
    assert calls == ["medium"]

    calls.clear()
    result = await run_workflow(wf, {"n": 1}, orchestrator=orchestrator)
    assert calls == ["small"]
    tx = await orchestrator.get_status(result.transaction_id)
    assert tx.branch_decisions == {"size": 2}


@pytest.mark.asyncio
async def test_branch_without_match_and_otherwise_is_skipped(orchestrator, registry):
    calls = []
    optional = recording_step("optional", calls)
    last = recording_step("last", calls)

    def build(b):
        b.when("maybe", lambda out: out["input"]["enabled"], then=[optional])
        b.step(last)

    wf = define_workflow("skip", build, registry=registry)
    result = await run_workflow(wf, {"enabled": False}, orchestrator=orchestrator)

    assert result.state == TransactionState.DONE
    assert calls == ["last"]


@pytest.mark.asyncio
async def test_branch_decision_is_not_reevaluated_on_resume(orchestrator, registry):
    guard_calls = []

    def guard(out):
        guard_calls.append(out["input"])
        return True

    async def wait(value, ctx):
        return None

    async def after(value, ctx):
        return "after"

    def build(b):
        b.when("gate", guard, then=[define_step("wait", wait, is_async=True)])
        b.step(define_step("after", after))

    wf = define_workflow("gated", build, registry=registry)
    result = await run_workflow(wf, "go", orchestrator=orchestrator)
    assert result.state == TransactionState.WAITING_EXTERNAL

    tx = await orchestrator.report_step_outcome(result.transaction_id, "wait", "success", "ok")

    assert tx.state == TransactionState.DONE
    assert guard_calls == ["go"]
    assert tx.result == {"wait": "ok", "after": "after"}


@pytest.mark.asyncio
async def test_transforms_feed_steps_without_records(orchestrator, registry):
    received = []

    async def fetch(value, ctx):
        return {"subscribers": ["a@x.io", "b@x.io"]}

    async def send(value, ctx):
        received.append(value)
        return len(value)

    def build(b):
        fetch_step = define_step("fetch", fetch)
        b.step(fetch_step)
        b.transform("recipients", lambda out: sorted(out["fetch"]["subscribers"]))
        b.step(define_step("send", send), input="recipients")
        return lambda out: {"sent": out["send"]}

    wf = define_workflow("broadcast", build, registry=registry)
    result = await run_workflow(wf, None, orchestrator=orchestrator)

    assert result.result == {"sent": 2}
    assert received == [["a@x.io", "b@x.io"]]
    tx = await orchestrator.get_status(result.transaction_id)
    assert [r.step_name for r in tx.step_executions] == ["fetch", "send"]


@pytest.mark.asyncio
async def test_failing_transform_fails_transaction(orchestrator, registry):
    compensations = []
    first = recording_step("first", [], compensations=compensations)

    def build(b):
        b.step(first)
        b.transform("bad", lambda out: out["missing"])

    wf = define_workflow("bad-transform", build, registry=registry)
    result = await run_workflow(wf, None, orchestrator=orchestrator)

    assert result.state == TransactionState.REVERTED
    assert result.errors[0].kind == ErrorKind.TRANSFORM_FAILED
    assert result.errors[0].step_name == "bad"
    assert [name for name, _ in compensations] == ["first"]


@pytest.mark.asyncio
async def test_input_wiring_with_function(orchestrator, registry):
    seen = []

    async def quote(value, ctx):
        return {"price": 5}

    async def order(value, ctx):
        seen.append(value)
        return "ordered"

    def build(b):
        b.step(define_step("quote", quote))
        b.sequence(
            use(
                define_step("order", order),
                input=lambda out: {"sku": out["input"]["sku"], **out["quote"]},
            )
        )

    wf = define_workflow("wired", build, registry=registry)
    await run_workflow(wf, {"sku": "X1"}, orchestrator=orchestrator)

    assert seen == [{"sku": "X1", "price": 5}]


@pytest.mark.asyncio
async def test_compute_inside_branch_case(orchestrator, registry):
    async def echo(value, ctx):
        return value

    def build(b):
        b.when(
            "vip",
            lambda out: out["input"]["vip"],
            then=[compute("discount", lambda out: 20), use(define_step("echo", echo), "discount")],
        )

    wf = define_workflow("discounts", build, registry=registry)
    result = await run_workflow(wf, {"vip": True}, orchestrator=orchestrator)

    assert result.result == {"discount": 20, "echo": 20}


@pytest.mark.asyncio
async def test_events_published_after_step_commits(orchestrator, registry, transport):
    async def publish(value, ctx):
        return StepResponse(
            output={"post": value["post"]},
            events=[WorkflowEvent(name="post.published", data={"post": value["post"]})],
        )

    wf = define_workflow(
        "blog", lambda b: b.step(define_step("publish", publish)), registry=registry
    )
    result = await run_workflow(wf, {"post": 7}, orchestrator=orchestrator)

    events = transport.pending("post.published")
    assert len(events) == 1
    assert events[0].data == {"post": 7}
    assert events[0].transaction_id == result.transaction_id
    assert events[0].workflow_id == "blog"
    assert events[0].step_name == "publish"


@pytest.mark.asyncio
async def test_step_receives_only_required_services(make_orchestrator, registry):
    seen = {}

    class Notifier:
        async def send(self, to, template, data):
            return {"id": "n-1"}

    async def notify(value, ctx):
        seen["services"] = set(ctx.services)
        return await ctx.service("notifications").send(value, "welcome", {})

    wf = define_workflow(
        "notify",
        lambda b: b.step(define_step("notify", notify, requires=["notifications"])),
        registry=registry,
    )
    orchestrator = make_orchestrator(services={"notifications": Notifier(), "data": object()})

    result = await run_workflow(wf, "me@x.io", orchestrator=orchestrator)

    assert result.result == {"notify": {"id": "n-1"}}
    assert seen["services"] == {"notifications"}


@pytest.mark.asyncio
async def test_missing_service_rejected_before_anything_runs(orchestrator, registry, repo):
    async def notify(value, ctx):
        return None

    wf = define_workflow(
        "needs-service",
        lambda b: b.step(define_step("notify", notify, requires=["notifications"])),
        registry=registry,
    )

    with pytest.raises(WorkflowValidationError, match="notifications"):
        await run_workflow(wf, None, transaction_id="tx-missing", orchestrator=orchestrator)
    assert await repo.get_transaction("tx-missing") is None


@pytest.mark.asyncio
async def test_invalid_input_rejected_before_anything_runs(orchestrator, registry, repo):
    class OrderInput(BaseModel):
        sku: str
        quantity: int

    calls = []
    wf = define_workflow(
        "typed",
        lambda b: b.step(recording_step("order", calls)),
        input_model=OrderInput,
        registry=registry,
    )

    with pytest.raises(WorkflowValidationError) as excinfo:
        await run_workflow(wf, {"sku": "X"}, transaction_id="tx-bad", orchestrator=orchestrator)

    assert excinfo.value.details
    assert calls == []
    assert await repo.get_transaction("tx-bad") is None

    result = await run_workflow(wf, OrderInput(sku="X", quantity=2), orchestrator=orchestrator)
    tx = await orchestrator.get_status(result.transaction_id)
    assert tx.input == {"sku": "X", "quantity": 2}


@pytest.mark.asyncio
async def test_plain_functions_are_accepted_as_steps(orchestrator, registry):
    wf = define_workflow(
        "sync",
        lambda b: b.step(define_step("double", lambda value, ctx: value * 2)),
        registry=registry,
    )
    result = await run_workflow(wf, 21, orchestrator=orchestrator)
    assert result.result == {"double": 42}
