import uuid
from datetime import timedelta

import pytest

import relayflow.persistence as persistence
from relayflow.persistence import (
    CompensationFailure,
    ErrorKind,
    InMemoryTransactionRepository,
    SQLiteTransactionRepository,
    StepExecutionRecord,
    StepStatus,
    TransactionError,
    TransactionRecord,
    TransactionState,
    get_repository,
)
from relayflow.persistence.models import utcnow


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteTransactionRepository(tmp_path / "relayflow.db")
    return InMemoryTransactionRepository()


@pytest.mark.asyncio
async def test_repository_crud(repository):
    tx_id = str(uuid.uuid4())
    await repository.create_transaction(
        TransactionRecord(transaction_id=tx_id, workflow_id="wf", input={"foo": "bar"})
    )

    record = StepExecutionRecord(
        transaction_id=tx_id, step_name="step1", input={"foo": "bar"}, started_at=utcnow()
    )
    record_id = await repository.add_step_execution(record)
    assert record.id == record_id

    record.status = StepStatus.SUCCEEDED
    record.output = {"x": 1}
    record.compensation_input = {"undo": 1}
    record.finished_at = utcnow()
    await repository.update_step_execution(record)

    tx = await repository.get_transaction(tx_id)
    tx.state = TransactionState.DONE
    tx.result = {"step1": {"x": 1}}
    tx.branch_decisions = {"gate": 0}
    await repository.save_transaction(tx)

    stored = await repository.get_transaction(tx_id)
    assert stored is not None
    assert stored.workflow_id == "wf"
    assert stored.input == {"foo": "bar"}
    assert stored.state == TransactionState.DONE
    assert stored.result == {"step1": {"x": 1}}
    assert stored.branch_decisions == {"gate": 0}
    assert len(stored.step_executions) == 1
    step = stored.step_executions[0]
    assert step.step_name == "step1"
    assert step.status == StepStatus.SUCCEEDED
    assert step.output == {"x": 1}
    assert step.compensation_input == {"undo": 1}
    assert step.finished_at is not None

    assert await repository.count_step_executions(tx_id) == 1
    assert any(t.transaction_id == tx_id for t in await repository.list_transactions())
    assert await repository.list_transactions(TransactionState.RUNNING) == []
    assert await repository.get_transaction("missing") is None


@pytest.mark.asyncio
async def test_repository_error_roundtrip(repository):
    await repository.create_transaction(TransactionRecord(transaction_id="tx", workflow_id="wf"))
    tx = await repository.get_transaction("tx")
    tx.state = TransactionState.REVERTED
    tx.error = TransactionError(
        message="boom",
        step_name="ship",
        kind=ErrorKind.TIMEOUT,
        compensation_failures=[CompensationFailure(step_name="charge", message="down")],
    )
    await repository.save_transaction(tx)

    stored = await repository.get_transaction("tx")
    assert stored.error == tx.error


@pytest.mark.asyncio
async def test_repository_lists_overdue_waiting_transactions(repository):
    now = utcnow()
    for tx_id, state, deadline in [
        ("late", TransactionState.WAITING_EXTERNAL, now - timedelta(seconds=1)),
        ("early", TransactionState.WAITING_EXTERNAL, now + timedelta(hours=1)),
        ("open", TransactionState.WAITING_EXTERNAL, None),
        ("done", TransactionState.DONE, now - timedelta(hours=1)),
    ]:
        await repository.create_transaction(
            TransactionRecord(
                transaction_id=tx_id,
                workflow_id="wf",
                state=state,
                waiting_step="wait",
                deadline_at=deadline,
            )
        )

    assert await repository.list_overdue(now) == ["late"]
    assert sorted(await repository.list_overdue(now + timedelta(hours=2))) == ["early", "late"]

    stored = await repository.get_transaction("early")
    assert stored.deadline_at == now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_inmemory_repository_isolates_callers():
    repo = InMemoryTransactionRepository()
    await repo.create_transaction(TransactionRecord(transaction_id="tx", workflow_id="wf"))

    tx = await repo.get_transaction("tx")
    tx.state = TransactionState.DONE

    assert (await repo.get_transaction("tx")).state == TransactionState.RUNNING
    with pytest.raises(ValueError):
        await repo.create_transaction(TransactionRecord(transaction_id="tx", workflow_id="wf"))


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("RELAYFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("RELAYFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    persistence.reset_repository()
    try:
        repo = get_repository()
        assert isinstance(repo, InMemoryTransactionRepository)
        assert get_repository() is repo

        sqlite_repo = get_repository(f"sqlite://{tmp_path / 'tx.db'}")
        assert isinstance(sqlite_repo, SQLiteTransactionRepository)

        with pytest.raises(ValueError):
            get_repository("mysql://localhost/db")
    finally:
        persistence.reset_repository()


def test_orchestrator_does_not_replace_cached_repository(tmp_path, monkeypatch):
    from relayflow.config import RelayflowConfig
    from relayflow.locks import InMemoryLockManager
    from relayflow.orchestrator import Orchestrator
    from relayflow.transports.inmemory import InMemoryTransport

    monkeypatch.delenv("RELAYFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    shared = InMemoryTransactionRepository()
    persistence._repository_instance = shared
    try:
        plain = Orchestrator(
            transport=InMemoryTransport(),
            locks=InMemoryLockManager(),
            config=RelayflowConfig(),
        )
        assert plain.repository is shared

        dedicated = Orchestrator(
            transport=InMemoryTransport(),
            locks=InMemoryLockManager(),
            config=RelayflowConfig(database_url=f"sqlite://{tmp_path / 'own.db'}"),
        )
        assert isinstance(dedicated.repository, SQLiteTransactionRepository)
        assert get_repository() is shared
    finally:
        persistence.reset_repository()
