"""PostgreSQL implementation of the transaction repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from . import _json
from .models import StepExecutionRecord, TransactionRecord, TransactionState, utcnow
from .repository import TransactionRepository

_TX_COLUMNS = (
    "transaction_id, workflow_id, state, input, result, error, waiting_step, "
    "deadline_at, branch_decisions, created_at, updated_at"
)
_STEP_COLUMNS = (
    "id, transaction_id, step_name, attempt, status, input, output, "
    "compensation_input, error, started_at, finished_at"
)


class PostgresTransactionRepository(TransactionRepository):
    """Persist transaction state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                state TEXT NOT NULL,
                input JSONB,
                result JSONB,
                error JSONB,
                waiting_step TEXT,
                deadline_at TIMESTAMPTZ,
                branch_decisions JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                id SERIAL PRIMARY KEY,
                transaction_id TEXT NOT NULL REFERENCES transactions (transaction_id),
                step_name TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                compensation_input JSONB,
                error TEXT,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_transactions_deadline "
            "ON transactions (state, deadline_at)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_step_executions_tx "
            "ON step_executions (transaction_id, id)"
        )

    @staticmethod
    def _to_transaction(row: Any) -> TransactionRecord:
        return TransactionRecord(
            transaction_id=row["transaction_id"],
            workflow_id=row["workflow_id"],
            state=row["state"],
            input=_json.load(row["input"]),
            result=_json.load(row["result"]),
            error=_json.load_error(row["error"]),
            waiting_step=row["waiting_step"],
            deadline_at=row["deadline_at"],
            branch_decisions=_json.load(row["branch_decisions"]) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_step(row: Any) -> StepExecutionRecord:
        return StepExecutionRecord(
            id=row["id"],
            transaction_id=row["transaction_id"],
            step_name=row["step_name"],
            attempt=row["attempt"],
            status=row["status"],
            input=_json.load(row["input"]),
            output=_json.load(row["output"]),
            compensation_input=_json.load(row["compensation_input"]),
            error=row["error"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )

    # ------------------------------------------------------------------
    async def create_transaction(self, transaction: TransactionRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO transactions ({_TX_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
                transaction.transaction_id,
                transaction.workflow_id,
                transaction.state.value,
                _json.dump(transaction.input),
                _json.dump(transaction.result),
                _json.dump_error(transaction.error),
                transaction.waiting_step,
                transaction.deadline_at,
                json.dumps(transaction.branch_decisions),
                transaction.created_at,
                transaction.updated_at,
            )
        finally:
            await conn.close()

    async def save_transaction(self, transaction: TransactionRecord) -> None:
        transaction.updated_at = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE transactions
                SET state = $1, result = $2, error = $3, waiting_step = $4,
                    deadline_at = $5, branch_decisions = $6, updated_at = $7
                WHERE transaction_id = $8
                """,
                transaction.state.value,
                _json.dump(transaction.result),
                _json.dump_error(transaction.error),
                transaction.waiting_step,
                transaction.deadline_at,
                json.dumps(transaction.branch_decisions),
                transaction.updated_at,
                transaction.transaction_id,
            )
        finally:
            await conn.close()

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_TX_COLUMNS} FROM transactions WHERE transaction_id = $1",
                transaction_id,
            )
            if not row:
                return None
            steps_rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM step_executions "
                "WHERE transaction_id = $1 ORDER BY id",
                transaction_id,
            )
        finally:
            await conn.close()
        transaction = self._to_transaction(row)
        transaction.step_executions = [self._to_step(r) for r in steps_rows]
        return transaction

    async def list_transactions(
        self, state: Optional[TransactionState] = None
    ) -> list[TransactionRecord]:
        conn = await self._connect()
        try:
            if state is None:
                rows = await conn.fetch(
                    f"SELECT {_TX_COLUMNS} FROM transactions ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_TX_COLUMNS} FROM transactions "
                    "WHERE state = $1 ORDER BY created_at",
                    TransactionState(state).value,
                )
        finally:
            await conn.close()
        return [self._to_transaction(r) for r in rows]

    async def list_overdue(self, now: datetime) -> list[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT transaction_id FROM transactions
                WHERE state = $1 AND deadline_at IS NOT NULL AND deadline_at <= $2
                ORDER BY deadline_at
                """,
                TransactionState.WAITING_EXTERNAL.value,
                now,
            )
        finally:
            await conn.close()
        return [r["transaction_id"] for r in rows]

    async def add_step_execution(self, record: StepExecutionRecord) -> int:
        conn = await self._connect()
        try:
            record.id = await conn.fetchval(
                """
                INSERT INTO step_executions (
                    transaction_id, step_name, attempt, status, input, output,
                    compensation_input, error, started_at, finished_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING id
                """,
                record.transaction_id,
                record.step_name,
                record.attempt,
                record.status.value,
                _json.dump(record.input),
                _json.dump(record.output),
                _json.dump(record.compensation_input),
                record.error,
                record.started_at,
                record.finished_at,
            )
        finally:
            await conn.close()
        return record.id

    async def update_step_execution(self, record: StepExecutionRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE step_executions
                SET status = $1, output = $2, compensation_input = $3, error = $4,
                    started_at = $5, finished_at = $6
                WHERE id = $7
                """,
                record.status.value,
                _json.dump(record.output),
                _json.dump(record.compensation_input),
                record.error,
                record.started_at,
                record.finished_at,
                record.id,
            )
        finally:
            await conn.close()

    async def count_step_executions(self, transaction_id: str) -> int:
        conn = await self._connect()
        try:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM step_executions WHERE transaction_id = $1",
                transaction_id,
            )
        finally:
            await conn.close()
        return int(count)
