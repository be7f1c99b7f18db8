"""SQLite implementation of the transaction repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

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


class SQLiteTransactionRepository(TransactionRepository):
    """Persist transaction state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                state TEXT NOT NULL,
                input TEXT,
                result TEXT,
                error TEXT,
                waiting_step TEXT,
                deadline_at TEXT,
                branch_decisions TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                compensation_input TEXT,
                error TEXT,
                started_at TEXT,
                finished_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_transactions_deadline "
            "ON transactions (state, deadline_at)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_step_executions_tx "
            "ON step_executions (transaction_id, id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _to_transaction(row: sqlite3.Row) -> TransactionRecord:
        return TransactionRecord(
            transaction_id=row["transaction_id"],
            workflow_id=row["workflow_id"],
            state=row["state"],
            input=_json.load(row["input"]),
            result=_json.load(row["result"]),
            error=_json.load_error(row["error"]),
            waiting_step=row["waiting_step"],
            deadline_at=_json.parse_ts(row["deadline_at"]),
            branch_decisions=json.loads(row["branch_decisions"] or "{}"),
            created_at=_json.parse_ts(row["created_at"]),
            updated_at=_json.parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _to_step(row: sqlite3.Row) -> StepExecutionRecord:
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
            started_at=_json.parse_ts(row["started_at"]),
            finished_at=_json.parse_ts(row["finished_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_transaction(self, transaction: TransactionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO transactions ({_TX_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            transaction.transaction_id,
            transaction.workflow_id,
            transaction.state.value,
            _json.dump(transaction.input),
            _json.dump(transaction.result),
            _json.dump_error(transaction.error),
            transaction.waiting_step,
            _json.format_ts(transaction.deadline_at),
            json.dumps(transaction.branch_decisions),
            _json.format_ts(transaction.created_at),
            _json.format_ts(transaction.updated_at),
        )

    async def save_transaction(self, transaction: TransactionRecord) -> None:
        transaction.updated_at = utcnow()
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE transactions
            SET state = ?, result = ?, error = ?, waiting_step = ?, deadline_at = ?,
                branch_decisions = ?, updated_at = ?
            WHERE transaction_id = ?
            """,
            transaction.state.value,
            _json.dump(transaction.result),
            _json.dump_error(transaction.error),
            transaction.waiting_step,
            _json.format_ts(transaction.deadline_at),
            json.dumps(transaction.branch_decisions),
            _json.format_ts(transaction.updated_at),
            transaction.transaction_id,
        )

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_TX_COLUMNS} FROM transactions WHERE transaction_id = ?",
            transaction_id,
        )
        if not row:
            return None
        steps_rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM step_executions WHERE transaction_id = ? ORDER BY id",
            transaction_id,
        )
        transaction = self._to_transaction(row)
        transaction.step_executions = [self._to_step(r) for r in steps_rows]
        return transaction

    async def list_transactions(
        self, state: Optional[TransactionState] = None
    ) -> list[TransactionRecord]:
        if state is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_TX_COLUMNS} FROM transactions ORDER BY created_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_TX_COLUMNS} FROM transactions WHERE state = ? ORDER BY created_at",
                TransactionState(state).value,
            )
        return [self._to_transaction(r) for r in rows]

    async def list_overdue(self, now: datetime) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT transaction_id FROM transactions
            WHERE state = ? AND deadline_at IS NOT NULL AND deadline_at <= ?
            ORDER BY deadline_at
            """,
            TransactionState.WAITING_EXTERNAL.value,
            _json.format_ts(now),
        )
        return [r["transaction_id"] for r in rows]

    async def add_step_execution(self, record: StepExecutionRecord) -> int:
        record.id = await asyncio.to_thread(
            self._execute,
            f"INSERT INTO step_executions ({_STEP_COLUMNS}) VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            record.transaction_id,
            record.step_name,
            record.attempt,
            record.status.value,
            _json.dump(record.input),
            _json.dump(record.output),
            _json.dump(record.compensation_input),
            record.error,
            _json.format_ts(record.started_at),
            _json.format_ts(record.finished_at),
        )
        return record.id

    async def update_step_execution(self, record: StepExecutionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_executions
            SET status = ?, output = ?, compensation_input = ?, error = ?,
                started_at = ?, finished_at = ?
            WHERE id = ?
            """,
            record.status.value,
            _json.dump(record.output),
            _json.dump(record.compensation_input),
            record.error,
            _json.format_ts(record.started_at),
            _json.format_ts(record.finished_at),
            record.id,
        )

    async def count_step_executions(self, transaction_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(*) AS n FROM step_executions WHERE transaction_id = ?",
            transaction_id,
        )
        return int(row["n"])
