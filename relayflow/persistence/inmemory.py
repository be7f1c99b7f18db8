"""In-memory implementation of the transaction repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from .models import StepExecutionRecord, TransactionRecord, TransactionState, utcnow
from .repository import TransactionRepository


class InMemoryTransactionRepository(TransactionRepository):
    """Store transaction state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._transactions: Dict[str, TransactionRecord] = {}
        self._steps: Dict[str, List[StepExecutionRecord]] = {}
        self._step_id = 0

    # ------------------------------------------------------------------
    async def create_transaction(self, transaction: TransactionRecord) -> None:
        if transaction.transaction_id in self._transactions:
            raise ValueError(f"Transaction {transaction.transaction_id} already exists")
        self._transactions[transaction.transaction_id] = transaction.model_copy(
            deep=True, update={"step_executions": []}
        )
        self._steps[transaction.transaction_id] = []

    async def save_transaction(self, transaction: TransactionRecord) -> None:
        if transaction.transaction_id not in self._transactions:
            return
        transaction.updated_at = utcnow()
        self._transactions[transaction.transaction_id] = transaction.model_copy(
            deep=True, update={"step_executions": []}
        )

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        stored = self._transactions.get(transaction_id)
        if stored is None:
            return None
        steps = [r.model_copy(deep=True) for r in self._steps[transaction_id]]
        return stored.model_copy(deep=True, update={"step_executions": steps})

    async def list_transactions(
        self, state: Optional[TransactionState] = None
    ) -> list[TransactionRecord]:
        return [
            tx.model_copy(deep=True)
            for tx in self._transactions.values()
            if state is None or tx.state == state
        ]

    async def list_overdue(self, now: datetime) -> list[str]:
        return [
            tx.transaction_id
            for tx in self._transactions.values()
            if tx.state == TransactionState.WAITING_EXTERNAL
            and tx.deadline_at is not None
            and tx.deadline_at <= now
        ]

    async def add_step_execution(self, record: StepExecutionRecord) -> int:
        self._step_id += 1
        record.id = self._step_id
        self._steps.setdefault(record.transaction_id, []).append(
            record.model_copy(deep=True)
        )
        return record.id

    async def update_step_execution(self, record: StepExecutionRecord) -> None:
        steps = self._steps.get(record.transaction_id, [])
        for index, existing in enumerate(steps):
            if existing.id == record.id:
                steps[index] = record.model_copy(deep=True)
                return

    async def count_step_executions(self, transaction_id: str) -> int:
        return len(self._steps.get(transaction_id, []))
