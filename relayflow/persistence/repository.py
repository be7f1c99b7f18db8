"""Repository abstraction for transaction state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from .models import StepExecutionRecord, TransactionRecord, TransactionState


class TransactionRepository(Protocol):
    """Protocol for transaction state persistence backends."""

    async def create_transaction(self, transaction: TransactionRecord) -> None:
        """Persist a new transaction. Its step executions are not written."""

    async def save_transaction(self, transaction: TransactionRecord) -> None:
        """Persist state, result, error, waiting step, deadline and branch decisions."""

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        """Retrieve the transaction with its step executions in execution order."""

    async def list_transactions(
        self, state: Optional[TransactionState] = None
    ) -> list[TransactionRecord]:
        """Return persisted transactions without their step executions."""

    async def list_overdue(self, now: datetime) -> list[str]:
        """Return ids of waiting transactions whose deadline is at or before ``now``."""

    async def add_step_execution(self, record: StepExecutionRecord) -> int:
        """Insert a step execution record and return its id."""

    async def update_step_execution(self, record: StepExecutionRecord) -> None:
        """Persist status, output, error and timestamps of an existing record."""

    async def count_step_executions(self, transaction_id: str) -> int:
        """Return how many step execution records a transaction has."""
