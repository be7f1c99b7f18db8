"""Persistence layer for relayflow transactions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RelayflowConfig, load_config
from .inmemory import InMemoryTransactionRepository
from .models import (
    CompensationFailure,
    ErrorKind,
    StepExecutionRecord,
    StepStatus,
    TransactionError,
    TransactionRecord,
    TransactionState,
)
from .repository import TransactionRepository
from .sqlite import SQLiteTransactionRepository

_repository_instance: TransactionRepository | None = None


def create_repository(database_url: Optional[str] = None) -> TransactionRepository:
    """Build a new repository for ``database_url`` without touching the cache.

    An empty URL gives an in-memory repository.
    """
    if not database_url:
        return InMemoryTransactionRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteTransactionRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresTransactionRepository

        return PostgresTransactionRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[RelayflowConfig] = None
) -> TransactionRepository:
    """Factory function to obtain the process-wide transaction repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``RELAYFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Passing either argument
    replaces the cached instance.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("RELAYFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )
    _repository_instance = create_repository(database_url)
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "CompensationFailure",
    "ErrorKind",
    "StepExecutionRecord",
    "StepStatus",
    "TransactionError",
    "TransactionRecord",
    "TransactionState",
    "TransactionRepository",
    "InMemoryTransactionRepository",
    "SQLiteTransactionRepository",
    "create_repository",
    "get_repository",
    "reset_repository",
]
