"""Command line interface for inspecting and driving relayflow transactions."""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import json
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Optional

import typer

from .config import load_config
from .errors import RelayflowError
from .orchestrator import Orchestrator
from .persistence import TransactionState, get_repository
from .scanner import DeadlineScanner

app = typer.Typer(help="CLI for relayflow transactions")

# Command groups
transaction_app = typer.Typer(help="Commands for inspecting and signalling transactions")

app.add_typer(transaction_app, name="transaction")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, ...)"),
) -> None:
    """relayflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_module(target: str) -> ModuleType:
    """Import the module defining workflows, by dotted name or file path."""
    path = Path(target)
    if target.endswith(".py") or path.exists():
        resolved = path.expanduser().resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"No such module file: {target}")
        spec = importlib.util.spec_from_file_location(resolved.stem, resolved)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot import {target}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[resolved.stem] = module
        spec.loader.exec_module(module)
        return module
    return importlib.import_module(target)


def _orchestrator(module: Optional[str]) -> Orchestrator:
    """Build an orchestrator, importing ``module`` so its workflows register.

    A module may expose ``SERVICES``, a mapping of collaborator services to
    inject into steps.
    """
    services: dict[str, Any] = {}
    if module:
        try:
            loaded = _load_module(module)
        except (ImportError, FileNotFoundError) as e:
            typer.secho(f"Could not load module {module}: {e}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        services = dict(getattr(loaded, "SERVICES", None) or {})
    return Orchestrator(repository=get_repository(), services=services)


@transaction_app.command("list")
def transaction_list(
    state: Optional[str] = typer.Option(None, help="Only show transactions in this state"),
) -> None:
    """
    List transactions with their current state.

    Example:
        relayflow transaction list
        relayflow transaction list --state waiting-external
        # Output: 3f0c...    send-to-partner    waiting-external
    """
    state_filter: Optional[TransactionState] = None
    if state:
        try:
            state_filter = TransactionState(state)
        except ValueError:
            valid = ", ".join(s.value for s in TransactionState)
            typer.secho(f"Unknown state '{state}' (expected one of: {valid})", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    repo = get_repository()
    transactions = asyncio.run(repo.list_transactions(state_filter))
    if not transactions:
        typer.echo("No transactions found")
        return
    for tx in transactions:
        typer.echo(f"{tx.transaction_id}\t{tx.workflow_id}\t{tx.state.value}")


@transaction_app.command("show")
def transaction_show(transaction_id: str) -> None:
    """
    Show a transaction with its step execution history.

    Example:
        relayflow transaction show 3f0c...
        # Output: Transaction 3f0c... (send-to-partner): waiting-external
        #         Waiting at: await-order-start (deadline 2024-01-02T10:00:00+00:00)
        #         - create-order #1: succeeded
        #         - await-order-start #1: invoking
    """
    repo = get_repository()
    tx = asyncio.run(repo.get_transaction(transaction_id))
    if tx is None:
        typer.echo("Transaction not found")
        raise typer.Exit(code=1)

    typer.echo(f"Transaction {tx.transaction_id} ({tx.workflow_id}): {tx.state.value}")
    if tx.input is not None:
        typer.echo(f"Input: {json.dumps(tx.input, default=str)}")
    if tx.waiting_step:
        deadline = f" (deadline {tx.deadline_at.isoformat()})" if tx.deadline_at else ""
        typer.echo(f"Waiting at: {tx.waiting_step}{deadline}")
    if tx.result is not None:
        typer.echo(f"Result: {json.dumps(tx.result, default=str)}")
    if tx.error is not None:
        typer.echo(f"Error [{tx.error.kind.value}] at {tx.error.step_name}: {tx.error.message}")
        for failure in tx.error.compensation_failures:
            typer.echo(f"  compensation of {failure.step_name} failed: {failure.message}")
    for record in tx.step_executions:
        line = f"- {record.step_name} #{record.attempt}: {record.status.value}"
        if record.error:
            line += f" ({record.error})"
        typer.echo(line)


@transaction_app.command("signal")
def transaction_signal(
    transaction_id: str,
    step_name: str,
    outcome: str,
    payload: Optional[str] = typer.Option(None, help="JSON payload for the step"),
    module: str = typer.Option(..., help="Module defining the transaction's workflow"),
) -> None:
    """
    Report the outcome of the async step a transaction is waiting at.

    Example:
        relayflow transaction signal 3f0c... await-order-start success \\
            --payload '{"accepted": true}' --module myapp.workflows
    """
    data: Any = None
    if payload is not None:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            typer.secho(f"Invalid JSON payload: {e}", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    orchestrator = _orchestrator(module)
    try:
        tx = asyncio.run(
            orchestrator.report_step_outcome(transaction_id, step_name, outcome, data)
        )
    except RelayflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Transaction {tx.transaction_id}: {tx.state.value}")


@app.command("scan")
def scan(
    module: str = typer.Option(..., help="Module defining the workflows to scan for"),
    once: bool = typer.Option(False, help="Run a single scan and exit"),
    lifespan: Optional[float] = typer.Option(None, help="Stop scanning after this many seconds"),
    interval: Optional[float] = typer.Option(None, help="Seconds between scans"),
) -> None:
    """
    Fail async steps whose deadline has passed.

    Example:
        relayflow scan --module myapp.workflows --once
        relayflow scan --module myapp.workflows --lifespan 3600
    """
    orchestrator = _orchestrator(module)
    scanner = DeadlineScanner(
        orchestrator, interval or load_config().scanner.interval_seconds
    )
    if once:
        expired = asyncio.run(scanner.scan_once())
        if not expired:
            typer.echo("No overdue transactions")
        for transaction_id in expired:
            typer.echo(f"Expired {transaction_id}")
        return
    typer.echo(f"Scanning every {scanner.interval_seconds}s")
    asyncio.run(scanner.run(lifespan=lifespan))


@app.command("recover")
def recover(
    module: str = typer.Option(..., help="Module defining the workflows to recover"),
) -> None:
    """
    Resume transactions interrupted by a restart.

    Example:
        relayflow recover --module myapp.workflows
    """
    orchestrator = _orchestrator(module)
    recovered = asyncio.run(orchestrator.recover())
    if not recovered:
        typer.echo("Nothing to recover")
        return
    for transaction_id in recovered:
        typer.echo(f"Recovered {transaction_id}")


if __name__ == "__main__":
    app()
