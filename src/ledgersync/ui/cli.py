from __future__ import annotations

import json
import os
import sys

from dotenv import load_dotenv
from loguru import logger
import typer

from ledgersync.adapters.db.facade import DB
from ledgersync.core.config import SyncConfig, load_sync_config_from_env
from ledgersync.dedup.tier2 import Tier2Verifier
from ledgersync.infra.clients.plaid import PlaidClient, PlaidClientError
from ledgersync.infra.clients.verifier import OpenAIVerificationService
from ledgersync.sync.coordinator import SyncCoordinator, stale_connections
from ledgersync.sync.types import SyncProgress, SyncResult

# Load environment variables from .env
load_dotenv()

DEFAULT_DB_URL = "sqlite:///ledgersync.db"

app = typer.Typer(help="ledgersync: bank feed sync and deduplication.")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Configure logging before any command runs."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}",
        level="DEBUG" if verbose else "INFO",
    )


def _db() -> DB:
    db = DB(os.environ.get("DATABASE_URL") or DEFAULT_DB_URL)
    db.create_schema()
    return db


def _config() -> SyncConfig:
    try:
        return load_sync_config_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(code=2) from e


def _coordinator(db: DB, config: SyncConfig) -> SyncCoordinator:
    try:
        feed = PlaidClient.from_env(timeout_seconds=config.aggregator_timeout_seconds)
    except PlaidClientError as e:
        typer.echo(f"Error initializing Plaid client: {e}", err=True)
        raise typer.Exit(code=1) from e

    verifier: Tier2Verifier | None = None
    if OpenAIVerificationService.is_available():
        verifier = Tier2Verifier(
            OpenAIVerificationService(
                model=config.verifier_model,
                timeout_seconds=config.verifier_timeout_seconds,
            ),
            batch_limit=config.verifier_batch_limit,
        )
    else:
        typer.echo(
            "OPENAI_API_KEY not set; uncertain matches will be inserted as new.",
            err=True,
        )
    return SyncCoordinator(db, feed, verifier=verifier, config=config)


def _print_progress(progress: SyncProgress) -> None:
    suffix = f" ({progress.total})" if progress.total else ""
    typer.echo(f"[{progress.connection_id}] {progress.stage.value}{suffix}", err=True)


def _echo_results(results: list[SyncResult]) -> None:
    payload = [result.to_dict() for result in results]
    typer.echo(json.dumps(payload[0] if len(payload) == 1 else payload, indent=2))
    if any(not result.ok for result in results):
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db() -> None:
    """Create the ledger schema in DATABASE_URL."""
    _db()
    typer.echo("Database schema ready.")


@app.command("add-connection")
def add_connection(
    connection_id: str = typer.Argument(..., help="Aggregator item id"),
    access_token: str = typer.Option(..., help="Aggregator access token"),
    institution: str | None = typer.Option(None, help="Institution name"),
) -> None:
    """Register or update a bank connection. The sync cursor is kept."""
    _db().save_connection(
        connection_id=connection_id,
        access_token=access_token,
        institution_name=institution,
    )
    typer.echo(f"Saved connection {connection_id}.")


@app.command("sync")
def sync(
    connection_id: str = typer.Argument(..., help="Bank connection to sync"),
    progress: bool = typer.Option(False, help="Print stage progress to stderr"),
) -> None:
    """Sync one bank connection and print the result as JSON."""
    db = _db()
    coordinator = _coordinator(db, _config())
    try:
        result = coordinator.sync(
            connection_id, on_progress=_print_progress if progress else None
        )
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2) from e
    _echo_results([result])


@app.command("sync-all")
def sync_all(
    progress: bool = typer.Option(False, help="Print stage progress to stderr"),
) -> None:
    """Sync every bank connection sequentially."""
    db = _db()
    coordinator = _coordinator(db, _config())
    results = coordinator.sync_all(on_progress=_print_progress if progress else None)
    if not results:
        typer.echo("No connections found.")
        return
    _echo_results(results)


@app.command("refresh-history")
def refresh_history(
    connection_id: str = typer.Argument(..., help="Bank connection to replay"),
) -> None:
    """Reset a connection's cursor and replay its full history."""
    db = _db()
    coordinator = _coordinator(db, _config())
    try:
        result = coordinator.refresh_history(connection_id)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2) from e
    _echo_results([result])


@app.command("stale")
def stale() -> None:
    """List connections that are due for a sync."""
    db = _db()
    config = _config()
    conns = stale_connections(db, config)
    if not conns:
        typer.echo(
            f"All connections synced within {config.stale_after_minutes} minutes."
        )
        return
    for conn in conns:
        last = conn.last_synced_at.isoformat() if conn.last_synced_at else "never"
        name = conn.institution_name or "-"
        typer.echo(f"{conn.connection_id}\t{name}\tlast synced: {last}")


@app.command("vacuum")
def vacuum() -> None:
    """Compact the ledger database."""
    _db().vacuum()
    typer.echo("Vacuum complete.")


def main() -> None:
    app()
