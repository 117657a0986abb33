"""
CLI interface for the verification gateway.

Provides command-line access to officers' balances, the ledger, the
query history and PRO lookups.
"""

import logging
import sqlite3
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from credit_gateway.config.loader import GatewayConfig, default_config, load_gateway_config
from credit_gateway.core.credentials import CredentialStore
from credit_gateway.core.ledger import Ledger
from credit_gateway.core.orchestrator import GatewayOrchestrator
from credit_gateway.core.query_log import QueryLog
from credit_gateway.demo.seed_demo_data import seed_demo_data
from credit_gateway.storage.db import DEFAULT_DB_PATH
from credit_gateway.storage.models import LedgerAction, QueryStatus
from credit_gateway.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "gateway.yaml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CREDIT_ACTIONS = {
    "top-up": LedgerAction.TOP_UP,
    "renewal": LedgerAction.RENEWAL,
    "refund": LedgerAction.REFUND,
}


def _db(ctx: typer.Context) -> str:
    return ctx.obj["db"]


def _config(ctx: typer.Context) -> GatewayConfig:
    """Load the gateway config named on the command line, if any.

    Falls back to gateway.yaml in the working directory, then to the
    built-in defaults (which route no operations).
    """
    path = ctx.obj.get("config")
    if path is None:
        if not Path(DEFAULT_CONFIG_PATH).exists():
            return default_config()
        path = DEFAULT_CONFIG_PATH
    return load_gateway_config(path)


def _parse_inputs(pairs: List[str]) -> dict:
    payload = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--input")
        payload[key.strip()] = value.strip()
    return payload


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to the gateway YAML config"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log gateway activity"),
):
    """Credit-metered verification gateway CLI."""
    ctx.obj = {"db": db, "config": config}
    if verbose:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    if ctx.invoked_subcommand is None:
        console.print("Credit Gateway - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the gateway database."""
    try:
        initialize_schema(_db(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show registered integrations and officers."""
    repository = get_repository(_db(ctx))
    try:
        integrations = CredentialStore(repository).list_integrations()
        officers = repository.list_officers()
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]Database is not initialized[/]")
            console.print("Run `credit-gateway init` to create it\n")
            sys.exit(EXIT_CODE_FAIL)
        raise

    table = Table(title="Provider Integrations")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Cost", justify="right")
    table.add_column("Credential")
    table.add_column("Uses", justify="right")
    for integration in integrations:
        table.add_row(
            integration.id,
            integration.name,
            integration.provider_tag,
            integration.status.value,
            str(integration.credit_cost),
            integration.credential,
            str(integration.usage_count),
        )
    console.print(table)
    console.print(f"{len(officers)} officer(s) registered")


@app.command("seed-demo")
def seed_demo(ctx: typer.Context):
    """Insert demo plans, officers and integrations."""
    count = seed_demo_data(_db(ctx))
    console.print(f"[green]✓[/] Demo data inserted ({count} records)")


@app.command()
def balance(ctx: typer.Context, officer_id: str = typer.Argument(..., help="Officer id")):
    """Show an officer's credit balance."""
    officer = get_repository(_db(ctx)).get_officer(officer_id)
    if officer is None:
        _fail(f"Officer '{officer_id}' not found")
    console.print(f"[bold]{officer.name}[/bold] ({officer.id}) - {officer.status.value}")
    console.print(f"Plan: {officer.plan_id or 'none'}")
    console.print(f"Credits remaining: {officer.credits_remaining}")
    console.print(f"Total credits: {officer.total_credits}")
    console.print(f"Queries: {officer.total_queries}")


@app.command()
def credit(
    ctx: typer.Context,
    officer_id: str = typer.Argument(..., help="Officer id"),
    amount: str = typer.Argument(..., help="Credits to add"),
    action: str = typer.Option("top-up", "--action", "-a", help="top-up, renewal or refund"),
    remarks: Optional[str] = typer.Option(None, "--remarks", "-r", help="Ledger remarks"),
):
    """Add credits to an officer's balance."""
    if action not in CREDIT_ACTIONS:
        _fail(f"Unknown action '{action}'; expected one of {', '.join(CREDIT_ACTIONS)}")
    ledger_service = Ledger(get_repository(_db(ctx)))
    try:
        entry = ledger_service.credit(officer_id, amount, action=CREDIT_ACTIONS[action], remarks=remarks)
    except ValueError as e:
        _fail(str(e))
    console.print(
        f"[green]✓[/] {entry.action.value} of {entry.credits_delta} credits; "
        f"balance now {ledger_service.balance(officer_id)}"
    )


@app.command()
def lookup(
    ctx: typer.Context,
    officer_id: str = typer.Argument(..., help="Officer id"),
    operation: str = typer.Argument(..., help="Operation tag, e.g. vehicle_rc_search"),
    inputs: List[str] = typer.Option([], "--input", "-i", help="Operation input as key=value"),
    retry: bool = typer.Option(False, "--retry", help="Retry rate-limited and timed-out attempts"),
):
    """Run a PRO lookup for an officer."""
    payload = _parse_inputs(inputs)
    try:
        config = _config(ctx)
    except (FileNotFoundError, ValueError) as e:
        _fail(str(e))

    with GatewayOrchestrator(get_repository(_db(ctx)), config) as orchestrator:
        if retry:
            result = orchestrator.invoke_with_retry(officer_id, operation, payload)
        else:
            result = orchestrator.invoke(officer_id, operation, payload)

    if result.succeeded:
        console.print(f"[green]✓[/] {result.message}")
        console.print(f"Credits charged: {result.credits_charged}")
        console.print(f"[dim]Query {result.query_id}[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] {result.message}")
    console.print(f"[dim]Query {result.query_id} ({result.error_kind.value})[/]")
    sys.exit(EXIT_CODE_FAIL)


def _since(days: Optional[int]) -> Optional[datetime]:
    if days is None:
        return None
    return datetime.now() - timedelta(days=days)


@app.command()
def history(
    ctx: typer.Context,
    officer_id: Optional[str] = typer.Argument(None, help="Officer id"),
    status_filter: Optional[str] = typer.Option(
        None, "--status", "-s", help="Pending, Success or Failed"
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum records to show"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only the last N days"),
):
    """Show the query history, newest first."""
    status_value = None
    if status_filter is not None:
        try:
            status_value = QueryStatus(status_filter.capitalize())
        except ValueError:
            _fail(f"Unknown status '{status_filter}'")

    records = QueryLog(get_repository(_db(ctx))).history(
        officer_id=officer_id, status=status_value, since=_since(days), limit=limit
    )
    if not records:
        console.print("\n[dim]No queries found.[/]")
        return

    table = Table(title="Query History")
    table.add_column("Time")
    table.add_column("Officer")
    table.add_column("Operation")
    table.add_column("Status")
    table.add_column("Charged", justify="right")
    table.add_column("Summary")
    for record in records:
        style = {"Success": "green", "Failed": "red"}.get(record.status.value, "yellow")
        table.add_row(
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.officer_id,
            record.operation_tag,
            f"[{style}]{record.status.value}[/]",
            str(record.credits_charged),
            record.result_summary or "",
        )
    console.print(table)


@app.command()
def ledger(
    ctx: typer.Context,
    officer_id: Optional[str] = typer.Argument(None, help="Officer id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only the last N days"),
):
    """Show ledger entries, newest first."""
    entries = Ledger(get_repository(_db(ctx))).entries(
        officer_id=officer_id, since=_since(days), limit=limit
    )
    if not entries:
        console.print("\n[dim]No ledger entries found.[/]")
        return

    table = Table(title="Credit Ledger")
    table.add_column("Time")
    table.add_column("Officer")
    table.add_column("Action")
    table.add_column("Credits", justify="right")
    table.add_column("Query")
    table.add_column("Remarks")
    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.officer_id,
            entry.action.value,
            f"{'+' if entry.credits_delta > 0 else ''}{entry.credits_delta}",
            entry.related_query_id or "",
            entry.remarks or "",
        )
    console.print(table)


@app.command()
def sweep(
    ctx: typer.Context,
    older_than: Optional[int] = typer.Option(
        None, "--older-than", help="Reservation age in seconds; defaults to the configured TTL"
    ),
):
    """Expire orphaned reservations and return their credits."""
    try:
        config = _config(ctx)
    except (FileNotFoundError, ValueError) as e:
        _fail(str(e))
    age = timedelta(seconds=older_than) if older_than is not None else None
    with GatewayOrchestrator(get_repository(_db(ctx)), config) as orchestrator:
        expired = orchestrator.reconcile(age)
    for reservation in expired:
        console.print(
            f"Expired {reservation.token}: {reservation.amount} credits "
            f"returned to {reservation.officer_id}"
        )
    console.print(f"[green]✓[/] {len(expired)} reservation(s) expired")


@app.command()
def verify(
    ctx: typer.Context,
    officer_id: Optional[str] = typer.Argument(None, help="Officer id; all officers if omitted"),
):
    """Check balances against the ledger and held reservations."""
    repository = get_repository(_db(ctx))
    ledger_service = Ledger(repository)
    if officer_id is not None:
        officer_ids = [officer_id]
    else:
        officer_ids = [officer.id for officer in repository.list_officers()]

    inconsistent = 0
    for current in officer_ids:
        try:
            check = ledger_service.verify_balance(current)
        except ValueError as e:
            _fail(str(e))
        if check.consistent:
            console.print(f"[green]✓[/] {current}: {check.credits_remaining}")
        else:
            inconsistent += 1
            console.print(
                f"[red]✗[/] {current}: balance {check.credits_remaining}, "
                f"expected {check.expected} (ledger {check.ledger_total}, held {check.held})"
            )
    sys.exit(EXIT_CODE_FAIL if inconsistent else EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
