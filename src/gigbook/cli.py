"""CLI — init, serve, status, balance, project."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from gigbook.config import Config
from gigbook.core.lifecycle import LifecycleOrchestrator
from gigbook.core.metrics import BalanceScope
from gigbook.errors import GigbookError
from gigbook.events.bus import EventBus
from gigbook.storage.sqlite_store import SQLiteStore


def _load_config(path: str) -> Config:
    workspace = Path(path).expanduser().resolve()
    config = Config.load(workspace)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not config.db_path.exists():
        click.echo(f"Error: No database at {config.db_path}. Run 'gigbook init' first.", err=True)
        sys.exit(1)
    return config


async def _open(config: Config) -> tuple[SQLiteStore, LifecycleOrchestrator]:
    store = SQLiteStore(config.db_path, wal_mode=config.wal_mode, lock_timeout=config.lock_timeout)
    await store.initialize()
    return store, LifecycleOrchestrator(store, EventBus(), config=config)


@click.group()
@click.version_option(package_name="gigbook")
def main() -> None:
    """Gigbook — freelance engagements from proposal to payment."""


@main.command()
@click.argument("path", type=click.Path(), default="~/.gigbook")
def init(path: str) -> None:
    """Initialize a new gigbook workspace."""
    workspace = Path(path).expanduser().resolve()
    config = Config(workspace_path=workspace)

    async def _init() -> None:
        store = SQLiteStore(config.db_path, wal_mode=config.wal_mode)
        await store.initialize()
        await store.close()
        config.save()

    asyncio.run(_init())
    click.echo(f"Initialized workspace at {workspace}")
    click.echo(f"Database: {config.db_path}")
    click.echo("Add to Claude Desktop config:")
    click.echo(f'  "gigbook": {{"command": "gigbook", "args": ["serve", "{workspace}"]}}')


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--transport", type=click.Choice(["stdio"]), default="stdio")
def serve(path: str, transport: str) -> None:
    """Start the MCP server."""
    config = _load_config(path)

    from gigbook.server import create_server

    server = create_server(str(config.db_path), config)
    server.run(transport=transport)  # type: ignore[arg-type]


@main.command()
@click.argument("path", type=click.Path(exists=True))
def status(path: str) -> None:
    """Show record counts and open projects."""
    config = _load_config(path)

    async def _status() -> tuple[dict[str, int], list]:
        store, engine = await _open(config)
        try:
            counts = await engine.counts()
            active = await engine.list_projects(status="active")
            return counts, [await engine.get_project(p.id) for p in active]
        finally:
            await store.close()

    counts, projects = asyncio.run(_status())
    console = Console()

    table = Table(title="Workspace")
    table.add_column("Collection", style="cyan")
    table.add_column("Records", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)

    if projects:
        active = Table(title="Active projects")
        active.add_column("Code", style="cyan")
        active.add_column("Name")
        active.add_column("Progress", justify="right")
        for project in projects:
            active.add_row(project.code, project.name, f"{project.progress}%")
        console.print(active)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--project", "project_id", default=None, help="Limit to one project")
@click.option("--client", "client_id", default=None, help="Limit to one client's projects")
@click.option("--since", type=click.DateTime(), default=None, help="Range start")
@click.option("--until", type=click.DateTime(), default=None, help="Range end")
@click.option("--monthly", is_flag=True, help="Break the balance down by month")
def balance(
    path: str,
    project_id: str | None,
    client_id: str | None,
    since: datetime | None,
    until: datetime | None,
    monthly: bool,
) -> None:
    """Show income, expense and balance."""
    config = _load_config(path)
    scope = BalanceScope(project_id=project_id, client_id=client_id, start=since, end=until)

    async def _balance() -> dict:
        store, engine = await _open(config)
        try:
            if monthly:
                return await engine.monthly_balance(scope)
            return {"total": await engine.get_balance(scope)}
        finally:
            await store.close()

    rows = asyncio.run(_balance())

    table = Table(title="Balance")
    table.add_column("Period", style="cyan")
    table.add_column("Income", justify="right", style="green")
    table.add_column("Expense", justify="right", style="red")
    table.add_column("Balance", justify="right", style="bold")
    for period, totals in rows.items():
        data = totals.to_response()
        table.add_row(period, data["income"], data["expense"], data["balance"])
    Console().print(table)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.argument("project_id")
def project(path: str, project_id: str) -> None:
    """Show a project with its live progress and deliverables."""
    config = _load_config(path)

    async def _project() -> tuple:
        store, engine = await _open(config)
        try:
            found = await engine.get_project(project_id)
            deliverables = await engine.list_deliverables(project_id)
            totals = await engine.get_balance(BalanceScope(project_id=project_id))
            return found, deliverables, totals
        finally:
            await store.close()

    try:
        found, deliverables, totals = asyncio.run(_project())
    except GigbookError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    console = Console()
    money = totals.to_response()
    end = found.end_date.date().isoformat() if found.end_date else "open"
    console.print(
        Panel(
            f"[bold]{found.name}[/bold]\n"
            f"Status: {found.status.value}\n"
            f"Span: {found.start_date.date().isoformat()} → {end}\n"
            f"Value: {found.value}\n"
            f"Progress: {found.progress}%\n"
            f"Balance: {money['balance']} (income {money['income']}, expense {money['expense']})",
            title=found.code,
        )
    )
    if deliverables:
        table = Table(title="Deliverables")
        table.add_column("#", justify="right")
        table.add_column("Title")
        table.add_column("Status", style="cyan")
        table.add_column("Due")
        for d in deliverables:
            table.add_row(str(d.position), d.title, d.status.value, d.due_date.date().isoformat())
        console.print(table)
