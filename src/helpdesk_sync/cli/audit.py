"""Sync audit log CLI commands.

- list: Recent sync events, optionally filtered by entity or event type
"""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from helpdesk_sync.audit import SyncAuditor
from helpdesk_sync.config import settings

audit_app = typer.Typer(help="Review the sync audit log")


@audit_app.command("list")
def list_events(
    entity: str = typer.Option(None, "--entity", "-e", help="Filter by entity id"),
    event_type: str = typer.Option(
        None, "--type", "-t", help="Filter by event type (e.g. conflict, rejected)"
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Number of events to show"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    db_path: Path = typer.Option(settings.db_path, "--db", help="Path to sync database"),
) -> None:
    """List recent sync events, newest first."""
    auditor = SyncAuditor(db_path)
    events = asyncio.run(
        auditor.get_events(entity_id=entity, event_type=event_type, limit=limit)
    )

    if json_output:
        print(json.dumps([e.model_dump(mode="json") for e in events], indent=2))
        return

    console = Console()
    if not events:
        console.print("[yellow]No events found[/yellow]")
        return

    table = Table(title="Sync Audit Log")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="green")
    table.add_column("Entity", style="cyan")
    table.add_column("Mutation")
    table.add_column("Actor")
    table.add_column("Details")

    for event in events:
        details = json.dumps(event.event_data) if event.event_data else "-"
        if len(details) > 60:
            details = details[:57] + "..."
        entity_label = (
            f"{event.entity_type}/{event.entity_id}" if event.entity_id else "-"
        )
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type,
            entity_label,
            event.mutation_id or "-",
            event.actor,
            details,
        )

    console.print(table)
