"""Mutation queue CLI commands.

This module provides CLI commands for inspecting and remediating the
durable mutation queue:
- list: Pending mutations in submission order
- fatal: Mutations that were rejected or escalated
- discard: Drop a mutation
- retry: Return a fatal mutation to the queue with a fresh retry budget

Commands operate on the database directly; a running `sync run` picks up
requeued mutations on its next retry tick.
"""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from helpdesk_sync.audit import SyncAuditor
from helpdesk_sync.config import settings
from helpdesk_sync.errors import MutationNotFoundError
from helpdesk_sync.sync.queue import MutationQueue
from helpdesk_sync.sync.types import PendingMutation

queue_app = typer.Typer(help="Inspect and remediate the mutation queue")


def _queue(db_path: Path) -> MutationQueue:
    return MutationQueue(db_path, auditor=SyncAuditor(db_path))


def _print_mutations(title: str, mutations: list[PendingMutation], json_output: bool) -> None:
    if json_output:
        print(json.dumps([m.model_dump(mode="json") for m in mutations], indent=2))
        return

    console = Console()
    if not mutations:
        console.print(f"[yellow]No {title.lower()}[/yellow]")
        return

    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Collection")
    table.add_column("Entity")
    table.add_column("Kind", style="green")
    table.add_column("Retries", justify="right")
    table.add_column("Next Attempt")
    table.add_column("Last Error")

    for m in mutations:
        error = m.last_error or "-"
        if len(error) > 50:
            error = error[:47] + "..."
        table.add_row(
            m.id,
            m.entity_type.value,
            m.target_entity_id,
            m.kind.value,
            str(m.retry_count),
            m.next_attempt_at.strftime("%Y-%m-%d %H:%M:%S") if m.next_attempt_at else "-",
            error,
        )

    console.print(table)


@queue_app.command("list")
def list_pending(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    db_path: Path = typer.Option(settings.db_path, "--db", help="Path to sync database"),
) -> None:
    """List pending mutations."""
    mutations = asyncio.run(_queue(db_path).list_pending())
    _print_mutations("Pending Mutations", mutations, json_output)


@queue_app.command("fatal")
def list_fatal(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    db_path: Path = typer.Option(settings.db_path, "--db", help="Path to sync database"),
) -> None:
    """List mutations awaiting manual intervention."""
    mutations = asyncio.run(_queue(db_path).list_fatal())
    _print_mutations("Fatal Mutations", mutations, json_output)


@queue_app.command("discard")
def discard(
    mutation_id: str = typer.Argument(..., help="Mutation ID to discard"),
    actor: str = typer.Option("operator", "--actor", help="Recorded in the audit log"),
    db_path: Path = typer.Option(settings.db_path, "--db", help="Path to sync database"),
) -> None:
    """Drop a mutation from the queue."""
    try:
        mutation = asyncio.run(_queue(db_path).discard(mutation_id, actor=actor))
    except MutationNotFoundError as e:
        print(str(e))
        raise typer.Exit(1)
    print(f"Discarded {mutation.kind.value} of {mutation.target_entity_id} ({mutation.id})")


@queue_app.command("retry")
def retry(
    mutation_id: str = typer.Argument(..., help="Mutation ID to retry"),
    db_path: Path = typer.Option(settings.db_path, "--db", help="Path to sync database"),
) -> None:
    """Return a fatal mutation to the queue."""
    try:
        mutation = asyncio.run(_queue(db_path).requeue(mutation_id))
    except MutationNotFoundError as e:
        print(str(e))
        raise typer.Exit(1)
    print(f"Requeued {mutation.kind.value} of {mutation.target_entity_id} ({mutation.id})")
