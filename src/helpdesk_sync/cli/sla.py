"""SLA CLI commands."""

from datetime import datetime

import typer

from helpdesk_sync.lifecycle.sla import SLA_HOURS, as_utc, sla_due_at
from helpdesk_sync.types import Priority, utcnow

sla_app = typer.Typer(help="SLA calculations")


@sla_app.command("due")
def due(
    priority: str = typer.Argument(..., help=f"Priority ({', '.join(p.value for p in Priority)})"),
    created: str = typer.Argument(..., help="Creation time, ISO-8601 (naive means UTC)"),
) -> None:
    """Print the SLA due date of a ticket."""
    try:
        created_at = as_utc(datetime.fromisoformat(created))
    except ValueError:
        print(f"Error: invalid timestamp '{created}'")
        raise typer.Exit(1)

    try:
        level = Priority(priority.capitalize())
    except ValueError:
        print(f"Error: unknown priority '{priority}'")
        raise typer.Exit(1)

    due_at = sla_due_at(created_at, level)
    overdue = " (breached)" if utcnow() > due_at else ""
    print(f"{level.value} ({SLA_HOURS[level]}h): due {due_at.isoformat()}{overdue}")
