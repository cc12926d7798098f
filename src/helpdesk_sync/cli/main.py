"""Helpdesk CLI - offline-first help desk sync engine."""

import typer

from helpdesk_sync.cli.audit import audit_app
from helpdesk_sync.cli.queue import queue_app
from helpdesk_sync.cli.sla import sla_app
from helpdesk_sync.cli.sync import sync_app

app = typer.Typer(
    name="helpdesk",
    help="Offline-first help desk sync engine",
    no_args_is_help=True,
)

# Add command groups
app.add_typer(audit_app, name="audit")
app.add_typer(queue_app, name="queue")
app.add_typer(sla_app, name="sla")
app.add_typer(sync_app, name="sync")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
