"""Sync daemon CLI commands.

- run: Assemble the service against the HTTP remote store and EmailJS,
  then run the scheduler until SIGINT/SIGTERM
- status: Show queue depth without starting the engine

Configuration comes from HELPDESK_* environment variables (see
helpdesk_sync.config.Settings); options override individual values.
"""

import asyncio
import logging
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler

from helpdesk_sync.config import settings
from helpdesk_sync.notify.emailjs import EmailJsTransport
from helpdesk_sync.scheduler import SyncScheduler
from helpdesk_sync.service import build_service
from helpdesk_sync.sync.queue import MutationQueue
from helpdesk_sync.sync.remote import HttpRemoteStore

sync_app = typer.Typer(help="Run the sync engine")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    # Per-request logs from httpx are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@sync_app.command("run")
def run_sync(
    remote_url: str = typer.Option(
        settings.remote_url, "--remote", "-r", help="Base URL of the remote store"
    ),
    db_path: Path = typer.Option(settings.db_path, "--db", help="Path to sync database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """
    Run the sync engine.

    Keeps the local queue flushed to the remote store and the views
    subscribed to it. Runs until interrupted with Ctrl+C.
    """
    _configure_logging(verbose)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    console = Console()
    console.print(f"Starting sync engine against [cyan]{remote_url}[/cyan]")
    console.print(f"  Database: {db_path}")
    console.print("Press Ctrl+C to stop")

    async def _run() -> None:
        async with (
            httpx.AsyncClient(
                base_url=remote_url, timeout=settings.apply_timeout_seconds
            ) as store_http,
            httpx.AsyncClient(timeout=10.0) as email_http,
        ):
            store = HttpRemoteStore(http=store_http, poll_interval=settings.push_poll_seconds)
            transport = EmailJsTransport(
                email_http,
                service_id=settings.emailjs_service_id,
                public_key=settings.emailjs_public_key,
                template_id=settings.emailjs_template_id,
                url=settings.emailjs_url,
            )
            service = build_service(settings, store, transport, db_path=db_path)
            monitor = service.reconciler.monitor
            store.on_disconnect = monitor.report_disconnect
            store.on_link_up = monitor.report_link_up

            await service.start()
            try:
                await SyncScheduler(service.reconciler).run()
            finally:
                await service.stop()

    asyncio.run(_run())


@sync_app.command("status")
def status(
    db_path: Path = typer.Option(settings.db_path, "--db", help="Path to sync database"),
) -> None:
    """Show how many mutations are pending or fatal."""

    async def _status() -> tuple[int, int]:
        queue = MutationQueue(db_path)
        return len(await queue.list_pending()), len(await queue.list_fatal())

    pending, fatal = asyncio.run(_status())
    print(f"Pending: {pending}")
    print(f"Fatal:   {fatal}")
