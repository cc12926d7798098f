"""
SyncScheduler: the single background loop of the sync engine.

Each tick:
- Probes the remote store while connectivity is uncertain or offline
  (an offline -> online transition triggers the coordinated flush)
- Requests a flush once the earliest retry is due

Between ticks the loop waits for the probe interval or until the next
retry is due, whichever is sooner. The wait is interruptible: SIGINT and
SIGTERM set a shutdown event and the loop exits promptly.

Uses asyncio.Event for shutdown coordination, registers signal handlers
inside run() via get_running_loop(), and waits with asyncio.wait_for on
the event instead of asyncio.sleep.
"""

import asyncio
import functools
import logging
import signal
from datetime import datetime

from helpdesk_sync.sync.reconciler import Reconciler
from helpdesk_sync.types import utcnow

logger = logging.getLogger(__name__)

MIN_WAIT_SECONDS = 1.0


class SyncScheduler:
    """
    Long-running loop driving probes and retries.

    Example:
        scheduler = SyncScheduler(service.reconciler)
        await scheduler.run()  # Runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        reconciler: Reconciler,
        probe_interval_seconds: float | None = None,
        handle_signals: bool = True,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            reconciler: Reconciler whose monitor and queue are driven
            probe_interval_seconds: Upper bound on the wait between ticks
                (default: the monitor's probe interval)
            handle_signals: Install SIGINT/SIGTERM handlers in run()
        """
        self.reconciler = reconciler
        self.interval = probe_interval_seconds or reconciler.monitor.probe_interval
        self.handle_signals = handle_signals
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """Tick until shutdown is requested."""
        if self.handle_signals:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, functools.partial(self._handle_signal, sig))

        logger.info(f"Sync scheduler starting (probe interval: {self.interval}s)")
        while not self._shutdown.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")

            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=await self.next_wait(),
                )
            except asyncio.TimeoutError:
                pass

        logger.info("Sync scheduler stopped")

    def stop(self) -> None:
        """Request shutdown; run() returns after the current tick."""
        self._shutdown.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down...")
        self._shutdown.set()

    async def tick(self, now: datetime | None = None) -> None:
        """Run one probe-or-retry step."""
        monitor = self.reconciler.monitor
        if monitor.needs_probe():
            await monitor.check()
            return

        due = await self.reconciler.queue.next_due_at()
        if due is not None and due <= (now or utcnow()):
            self.reconciler.request_flush()

    async def next_wait(self, now: datetime | None = None) -> float:
        """Seconds until the next tick."""
        wait = self.interval
        if self.reconciler.monitor.is_online():
            due = await self.reconciler.queue.next_due_at()
            if due is not None:
                wait = min(wait, (due - (now or utcnow())).total_seconds())
        return max(wait, MIN_WAIT_SECONDS)
