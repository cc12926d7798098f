"""
Connectivity tracking for the sync engine.

ConnectivityMonitor owns the process's view of whether the remote store is
reachable:
- A transport-level disconnect signal moves it offline immediately
- A link-up signal only makes the state uncertain
- It goes online only after a reachability probe succeeds
- Probes run (via check()) only while uncertain or offline

Each offline -> online transition emits exactly one ONLINE event to all
subscribers; the Reconciler reacts with a single coordinated flush.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]
Listener = Callable[["ConnectivityState"], None]


class ConnectivityState(str, Enum):
    """Reachability of the remote store."""

    UNKNOWN = "unknown"
    OFFLINE = "offline"
    ONLINE = "online"


class ConnectivityMonitor:
    """
    Observes online/offline transitions of the remote store.

    Example:
        monitor = ConnectivityMonitor(probe=store.ping)
        unsubscribe = monitor.subscribe(on_change)
        await monitor.check()      # probes while not online
        monitor.report_disconnect()
    """

    def __init__(self, probe: Probe, probe_interval_seconds: float = 10.0) -> None:
        """
        Initialize the monitor in the UNKNOWN state.

        Args:
            probe: Async reachability check; raising counts as a failed probe
            probe_interval_seconds: Interval the scheduler uses between probes
        """
        self.probe = probe
        self.probe_interval = probe_interval_seconds
        self._state = ConnectivityState.UNKNOWN
        self._listeners: list[Listener] = []
        self._probe_lock = asyncio.Lock()

    @property
    def state(self) -> ConnectivityState:
        return self._state

    def is_online(self) -> bool:
        return self._state == ConnectivityState.ONLINE

    def needs_probe(self) -> bool:
        """True while the state is uncertain or offline."""
        return self._state != ConnectivityState.ONLINE

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """
        Register a state-change listener.

        Returns:
            Function that removes the listener; safe to call more than once
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def report_disconnect(self) -> None:
        """Transport-level disconnect: go offline immediately."""
        self._transition(ConnectivityState.OFFLINE)

    def report_link_up(self) -> None:
        """
        Link-level reconnect signal.

        Does not go online by itself; the next check() must confirm
        reachability first.
        """
        if self._state == ConnectivityState.OFFLINE:
            self._state = ConnectivityState.UNKNOWN
            logger.debug("Link up reported, awaiting reachability probe")

    async def check(self) -> bool:
        """
        Probe reachability if not confirmed online.

        Returns:
            Whether the store is considered online after the check
        """
        if self.is_online():
            return True

        async with self._probe_lock:
            # Another caller may have confirmed while we waited
            if self.is_online():
                return True
            try:
                reachable = await self.probe()
            except Exception as e:
                logger.debug(f"Reachability probe failed: {type(e).__name__}: {e}")
                reachable = False

            if reachable:
                self._transition(ConnectivityState.ONLINE)
            else:
                self._transition(ConnectivityState.OFFLINE)
        return self.is_online()

    def _transition(self, new_state: ConnectivityState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        logger.info(f"Connectivity {old_state.value} -> {new_state.value}")
        self._emit(new_state)

    def _emit(self, state: ConnectivityState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connectivity listener raised")
