"""
Reconciler: keeps the materialized views consistent with the remote store.

The Reconciler merges three inputs into one view per collection:
1. The remote snapshot, applied as baseline
2. Live push updates, which also only touch the baseline
3. Locally queued, unconfirmed mutations, overlaid in FIFO order

Flushing:
- request_flush() coalesces concurrent requests into one running flush
- flush() partitions pending entities by crc32(entity_id) % partitions and
  runs one serialized worker per partition, so same-entity mutations never
  race while different entities apply concurrently
- A failed mutation stops its entity's drain for this pass (FIFO)

Rekeying:
- On Create confirmation the temporary id is replaced everywhere (queue
  rows, payloads, baseline, overlay) under the rekey lock
- Workers claim their next mutation under the same lock, so nothing
  referencing the temporary id is dequeued while a rekey is in progress
- A mutation referencing another entity's unconfirmed temporary id is
  deferred until that create is confirmed

Push deliveries are queued on an asyncio.Queue and consumed by a dedicated
task, so they never block flush workers.
"""

import asyncio
import logging
import zlib
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Callable

from helpdesk_sync.audit import SyncAuditor
from helpdesk_sync.errors import MutationRejectedError
from helpdesk_sync.sync.connectivity import ConnectivityMonitor, ConnectivityState
from helpdesk_sync.sync.payload import (
    APPEND_ONLY_FIELDS,
    changed_fields,
    find_temp_ids,
    merge_payload,
)
from helpdesk_sync.sync.queue import MutationQueue
from helpdesk_sync.sync.remote import RemoteSyncClient
from helpdesk_sync.sync.types import (
    ApplyResult,
    FailureKind,
    FlushReport,
    MutationKind,
    MutationState,
    PendingMutation,
    RemoteChange,
)
from helpdesk_sync.sync.view import DeriveHook, MaterializedView
from helpdesk_sync.types import EntityType, utcnow

logger = logging.getLogger(__name__)

ViewListener = Callable[[dict[str, dict[str, Any]]], None]


class Reconciler:
    """
    Produces and maintains the materialized views.

    Example:
        reconciler = Reconciler(queue, client, monitor, auditor=auditor)
        await reconciler.start()
        mutation_id = await reconciler.submit(mutation, actor="U-1")
        unsubscribe = reconciler.subscribe_view(EntityType.TICKETS, render)
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        queue: MutationQueue,
        client: RemoteSyncClient,
        monitor: ConnectivityMonitor,
        auditor: SyncAuditor | None = None,
        partitions: int = 4,
        derive_hooks: dict[EntityType, DeriveHook] | None = None,
        entity_types: Iterable[EntityType] = tuple(EntityType),
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            queue: Durable mutation queue
            client: Remote store client
            monitor: Connectivity monitor gating flushes
            auditor: Optional audit logger (conflicts, rekeys)
            partitions: Number of concurrent flush workers
            derive_hooks: Derived-field hooks per collection
            entity_types: Collections to subscribe to
        """
        self.queue = queue
        self.client = client
        self.monitor = monitor
        self.auditor = auditor
        self.partitions = max(1, partitions)
        hooks = derive_hooks or {}
        self.views: dict[EntityType, MaterializedView] = {
            entity_type: MaterializedView(entity_type, derive=hooks.get(entity_type))
            for entity_type in entity_types
        }

        self._listeners: dict[EntityType, list[ViewListener]] = {
            entity_type: [] for entity_type in self.views
        }
        self._push_queue: asyncio.Queue[RemoteChange] = asyncio.Queue()
        self._push_task: asyncio.Task | None = None
        self._unsubscribes: list[Callable[[], None]] = []

        self._flush_lock = asyncio.Lock()
        self._flush_task: asyncio.Task | None = None
        self._flush_again = False
        self._rekey_lock = asyncio.Lock()

        # temp id -> remote id, for callers still holding a temporary id
        self._aliases: dict[str, str] = {}
        # mutation id -> futures of callers waiting for the outcome
        self._waiters: dict[str, list[asyncio.Future]] = {}

    # Lifecycle

    async def start(self) -> None:
        """
        Restore pending overlays, then subscribe to connectivity and pushes.
        """
        await self.queue.open()
        await self._restore_overlays()

        self._unsubscribes.append(self.monitor.subscribe(self._on_connectivity))
        self._push_task = asyncio.create_task(self._consume_pushes(), name="reconciler-push")
        for entity_type in self.views:
            unsubscribe = await self.client.subscribe(entity_type, self._push_queue.put_nowait)
            self._unsubscribes.append(unsubscribe)
        logger.info(f"Reconciler started for {', '.join(t.value for t in self.views)}")

    async def stop(self) -> None:
        """
        Unsubscribe, drain queued pushes and wait for a running flush.

        A running flush is awaited, never cancelled: in-flight mutations
        always run to completion or failure.
        """
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()

        if self._push_task is not None:
            await self._push_queue.join()
            self._push_task.cancel()
            try:
                await self._push_task
            except asyncio.CancelledError:
                pass
            self._push_task = None

        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        logger.info("Reconciler stopped")

    async def settle(self) -> None:
        """Wait until queued pushes are applied and no flush is running."""
        await self._push_queue.join()
        while self._flush_task is not None and not self._flush_task.done():
            await self._flush_task

    async def _restore_overlays(self) -> None:
        pending = await self.queue.list_pending()
        by_entity: dict[str, list[PendingMutation]] = {}
        for mutation in pending:
            by_entity.setdefault(mutation.target_entity_id, []).append(mutation)
        for entity_id, mutations in by_entity.items():
            view = self.views.get(mutations[0].entity_type)
            if view is None:
                continue
            async with view.lock(entity_id):
                view.set_overlay(entity_id, mutations)
        if pending:
            logger.info(f"Restored {len(pending)} pending mutation(s) into the view")

    def _on_connectivity(self, state: ConnectivityState) -> None:
        if state == ConnectivityState.ONLINE:
            self.request_flush()

    # Read path

    def resolve_id(self, entity_id: str) -> str:
        """Map a rekeyed temporary id to its remote id."""
        return self._aliases.get(entity_id, entity_id)

    def get_view(self, entity_type: EntityType) -> dict[str, dict[str, Any]]:
        """Snapshot of the composed view of a collection."""
        return self.views[entity_type].snapshot()

    def get_entity(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        return self.views[entity_type].get(self.resolve_id(entity_id))

    def subscribe_view(
        self, entity_type: EntityType, callback: ViewListener
    ) -> Callable[[], None]:
        """
        Receive the composed snapshot now and after every change.

        Returns:
            Function that stops delivery immediately
        """
        listeners = self._listeners[entity_type]
        listeners.append(callback)
        self._deliver(callback, self.get_view(entity_type))

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _notify(self, entity_type: EntityType) -> None:
        listeners = list(self._listeners.get(entity_type, []))
        if not listeners:
            return
        snapshot = self.get_view(entity_type)
        for listener in listeners:
            self._deliver(listener, snapshot)

    def _deliver(self, listener: ViewListener, snapshot: dict[str, dict[str, Any]]) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception("View listener raised")

    # Write path

    async def submit(self, mutation: PendingMutation, actor: str = "system") -> str:
        """
        Submit a local mutation.

        Durably enqueues first, then overlays it on the view, notifies
        listeners and requests a flush when online.

        Returns:
            Id under which the change is tracked (the earlier Update's id
            when collapsed)
        """
        mutation.target_entity_id = self.resolve_id(mutation.target_entity_id)
        mutation_id = await self.queue.enqueue(mutation, actor=actor)
        await self._refresh_overlay(mutation.entity_type, mutation.target_entity_id)
        self._notify(mutation.entity_type)
        if self.monitor.is_online():
            self.request_flush()
        return mutation_id

    async def discard(self, mutation_id: str, actor: str = "system") -> PendingMutation:
        """
        Drop a pending or fatal mutation and remove its effect from the view.

        Raises:
            MutationNotFoundError: If the mutation is not queued
        """
        mutation = await self.queue.discard(mutation_id, actor=actor)
        await self._refresh_overlay(mutation.entity_type, mutation.target_entity_id)
        self._notify(mutation.entity_type)
        self._resolve_waiters(
            mutation_id,
            error=MutationRejectedError(mutation_id, mutation.target_entity_id, "discarded"),
        )
        return mutation

    async def requeue(self, mutation_id: str) -> PendingMutation:
        """
        Give a fatal mutation a fresh retry budget and overlay it again.

        Raises:
            MutationNotFoundError: If the mutation is not queued
        """
        mutation = await self.queue.requeue(mutation_id)
        await self._refresh_overlay(mutation.entity_type, mutation.target_entity_id)
        self._notify(mutation.entity_type)
        if self.monitor.is_online():
            self.request_flush()
        return mutation

    async def _refresh_overlay(self, entity_type: EntityType, entity_id: str) -> None:
        view = self.views[entity_type]
        async with view.lock(entity_id):
            view.set_overlay(entity_id, await self.queue.list_for_entity(entity_id))

    async def wait_for(
        self, mutation_id: str, timeout: float | None = None
    ) -> dict[str, Any] | None:
        """
        Wait until a mutation is confirmed.

        Returns:
            The confirmed entity (None if it was confirmed before waiting began)

        Raises:
            MutationRejectedError: If the mutation became fatal
            asyncio.TimeoutError: If it is still pending after `timeout`
        """
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(mutation_id, []).append(future)
        try:
            queued = await self.queue.get(mutation_id)
            if not future.done():
                if queued is None:
                    future.set_result(None)
                elif queued.state == MutationState.FATAL:
                    future.set_exception(MutationRejectedError(
                        mutation_id, queued.target_entity_id, queued.last_error or ""
                    ))
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            waiters = self._waiters.get(mutation_id, [])
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                self._waiters.pop(mutation_id, None)

    def _resolve_waiters(
        self, mutation_id: str, entity: dict[str, Any] | None = None, error: Exception | None = None
    ) -> None:
        for future in self._waiters.pop(mutation_id, []):
            if future.done():
                continue
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(entity)

    # Flush

    def request_flush(self) -> asyncio.Task:
        """
        Ask for a flush; concurrent requests share one running flush.

        A request made while a flush is running schedules exactly one
        follow-up pass.
        """
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_again = True
            return self._flush_task
        self._flush_task = asyncio.create_task(self._run_flushes(), name="reconciler-flush")
        return self._flush_task

    async def _run_flushes(self) -> None:
        while True:
            self._flush_again = False
            try:
                await self.flush()
            except Exception:
                logger.exception("Flush failed")
            if not self._flush_again:
                break

    async def flush(self, now: datetime | None = None) -> FlushReport:
        """
        Apply every due pending mutation to the remote store.

        Does nothing while the monitor is not online. Passes repeat while
        deferred mutations remain and the previous pass made progress.
        """
        report = FlushReport()
        if not self.monitor.is_online():
            logger.debug("Flush skipped: offline")
            return report

        async with self._flush_lock:
            while True:
                pass_report = await self._flush_pass(now or utcnow())
                report.applied.extend(pass_report.applied)
                report.retrying.extend(pass_report.retrying)
                report.fatal.extend(pass_report.fatal)
                report.deferred = pass_report.deferred
                if not (pass_report.deferred and pass_report.applied):
                    break

        if report.attempted:
            logger.info(
                f"Flush complete: {len(report.applied)} applied, "
                f"{len(report.retrying)} retrying, {len(report.fatal)} fatal, "
                f"{len(report.deferred)} deferred"
            )
        return report

    def partition_of(self, entity_id: str) -> int:
        return zlib.crc32(entity_id.encode()) % self.partitions

    async def _flush_pass(self, now: datetime) -> FlushReport:
        report = FlushReport()
        pending = await self.queue.list_pending()

        buckets: list[list[str]] = [[] for _ in range(self.partitions)]
        seen: set[str] = set()
        for mutation in pending:
            entity_id = mutation.target_entity_id
            if entity_id not in seen:
                seen.add(entity_id)
                buckets[self.partition_of(entity_id)].append(entity_id)

        await asyncio.gather(
            *(self._run_partition(bucket, report, now) for bucket in buckets if bucket)
        )
        return report

    async def _run_partition(
        self, entity_ids: list[str], report: FlushReport, now: datetime
    ) -> None:
        for entity_id in entity_ids:
            if not self.monitor.is_online():
                return
            await self._drain_entity(entity_id, report, now)

    async def _drain_entity(self, entity_id: str, report: FlushReport, now: datetime) -> None:
        """Apply an entity's mutations in FIFO order until one fails."""
        while self.monitor.is_online():
            async with self._rekey_lock:
                mutation = await self.queue.claim_next(entity_id)
                if mutation is None:
                    return
                if not mutation.is_due(now):
                    await self.queue.release(mutation.id)
                    return
                if await self._blocked_on_create(mutation):
                    await self.queue.release(mutation.id)
                    report.deferred.append(mutation.id)
                    return

            result = await self.client.apply_mutation(mutation)
            if result.ok:
                entity_id = await self._confirm(mutation, result.entity or {})
                report.applied.append(mutation.id)
                continue

            await self._fail(mutation, result, report, now)
            return

    async def _blocked_on_create(self, mutation: PendingMutation) -> bool:
        """True if the payload references another entity's pending create."""
        for temp_id in find_temp_ids(mutation.payload) - {mutation.target_entity_id}:
            for other in await self.queue.list_for_entity(temp_id):
                if other.kind == MutationKind.CREATE:
                    logger.debug(f"Deferring {mutation.id}: waits for create of {temp_id}")
                    return True
        return False

    async def _confirm(self, mutation: PendingMutation, entity: dict[str, Any]) -> str:
        """
        Apply a confirmation to the queue and the view.

        Returns:
            The entity id after any rekey
        """
        entity_id = mutation.target_entity_id
        remote_id = entity_id
        if mutation.kind == MutationKind.CREATE:
            remote_id = str(entity.get("id") or entity_id)

        if remote_id != entity_id:
            # Workers claim under the same lock: the create leaves the queue
            # and its temporary id is replaced in one step
            async with self._rekey_lock:
                await self.queue.dequeue_confirmed(mutation.id)
                rewritten = await self._rekey(entity_id, remote_id)
            await self._announce_rekey(mutation.entity_type, entity_id, remote_id, rewritten)
            entity_id = remote_id
        else:
            await self.queue.dequeue_confirmed(mutation.id)
        logger.debug(f"Confirmed {mutation.kind.value} {mutation.id}")

        view = self.views[mutation.entity_type]
        async with view.lock(entity_id):
            if mutation.kind == MutationKind.DELETE:
                view.remove_baseline(entity_id)
            else:
                confirmed = merge_payload(view.baseline(entity_id) or {}, entity)
                confirmed["id"] = entity_id
                view.set_baseline(entity_id, confirmed)
            view.set_overlay(entity_id, await self.queue.list_for_entity(entity_id))

        self._notify(mutation.entity_type)
        self._resolve_waiters(mutation.id, entity=view.get(entity_id) or entity)
        return entity_id

    async def _rekey(self, temp_id: str, new_id: str) -> int:
        """Replace a temporary id everywhere. Caller holds the rekey lock."""
        rewritten = await self.queue.rekey(temp_id, new_id)
        for view in self.views.values():
            view.rekey(temp_id, new_id)
        self._aliases[temp_id] = new_id
        return rewritten

    async def _announce_rekey(
        self, entity_type: EntityType, temp_id: str, new_id: str, rewritten: int
    ) -> None:
        logger.info(f"Rekeyed {entity_type.value} {temp_id} -> {new_id}")
        if self.auditor:
            await self.auditor.log_rekeyed(entity_type.value, temp_id, new_id, rewritten)
        for other_type in self.views:
            if other_type != entity_type:
                self._notify(other_type)

    async def _fail(
        self,
        mutation: PendingMutation,
        result: ApplyResult,
        report: FlushReport,
        now: datetime,
    ) -> None:
        if result.failure == FailureKind.UNREACHABLE:
            self.monitor.report_disconnect()

        updated = await self.queue.record_failure(
            mutation.id, result.failure, result.error or "", now=now
        )
        if updated.state == MutationState.FATAL:
            report.fatal.append(mutation.id)
            await self._on_fatal(updated)
        else:
            report.retrying.append(mutation.id)

    async def _on_fatal(self, mutation: PendingMutation) -> None:
        """
        Remove a fatal mutation's effect from the view.

        A fatal Create makes every later mutation of that entity fatal too,
        since none of them can ever apply.
        """
        entity_id = mutation.target_entity_id
        if mutation.kind == MutationKind.CREATE:
            for later in await self.queue.list_for_entity(entity_id):
                await self.queue.mark_fatal(
                    later.id, f"Depends on failed create {mutation.id}"
                )
                self._resolve_waiters(
                    later.id,
                    error=MutationRejectedError(later.id, entity_id, "create was rejected"),
                )

        await self._refresh_overlay(mutation.entity_type, entity_id)
        self._notify(mutation.entity_type)
        self._resolve_waiters(
            mutation.id,
            error=MutationRejectedError(mutation.id, entity_id, mutation.last_error or ""),
        )

    # Push path

    async def _consume_pushes(self) -> None:
        while True:
            change = await self._push_queue.get()
            try:
                await self.apply_remote_change(change)
            except Exception:
                logger.exception(f"Failed to apply push for {change.entity_type.value}")
            finally:
                self._push_queue.task_done()

    async def apply_remote_change(self, change: RemoteChange) -> None:
        """
        Merge a snapshot or push into the baseline.

        Pending overlays still win. A push that changes a field some
        pending mutation also writes is logged and audited as a conflict.
        """
        view = self.views.get(change.entity_type)
        if view is None:
            return

        if change.snapshot:
            present = {str(entity["id"]) for entity in change.entities if "id" in entity}
            for entity_id in view.baseline_ids():
                if entity_id not in present:
                    async with view.lock(entity_id):
                        view.remove_baseline(entity_id)

        for entity in change.entities:
            if "id" not in entity:
                continue
            entity_id = self.resolve_id(str(entity["id"]))
            async with view.lock(entity_id):
                previous = view.baseline(entity_id)
                view.set_baseline(entity_id, entity)
                if previous is not None and view.pending_count(entity_id):
                    overlapping = [
                        name
                        for name in changed_fields(previous, entity, ignore=APPEND_ONLY_FIELDS)
                        if name in view.overlay_fields(entity_id)
                    ]
                    pending = view.pending_count(entity_id)
                else:
                    overlapping = []

            if overlapping:
                logger.warning(
                    f"Conflict on {change.entity_type.value}/{entity_id}: remote changed "
                    f"{', '.join(overlapping)} while local changes are pending; local wins"
                )
                if self.auditor:
                    await self.auditor.log_conflict(
                        change.entity_type.value, entity_id, overlapping, pending
                    )

        for entity_id in change.deleted_ids:
            entity_id = self.resolve_id(entity_id)
            async with view.lock(entity_id):
                view.remove_baseline(entity_id)

        self._notify(change.entity_type)
