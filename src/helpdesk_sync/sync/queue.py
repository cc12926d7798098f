"""
Durable, per-entity FIFO queue of pending local writes.

MutationQueue owns every PendingMutation from submission until the remote
store confirms it. Contents live in SQLite (QueueDB) so they survive a
process restart; markers of mutations that were in flight when the
process died are cleared by open().

Ordering:
- Mutations for the same entity are applied in submission order
- Mutations for different entities may reorder relative to each other

Collapsing:
- An Update is merged into the entity's most recent pending mutation
  when that mutation is also an Update and is not in flight
- Create and Delete are never merged with anything

Failures are recorded with record_failure(), which schedules the next
attempt via RetryPolicy or moves the mutation to the fatal list.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path

from helpdesk_sync.audit import SyncAuditor
from helpdesk_sync.db.queue import QueueDB
from helpdesk_sync.errors import MutationNotFoundError
from helpdesk_sync.sync.payload import find_temp_ids, merge_payload, replace_id
from helpdesk_sync.sync.retry import RetryPolicy
from helpdesk_sync.sync.types import (
    FailureKind,
    MutationKind,
    MutationState,
    PendingMutation,
)
from helpdesk_sync.types import utcnow

logger = logging.getLogger(__name__)


class MutationQueue:
    """
    Durable queue of pending mutations.

    Example:
        queue = MutationQueue(Path("helpdesk.db"))
        await queue.open()
        mutation_id = await queue.enqueue(mutation, actor="U-1")
        for m in await queue.list_pending():
            ...
        await queue.dequeue_confirmed(mutation_id)
    """

    def __init__(
        self,
        db_path: Path,
        retry_policy: RetryPolicy | None = None,
        auditor: SyncAuditor | None = None,
        collapse_updates: bool = True,
    ) -> None:
        """
        Initialize the queue.

        Args:
            db_path: Path to the SQLite database file
            retry_policy: Backoff and escalation policy (default RetryPolicy())
            auditor: Optional audit logger for queue transitions
            collapse_updates: Merge consecutive Updates of one entity (default True)
        """
        self.db_path = db_path
        self.retry_policy = retry_policy or RetryPolicy()
        self.auditor = auditor
        self.collapse_updates = collapse_updates
        # Serializes collapse, claim and rekey against each other
        self._lock = asyncio.Lock()

    async def open(self) -> int:
        """
        Prepare the queue for use after a (re)start.

        Returns:
            Number of mutations whose stale in-flight marker was cleared
        """
        async with QueueDB(self.db_path) as db:
            released = await db.reset_in_flight()
        if released:
            logger.info(f"Recovered {released} mutation(s) left in flight by a previous run")
        return released

    async def enqueue(self, mutation: PendingMutation, actor: str = "system") -> str:
        """
        Durably append a mutation.

        Returns:
            The id under which the change is tracked. When the mutation was
            collapsed into an earlier pending Update this is that Update's id.
        """
        async with self._lock:
            async with QueueDB(self.db_path) as db:
                if self.collapse_updates and mutation.kind == MutationKind.UPDATE:
                    last = await db.last_for_entity(mutation.target_entity_id)
                    if (
                        last is not None
                        and last.kind == MutationKind.UPDATE
                        and not last.in_flight
                    ):
                        merged = merge_payload(last.payload, mutation.payload)
                        await db.update_payload(last.id, merged)
                        last.payload = merged
                        logger.debug(
                            f"Collapsed update for {mutation.target_entity_id} into {last.id}"
                        )
                        if self.auditor:
                            await self.auditor.log_collapsed(
                                last, sorted(mutation.payload), actor
                            )
                        return last.id

                stored = await db.insert(mutation)

        logger.debug(
            f"Enqueued {stored.kind.value} {stored.id} for "
            f"{stored.entity_type.value}/{stored.target_entity_id}"
        )
        if self.auditor:
            await self.auditor.log_enqueued(stored, actor)
        return stored.id

    async def dequeue_confirmed(self, mutation_id: str) -> PendingMutation:
        """
        Remove a mutation after the remote store acknowledged it.

        Raises:
            MutationNotFoundError: If the mutation is not queued
        """
        async with QueueDB(self.db_path) as db:
            mutation = await db.get(mutation_id)
            if mutation is None:
                raise MutationNotFoundError(mutation_id)
            await db.delete(mutation_id)

        if self.auditor:
            await self.auditor.log_confirmed(mutation)
        return mutation

    async def list_pending(self) -> list[PendingMutation]:
        """Pending mutations in submission order (fatal entries excluded)."""
        async with QueueDB(self.db_path) as db:
            return await db.list_mutations(MutationState.PENDING)

    async def list_for_entity(self, entity_id: str) -> list[PendingMutation]:
        """Pending mutations of one entity in submission order."""
        async with QueueDB(self.db_path) as db:
            return await db.list_mutations(MutationState.PENDING, entity_id=entity_id)

    async def list_fatal(self) -> list[PendingMutation]:
        """Mutations awaiting manual intervention."""
        async with QueueDB(self.db_path) as db:
            return await db.list_mutations(MutationState.FATAL)

    async def get(self, mutation_id: str) -> PendingMutation | None:
        async with QueueDB(self.db_path) as db:
            return await db.get(mutation_id)

    def next_retry_delay(self, retry_count: int) -> timedelta:
        """Backoff delay after `retry_count` failed attempts."""
        return self.retry_policy.next_retry_delay(retry_count)

    async def claim_next(self, entity_id: str) -> PendingMutation | None:
        """
        Claim the oldest pending mutation of an entity for application.

        Returns None when the entity has nothing pending or its head
        mutation is already in flight. The caller must finish the claim
        with dequeue_confirmed(), record_failure(), mark_fatal() or release().
        """
        async with self._lock:
            async with QueueDB(self.db_path) as db:
                return await db.claim_next(entity_id)

    async def release(self, mutation_id: str) -> None:
        """Return a claimed mutation to the queue without recording an attempt."""
        async with QueueDB(self.db_path) as db:
            await db.release(mutation_id)

    async def record_failure(
        self,
        mutation_id: str,
        failure: FailureKind,
        error: str,
        now: datetime | None = None,
    ) -> PendingMutation:
        """
        Record a failed remote apply attempt.

        Increments retry_count and either schedules the next attempt or,
        for a rejection or an exhausted UNKNOWN budget, moves the mutation
        to the fatal list.

        Returns:
            The updated mutation

        Raises:
            MutationNotFoundError: If the mutation is not queued
        """
        now = now or utcnow()
        async with QueueDB(self.db_path) as db:
            mutation = await db.get(mutation_id)
            if mutation is None:
                raise MutationNotFoundError(mutation_id)

            retry_count = mutation.retry_count + 1
            unknown_failures = mutation.unknown_failures + (
                1 if failure == FailureKind.UNKNOWN else 0
            )
            if self.retry_policy.should_retry(failure, unknown_failures):
                state = MutationState.PENDING
                next_attempt_at = self.retry_policy.calculate_next_retry(retry_count, now)
            else:
                state = MutationState.FATAL
                next_attempt_at = None

            await db.record_failure(
                mutation_id,
                failure=failure,
                error=error,
                retry_count=retry_count,
                unknown_failures=unknown_failures,
                next_attempt_at=next_attempt_at,
                state=state,
            )
            updated = await db.get(mutation_id)

        if state == MutationState.FATAL:
            logger.error(
                f"Mutation {mutation_id} for {updated.target_entity_id} is fatal "
                f"after {retry_count} attempt(s): {failure.value}: {error}"
            )
            if self.auditor:
                await self.auditor.log_fatal(updated)
        else:
            logger.warning(
                f"Mutation {mutation_id} failed ({failure.value}: {error}), "
                f"retry {retry_count} at {next_attempt_at.isoformat()}"
            )
            if self.auditor:
                await self.auditor.log_retry_scheduled(updated)
        return updated

    async def mark_fatal(
        self,
        mutation_id: str,
        error: str,
        failure: FailureKind = FailureKind.REJECTED,
    ) -> PendingMutation:
        """
        Move a mutation straight to the fatal list without counting an attempt.

        Used when a mutation can never succeed, e.g. it depends on a create
        that was rejected.
        """
        async with QueueDB(self.db_path) as db:
            mutation = await db.get(mutation_id)
            if mutation is None:
                raise MutationNotFoundError(mutation_id)
            await db.record_failure(
                mutation_id,
                failure=failure,
                error=error,
                retry_count=mutation.retry_count,
                unknown_failures=mutation.unknown_failures,
                next_attempt_at=None,
                state=MutationState.FATAL,
            )
            updated = await db.get(mutation_id)

        logger.error(f"Mutation {mutation_id} for {updated.target_entity_id} is fatal: {error}")
        if self.auditor:
            await self.auditor.log_fatal(updated)
        return updated

    async def discard(self, mutation_id: str, actor: str = "system") -> PendingMutation:
        """
        Drop a mutation from the queue (manual intervention).

        Raises:
            MutationNotFoundError: If the mutation is not queued
        """
        async with QueueDB(self.db_path) as db:
            mutation = await db.get(mutation_id)
            if mutation is None:
                raise MutationNotFoundError(mutation_id)
            await db.delete(mutation_id)

        logger.info(f"Discarded mutation {mutation_id} ({mutation.state.value})")
        if self.auditor:
            await self.auditor.log_discarded(mutation, actor)
        return mutation

    async def requeue(self, mutation_id: str) -> PendingMutation:
        """
        Return a fatal mutation to the pending queue with a fresh retry budget.

        Raises:
            MutationNotFoundError: If the mutation is not queued
        """
        async with QueueDB(self.db_path) as db:
            mutation = await db.get(mutation_id)
            if mutation is None:
                raise MutationNotFoundError(mutation_id)
            await db.set_state(mutation_id, MutationState.PENDING)
            updated = await db.get(mutation_id)

        logger.info(f"Requeued mutation {mutation_id} for {updated.target_entity_id}")
        return updated

    async def rekey(self, temp_id: str, new_id: str) -> int:
        """
        Replace a temporary entity id with the remote id in every queued row.

        Rewrites target ids and any payload (of any entity) that references
        the temporary id. Runs under the queue lock, so no mutation can be
        claimed while the rewrite is in progress.

        Returns:
            Number of mutations rewritten
        """
        async with self._lock:
            async with QueueDB(self.db_path) as db:
                mutations = await db.list_mutations(state=None)
                payloads = {
                    m.id: replace_id(m.payload, temp_id, new_id)
                    for m in mutations
                    if temp_id in find_temp_ids(m.payload)
                }
                targets = [m for m in mutations if m.target_entity_id == temp_id]
                await db.rewrite_entity_id(temp_id, new_id, payloads)

        rewritten = len({m.id for m in targets} | set(payloads))
        if rewritten:
            logger.info(f"Rekeyed {temp_id} -> {new_id} in {rewritten} queued mutation(s)")
        return rewritten

    async def next_due_at(self) -> datetime | None:
        """Earliest time any pending mutation is due, or None if nothing is pending."""
        async with QueueDB(self.db_path) as db:
            return await db.next_due_at()
