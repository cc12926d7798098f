"""Tests for the durable MutationQueue."""

from datetime import datetime, timedelta, timezone

import pytest

from helpdesk_sync.audit import SyncAuditor
from helpdesk_sync.db.queue import QueueDB
from helpdesk_sync.errors import MutationNotFoundError
from helpdesk_sync.sync.queue import MutationQueue
from helpdesk_sync.sync.retry import RetryPolicy
from helpdesk_sync.sync.types import (
    FailureKind,
    MutationKind,
    MutationState,
    PendingMutation,
)
from helpdesk_sync.types import EntityType

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def update(entity_id: str, **payload) -> PendingMutation:
    return PendingMutation(
        entity_type=EntityType.TICKETS,
        target_entity_id=entity_id,
        kind=MutationKind.UPDATE,
        payload=payload,
    )


def create(entity_id: str, **payload) -> PendingMutation:
    return PendingMutation(
        entity_type=EntityType.TICKETS,
        target_entity_id=entity_id,
        kind=MutationKind.CREATE,
        payload=payload,
    )


@pytest.fixture
def queue(db_path) -> MutationQueue:
    return MutationQueue(
        db_path,
        retry_policy=RetryPolicy(jitter_fraction=0.0, max_unknown_attempts=2),
        auditor=SyncAuditor(db_path),
    )


class TestEnqueue:
    """Durable append and FIFO order."""

    @pytest.mark.asyncio
    async def test_enqueue_returns_id_and_persists(self, queue, db_path):
        mutation_id = await queue.enqueue(create("local-1", description="VPN down"))

        reopened = MutationQueue(db_path)
        pending = await reopened.list_pending()
        assert [m.id for m in pending] == [mutation_id]
        assert pending[0].payload == {"description": "VPN down"}

    @pytest.mark.asyncio
    async def test_per_entity_fifo_order(self, queue):
        first = await queue.enqueue(create("local-1", description="a"))
        await queue.enqueue(create("local-2", description="b"))
        third = await queue.enqueue(update("local-1", status="Resolved"))

        mutations = await queue.list_for_entity("local-1")
        assert [m.id for m in mutations] == [first, third]

    @pytest.mark.asyncio
    async def test_consecutive_updates_collapse(self, queue):
        first = await queue.enqueue(update("T-1", status="In Progress"))
        second = await queue.enqueue(update("T-1", notes="checking"))

        assert second == first
        pending = await queue.list_for_entity("T-1")
        assert len(pending) == 1
        assert pending[0].payload == {"status": "In Progress", "notes": "checking"}

    @pytest.mark.asyncio
    async def test_collapse_later_field_wins_and_history_appends(self, queue):
        await queue.enqueue(update("T-1", status="In Progress", history=[{"id": "H1"}]))
        await queue.enqueue(update("T-1", status="Resolved", history=[{"id": "H2"}]))

        [merged] = await queue.list_for_entity("T-1")
        assert merged.payload["status"] == "Resolved"
        assert [h["id"] for h in merged.payload["history"]] == ["H1", "H2"]

    @pytest.mark.asyncio
    async def test_update_not_collapsed_into_create(self, queue):
        await queue.enqueue(create("local-1", description="a"))
        await queue.enqueue(update("local-1", status="Resolved"))
        assert len(await queue.list_for_entity("local-1")) == 2

    @pytest.mark.asyncio
    async def test_update_not_collapsed_into_in_flight(self, queue):
        first = await queue.enqueue(update("T-1", status="In Progress"))
        claimed = await queue.claim_next("T-1")
        assert claimed.id == first

        second = await queue.enqueue(update("T-1", notes="later"))
        assert second != first
        assert len(await queue.list_for_entity("T-1")) == 2

    @pytest.mark.asyncio
    async def test_collapse_can_be_disabled(self, db_path):
        queue = MutationQueue(db_path, collapse_updates=False)
        await queue.enqueue(update("T-1", status="In Progress"))
        await queue.enqueue(update("T-1", notes="x"))
        assert len(await queue.list_for_entity("T-1")) == 2


class TestClaim:
    """Claiming and releasing the head of an entity's queue."""

    @pytest.mark.asyncio
    async def test_claim_returns_head_once(self, queue):
        head = await queue.enqueue(update("T-1", status="Resolved"))

        claimed = await queue.claim_next("T-1")
        assert claimed.id == head
        assert await queue.claim_next("T-1") is None

        await queue.release(head)
        assert (await queue.claim_next("T-1")).id == head

    @pytest.mark.asyncio
    async def test_open_clears_stale_in_flight(self, queue, db_path):
        head = await queue.enqueue(update("T-1", status="Resolved"))
        await queue.claim_next("T-1")

        restarted = MutationQueue(db_path)
        assert await restarted.open() == 1
        assert (await restarted.claim_next("T-1")).id == head


class TestFailures:
    """Retry scheduling and the fatal list."""

    @pytest.mark.asyncio
    async def test_unreachable_schedules_retry(self, queue):
        mutation_id = await queue.enqueue(update("T-1", status="Resolved"))

        updated = await queue.record_failure(
            mutation_id, FailureKind.UNREACHABLE, "connection refused", now=NOW
        )

        assert updated.state == MutationState.PENDING
        assert updated.retry_count == 1
        assert updated.last_error == "connection refused"
        assert updated.next_attempt_at == NOW + timedelta(seconds=2)
        assert not updated.is_due(NOW)
        assert updated.is_due(NOW + timedelta(seconds=2))

    @pytest.mark.asyncio
    async def test_rejected_is_fatal_immediately(self, queue):
        mutation_id = await queue.enqueue(update("T-1", status="Bogus"))

        updated = await queue.record_failure(
            mutation_id, FailureKind.REJECTED, "invalid status", now=NOW
        )

        assert updated.state == MutationState.FATAL
        assert updated.retry_count == 1
        assert await queue.list_pending() == []
        assert [m.id for m in await queue.list_fatal()] == [mutation_id]

    @pytest.mark.asyncio
    async def test_unknown_escalates_after_budget(self, queue):
        mutation_id = await queue.enqueue(update("T-1", status="Resolved"))

        first = await queue.record_failure(mutation_id, FailureKind.UNKNOWN, "500", now=NOW)
        second = await queue.record_failure(mutation_id, FailureKind.UNKNOWN, "500", now=NOW)

        assert first.state == MutationState.PENDING
        assert second.state == MutationState.FATAL
        assert second.unknown_failures == 2

    @pytest.mark.asyncio
    async def test_record_failure_unknown_mutation_raises(self, queue):
        with pytest.raises(MutationNotFoundError):
            await queue.record_failure("missing", FailureKind.UNKNOWN, "x")

    @pytest.mark.asyncio
    async def test_requeue_resets_budget(self, queue):
        mutation_id = await queue.enqueue(update("T-1", status="Resolved"))
        await queue.record_failure(mutation_id, FailureKind.REJECTED, "no", now=NOW)

        requeued = await queue.requeue(mutation_id)

        assert requeued.state == MutationState.PENDING
        assert requeued.retry_count == 0
        assert requeued.next_attempt_at is None

    @pytest.mark.asyncio
    async def test_discard_removes_and_audits(self, queue, db_path):
        mutation_id = await queue.enqueue(update("T-1", status="Resolved"))

        await queue.discard(mutation_id, actor="U-ops")

        assert await queue.get(mutation_id) is None
        events = await SyncAuditor(db_path).get_events(event_type="discarded")
        assert events[0].actor == "U-ops"

    @pytest.mark.asyncio
    async def test_dequeue_confirmed_missing_raises(self, queue):
        with pytest.raises(MutationNotFoundError):
            await queue.dequeue_confirmed("missing")


class TestRekey:
    """Temporary id rewriting."""

    @pytest.mark.asyncio
    async def test_rekey_rewrites_targets_and_references(self, queue):
        await queue.enqueue(update("local-t", status="Resolved"))
        other = PendingMutation(
            entity_type=EntityType.TICKETS,
            target_entity_id="T-9",
            kind=MutationKind.UPDATE,
            payload={"assigned_tech_id": "local-t"},
        )
        await queue.enqueue(other)

        assert await queue.rekey("local-t", "T-1") == 2

        assert len(await queue.list_for_entity("T-1")) == 1
        assert await queue.list_for_entity("local-t") == []
        [rewritten] = await queue.list_for_entity("T-9")
        assert rewritten.payload == {"assigned_tech_id": "T-1"}


class TestNextDueAt:
    """Earliest due time for the scheduler."""

    @pytest.mark.asyncio
    async def test_empty_queue_has_no_due_time(self, queue):
        assert await queue.next_due_at() is None

    @pytest.mark.asyncio
    async def test_due_time_follows_backoff(self, queue, db_path):
        mutation_id = await queue.enqueue(update("T-1", status="Resolved"))
        await queue.record_failure(mutation_id, FailureKind.UNREACHABLE, "down", now=NOW)

        assert await queue.next_due_at() == NOW + timedelta(seconds=2)

        async with QueueDB(db_path) as db:
            assert (await db.get(mutation_id)).failure_kind == FailureKind.UNREACHABLE
