"""
Audit logging for sync engine events.

This module records what happened to local writes after submission:
- Enqueue and collapse into an earlier pending update
- Remote confirmation, retry scheduling, rejection and escalation
- Temporary id rekeying after a confirmed create
- Last-write-wins conflicts between a push and a pending overlay
- Notification delivery failures and manual discards

Per project patterns:
- Pydantic BaseModel for event data structures
- Async methods for database operations
- JSON serialization for event_data blob
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from helpdesk_sync.db.schema import AUDIT_SCHEMA_SQL
from helpdesk_sync.sync.types import FailureKind, PendingMutation
from helpdesk_sync.types import utcnow


class AuditEvent(BaseModel):
    """
    Audit event for sync lifecycle tracking.

    Attributes:
        id: Database ID (None before insert)
        event_type: enqueued, collapsed, confirmed, retry_scheduled, rejected,
            escalated, rekeyed, conflict, notification_failed, discarded
        entity_type: Collection of the affected entity
        entity_id: Affected entity (None for system events)
        mutation_id: Associated mutation, when there is one
        event_data: Event-specific details as JSON
        actor: Who triggered the event (user id or 'system')
        timestamp: When the event occurred
    """

    id: int | None = Field(default=None, description="Database ID (None before insert)")
    event_type: str = Field(..., description="Event type")
    entity_type: str | None = Field(default=None, description="Collection of the entity")
    entity_id: str | None = Field(default=None, description="Affected entity id")
    mutation_id: str | None = Field(default=None, description="Associated mutation id")
    event_data: dict[str, Any] | None = Field(default=None, description="Event-specific details")
    actor: str = Field(default="system", description="User id or 'system'")
    timestamp: datetime = Field(default_factory=utcnow, description="When the event occurred")


class SyncAuditor:
    """
    Audit logger for sync engine events.

    Example:
        auditor = SyncAuditor(Path("helpdesk.db"))
        await auditor.log_confirmed(mutation)
        events = await auditor.get_events(entity_id="T-1")
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the sync auditor.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path

    async def _ensure_schema(self, conn: aiosqlite.Connection) -> None:
        """Create tables and indexes if they don't exist."""
        await conn.executescript(AUDIT_SCHEMA_SQL)
        await conn.commit()

    async def log_event(self, event: AuditEvent) -> None:
        """
        Write an audit event to the database.

        Args:
            event: The audit event to log
        """
        event_data_json = json.dumps(event.event_data) if event.event_data else None

        async with aiosqlite.connect(self.db_path) as conn:
            await self._ensure_schema(conn)
            await conn.execute(
                """
                INSERT INTO sync_audit_log (
                    event_type, entity_type, entity_id, mutation_id,
                    event_data, actor, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_type,
                    event.entity_type,
                    event.entity_id,
                    event.mutation_id,
                    event_data_json,
                    event.actor,
                    event.timestamp.isoformat(),
                ),
            )
            await conn.commit()

    async def _log_mutation(
        self,
        event_type: str,
        mutation: PendingMutation,
        event_data: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> None:
        await self.log_event(AuditEvent(
            event_type=event_type,
            entity_type=mutation.entity_type.value,
            entity_id=mutation.target_entity_id,
            mutation_id=mutation.id,
            event_data=event_data,
            actor=actor,
        ))

    async def log_enqueued(self, mutation: PendingMutation, actor: str) -> None:
        """Log a newly queued mutation."""
        await self._log_mutation(
            "enqueued", mutation, {"kind": mutation.kind.value}, actor=actor
        )

    async def log_collapsed(
        self, mutation: PendingMutation, fields: list[str], actor: str
    ) -> None:
        """
        Log an update merged into an earlier pending update.

        Args:
            mutation: The pending mutation that absorbed the update
            fields: Field names carried by the absorbed update
            actor: Who submitted the absorbed update
        """
        await self._log_mutation("collapsed", mutation, {"fields": fields}, actor=actor)

    async def log_confirmed(self, mutation: PendingMutation) -> None:
        """Log remote acknowledgement of a mutation."""
        await self._log_mutation(
            "confirmed", mutation, {"attempts": mutation.retry_count + 1}
        )

    async def log_retry_scheduled(self, mutation: PendingMutation) -> None:
        """Log a failed attempt that will be retried."""
        await self._log_mutation(
            "retry_scheduled",
            mutation,
            {
                "retry_count": mutation.retry_count,
                "failure_kind": mutation.failure_kind.value if mutation.failure_kind else None,
                "error": mutation.last_error,
                "next_attempt_at": (
                    mutation.next_attempt_at.isoformat() if mutation.next_attempt_at else None
                ),
            },
        )

    async def log_fatal(self, mutation: PendingMutation) -> None:
        """
        Log a mutation moved to the fatal list.

        Rejections are logged as 'rejected'; exhausted retry budgets as
        'escalated'.
        """
        event_type = (
            "rejected" if mutation.failure_kind == FailureKind.REJECTED else "escalated"
        )
        await self._log_mutation(
            event_type,
            mutation,
            {"retry_count": mutation.retry_count, "error": mutation.last_error},
        )

    async def log_rekeyed(
        self, entity_type: str, temp_id: str, new_id: str, rewritten: int
    ) -> None:
        """
        Log a temporary id replaced by its remote id.

        Args:
            entity_type: Collection of the entity
            temp_id: The local- id
            new_id: The remote-assigned id
            rewritten: Number of queued mutations whose rows were rewritten
        """
        await self.log_event(AuditEvent(
            event_type="rekeyed",
            entity_type=entity_type,
            entity_id=new_id,
            event_data={"temp_id": temp_id, "new_id": new_id, "rewritten": rewritten},
        ))

    async def log_conflict(
        self,
        entity_type: str,
        entity_id: str,
        fields: list[str],
        pending: int,
    ) -> None:
        """
        Log a push that disagrees with the pending overlay of an entity.

        The overlay wins until its mutations are confirmed (last write wins).

        Args:
            entity_type: Collection of the entity
            entity_id: Entity the push was for
            fields: Fields whose remote value differs from the visible value
            pending: Number of pending mutations overlaying the entity
        """
        await self.log_event(AuditEvent(
            event_type="conflict",
            entity_type=entity_type,
            entity_id=entity_id,
            event_data={"fields": fields, "pending_mutations": pending, "winner": "local"},
        ))

    async def log_notification_failed(
        self,
        ticket_id: str,
        intent: str,
        recipient: str,
        reason: str,
    ) -> None:
        """Log a notification intent whose delivery failed."""
        await self.log_event(AuditEvent(
            event_type="notification_failed",
            entity_type="tickets",
            entity_id=ticket_id,
            event_data={"intent": intent, "recipient": recipient, "reason": reason},
        ))

    async def log_discarded(self, mutation: PendingMutation, actor: str) -> None:
        """Log a mutation removed from the queue by an operator."""
        await self._log_mutation(
            "discarded",
            mutation,
            {"state": mutation.state.value, "error": mutation.last_error},
            actor=actor,
        )

    async def get_events(
        self,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Query audit events with optional filters.

        Args:
            entity_id: Filter by entity id
            event_type: Filter by event type
            limit: Maximum number of events to return

        Returns:
            List of matching audit events, newest first
        """
        conditions = []
        params: list[Any] = []

        if entity_id is not None:
            conditions.append("entity_id = ?")
            params.append(entity_id)

        if event_type is not None:
            conditions.append("event_type = ?")
            params.append(event_type)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT id, event_type, entity_type, entity_id, mutation_id,
                   event_data, actor, timestamp
            FROM sync_audit_log
            {where_clause}
            ORDER BY id DESC
            LIMIT ?
        """
        params.append(limit)

        async with aiosqlite.connect(self.db_path) as conn:
            await self._ensure_schema(conn)
            conn.row_factory = aiosqlite.Row
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        events = []
        for row in rows:
            event_data = json.loads(row["event_data"]) if row["event_data"] else None
            events.append(AuditEvent(
                id=row["id"],
                event_type=row["event_type"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                mutation_id=row["mutation_id"],
                event_data=event_data,
                actor=row["actor"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            ))

        return events
