"""
SQLite-based mutation queue persistence.

This module provides async database operations for the durable queue:
- Insert, fetch, delete pending mutations
- Claim the oldest mutation of an entity for application
- Record failures and retry schedules
- Move mutations between pending and fatal states
- Rewrite temporary entity ids after a create is confirmed

Per project patterns:
- Use async context manager for connection lifecycle
- Commit after every write so the queue survives a crash
- Row conversion lives in one helper
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from helpdesk_sync.db.schema import QUEUE_SCHEMA_SQL
from helpdesk_sync.sync.types import (
    FailureKind,
    MutationKind,
    MutationState,
    PendingMutation,
)
from helpdesk_sync.types import EntityType


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class QueueDB:
    """
    Async context manager for mutation queue database operations.

    Example:
        async with QueueDB(Path("helpdesk.db")) as db:
            await db.insert(mutation)
            pending = await db.list_mutations(MutationState.PENDING)
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the database connection manager.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def __aenter__(self) -> "QueueDB":
        """Open database connection and ensure schema exists."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._ensure_schema()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        await self._conn.executescript(QUEUE_SCHEMA_SQL)
        await self._conn.commit()

    def _row_to_mutation(self, row: aiosqlite.Row) -> PendingMutation:
        """
        Convert a database row to a PendingMutation.

        Args:
            row: Database row with mutation fields

        Returns:
            PendingMutation instance
        """
        return PendingMutation(
            id=row["id"],
            entity_type=EntityType(row["entity_type"]),
            target_entity_id=row["target_entity_id"],
            kind=MutationKind(row["kind"]),
            payload=json.loads(row["payload"]),
            enqueued_at=datetime.fromisoformat(row["enqueued_at"]),
            retry_count=row["retry_count"],
            unknown_failures=row["unknown_failures"],
            last_error=row["last_error"],
            failure_kind=FailureKind(row["failure_kind"]) if row["failure_kind"] else None,
            next_attempt_at=_dt(row["next_attempt_at"]),
            state=MutationState(row["state"]),
            in_flight=bool(row["in_flight"]),
        )

    async def insert(self, mutation: PendingMutation) -> PendingMutation:
        """Append a mutation at the tail of the queue."""
        await self._conn.execute(
            """
            INSERT INTO pending_mutations (
                id, entity_type, target_entity_id, kind, payload, enqueued_at,
                retry_count, unknown_failures, last_error, failure_kind,
                next_attempt_at, state
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                mutation.id,
                mutation.entity_type.value,
                mutation.target_entity_id,
                mutation.kind.value,
                json.dumps(mutation.payload),
                mutation.enqueued_at.isoformat(),
                mutation.retry_count,
                mutation.unknown_failures,
                mutation.last_error,
                mutation.failure_kind.value if mutation.failure_kind else None,
                mutation.next_attempt_at.isoformat() if mutation.next_attempt_at else None,
                mutation.state.value,
            ),
        )
        await self._conn.commit()
        return await self.get(mutation.id)

    async def get(self, mutation_id: str) -> PendingMutation | None:
        """Fetch a mutation by id."""
        async with self._conn.execute(
            "SELECT * FROM pending_mutations WHERE id = ?",
            (mutation_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if row:
            return self._row_to_mutation(row)
        return None

    async def last_for_entity(self, entity_id: str) -> PendingMutation | None:
        """Most recently submitted pending mutation for an entity."""
        async with self._conn.execute(
            """
            SELECT * FROM pending_mutations
            WHERE target_entity_id = ? AND state = 'pending'
            ORDER BY seq DESC LIMIT 1
            """,
            (entity_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if row:
            return self._row_to_mutation(row)
        return None

    async def list_mutations(
        self,
        state: MutationState | None = MutationState.PENDING,
        entity_id: str | None = None,
    ) -> list[PendingMutation]:
        """
        List mutations in submission order.

        Args:
            state: Optional state filter (None = all states)
            entity_id: Optional target entity filter

        Returns:
            Mutations ordered by seq ASC
        """
        clauses = []
        params: list[Any] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if entity_id is not None:
            clauses.append("target_entity_id = ?")
            params.append(entity_id)

        query = "SELECT * FROM pending_mutations"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq ASC"

        async with self._conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_mutation(row) for row in rows]

    async def update_payload(self, mutation_id: str, payload: dict[str, Any]) -> None:
        """Replace a mutation's payload (used when collapsing updates)."""
        await self._conn.execute(
            "UPDATE pending_mutations SET payload = ? WHERE id = ?",
            (json.dumps(payload), mutation_id),
        )
        await self._conn.commit()

    async def delete(self, mutation_id: str) -> bool:
        """
        Remove a mutation.

        Returns:
            True if a row was deleted
        """
        cursor = await self._conn.execute(
            "DELETE FROM pending_mutations WHERE id = ?",
            (mutation_id,),
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def claim_next(self, entity_id: str) -> PendingMutation | None:
        """
        Mark the oldest pending mutation of an entity as in flight.

        Returns None if the entity has no pending mutation or its head is
        already in flight (same-entity mutations never run concurrently).
        """
        async with self._conn.execute(
            """
            SELECT * FROM pending_mutations
            WHERE target_entity_id = ? AND state = 'pending'
            ORDER BY seq ASC LIMIT 1
            """,
            (entity_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None or row["in_flight"]:
            return None

        await self._conn.execute(
            "UPDATE pending_mutations SET in_flight = 1 WHERE id = ?",
            (row["id"],),
        )
        await self._conn.commit()
        return await self.get(row["id"])

    async def release(self, mutation_id: str) -> None:
        """Clear the in-flight marker of a mutation."""
        await self._conn.execute(
            "UPDATE pending_mutations SET in_flight = 0 WHERE id = ?",
            (mutation_id,),
        )
        await self._conn.commit()

    async def reset_in_flight(self) -> int:
        """
        Clear every in-flight marker (restart recovery).

        Returns:
            Number of mutations released
        """
        cursor = await self._conn.execute(
            "UPDATE pending_mutations SET in_flight = 0 WHERE in_flight = 1"
        )
        await self._conn.commit()
        return cursor.rowcount

    async def record_failure(
        self,
        mutation_id: str,
        failure: FailureKind,
        error: str,
        retry_count: int,
        unknown_failures: int,
        next_attempt_at: datetime | None,
        state: MutationState,
    ) -> None:
        """Persist the outcome of a failed attempt and release the mutation."""
        await self._conn.execute(
            """
            UPDATE pending_mutations SET
                retry_count = ?,
                unknown_failures = ?,
                last_error = ?,
                failure_kind = ?,
                next_attempt_at = ?,
                state = ?,
                in_flight = 0
            WHERE id = ?
            """,
            (
                retry_count,
                unknown_failures,
                error,
                failure.value,
                next_attempt_at.isoformat() if next_attempt_at else None,
                state.value,
                mutation_id,
            ),
        )
        await self._conn.commit()

    async def set_state(
        self,
        mutation_id: str,
        state: MutationState,
        error: str | None = None,
    ) -> None:
        """Move a mutation between pending and fatal."""
        if state == MutationState.PENDING:
            # Manual requeue starts a fresh retry budget
            await self._conn.execute(
                """
                UPDATE pending_mutations SET
                    state = 'pending',
                    retry_count = 0,
                    unknown_failures = 0,
                    next_attempt_at = NULL,
                    in_flight = 0
                WHERE id = ?
                """,
                (mutation_id,),
            )
        else:
            await self._conn.execute(
                """
                UPDATE pending_mutations SET
                    state = ?,
                    last_error = COALESCE(?, last_error),
                    in_flight = 0
                WHERE id = ?
                """,
                (state.value, error, mutation_id),
            )
        await self._conn.commit()

    async def rewrite_entity_id(
        self,
        temp_id: str,
        new_id: str,
        payloads: dict[str, dict[str, Any]],
    ) -> None:
        """
        Replace a temporary entity id with its remote id.

        Args:
            temp_id: The local- id being replaced
            new_id: The remote-assigned id
            payloads: Rewritten payloads keyed by mutation id
        """
        await self._conn.execute(
            "UPDATE pending_mutations SET target_entity_id = ? WHERE target_entity_id = ?",
            (new_id, temp_id),
        )
        for mutation_id, payload in payloads.items():
            await self._conn.execute(
                "UPDATE pending_mutations SET payload = ? WHERE id = ?",
                (json.dumps(payload), mutation_id),
            )
        await self._conn.commit()

    async def next_due_at(self) -> datetime | None:
        """
        Earliest time a pending, unclaimed mutation may be attempted.

        Mutations never attempted are due since they were enqueued.
        """
        async with self._conn.execute(
            """
            SELECT MIN(COALESCE(next_attempt_at, enqueued_at)) AS due
            FROM pending_mutations
            WHERE state = 'pending' AND in_flight = 0
            """
        ) as cursor:
            row = await cursor.fetchone()

        return _dt(row["due"]) if row else None
