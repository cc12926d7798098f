"""
Mutation types for the offline-first sync engine.

This module defines the core data structures for queued writes:
- MutationKind: create / update / delete
- MutationState: pending or fatal (needs manual intervention)
- FailureKind: remote failure taxonomy (unreachable, rejected, unknown)
- PendingMutation: a durable local write awaiting remote confirmation
- ApplyResult: outcome of one remote apply attempt
- RemoteChange: a snapshot or push delivered by a store subscription
- FlushReport: summary of one queue flush

Per project patterns:
- Use str enum for JSON serialization compatibility
- Pydantic BaseModel for persisted records, dataclasses for results
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from helpdesk_sync.types import EntityType, utcnow


class MutationKind(str, Enum):
    """Kind of local write."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(str, Enum):
    """Queue state of a mutation."""

    PENDING = "pending"
    """Awaiting (re)application to the remote store."""

    FATAL = "fatal"
    """Rejected or retry budget exhausted; requires manual intervention."""


class FailureKind(str, Enum):
    """Classification of a failed remote apply."""

    UNREACHABLE = "unreachable"
    """Transport failure; retried without limit."""

    REJECTED = "rejected"
    """Permanent refusal; never retried."""

    UNKNOWN = "unknown"
    """Timeout or unexpected error; retried with backoff, then escalated."""


class PendingMutation(BaseModel):
    """
    A local write awaiting remote acknowledgement.

    Owned exclusively by MutationQueue. Removed on confirmation, retained
    and retried on failure.

    Attributes:
        id: Mutation id (returned by enqueue)
        entity_type: Collection the target belongs to
        target_entity_id: Entity id (may be a local- temporary id)
        kind: create / update / delete
        payload: Full entity (create) or changed fields (update), JSON form
        enqueued_at: When first submitted
        retry_count: Failed remote-apply attempts so far
        unknown_failures: Failed attempts classified UNKNOWN
        last_error: Error message of the last failed attempt
        next_attempt_at: Earliest time of the next attempt (None = now)
        state: pending or fatal
        failure_kind: Kind of the last failure
        in_flight: True while a worker is applying it
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Mutation id")
    entity_type: EntityType = Field(..., description="Collection of the target entity")
    target_entity_id: str = Field(..., description="Target entity id")
    kind: MutationKind = Field(..., description="create / update / delete")
    payload: dict[str, Any] = Field(default_factory=dict, description="JSON payload")
    enqueued_at: datetime = Field(default_factory=utcnow, description="Submission time")
    retry_count: int = Field(default=0, description="Failed apply attempts")
    unknown_failures: int = Field(default=0, description="Failed attempts classified UNKNOWN")
    last_error: str | None = Field(default=None, description="Last failure message")
    next_attempt_at: datetime | None = Field(
        default=None, description="Earliest next attempt (None = immediately)"
    )
    state: MutationState = Field(default=MutationState.PENDING)
    failure_kind: FailureKind | None = Field(default=None)
    in_flight: bool = Field(default=False)

    def is_due(self, now: datetime) -> bool:
        """True if the mutation may be attempted at `now`."""
        return self.next_attempt_at is None or self.next_attempt_at <= now


@dataclass
class ApplyResult:
    """Outcome of one remote apply attempt."""

    ok: bool
    entity: dict[str, Any] | None = None
    failure: FailureKind | None = None
    error: str | None = None

    @classmethod
    def success(cls, entity: dict[str, Any] | None) -> "ApplyResult":
        return cls(ok=True, entity=entity)

    @classmethod
    def failed(cls, failure: FailureKind, error: str) -> "ApplyResult":
        return cls(ok=False, failure=failure, error=error)


@dataclass
class RemoteChange:
    """
    A delivery from a remote subscription.

    The first delivery of a subscription is a snapshot (full collection);
    later deliveries carry only the entities that changed or were deleted.
    """

    entity_type: EntityType
    entities: list[dict[str, Any]] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    snapshot: bool = False


@dataclass
class FlushReport:
    """Summary of one flush pass over the queue."""

    applied: list[str] = field(default_factory=list)
    retrying: list[str] = field(default_factory=list)
    fatal: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.applied) + len(self.retrying) + len(self.fatal)
