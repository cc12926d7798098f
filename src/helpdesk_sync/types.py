"""
Domain types for the help desk.

This module defines the entities synchronized with the remote store:
- Ticket, HistoryEntry, ChatMessage
- User, Technician
- EntityType: collection names used by the store and the queue

Per project patterns:
- Use str enum for JSON serialization compatibility
- Pydantic BaseModel for validation and serialization
- Field() with descriptions for documentation
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

TEMP_ID_PREFIX = "local-"
"""Prefix of client-assigned ids used until the remote store confirms a create."""


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_temp_id() -> str:
    """Generate a temporary client-side entity id."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(entity_id: str | None) -> bool:
    """True if the id was assigned locally and awaits a remote id."""
    return bool(entity_id) and entity_id.startswith(TEMP_ID_PREFIX)


class EntityType(str, Enum):
    """Collections held by the remote store."""

    TICKETS = "tickets"
    USERS = "users"
    TECHNICIANS = "technicians"


class TicketStatus(str, Enum):
    """Ticket lifecycle states."""

    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"


class Priority(str, Enum):
    """Ticket priority, which also selects the SLA window."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"
    TECHNICIAN = "technician"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class HistoryEntry(BaseModel):
    """
    One audit record on a ticket.

    Created exactly once per operation that changes observable ticket
    fields. Never mutated or deleted.
    """

    id: str = Field(
        default_factory=lambda: f"HIST-{uuid.uuid4().hex[:12]}",
        description="History entry id",
    )
    ticket_id: str = Field(..., description="Owning ticket id")
    user_id: str = Field(..., description="Actor who made the change")
    change: str = Field(..., description="Human-readable description of all fields changed")
    timestamp: datetime = Field(default_factory=utcnow, description="When the change was made")


class ChatMessage(BaseModel):
    """A message in the ticket conversation."""

    id: str = Field(default_factory=lambda: f"CHAT-{uuid.uuid4().hex[:12]}")
    sender_id: str
    sender_name: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class Ticket(BaseModel):
    """
    A support ticket.

    Invariants:
        date_resolved is set if and only if status is RESOLVED.
        history and chat_history are append-only.
        resolution_breached is written once, when the ticket is resolved.

    Attributes:
        sla_due_at / sla_breached are derived by the Reconciler from the
        composed view; values submitted by callers are ignored.
    """

    id: str = Field(..., description="Remote id, or a local- id while unconfirmed")
    requester_id: str = Field(..., description="User who raised the ticket")
    department: str = Field(default="", description="Owning department")
    description: str = Field(default="", description="Problem description")
    cc: str | None = Field(default=None, description="Additional address copied on user emails")
    status: TicketStatus = Field(default=TicketStatus.OPEN)
    priority: Priority = Field(default=Priority.MEDIUM)
    assigned_tech_id: str | None = Field(
        default=None, description="Weak reference to a Technician"
    )
    notes: str = Field(default="", description="Resolution/working notes")
    date_created: datetime = Field(default_factory=utcnow)
    date_resolved: datetime | None = Field(default=None)
    resolution_breached: bool | None = Field(
        default=None, description="SLA breach frozen at resolution time"
    )
    history: list[HistoryEntry] = Field(default_factory=list)
    chat_history: list[ChatMessage] = Field(default_factory=list)

    # Derived
    sla_due_at: datetime | None = Field(default=None, description="Derived SLA due date")
    sla_breached: bool = Field(default=False, description="Derived SLA breach flag")


class User(BaseModel):
    """A person who raises tickets or administers the desk."""

    id: str
    name: str
    email: str
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE


class Technician(BaseModel):
    """A technician tickets can be assigned to."""

    id: str
    name: str
    email: str
