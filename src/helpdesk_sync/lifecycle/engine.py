"""
Ticket lifecycle rules.

TicketLifecycleEngine turns a requested change into the next ticket
value, the queued payload, and at most one HistoryEntry:

- Any status may be set to any other status (administrative edit)
- Every operation that changes status, priority, assignment or notes
  produces exactly one HistoryEntry describing all changed fields
- Resolving sets date_resolved only if it was null, and freezes the SLA
  breach flag in resolution_breached
- Reopening a resolved ticket clears date_resolved and the frozen flag,
  so date_resolved is set if and only if the status is Resolved
- The engine also decides which notification intents a change triggers

The engine is pure: it reads entities it is given and never touches the
queue or the view.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from helpdesk_sync.errors import InvalidChangeError
from helpdesk_sync.lifecycle.sla import breached_at, is_sla_breached, sla_due_at
from helpdesk_sync.types import (
    ChatMessage,
    HistoryEntry,
    Priority,
    Ticket,
    TicketStatus,
    new_temp_id,
    utcnow,
)

BULK_SUFFIX = "(via bulk action)."
UNASSIGNED = "Unassigned"

NameLookup = Callable[[str], str | None]


class TicketChange(BaseModel):
    """
    Partial update of a ticket.

    Only fields explicitly set are applied (model_fields_set), so
    assigned_tech_id=None unassigns while omitting it leaves it alone.
    """

    status: TicketStatus | None = Field(default=None, description="New status")
    priority: Priority | None = Field(default=None, description="New priority")
    assigned_tech_id: str | None = Field(default=None, description="Technician id, None unassigns")
    notes: str | None = Field(default=None, description="Replacement notes")

    model_config = {"extra": "forbid"}

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "TicketChange":
        """
        Build a change from a plain dict.

        Raises:
            InvalidChangeError: On unknown fields or invalid values
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            error = e.errors()[0]
            loc = ".".join(str(part) for part in error["loc"]) or None
            raise InvalidChangeError(error["msg"], field=loc) from e


@dataclass
class TicketUpdate:
    """
    Result of applying a change to a ticket.

    Attributes:
        before: Ticket as it was
        after: Ticket with the change applied
        history_entry: The single entry recorded for the change (None if no
            observable field changed)
        payload: JSON fields to queue as an Update mutation
        mutation_id: Queue id once submitted (None if nothing was queued)
    """

    before: Ticket
    after: Ticket
    history_entry: HistoryEntry | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    mutation_id: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.payload)


class NotificationKind(str, Enum):
    """Notification intents a ticket transition can trigger."""

    ASSIGNMENT = "assignment"
    RESOLVED = "resolved"
    RESOLVED_ADMIN = "resolved_admin"
    STATUS_CHANGED = "status_changed"
    CREATED = "created"
    CREATED_ADMIN = "created_admin"


class TicketLifecycleEngine:
    """
    Validates ticket changes, stamps history and computes SLA state.

    Example:
        engine = TicketLifecycleEngine(technician_name=lambda tid: names.get(tid))
        update = engine.apply_update(ticket, TicketChange(status="Resolved"), "U-1")
        if update.changed:
            await reconciler.submit(...)
    """

    def __init__(self, technician_name: NameLookup | None = None) -> None:
        """
        Args:
            technician_name: Resolves a technician id to a display name for
                history text; unknown ids render as "Unassigned"
        """
        self.technician_name = technician_name or (lambda tech_id: None)

    def _tech_label(self, tech_id: str | None) -> str:
        if not tech_id:
            return UNASSIGNED
        return self.technician_name(tech_id) or UNASSIGNED

    def create_ticket(
        self,
        requester_id: str,
        actor_id: str,
        description: str = "",
        department: str = "",
        priority: Priority = Priority.MEDIUM,
        cc: str | None = None,
        now: datetime | None = None,
    ) -> Ticket:
        """
        Build a new Open ticket with a temporary id and its first history entry.
        """
        now = now or utcnow()
        ticket_id = new_temp_id()
        ticket = Ticket(
            id=ticket_id,
            requester_id=requester_id,
            department=department,
            description=description,
            cc=cc or None,
            priority=Priority(priority),
            date_created=now,
            history=[
                HistoryEntry(
                    ticket_id=ticket_id,
                    user_id=actor_id,
                    change="Ticket created.",
                    timestamp=now,
                )
            ],
        )
        return self.with_sla(ticket, now)

    def apply_update(
        self,
        current: Ticket,
        change: TicketChange,
        actor_id: str,
        now: datetime | None = None,
        via_bulk: bool = False,
    ) -> TicketUpdate:
        """
        Apply a partial change to a ticket.

        Args:
            current: Ticket as currently visible in the materialized view
            change: Fields to change
            actor_id: User making the change
            now: Time of the change (default: now, UTC)
            via_bulk: Tag the history entry as a bulk action

        Returns:
            TicketUpdate; .changed is False when nothing observable changed

        Raises:
            InvalidChangeError: If status or priority is explicitly set to None
        """
        now = now or utcnow()
        fields = change.model_fields_set
        for required in ("status", "priority"):
            if required in fields and getattr(change, required) is None:
                raise InvalidChangeError("cannot be empty", field=required)

        after = current.model_copy(deep=True)
        changes: list[str] = []
        payload: dict[str, Any] = {}

        if "status" in fields and change.status != current.status:
            changes.append(
                f"Status changed from {current.status.value} to {change.status.value}."
            )
            after.status = change.status
            payload["status"] = change.status.value

        if "priority" in fields and change.priority != current.priority:
            changes.append(
                f"Priority changed from {current.priority.value} to {change.priority.value}."
            )
            after.priority = change.priority
            payload["priority"] = change.priority.value

        new_tech = change.assigned_tech_id or None
        if "assigned_tech_id" in fields and new_tech != current.assigned_tech_id:
            changes.append(
                f"Technician changed from {self._tech_label(current.assigned_tech_id)} "
                f"to {self._tech_label(new_tech)}."
            )
            after.assigned_tech_id = new_tech
            payload["assigned_tech_id"] = new_tech

        if "notes" in fields and (change.notes or "") != (current.notes or ""):
            changes.append("Notes were updated.")
            after.notes = change.notes or ""
            payload["notes"] = after.notes

        if after.status == TicketStatus.RESOLVED:
            if after.date_resolved is None:
                after.date_resolved = now
                after.resolution_breached = breached_at(after, now)
                payload["date_resolved"] = now.isoformat()
                payload["resolution_breached"] = after.resolution_breached
        elif current.status == TicketStatus.RESOLVED or current.date_resolved is not None:
            after.date_resolved = None
            after.resolution_breached = None
            payload["date_resolved"] = None
            payload["resolution_breached"] = None

        history_entry = None
        if changes:
            text = " ".join(changes)
            if via_bulk:
                text = f"{text} {BULK_SUFFIX}"
            history_entry = HistoryEntry(
                ticket_id=current.id,
                user_id=actor_id,
                change=text,
                timestamp=now,
            )
            after.history.append(history_entry)
            # Full list: stores may replace arrays on PATCH
            payload["history"] = [entry.model_dump(mode="json") for entry in after.history]

        return TicketUpdate(
            before=current,
            after=self.with_sla(after, now),
            history_entry=history_entry,
            payload=payload,
        )

    def add_chat_message(
        self,
        current: Ticket,
        sender_id: str,
        sender_name: str,
        message: str,
        now: datetime | None = None,
    ) -> TicketUpdate:
        """
        Append a chat message. Chat does not produce a history entry.

        Raises:
            InvalidChangeError: If the message is blank
        """
        text = message.strip()
        if not text:
            raise InvalidChangeError("message is empty", field="message")

        chat = ChatMessage(
            sender_id=sender_id,
            sender_name=sender_name,
            message=text,
            timestamp=now or utcnow(),
        )
        after = current.model_copy(deep=True)
        after.chat_history.append(chat)
        return TicketUpdate(
            before=current,
            after=after,
            payload={
                "chat_history": [entry.model_dump(mode="json") for entry in after.chat_history]
            },
        )

    def with_sla(self, ticket: Ticket, now: datetime | None = None) -> Ticket:
        """Return the ticket with derived SLA fields filled in."""
        ticket.sla_due_at = sla_due_at(ticket.date_created, ticket.priority)
        ticket.sla_breached = is_sla_breached(ticket, now)
        return ticket

    def notification_kinds(
        self, before: Ticket | None, after: Ticket
    ) -> list[NotificationKind]:
        """
        Decide which notification intents a transition triggers.

        - creation: created (requester) and created_admin
        - newly assigned technician: assignment
        - transition into Resolved: resolved and resolved_admin
        - any other status change: status_changed
        """
        if before is None:
            return [NotificationKind.CREATED, NotificationKind.CREATED_ADMIN]

        kinds = []
        if after.assigned_tech_id and after.assigned_tech_id != before.assigned_tech_id:
            kinds.append(NotificationKind.ASSIGNMENT)
        if after.status != before.status:
            if after.status == TicketStatus.RESOLVED:
                kinds.extend([NotificationKind.RESOLVED, NotificationKind.RESOLVED_ADMIN])
            else:
                kinds.append(NotificationKind.STATUS_CHANGED)
        return kinds
