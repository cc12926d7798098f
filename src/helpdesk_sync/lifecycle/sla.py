"""
SLA (Service Level Agreement) math for tickets.

Due date = date_created + SLA_HOURS[priority].

Breach:
- not resolved: now > due date
- resolved: date_resolved > due date, frozen at resolution time in
  Ticket.resolution_breached and never recomputed afterwards
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from helpdesk_sync.types import Priority, Ticket, TicketStatus, utcnow

logger = logging.getLogger(__name__)

SLA_HOURS: dict[Priority, int] = {
    Priority.URGENT: 4,
    Priority.HIGH: 8,
    Priority.MEDIUM: 24,
    Priority.LOW: 72,
}


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def sla_due_at(date_created: datetime, priority: Priority | str) -> datetime:
    """
    Calculate the SLA due date.

    Unknown priorities get the most lenient (Low) window.
    """
    try:
        hours = SLA_HOURS[Priority(priority)]
    except ValueError:
        hours = SLA_HOURS[Priority.LOW]
    return as_utc(date_created) + timedelta(hours=hours)


def breached_at(ticket: Ticket, moment: datetime) -> bool:
    """True if `moment` is past the ticket's SLA due date."""
    return as_utc(moment) > sla_due_at(ticket.date_created, ticket.priority)


def is_sla_breached(ticket: Ticket, now: datetime | None = None) -> bool:
    """
    Check whether a ticket has breached its SLA.

    A resolved ticket reports the breach frozen at resolution; open tickets
    are compared against `now`.
    """
    if ticket.status == TicketStatus.RESOLVED:
        if ticket.resolution_breached is not None:
            return ticket.resolution_breached
        if ticket.date_resolved is not None:
            return breached_at(ticket, ticket.date_resolved)
        return False
    return breached_at(ticket, now or utcnow())


def derive_ticket_fields(value: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """
    Recompute sla_due_at and sla_breached on a composed ticket value.

    Used as the Reconciler's derive hook for the tickets collection.
    Values that do not validate as a Ticket are returned unchanged.
    """
    try:
        ticket = Ticket.model_validate(value)
    except ValidationError:
        logger.debug(f"Skipping SLA derivation for malformed ticket {value.get('id')}")
        return value

    derived = dict(value)
    derived["sla_due_at"] = sla_due_at(ticket.date_created, ticket.priority).isoformat()
    derived["sla_breached"] = is_sla_breached(ticket, now)
    return derived
