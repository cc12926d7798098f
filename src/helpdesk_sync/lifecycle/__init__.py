"""
Ticket lifecycle: transitions, history, SLA and bulk operations.

Exports:
    TicketLifecycleEngine: Applies changes and stamps history
    TicketChange: Partial ticket update
    TicketUpdate: Result of applying a change
    NotificationKind: Notification intents a transition triggers
    SLA_HOURS, sla_due_at, is_sla_breached: SLA math

BulkOperationCoordinator lives in helpdesk_sync.lifecycle.bulk.
"""

from helpdesk_sync.lifecycle.engine import (
    NotificationKind,
    TicketChange,
    TicketLifecycleEngine,
    TicketUpdate,
)
from helpdesk_sync.lifecycle.sla import SLA_HOURS, is_sla_breached, sla_due_at

__all__ = [
    "NotificationKind",
    "SLA_HOURS",
    "TicketChange",
    "TicketLifecycleEngine",
    "TicketUpdate",
    "is_sla_breached",
    "sla_due_at",
]
