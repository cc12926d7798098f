"""
helpdesk-sync: offline-first ticket synchronization and lifecycle engine.

Exports:
    HelpdeskService: Facade consumed by UI and automation layers
    build_service: Assemble a HelpdeskService from Settings
    SyncScheduler: Background probe/retry loop
    Settings: Environment-based configuration
    Ticket, User, Technician, HistoryEntry, ChatMessage: Domain entities
    EntityType, TicketStatus, Priority, Role, UserStatus: Domain enums
"""

from helpdesk_sync.config import Settings
from helpdesk_sync.scheduler import SyncScheduler
from helpdesk_sync.service import HelpdeskService, build_service
from helpdesk_sync.types import (
    ChatMessage,
    EntityType,
    HistoryEntry,
    Priority,
    Role,
    Technician,
    Ticket,
    TicketStatus,
    User,
    UserStatus,
)

__version__ = "0.1.0"

__all__ = [
    "ChatMessage",
    "EntityType",
    "HelpdeskService",
    "HistoryEntry",
    "Priority",
    "Role",
    "Settings",
    "SyncScheduler",
    "Technician",
    "Ticket",
    "TicketStatus",
    "User",
    "UserStatus",
    "build_service",
]
