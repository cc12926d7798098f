"""
HelpdeskService: the interface consumed by UI and automation layers.

The service wires the lifecycle engine, the sync engine and the
notification orchestrator together:
- Reads come from the Reconciler's materialized views (never the network)
- Writes go through the lifecycle engine, then durably into the queue
- Notifications fire only after the write is queued, and their failures
  never fail the write

build_service() assembles a service from Settings plus the two external
capabilities (remote store and email transport).
"""

import asyncio
import functools
import logging
from collections.abc import Coroutine, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, ValidationError

from helpdesk_sync.audit import AuditEvent, SyncAuditor
from helpdesk_sync.config import Settings
from helpdesk_sync.errors import (
    EntityNotFoundError,
    HelpdeskError,
    InvalidChangeError,
    MutationRejectedError,
    OwnAccountError,
)
from helpdesk_sync.lifecycle.bulk import BulkOperationCoordinator
from helpdesk_sync.lifecycle.engine import (
    NotificationKind,
    TicketChange,
    TicketLifecycleEngine,
    TicketUpdate,
)
from helpdesk_sync.lifecycle.sla import derive_ticket_fields
from helpdesk_sync.notify.orchestrator import NotificationOrchestrator
from helpdesk_sync.notify.types import NotificationFailure
from helpdesk_sync.protocols import DeliveryProtocol, RemoteStoreProtocol, TicketSummarizer
from helpdesk_sync.sync.connectivity import ConnectivityMonitor
from helpdesk_sync.sync.payload import changed_fields
from helpdesk_sync.sync.queue import MutationQueue
from helpdesk_sync.sync.reconciler import Reconciler, ViewListener
from helpdesk_sync.sync.remote import RemoteSyncClient
from helpdesk_sync.sync.retry import RetryPolicy
from helpdesk_sync.sync.types import MutationKind, PendingMutation
from helpdesk_sync.types import (
    EntityType,
    Priority,
    Role,
    Technician,
    Ticket,
    User,
    UserStatus,
    is_temp_id,
    new_temp_id,
)

logger = logging.getLogger(__name__)

# Derived on read, never written to the store
DERIVED_TICKET_FIELDS = {"sla_due_at", "sla_breached"}

ModelT = TypeVar("ModelT", bound=BaseModel)


class HelpdeskService:
    """
    Offline-first help desk operations.

    Example:
        service = build_service(settings, store, transport)
        await service.start()
        ticket = await service.create_ticket("U-1", "U-1", description="VPN down")
        update = await service.update_ticket(ticket.id, {"status": "Resolved"}, "U-admin")
        snapshot, subscribe = service.get_materialized_view(EntityType.TICKETS)
        await service.stop()
    """

    def __init__(
        self,
        reconciler: Reconciler,
        orchestrator: NotificationOrchestrator,
        engine: TicketLifecycleEngine | None = None,
        summarizer: TicketSummarizer | None = None,
        bulk_notifications: bool = False,
        auditor: SyncAuditor | None = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            reconciler: Sync engine owning queue and views
            orchestrator: Notification side effects
            engine: Lifecycle engine (default resolves technician names from the view)
            summarizer: Optional ticket summarization capability
            bulk_notifications: Send notifications for bulk ticket edits
            auditor: Audit log, for get_audit_events()
        """
        self.reconciler = reconciler
        self.orchestrator = orchestrator
        self.engine = engine or TicketLifecycleEngine(technician_name=self._technician_name)
        self.summarizer = summarizer
        self.auditor = auditor
        self.bulk = BulkOperationCoordinator(self, notify=bulk_notifications)
        # Notifications waiting for a create to be confirmed
        self._deferred_notifications: set[asyncio.Task] = set()
        # Notifications being delivered
        self._notifications: set[asyncio.Task] = set()

    async def start(self) -> None:
        await self.reconciler.start()

    async def stop(self) -> None:
        """
        Stop syncing.

        Notifications already being delivered finish first; those still
        waiting on a create are dropped.
        """
        for task in list(self._deferred_notifications):
            task.cancel()
        if self._deferred_notifications:
            logger.info(
                f"Dropping {len(self._deferred_notifications)} notification(s) "
                "waiting for unconfirmed tickets"
            )
            await asyncio.gather(*self._deferred_notifications, return_exceptions=True)
        if self._notifications:
            await asyncio.gather(*self._notifications, return_exceptions=True)
        await self.reconciler.stop()

    async def settle(self, timeout: float | None = 5.0) -> None:
        """
        Wait for pushes, flushes and notifications to finish.

        Deferred notifications of tickets that are still unconfirmed when
        `timeout` expires keep waiting in the background.
        """
        await self.reconciler.settle()
        tasks = self._deferred_notifications | self._notifications
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    # Reads

    def get_materialized_view(
        self, entity_type: EntityType
    ) -> tuple[dict[str, dict[str, Any]], Callable[[ViewListener], Callable[[], None]]]:
        """
        Current composed view of a collection and a subscribe function.

        Returns:
            (snapshot, subscribe) where subscribe(callback) returns an
            unsubscribe function
        """
        snapshot = self.reconciler.get_view(entity_type)
        return snapshot, functools.partial(self.reconciler.subscribe_view, entity_type)

    def get_ticket(self, ticket_id: str) -> Ticket:
        """
        Raises:
            EntityNotFoundError: If the ticket is not visible
        """
        value = self.reconciler.get_entity(EntityType.TICKETS, ticket_id)
        if value is None:
            raise EntityNotFoundError(EntityType.TICKETS.value, ticket_id)
        return Ticket.model_validate(value)

    def get_user(self, user_id: str) -> User:
        """
        Raises:
            EntityNotFoundError: If the user is not visible
        """
        user = self._find_user(user_id)
        if user is None:
            raise EntityNotFoundError(EntityType.USERS.value, user_id)
        return user

    def get_technician(self, tech_id: str) -> Technician:
        """
        Raises:
            EntityNotFoundError: If the technician is not visible
        """
        value = self.reconciler.get_entity(EntityType.TECHNICIANS, tech_id)
        if value is None:
            raise EntityNotFoundError(EntityType.TECHNICIANS.value, tech_id)
        return Technician.model_validate(value)

    def list_users(self) -> list[User]:
        users = []
        for value in self.reconciler.get_view(EntityType.USERS).values():
            try:
                users.append(User.model_validate(value))
            except ValidationError:
                logger.debug(f"Skipping malformed user {value.get('id')}")
        return users

    def _find_user(self, user_id: str | None) -> User | None:
        if not user_id:
            return None
        value = self.reconciler.get_entity(EntityType.USERS, user_id)
        if value is None:
            return None
        try:
            return User.model_validate(value)
        except ValidationError:
            return None

    def _find_technician(self, tech_id: str | None) -> Technician | None:
        if not tech_id:
            return None
        value = self.reconciler.get_entity(EntityType.TECHNICIANS, tech_id)
        if value is None:
            return None
        try:
            return Technician.model_validate(value)
        except ValidationError:
            return None

    def _technician_name(self, tech_id: str) -> str | None:
        tech = self._find_technician(tech_id)
        return tech.name if tech else None

    # Generic writes

    async def submit_mutation(
        self,
        entity_type: EntityType,
        entity_id: str,
        change: dict[str, Any],
        actor_id: str,
        kind: MutationKind = MutationKind.UPDATE,
    ) -> str:
        """
        Queue a raw mutation and return its pending id.

        Returns immediately; the view reflects the change at once.
        """
        mutation = PendingMutation(
            entity_type=entity_type,
            target_entity_id=entity_id,
            kind=kind,
            payload=change,
        )
        return await self.reconciler.submit(mutation, actor=actor_id)

    async def _wait(self, mutation_id: str, timeout: float | None) -> dict[str, Any] | None:
        return await self.reconciler.wait_for(mutation_id, timeout=timeout)

    # Tickets

    async def create_ticket(
        self,
        requester_id: str,
        actor_id: str,
        description: str = "",
        department: str = "",
        priority: Priority | str = Priority.MEDIUM,
        cc: str | None = None,
        notify: bool = True,
        wait: bool = False,
        timeout: float | None = None,
        now: datetime | None = None,
    ) -> Ticket:
        """
        Create a ticket.

        Returns the ticket under its temporary id, or with wait=True the
        confirmed ticket under its remote id. Creation notifications are
        sent once the remote store has assigned the ticket's id.

        Raises:
            InvalidChangeError: If the priority is not valid
            MutationRejectedError: With wait=True, if the store rejected the ticket
        """
        try:
            priority = Priority(priority)
        except ValueError as e:
            raise InvalidChangeError(str(e), field="priority") from e

        ticket = self.engine.create_ticket(
            requester_id=requester_id,
            actor_id=actor_id,
            description=description,
            department=department,
            priority=priority,
            cc=cc,
            now=now,
        )
        payload = ticket.model_dump(mode="json", exclude=DERIVED_TICKET_FIELDS)
        mutation_id = await self.submit_mutation(
            EntityType.TICKETS, ticket.id, payload, actor_id, kind=MutationKind.CREATE
        )
        logger.info(f"Ticket {ticket.id} created by {actor_id} (pending {mutation_id})")

        kinds = self.engine.notification_kinds(None, ticket) if notify else []
        if wait:
            await self._wait(mutation_id, timeout)
            ticket = self.get_ticket(ticket.id)
            self._notify_in_background(kinds, ticket, actor_id)
        elif kinds:
            self._notify_when_confirmed(mutation_id, ticket.id, kinds, actor_id)
        return ticket

    async def update_ticket(
        self,
        ticket_id: str,
        change: TicketChange | dict[str, Any],
        actor_id: str,
        via_bulk: bool = False,
        notify: bool = True,
        wait: bool = False,
        timeout: float | None = None,
        now: datetime | None = None,
    ) -> TicketUpdate:
        """
        Apply a partial update to a ticket.

        Nothing is queued when no observable field changes. Notifications
        are delivered in the background; see settle().

        Raises:
            EntityNotFoundError: If the ticket is not visible
            InvalidChangeError: If the change is invalid
            MutationRejectedError: With wait=True, if the store rejected the change
        """
        if not isinstance(change, TicketChange):
            change = TicketChange.parse(change)

        current = self.get_ticket(ticket_id)
        update = self.engine.apply_update(current, change, actor_id, now=now, via_bulk=via_bulk)
        if not update.changed:
            logger.debug(f"Update of ticket {current.id} changed nothing")
            return update

        update.mutation_id = await self.submit_mutation(
            EntityType.TICKETS, current.id, update.payload, actor_id
        )
        if update.history_entry is not None:
            logger.info(f"Ticket {current.id}: {update.history_entry.change}")

        if notify:
            kinds = self.engine.notification_kinds(update.before, update.after)
            if is_temp_id(current.id):
                self._notify_when_confirmed(update.mutation_id, current.id, kinds, actor_id)
            else:
                self._notify_in_background(kinds, update.after, actor_id)

        if wait:
            await self._wait(update.mutation_id, timeout)
        return update

    async def delete_ticket(self, ticket_id: str, actor_id: str) -> str:
        """
        Delete a ticket.

        Raises:
            EntityNotFoundError: If the ticket is not visible
        """
        ticket = self.get_ticket(ticket_id)
        mutation_id = await self.submit_mutation(
            EntityType.TICKETS, ticket.id, {}, actor_id, kind=MutationKind.DELETE
        )
        logger.info(f"Ticket {ticket.id} deleted by {actor_id}")
        return mutation_id

    async def add_chat_message(
        self,
        ticket_id: str,
        sender_id: str,
        message: str,
        now: datetime | None = None,
    ) -> TicketUpdate:
        """
        Append a chat message to a ticket's conversation.

        Raises:
            EntityNotFoundError: If the ticket is not visible
            InvalidChangeError: If the message is blank
        """
        current = self.get_ticket(ticket_id)
        sender = self._find_user(sender_id) or self._find_technician(sender_id)
        sender_name = sender.name if sender else sender_id

        update = self.engine.add_chat_message(current, sender_id, sender_name, message, now=now)
        update.mutation_id = await self.submit_mutation(
            EntityType.TICKETS, current.id, update.payload, sender_id
        )
        return update

    # Users

    async def create_user(
        self,
        name: str,
        email: str,
        actor_id: str,
        role: Role | str = Role.USER,
        status: UserStatus | str = UserStatus.ACTIVE,
    ) -> User:
        """
        Create a user under a temporary id.

        Raises:
            InvalidChangeError: If a field is invalid
        """
        user = _validated(User, {
            "id": new_temp_id(),
            "name": name,
            "email": email,
            "role": role,
            "status": status,
        })
        await self.submit_mutation(
            EntityType.USERS, user.id, user.model_dump(mode="json"), actor_id,
            kind=MutationKind.CREATE,
        )
        logger.info(f"User {user.id} ({user.email}) created by {actor_id}")
        return user

    async def update_user(
        self, user_id: str, change: dict[str, Any], actor_id: str
    ) -> str | None:
        """
        Apply a partial update to a user.

        Returns:
            Pending mutation id, or None when nothing changed

        Raises:
            EntityNotFoundError: If the user is not visible
            InvalidChangeError: On unknown fields or invalid values
        """
        return await self._update_record(
            EntityType.USERS, User, user_id, change, actor_id, self.get_user
        )

    async def delete_user(self, user_id: str, actor_id: str) -> str:
        """
        Delete a user. Their tickets are left untouched.

        Raises:
            OwnAccountError: If the actor is deleting their own account
            EntityNotFoundError: If the user is not visible
        """
        if self.reconciler.resolve_id(user_id) == self.reconciler.resolve_id(actor_id):
            raise OwnAccountError(user_id)
        user = self.get_user(user_id)
        mutation_id = await self.submit_mutation(
            EntityType.USERS, user.id, {}, actor_id, kind=MutationKind.DELETE
        )
        logger.info(f"User {user.id} ({user.email}) deleted by {actor_id}")
        return mutation_id

    # Technicians

    async def create_technician(self, name: str, email: str, actor_id: str) -> Technician:
        """
        Create a technician under a temporary id.

        Raises:
            InvalidChangeError: If a field is invalid
        """
        tech = _validated(Technician, {"id": new_temp_id(), "name": name, "email": email})
        await self.submit_mutation(
            EntityType.TECHNICIANS, tech.id, tech.model_dump(mode="json"), actor_id,
            kind=MutationKind.CREATE,
        )
        logger.info(f"Technician {tech.id} ({tech.name}) created by {actor_id}")
        return tech

    async def update_technician(
        self, tech_id: str, change: dict[str, Any], actor_id: str
    ) -> str | None:
        """
        Apply a partial update to a technician.

        Returns:
            Pending mutation id, or None when nothing changed

        Raises:
            EntityNotFoundError: If the technician is not visible
            InvalidChangeError: On unknown fields or invalid values
        """
        return await self._update_record(
            EntityType.TECHNICIANS, Technician, tech_id, change, actor_id, self.get_technician
        )

    async def delete_technician(self, tech_id: str, actor_id: str) -> str:
        """
        Delete a technician. Tickets assigned to them keep the assignment.

        Raises:
            EntityNotFoundError: If the technician is not visible
        """
        tech = self.get_technician(tech_id)
        mutation_id = await self.submit_mutation(
            EntityType.TECHNICIANS, tech.id, {}, actor_id, kind=MutationKind.DELETE
        )
        logger.info(f"Technician {tech.id} ({tech.name}) deleted by {actor_id}")
        return mutation_id

    async def _update_record(
        self,
        entity_type: EntityType,
        model: type[ModelT],
        entity_id: str,
        change: dict[str, Any],
        actor_id: str,
        lookup: Callable[[str], ModelT],
    ) -> str | None:
        unknown = set(change) - (set(model.model_fields) - {"id"})
        if unknown:
            raise InvalidChangeError("unknown field", field=sorted(unknown)[0])

        current = lookup(entity_id)
        before = current.model_dump(mode="json")
        after = _validated(model, {**before, **change}).model_dump(mode="json")

        payload = {name: after[name] for name in changed_fields(before, after)}
        if not payload:
            return None
        return await self.submit_mutation(entity_type, current.id, payload, actor_id)

    # Notifications

    async def _notify(
        self, kinds: Iterable[NotificationKind], ticket: Ticket, actor_id: str
    ) -> list[NotificationFailure]:
        kinds = list(kinds)
        if not kinds:
            return []
        try:
            return await self.orchestrator.notify(
                kinds,
                ticket,
                requester=self._find_user(ticket.requester_id),
                actor=self._find_user(actor_id),
                technician=self._find_technician(ticket.assigned_tech_id),
                admins=self.list_users(),
            )
        except Exception:
            logger.exception(f"Notification dispatch failed for ticket {ticket.id}")
            return []

    def _notify_when_confirmed(
        self,
        mutation_id: str,
        ticket_id: str,
        kinds: list[NotificationKind],
        actor_id: str,
    ) -> None:
        if kinds:
            self._spawn(
                self._deferred_notify(mutation_id, ticket_id, kinds, actor_id),
                self._deferred_notifications,
            )

    def _notify_in_background(
        self, kinds: list[NotificationKind], ticket: Ticket, actor_id: str
    ) -> None:
        if kinds:
            self._spawn(self._notify(kinds, ticket, actor_id), self._notifications)

    def _spawn(self, coro: Coroutine[Any, Any, Any], tasks: set[asyncio.Task]) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _deferred_notify(
        self,
        mutation_id: str,
        ticket_id: str,
        kinds: list[NotificationKind],
        actor_id: str,
    ) -> None:
        try:
            await self._wait(mutation_id, timeout=None)
            ticket = self.get_ticket(ticket_id)
        except (MutationRejectedError, EntityNotFoundError) as e:
            logger.info(f"Skipping notifications for ticket {ticket_id}: {e}")
            return
        await self._notify(kinds, ticket, actor_id)

    def get_notification_failures(self) -> list[NotificationFailure]:
        """Notifications that could not be delivered, with manual fallbacks."""
        return self.orchestrator.get_notification_failures()

    def dismiss_notification_failure(self, failure_id: str) -> bool:
        return self.orchestrator.dismiss_failure(failure_id)

    # Summaries

    async def summarize_ticket(self, ticket_id: str) -> str:
        """
        Summarize a ticket through the configured summarizer.

        Raises:
            EntityNotFoundError: If the ticket is not visible
            HelpdeskError: If no summarizer is configured
        """
        if self.summarizer is None:
            raise HelpdeskError("No ticket summarizer configured")
        return await self.summarizer.summarize(self.get_ticket(ticket_id))

    # Queue remediation

    async def list_pending(self) -> list[PendingMutation]:
        return await self.reconciler.queue.list_pending()

    async def list_fatal(self) -> list[PendingMutation]:
        """Mutations that were rejected or escalated and need a decision."""
        return await self.reconciler.queue.list_fatal()

    async def discard_mutation(self, mutation_id: str, actor_id: str) -> PendingMutation:
        return await self.reconciler.discard(mutation_id, actor=actor_id)

    async def retry_mutation(self, mutation_id: str) -> PendingMutation:
        return await self.reconciler.requeue(mutation_id)

    async def get_audit_events(
        self, entity_id: str | None = None, limit: int = 100
    ) -> list[AuditEvent]:
        if self.auditor is None:
            return []
        return await self.auditor.get_events(
            entity_id=self.reconciler.resolve_id(entity_id) if entity_id else None,
            limit=limit,
        )


def _validated(model: type[ModelT], data: dict[str, Any]) -> ModelT:
    """
    Validate a record.

    Raises:
        InvalidChangeError: Naming the first offending field
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        raise InvalidChangeError(error["msg"], field=".".join(map(str, error["loc"]))) from e


def enabled_notifications(settings: Settings) -> set[NotificationKind]:
    """Notification intents switched on in settings."""
    toggles = {
        NotificationKind.ASSIGNMENT: settings.notify_tech_on_assignment,
        NotificationKind.RESOLVED: settings.notify_user_on_resolution,
        NotificationKind.RESOLVED_ADMIN: settings.notify_admin_on_resolution,
        NotificationKind.STATUS_CHANGED: settings.notify_user_on_status_change,
        NotificationKind.CREATED: settings.notify_user_on_create,
        NotificationKind.CREATED_ADMIN: settings.notify_admin_on_create,
    }
    return {kind for kind, enabled in toggles.items() if enabled}


def build_service(
    settings: Settings,
    store: RemoteStoreProtocol,
    transport: DeliveryProtocol,
    db_path: Path | None = None,
    summarizer: TicketSummarizer | None = None,
) -> HelpdeskService:
    """
    Assemble a HelpdeskService from settings and external capabilities.

    Args:
        settings: Configuration (read once here)
        store: Remote authoritative store
        transport: Email delivery
        db_path: Override of settings.db_path
        summarizer: Optional ticket summarization capability
    """
    db_path = db_path or settings.db_path
    auditor = SyncAuditor(db_path)
    policy = RetryPolicy(
        base_seconds=settings.retry_base_seconds,
        multiplier=settings.retry_multiplier,
        cap_seconds=settings.retry_cap_seconds,
        jitter_fraction=settings.retry_jitter_fraction,
        max_unknown_attempts=settings.max_unknown_attempts,
    )
    queue = MutationQueue(db_path, retry_policy=policy, auditor=auditor)
    client = RemoteSyncClient(store, apply_timeout_seconds=settings.apply_timeout_seconds)
    monitor = ConnectivityMonitor(client.ping, probe_interval_seconds=settings.probe_interval_seconds)
    reconciler = Reconciler(
        queue,
        client,
        monitor,
        auditor=auditor,
        partitions=settings.flush_partitions,
        derive_hooks={EntityType.TICKETS: derive_ticket_fields},
    )
    orchestrator = NotificationOrchestrator(
        transport,
        enabled=enabled_notifications(settings),
        attempts=settings.notification_attempts,
        auditor=auditor,
    )
    return HelpdeskService(
        reconciler,
        orchestrator,
        summarizer=summarizer,
        bulk_notifications=settings.bulk_notifications,
        auditor=auditor,
    )
