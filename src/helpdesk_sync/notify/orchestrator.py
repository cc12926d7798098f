"""
NotificationOrchestrator: executes notification side effects.

Given the intents the lifecycle engine decided on, the orchestrator:
- Resolves recipients (assignee, requester, every active admin)
- Renders each message from its template
- Dispatches every intent independently (one failure never blocks the
  others, and never affects the ticket mutation that triggered it)
- Retries transient delivery failures a bounded number of times
- Records a NotificationFailure with a manual fallback for each intent
  that still failed

Callers only invoke notify() after the ticket mutation is durably queued.
"""

import asyncio
import logging
from collections.abc import Iterable

from helpdesk_sync.audit import SyncAuditor
from helpdesk_sync.lifecycle.engine import NotificationKind
from helpdesk_sync.notify.classify import classify_delivery_error, describe_delivery_error
from helpdesk_sync.notify.templates import EmailTemplate, build_fallback, render
from helpdesk_sync.notify.types import (
    DeliveryErrorClass,
    DeliveryResult,
    NotificationFailure,
    NotificationIntent,
)
from helpdesk_sync.protocols import DeliveryProtocol
from helpdesk_sync.types import Role, Technician, Ticket, User, UserStatus

logger = logging.getLogger(__name__)


class NotificationOrchestrator:
    """
    Dispatches notification intents with per-intent failure handling.

    Example:
        orchestrator = NotificationOrchestrator(transport)
        failures = await orchestrator.notify(
            kinds, ticket, requester=user, actor=admin, technician=tech, admins=admins
        )
        for failure in orchestrator.get_notification_failures():
            print(failure.fallback.mailto)
    """

    def __init__(
        self,
        transport: DeliveryProtocol,
        enabled: Iterable[NotificationKind] | None = None,
        templates: dict[NotificationKind, EmailTemplate] | None = None,
        attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        auditor: SyncAuditor | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            transport: Delivery capability
            enabled: Intents to send (default: all)
            templates: Template overrides per intent
            attempts: Delivery attempts per intent for transient failures
            retry_delay_seconds: Base delay between attempts (linear)
            auditor: Optional audit logger for failures
        """
        self.transport = transport
        self.enabled = set(enabled) if enabled is not None else set(NotificationKind)
        self.templates = templates
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay_seconds
        self.auditor = auditor
        self._failures: dict[str, NotificationFailure] = {}

    def build_intents(
        self,
        kinds: Iterable[NotificationKind],
        ticket: Ticket,
        requester: User | None,
        actor: User | None = None,
        technician: Technician | None = None,
        admins: Iterable[User] = (),
    ) -> list[NotificationIntent]:
        """
        Expand intent kinds into concrete messages.

        Kinds that are disabled or whose recipient is unknown are skipped.
        """
        ticket_json = ticket.model_dump(mode="json")
        requester_json = requester.model_dump(mode="json") if requester else None
        actor_json = actor.model_dump(mode="json") if actor else None
        active_admins = [
            admin for admin in admins
            if admin.role == Role.ADMIN and admin.status == UserStatus.ACTIVE
        ]

        intents = []
        for kind in kinds:
            if kind not in self.enabled:
                continue

            targets: list[tuple[User | Technician, dict]] = []
            if kind == NotificationKind.ASSIGNMENT:
                if technician is not None:
                    targets.append((technician, {"tech": technician.model_dump(mode="json")}))
            elif kind in (NotificationKind.CREATED_ADMIN, NotificationKind.RESOLVED_ADMIN):
                targets.extend(
                    (admin, {"admin": admin.model_dump(mode="json")}) for admin in active_admins
                )
            elif requester is not None:
                targets.append((requester, {}))

            if not targets:
                logger.debug(f"No recipient for {kind.value} on ticket {ticket.id}")
                continue

            for recipient, extra in targets:
                context = {
                    "ticket": ticket_json,
                    "user": requester_json,
                    "assigner": actor_json,
                    "resolver": actor_json,
                    "updater": actor_json,
                    **extra,
                }
                subject, body = render(kind, context, self.templates)
                intents.append(NotificationIntent(
                    kind=kind,
                    ticket_id=ticket.id,
                    recipient=recipient.email,
                    recipient_name=recipient.name,
                    subject=subject,
                    body=body,
                    fallback=build_fallback(kind, ticket, recipient, requester),
                ))
        return intents

    async def notify(
        self,
        kinds: Iterable[NotificationKind],
        ticket: Ticket,
        requester: User | None,
        actor: User | None = None,
        technician: Technician | None = None,
        admins: Iterable[User] = (),
    ) -> list[NotificationFailure]:
        """
        Build and dispatch the intents of one ticket transition.

        Returns:
            Failures of this dispatch (also kept for get_notification_failures())
        """
        intents = self.build_intents(kinds, ticket, requester, actor, technician, admins)
        return await self.dispatch(intents)

    async def dispatch(self, intents: list[NotificationIntent]) -> list[NotificationFailure]:
        """Deliver intents concurrently and independently."""
        if not intents:
            return []
        outcomes = await asyncio.gather(*(self._deliver(intent) for intent in intents))
        return [failure for failure in outcomes if failure is not None]

    async def _deliver(self, intent: NotificationIntent) -> NotificationFailure | None:
        result = DeliveryResult.failed("not attempted")
        error_class = DeliveryErrorClass.TRANSIENT
        attempt = 0

        while attempt < self.attempts:
            attempt += 1
            try:
                result = await self.transport.send(intent.recipient, intent.subject, intent.body)
            except Exception as e:
                result = DeliveryResult.failed(f"{type(e).__name__}: {e}")

            if result.success:
                logger.debug(f"Delivered {intent.kind.value} for {intent.ticket_id} to {intent.recipient}")
                return None

            error_class = classify_delivery_error(result)
            if error_class != DeliveryErrorClass.TRANSIENT:
                break
            if attempt < self.attempts and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay * attempt)

        failure = NotificationFailure(
            kind=intent.kind,
            ticket_id=intent.ticket_id,
            recipient=intent.recipient,
            reason=describe_delivery_error(result),
            error_class=error_class,
            fallback=intent.fallback,
            attempts=attempt,
        )
        self._failures[failure.id] = failure
        logger.warning(
            f"Notification {intent.kind.value} for ticket {intent.ticket_id} to "
            f"{intent.recipient} failed ({error_class.value}): {failure.reason}"
        )
        if self.auditor:
            await self.auditor.log_notification_failed(
                intent.ticket_id, intent.kind.value, intent.recipient, failure.reason
            )
        return failure

    def get_notification_failures(self) -> list[NotificationFailure]:
        """Failures awaiting manual remediation, oldest first."""
        return sorted(self._failures.values(), key=lambda f: f.occurred_at)

    def dismiss_failure(self, failure_id: str) -> bool:
        """
        Remove a failure once it has been handled.

        Returns:
            True if the failure existed
        """
        return self._failures.pop(failure_id, None) is not None
