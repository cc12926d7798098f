"""
Bulk operations over a selected set of entities.

BulkOperationCoordinator fans one change out over many ids. Each id runs
the same single-entity path as an individual edit (and so gets its own
history entry, tagged "(via bulk action)."). There is no all-or-nothing
atomicity: every id gets a result, and failures are reported next to
successes rather than aborting the batch. An id listed more than once is
applied once; each repeat is reported as a failed item of its own.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from helpdesk_sync.errors import HelpdeskError
from helpdesk_sync.lifecycle.engine import TicketChange

if TYPE_CHECKING:
    from helpdesk_sync.service import HelpdeskService

logger = logging.getLogger(__name__)

DUPLICATE_ERROR = "Duplicate id in selection"


@dataclass
class BulkItemResult:
    """
    Outcome for one id of a bulk operation.

    Attributes:
        entity_id: The id as supplied by the caller
        success: Whether the change was applied (or was already in effect)
        changed: Whether anything was queued for this id
        mutation_id: Queue id of the resulting mutation
        error: Why the id failed
    """

    entity_id: str
    success: bool
    changed: bool = False
    mutation_id: str | None = None
    error: str | None = None


@dataclass
class BulkResult:
    """Per-id results of a bulk operation, in input order."""

    items: list[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[BulkItemResult]:
        return [item for item in self.items if item.success]

    @property
    def failed(self) -> list[BulkItemResult]:
        return [item for item in self.items if not item.success]


def _first_occurrences(ids: list[str], result: BulkResult) -> Iterator[str]:
    """Yield each id once, recording repeats in `result` as they come up."""
    seen: set[str] = set()
    for entity_id in ids:
        if entity_id in seen:
            result.items.append(BulkItemResult(entity_id, success=False, error=DUPLICATE_ERROR))
            continue
        seen.add(entity_id)
        yield entity_id


class BulkOperationCoordinator:
    """
    Applies one change to many tickets or users.

    Example:
        result = await service.bulk.bulk_update_tickets(
            ["T-1", "T-2"], {"status": "Resolved"}, actor_id="U-admin"
        )
        for item in result.failed:
            print(item.entity_id, item.error)
    """

    def __init__(self, service: "HelpdeskService", notify: bool = False) -> None:
        """
        Args:
            service: Facade providing the single-entity operations
            notify: Send notifications for bulk ticket edits (default off)
        """
        self.service = service
        self.notify = notify

    async def bulk_update_tickets(
        self,
        ticket_ids: list[str],
        change: TicketChange | dict[str, Any],
        actor_id: str,
    ) -> BulkResult:
        """
        Apply a partial update to every ticket.

        A ticket that is already in the requested state succeeds without
        queuing anything.

        Raises:
            InvalidChangeError: If the change itself is invalid (nothing applied)
        """
        if not isinstance(change, TicketChange):
            change = TicketChange.parse(change)

        result = BulkResult()
        for ticket_id in _first_occurrences(ticket_ids, result):
            try:
                update = await self.service.update_ticket(
                    ticket_id, change, actor_id, via_bulk=True, notify=self.notify
                )
            except HelpdeskError as e:
                result.items.append(BulkItemResult(ticket_id, success=False, error=str(e)))
                continue
            result.items.append(BulkItemResult(
                ticket_id,
                success=True,
                changed=update.changed,
                mutation_id=update.mutation_id,
            ))

        self._log("update", "ticket", result)
        return result

    async def bulk_delete_tickets(self, ticket_ids: list[str], actor_id: str) -> BulkResult:
        """Delete every ticket; unknown ids are reported as failures."""
        result = BulkResult()
        for ticket_id in _first_occurrences(ticket_ids, result):
            try:
                mutation_id = await self.service.delete_ticket(ticket_id, actor_id)
            except HelpdeskError as e:
                result.items.append(BulkItemResult(ticket_id, success=False, error=str(e)))
                continue
            result.items.append(BulkItemResult(
                ticket_id, success=True, changed=True, mutation_id=mutation_id
            ))

        self._log("delete", "ticket", result)
        return result

    async def bulk_update_users(
        self,
        user_ids: list[str],
        change: dict[str, Any],
        actor_id: str,
    ) -> BulkResult:
        """
        Apply a partial update (e.g. {"status": "inactive"}) to every user.

        The acting user's own account is never modified and is reported as
        a failure.
        """
        result = BulkResult()
        for user_id in _first_occurrences(user_ids, result):
            if user_id == actor_id:
                result.items.append(BulkItemResult(
                    user_id,
                    success=False,
                    error="Cannot bulk-modify your own account",
                ))
                continue
            try:
                mutation_id = await self.service.update_user(user_id, change, actor_id)
            except HelpdeskError as e:
                result.items.append(BulkItemResult(user_id, success=False, error=str(e)))
                continue
            result.items.append(BulkItemResult(
                user_id,
                success=True,
                changed=mutation_id is not None,
                mutation_id=mutation_id,
            ))

        self._log("update", "user", result)
        return result

    async def bulk_delete_users(self, user_ids: list[str], actor_id: str) -> BulkResult:
        """
        Delete every user.

        The acting user's own account is never deleted and is reported as
        a failure, as are unknown ids.
        """
        result = BulkResult()
        for user_id in _first_occurrences(user_ids, result):
            try:
                mutation_id = await self.service.delete_user(user_id, actor_id)
            except HelpdeskError as e:
                result.items.append(BulkItemResult(user_id, success=False, error=str(e)))
                continue
            result.items.append(BulkItemResult(
                user_id, success=True, changed=True, mutation_id=mutation_id
            ))

        self._log("delete", "user", result)
        return result

    def _log(self, action: str, noun: str, result: BulkResult) -> None:
        logger.info(
            f"Bulk {action} of {len(result.items)} {noun}(s): "
            f"{len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
