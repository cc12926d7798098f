"""
Exception classes for the sync and lifecycle engines.

Remote failures are split along the retry taxonomy:
- RemoteUnreachableError: transport could not reach the store (retry)
- RemoteRejectedError: store refused the mutation (never retry)
- anything else raised by a store is treated as UNKNOWN by RemoteSyncClient

Per project patterns:
- Inherit from a common base exception
- Store context data in attributes for error handling
- Include descriptive message with relevant details
"""


class HelpdeskError(Exception):
    """Base class for all helpdesk_sync errors."""


class RemoteUnreachableError(HelpdeskError):
    """
    Raised by a remote store when the transport cannot reach it.

    Attributes:
        reason: Transport-level description (connection refused, DNS, ...)
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Remote store unreachable: {reason}")


class RemoteRejectedError(HelpdeskError):
    """
    Raised by a remote store when it permanently refuses a mutation.

    Attributes:
        reason: Validation message returned by the store
        status_code: HTTP status (or equivalent) when available
    """

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        self.reason = reason
        self.status_code = status_code
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"Remote store rejected mutation{suffix}: {reason}")


class MutationRejectedError(HelpdeskError):
    """
    Raised to a caller whose mutation was rejected by the remote store.

    The mutation has been moved to the fatal list and will not be retried;
    the caller must resubmit a corrected mutation.

    Attributes:
        mutation_id: The rejected PendingMutation id
        entity_id: Target entity of the mutation
        reason: Rejection message
    """

    def __init__(self, mutation_id: str, entity_id: str, reason: str) -> None:
        self.mutation_id = mutation_id
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Mutation {mutation_id} for {entity_id} was rejected: {reason}. "
            f"Resubmit a corrected change."
        )


class MutationNotFoundError(HelpdeskError):
    """Raised when a queue operation names a mutation that does not exist."""

    def __init__(self, mutation_id: str) -> None:
        self.mutation_id = mutation_id
        super().__init__(f"Mutation {mutation_id} not found")


class EntityNotFoundError(HelpdeskError):
    """Raised when an entity is not present in the materialized view."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidChangeError(HelpdeskError):
    """
    Raised when a requested change cannot be applied to an entity.

    Attributes:
        field: Offending field name (None for whole-change problems)
        reason: What is wrong with it
    """

    def __init__(self, reason: str, field: str | None = None) -> None:
        self.field = field
        self.reason = reason
        where = f" '{field}'" if field else ""
        super().__init__(f"Invalid change{where}: {reason}")


class OwnAccountError(HelpdeskError):
    """Raised when a user tries to delete their own account."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("Cannot delete your own account")
