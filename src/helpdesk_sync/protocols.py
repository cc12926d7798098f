"""
Protocols for the external collaborators of the sync engine.

The engine consumes three capabilities it does not implement itself:
- RemoteStoreProtocol: the authoritative push-capable document store
- DeliveryProtocol: transactional email delivery
- TicketSummarizer: opaque text summarization of a ticket

Implementations included in this package are HttpRemoteStore
(helpdesk_sync.sync.remote) and EmailJsTransport (helpdesk_sync.notify.emailjs).
Tests provide in-memory fakes.
"""

from typing import TYPE_CHECKING, Any, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from helpdesk_sync.notify.types import DeliveryResult
    from helpdesk_sync.sync.types import PendingMutation, RemoteChange
    from helpdesk_sync.types import EntityType, Ticket

Unsubscribe = Callable[[], None]


@runtime_checkable
class RemoteStoreProtocol(Protocol):
    """
    Protocol for the remote authoritative store.

    Failures of apply_mutation are signalled by raising:
    - RemoteUnreachableError when the store cannot be reached
    - RemoteRejectedError when the store refuses the mutation
    - any other exception is treated as an unknown failure
    """

    async def apply_mutation(
        self, entity_type: "EntityType", mutation: "PendingMutation"
    ) -> dict[str, Any]:
        """
        Apply one mutation and return the confirmed entity.

        For a create the returned entity carries the remote-assigned id.
        For a delete the returned dict is the last known value (may be empty).
        """
        ...

    async def subscribe(
        self,
        entity_type: "EntityType",
        callback: Callable[["RemoteChange"], None],
    ) -> Unsubscribe:
        """
        Subscribe to live changes of a collection.

        The first delivery is a full snapshot (RemoteChange.snapshot=True);
        later deliveries are incremental. The callback must not block.
        """
        ...

    async def fetch_all(self, entity_type: "EntityType") -> list[dict[str, Any]]:
        """Return the full current contents of a collection."""
        ...

    async def ping(self) -> bool:
        """Reachability probe. True if the store answered."""
        ...


@runtime_checkable
class DeliveryProtocol(Protocol):
    """Protocol for notification delivery (transactional email)."""

    async def send(self, recipient: str, subject: str, body: str) -> "DeliveryResult":
        """
        Deliver one message.

        Returns a DeliveryResult instead of raising; error text is opaque
        and classified by helpdesk_sync.notify.classify.
        """
        ...


@runtime_checkable
class TicketSummarizer(Protocol):
    """Opaque summarization capability (e.g. a text generation service)."""

    async def summarize(self, ticket: "Ticket") -> str:
        ...
