"""
Remote store access for the sync engine.

This module provides:
- RemoteSyncClient: wraps any RemoteStoreProtocol, bounds every apply
  attempt with a timeout and converts failures into ApplyResult values
  following the retry taxonomy (unreachable / rejected / unknown)
- HttpRemoteStore: RemoteStoreProtocol implementation over a REST API,
  using an injected httpx.AsyncClient

REST mapping used by HttpRemoteStore:
    create  -> POST   /{entity_type}
    update  -> PATCH  /{entity_type}/{id}
    delete  -> DELETE /{entity_type}/{id}
    fetch   -> GET    /{entity_type}
    ping    -> GET    /health

Live updates are produced by polling GET /{entity_type} and diffing
successive results into incremental RemoteChange deliveries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from helpdesk_sync.errors import RemoteRejectedError, RemoteUnreachableError
from helpdesk_sync.protocols import RemoteStoreProtocol, Unsubscribe
from helpdesk_sync.sync.types import (
    ApplyResult,
    FailureKind,
    MutationKind,
    PendingMutation,
    RemoteChange,
)
from helpdesk_sync.types import EntityType

logger = logging.getLogger(__name__)

# 4xx responses that are worth retrying
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class RemoteSyncClient:
    """
    Timeout-bounded, failure-classifying facade over a remote store.

    apply_mutation() never raises for remote failures; it returns an
    ApplyResult describing the outcome.

    Example:
        client = RemoteSyncClient(store, apply_timeout_seconds=15.0)
        result = await client.apply_mutation(mutation)
        if not result.ok and result.failure == FailureKind.REJECTED:
            ...
    """

    def __init__(
        self,
        store: RemoteStoreProtocol,
        apply_timeout_seconds: float = 15.0,
    ) -> None:
        """
        Initialize the client.

        Args:
            store: Any RemoteStoreProtocol implementation
            apply_timeout_seconds: Per-attempt timeout; expiry counts as UNKNOWN
        """
        self.store = store
        self.apply_timeout = apply_timeout_seconds

    async def apply_mutation(self, mutation: PendingMutation) -> ApplyResult:
        """
        Apply one mutation to the remote store.

        Returns:
            ApplyResult.success(confirmed_entity) or ApplyResult.failed(kind, error)
        """
        try:
            entity = await asyncio.wait_for(
                self.store.apply_mutation(mutation.entity_type, mutation),
                timeout=self.apply_timeout,
            )
        except asyncio.TimeoutError:
            return ApplyResult.failed(
                FailureKind.UNKNOWN, f"Timed out after {self.apply_timeout}s"
            )
        except RemoteUnreachableError as e:
            return ApplyResult.failed(FailureKind.UNREACHABLE, e.reason)
        except RemoteRejectedError as e:
            return ApplyResult.failed(FailureKind.REJECTED, e.reason)
        except Exception as e:
            return ApplyResult.failed(FailureKind.UNKNOWN, f"{type(e).__name__}: {e}")

        return ApplyResult.success(entity)

    async def subscribe(
        self,
        entity_type: EntityType,
        callback: Callable[[RemoteChange], None],
    ) -> Unsubscribe:
        """Subscribe to a collection: snapshot first, then incremental pushes."""
        return await self.store.subscribe(entity_type, callback)

    async def fetch_all(self, entity_type: EntityType) -> list[dict[str, Any]]:
        return await self.store.fetch_all(entity_type)

    async def ping(self) -> bool:
        """Reachability probe; any exception counts as unreachable."""
        try:
            return await self.store.ping()
        except Exception as e:
            logger.debug(f"Ping failed: {type(e).__name__}: {e}")
            return False


def _error_reason(response: httpx.Response) -> str:
    """Extract a human-readable error from a response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    return str(body)


@dataclass
class HttpRemoteStore:
    """
    REST remote store with injected httpx client.

    Attributes:
        http: Pre-configured httpx.AsyncClient with base_url set to the store
        poll_interval: Seconds between polls feeding live subscriptions
        on_disconnect: Called when polling loses the store
        on_link_up: Called when polling reaches the store again

    Example:
        async with httpx.AsyncClient(base_url="http://store:8080") as http:
            store = HttpRemoteStore(http=http)
            tickets = await store.fetch_all(EntityType.TICKETS)
    """

    http: httpx.AsyncClient
    poll_interval: float = 5.0
    on_disconnect: Callable[[], None] | None = None
    on_link_up: Callable[[], None] | None = None
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request and map failures onto the remote error taxonomy.

        Raises:
            RemoteUnreachableError: On connection failures
            RemoteRejectedError: On 4xx responses other than 408/429
            httpx.HTTPStatusError: On any other error status (unknown failure)
        """
        try:
            response = await self.http.request(method, url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise RemoteUnreachableError(f"{type(e).__name__}: {e}") from e

        if 400 <= response.status_code < 500 and (
            response.status_code not in RETRYABLE_CLIENT_STATUSES
        ):
            raise RemoteRejectedError(_error_reason(response), response.status_code)
        response.raise_for_status()
        return response

    async def apply_mutation(
        self, entity_type: EntityType, mutation: PendingMutation
    ) -> dict[str, Any]:
        """
        Apply a mutation via the REST API.

        Returns:
            The confirmed entity as returned by the store. Responses without
            a body (204) confirm with the submitted payload.
        """
        collection = f"/{entity_type.value}"
        if mutation.kind == MutationKind.CREATE:
            response = await self._request("POST", collection, json=mutation.payload)
        elif mutation.kind == MutationKind.UPDATE:
            response = await self._request(
                "PATCH", f"{collection}/{mutation.target_entity_id}", json=mutation.payload
            )
        else:
            response = await self._request(
                "DELETE", f"{collection}/{mutation.target_entity_id}"
            )

        if response.status_code == 204 or not response.content:
            return {"id": mutation.target_entity_id, **mutation.payload}
        return response.json()

    async def fetch_all(self, entity_type: EntityType) -> list[dict[str, Any]]:
        """
        Get every entity of a collection.

        Accepts either a JSON list or an object with an "items" list.
        """
        response = await self._request("GET", f"/{entity_type.value}")
        data = response.json()
        if isinstance(data, dict):
            data = data.get("items", [])
        return list(data)

    async def ping(self) -> bool:
        try:
            response = await self.http.get("/health")
        except httpx.TransportError:
            return False
        return response.status_code == 200

    async def subscribe(
        self,
        entity_type: EntityType,
        callback: Callable[[RemoteChange], None],
    ) -> Unsubscribe:
        """
        Start a polling subscription for a collection.

        The first successful poll delivers a snapshot; later polls deliver
        only entities that changed or disappeared since the previous poll.
        """
        task = asyncio.create_task(
            self._poll(entity_type, callback),
            name=f"poll-{entity_type.value}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _poll(
        self,
        entity_type: EntityType,
        callback: Callable[[RemoteChange], None],
    ) -> None:
        previous: dict[str, dict[str, Any]] | None = None
        healthy = True

        while True:
            try:
                entities = await self.fetch_all(entity_type)
            except (RemoteUnreachableError, httpx.TransportError) as e:
                if healthy:
                    logger.info(f"Lost push channel for {entity_type.value}: {e}")
                    healthy = False
                    if self.on_disconnect:
                        self.on_disconnect()
            except Exception as e:
                # A bad response does not end the subscription
                logger.warning(f"Poll of {entity_type.value} failed: {type(e).__name__}: {e}")
            else:
                if not healthy:
                    healthy = True
                    if self.on_link_up:
                        self.on_link_up()
                current = {
                    str(entity["id"]): entity for entity in entities if "id" in entity
                }
                if previous is None:
                    callback(RemoteChange(entity_type, list(current.values()), snapshot=True))
                else:
                    changed = [
                        entity
                        for key, entity in current.items()
                        if previous.get(key) != entity
                    ]
                    deleted = [key for key in previous if key not in current]
                    if changed or deleted:
                        callback(RemoteChange(entity_type, changed, deleted))
                previous = current

            await asyncio.sleep(self.poll_interval)
