"""Shared fakes and fixtures for helpdesk_sync tests."""

import asyncio
import copy
from pathlib import Path
from typing import Any, Callable

import pytest

from helpdesk_sync.config import Settings
from helpdesk_sync.errors import RemoteRejectedError, RemoteUnreachableError
from helpdesk_sync.notify.types import DeliveryResult
from helpdesk_sync.service import HelpdeskService, build_service
from helpdesk_sync.sync.payload import merge_payload
from helpdesk_sync.sync.types import MutationKind, PendingMutation, RemoteChange
from helpdesk_sync.types import EntityType

ID_PREFIXES = {
    EntityType.TICKETS: "T",
    EntityType.USERS: "U",
    EntityType.TECHNICIANS: "TECH",
}


class FakeRemoteStore:
    """
    In-memory remote store implementing RemoteStoreProtocol.

    Knobs:
        reachable: False makes every call fail as unreachable
        reject: entity id -> rejection reason for mutations of that entity
        unknown_failures: number of upcoming applies that raise RuntimeError
        delay: seconds each apply takes
    """

    def __init__(self) -> None:
        self.collections: dict[EntityType, dict[str, dict[str, Any]]] = {
            entity_type: {} for entity_type in EntityType
        }
        self.reachable = True
        self.reject: dict[str, str] = {}
        self.unknown_failures = 0
        self.delay = 0.0
        self.applied: list[PendingMutation] = []
        self.attempts = 0
        self._subscribers: dict[EntityType, list[Callable[[RemoteChange], None]]] = {
            entity_type: [] for entity_type in EntityType
        }
        self._next_id = 0

    def seed(self, entity_type: EntityType, *entities: dict[str, Any]) -> None:
        for entity in entities:
            self.collections[entity_type][entity["id"]] = copy.deepcopy(entity)

    def push(
        self,
        entity_type: EntityType,
        *entities: dict[str, Any],
        deleted_ids: list[str] | None = None,
    ) -> None:
        """Store the entities and deliver them to subscribers as a live push."""
        self.seed(entity_type, *entities)
        for entity_id in deleted_ids or []:
            self.collections[entity_type].pop(entity_id, None)
        change = RemoteChange(
            entity_type, [copy.deepcopy(e) for e in entities], list(deleted_ids or [])
        )
        for callback in list(self._subscribers[entity_type]):
            callback(change)

    async def apply_mutation(
        self, entity_type: EntityType, mutation: PendingMutation
    ) -> dict[str, Any]:
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.reachable:
            raise RemoteUnreachableError("connection refused")
        if self.unknown_failures:
            self.unknown_failures -= 1
            raise RuntimeError("internal server error")
        if mutation.target_entity_id in self.reject:
            raise RemoteRejectedError(self.reject[mutation.target_entity_id], 400)

        self.applied.append(mutation.model_copy(deep=True))
        collection = self.collections[entity_type]
        if mutation.kind == MutationKind.CREATE:
            entity_id = None
            while entity_id is None or entity_id in collection:
                self._next_id += 1
                entity_id = f"{ID_PREFIXES[entity_type]}-{self._next_id}"
            entity = {**mutation.payload, "id": entity_id}
            collection[entity_id] = entity
        elif mutation.kind == MutationKind.UPDATE:
            entity = merge_payload(
                collection.get(mutation.target_entity_id, {"id": mutation.target_entity_id}),
                mutation.payload,
            )
            collection[mutation.target_entity_id] = entity
        else:
            entity = collection.pop(mutation.target_entity_id, {})
        return copy.deepcopy(entity)

    async def subscribe(
        self, entity_type: EntityType, callback: Callable[[RemoteChange], None]
    ) -> Callable[[], None]:
        subscribers = self._subscribers[entity_type]
        subscribers.append(callback)
        callback(RemoteChange(
            entity_type,
            [copy.deepcopy(e) for e in self.collections[entity_type].values()],
            snapshot=True,
        ))

        def unsubscribe() -> None:
            if callback in subscribers:
                subscribers.remove(callback)

        return unsubscribe

    async def fetch_all(self, entity_type: EntityType) -> list[dict[str, Any]]:
        if not self.reachable:
            raise RemoteUnreachableError("connection refused")
        return [copy.deepcopy(e) for e in self.collections[entity_type].values()]

    async def ping(self) -> bool:
        return self.reachable


class FakeTransport:
    """In-memory DeliveryProtocol; returns queued results, then `default`."""

    def __init__(self, results: list[DeliveryResult] | None = None) -> None:
        self.results = list(results or [])
        self.default = DeliveryResult.ok()
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        self.sent.append((recipient, subject, body))
        if self.results:
            return self.results.pop(0)
        return self.default

    @property
    def recipients(self) -> list[str]:
        return [recipient for recipient, _, _ in self.sent]


ADMIN = {"id": "U-admin", "name": "Ada Admin", "email": "admin@example.com", "role": "admin"}
REQUESTER = {"id": "U-req", "name": "Rita User", "email": "rita@example.com", "role": "user"}
TECH = {"id": "TECH-1", "name": "Tom Tech", "email": "tom@example.com"}


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "helpdesk.db"


@pytest.fixture
def store() -> FakeRemoteStore:
    fake = FakeRemoteStore()
    fake.seed(EntityType.USERS, ADMIN, REQUESTER)
    fake.seed(EntityType.TECHNICIANS, TECH)
    return fake


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        retry_base_seconds=0.01,
        retry_cap_seconds=0.05,
        retry_jitter_fraction=0.0,
        notification_attempts=2,
        apply_timeout_seconds=1.0,
    )


@pytest.fixture
def service(settings, store, transport, db_path) -> HelpdeskService:
    """Service wired to the fakes (not started)."""
    svc = build_service(settings, store, transport, db_path=db_path)
    svc.orchestrator.retry_delay = 0
    return svc
