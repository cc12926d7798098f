"""End-to-end tests for HelpdeskService against in-memory fakes."""

import asyncio
import copy
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from helpdesk_sync.errors import (
    EntityNotFoundError,
    HelpdeskError,
    InvalidChangeError,
    MutationRejectedError,
    OwnAccountError,
    RemoteRejectedError,
)
from helpdesk_sync.notify.types import DeliveryErrorClass, DeliveryResult
from helpdesk_sync.service import build_service
from helpdesk_sync.sync.remote import HttpRemoteStore
from helpdesk_sync.sync.types import MutationKind
from helpdesk_sync.types import EntityType, TicketStatus, is_temp_id

from conftest import ADMIN, REQUESTER, TECH

TICKET = {
    "id": "T-1",
    "requester_id": "U-req",
    "description": "VPN down",
    "status": "Open",
    "priority": "Medium",
    "cc": "boss@example.com",
    "notes": "",
    "date_created": "2024-01-01T00:00:00+00:00",
}


async def go_online(service) -> None:
    await service.reconciler.monitor.check()
    await service.settle()


class TestCreateTicket:
    """Ticket creation while offline and online."""

    @pytest.mark.asyncio
    async def test_offline_create_is_visible_then_rekeyed(self, service, store, transport):
        store.reachable = False
        await service.start()
        await service.settle()

        ticket = await service.create_ticket(
            "U-req", "U-req", description="Printer jam", priority="Urgent"
        )

        assert is_temp_id(ticket.id)
        visible = service.get_ticket(ticket.id)
        assert visible.description == "Printer jam"
        assert visible.sla_due_at is not None
        assert transport.sent == []
        assert len(await service.list_pending()) == 1

        store.reachable = True
        await go_online(service)

        [remote_id] = store.collections[EntityType.TICKETS]
        assert service.reconciler.resolve_id(ticket.id) == remote_id
        assert service.get_ticket(ticket.id).id == remote_id
        assert await service.list_pending() == []

        # Creation notifications carry the remote id
        assert sorted(transport.recipients) == ["admin@example.com", "rita@example.com"]
        assert all(f"#{remote_id}" in subject for _, subject, _ in transport.sent)
        await service.stop()

    @pytest.mark.asyncio
    async def test_create_with_wait_returns_remote_ticket(self, service, store, transport):
        await service.start()
        await go_online(service)

        ticket = await service.create_ticket(
            "U-req", "U-req", description="Mouse", wait=True, timeout=1.0
        )

        assert not is_temp_id(ticket.id)
        await service.settle()
        assert len(transport.sent) == 2
        await service.stop()

    @pytest.mark.asyncio
    async def test_invalid_priority(self, service):
        with pytest.raises(InvalidChangeError) as exc_info:
            await service.create_ticket("U-req", "U-req", priority="Whenever")
        assert exc_info.value.field == "priority"

    @pytest.mark.asyncio
    async def test_rejected_create_with_wait_raises(self, service, store, transport):
        await service.start()
        await go_online(service)
        original_apply = store.apply_mutation

        async def reject_creates(entity_type, mutation):
            if mutation.kind == MutationKind.CREATE:
                raise RemoteRejectedError("description required", 400)
            return await original_apply(entity_type, mutation)

        store.apply_mutation = reject_creates

        with pytest.raises(MutationRejectedError):
            await service.create_ticket("U-req", "U-req", wait=True, timeout=1.0)

        assert len(await service.list_fatal()) == 1
        assert transport.sent == []
        await service.stop()


class TestUpdateTicket:
    """Updates, collapse and notifications."""

    @pytest.mark.asyncio
    async def test_offline_updates_collapse(self, service, store, transport):
        store.seed(EntityType.TICKETS, TICKET)
        store.reachable = False
        await service.start()
        await service.settle()

        first = await service.update_ticket("T-1", {"status": "In Progress"}, "U-admin")
        second = await service.update_ticket("T-1", {"notes": "rebooted router"}, "U-admin")

        assert first.mutation_id == second.mutation_id
        [pending] = await service.list_pending()
        assert pending.payload["status"] == "In Progress"
        assert pending.payload["notes"] == "rebooted router"
        assert len(pending.payload["history"]) == 2

        store.reachable = True
        await go_online(service)

        remote = store.collections[EntityType.TICKETS]["T-1"]
        assert remote["status"] == "In Progress"
        assert remote["notes"] == "rebooted router"
        assert len(store.applied) == 1
        await service.stop()

    @pytest.mark.asyncio
    async def test_no_change_queues_nothing(self, service, store):
        store.seed(EntityType.TICKETS, TICKET)
        await service.start()
        await service.settle()

        update = await service.update_ticket("T-1", {"status": "Open"}, "U-admin")

        assert not update.changed
        assert update.mutation_id is None
        assert await service.list_pending() == []
        await service.stop()

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_resolution(
        self, service, store, transport
    ):
        store.seed(EntityType.TICKETS, TICKET)
        transport.default = DeliveryResult.failed("The Public Key is invalid")
        await service.start()
        await go_online(service)

        update = await service.update_ticket(
            "T-1", {"status": "Resolved"}, "U-admin", wait=True, timeout=1.0
        )

        assert update.after.status == TicketStatus.RESOLVED
        assert store.collections[EntityType.TICKETS]["T-1"]["status"] == "Resolved"

        await service.settle()
        failures = service.get_notification_failures()
        assert {f.recipient for f in failures} == {"rita@example.com", "admin@example.com"}
        assert all(f.error_class == DeliveryErrorClass.CONFIG_ERROR for f in failures)
        user_failure = next(f for f in failures if f.recipient == "rita@example.com")
        assert user_failure.fallback.cc == "boss@example.com"

        assert service.dismiss_notification_failure(user_failure.id)
        assert len(service.get_notification_failures()) == 1
        await service.stop()

    @pytest.mark.asyncio
    async def test_assignment_notifies_technician(self, service, store, transport):
        store.seed(EntityType.TICKETS, TICKET)
        await service.start()
        await go_online(service)

        await service.update_ticket("T-1", {"assigned_tech_id": "TECH-1"}, "U-admin")
        await service.settle()

        assert transport.recipients == ["tom@example.com"]
        assert service.get_ticket("T-1").history[-1].change == (
            "Technician changed from Unassigned to Tom Tech."
        )
        await service.stop()

    @pytest.mark.asyncio
    async def test_update_returns_before_delivery(self, service, store, transport):
        store.seed(EntityType.TICKETS, TICKET)
        await service.start()
        await go_online(service)

        released = asyncio.Event()
        send = transport.send

        async def held_send(recipient, subject, body):
            await released.wait()
            return await send(recipient, subject, body)

        transport.send = held_send

        update = await asyncio.wait_for(
            service.update_ticket("T-1", {"assigned_tech_id": "TECH-1"}, "U-admin"),
            timeout=1.0,
        )

        assert update.mutation_id
        assert transport.sent == []

        released.set()
        await service.settle()
        assert transport.recipients == ["tom@example.com"]
        await service.stop()

    @pytest.mark.asyncio
    async def test_stop_finishes_started_deliveries(self, service, store, transport):
        store.seed(EntityType.TICKETS, TICKET)
        transport.results = [DeliveryResult.failed("Service unavailable")]
        service.orchestrator.retry_delay = 0.05
        await service.start()
        await go_online(service)

        await service.update_ticket("T-1", {"assigned_tech_id": "TECH-1"}, "U-admin")
        await service.stop()

        assert transport.recipients == ["tom@example.com", "tom@example.com"]
        assert service.get_notification_failures() == []

    @pytest.mark.asyncio
    async def test_unknown_ticket(self, service):
        await service.start()
        with pytest.raises(EntityNotFoundError):
            await service.update_ticket("T-404", {"status": "Resolved"}, "U-admin")
        await service.stop()


class TestChatAndDelete:
    """Chat messages and deletes."""

    @pytest.mark.asyncio
    async def test_chat_uses_sender_name(self, service, store):
        store.seed(EntityType.TICKETS, TICKET)
        await service.start()
        await service.settle()

        await service.add_chat_message("T-1", "TECH-1", "On my way")

        [message] = service.get_ticket("T-1").chat_history
        assert message.sender_name == "Tom Tech"
        await service.stop()

    @pytest.mark.asyncio
    async def test_delete(self, service, store):
        store.seed(EntityType.TICKETS, TICKET)
        await service.start()
        await go_online(service)

        await service.delete_ticket("T-1", "U-admin")
        await service.settle()

        assert "T-1" not in store.collections[EntityType.TICKETS]
        with pytest.raises(EntityNotFoundError):
            service.get_ticket("T-1")
        await service.stop()


class TestUsers:
    """User creation and validation."""

    @pytest.mark.asyncio
    async def test_update_user_rejects_unknown_fields(self, service):
        await service.start()
        await service.settle()

        with pytest.raises(InvalidChangeError) as exc_info:
            await service.update_user("U-req", {"shoe_size": 44}, "U-admin")
        assert exc_info.value.field == "shoe_size"

        with pytest.raises(InvalidChangeError):
            await service.update_user("U-req", {"id": "U-other"}, "U-admin")

        with pytest.raises(InvalidChangeError) as exc_info:
            await service.update_user("U-req", {"role": "overlord"}, "U-admin")
        assert exc_info.value.field == "role"
        await service.stop()

    @pytest.mark.asyncio
    async def test_update_user_sends_only_changed_fields(self, service):
        await service.start()
        await service.settle()

        mutation_id = await service.update_user(
            "U-req", {"name": "Rita User", "role": "technician"}, "U-admin"
        )

        [pending] = await service.list_pending()
        assert pending.id == mutation_id
        assert pending.payload == {"role": "technician"}
        assert await service.update_user("U-req", {"role": "technician"}, "U-admin") is None
        await service.stop()

    @pytest.mark.asyncio
    async def test_create_user(self, service):
        await service.start()
        await service.settle()

        user = await service.create_user("Nia", "nia@example.com", "U-admin")

        assert is_temp_id(user.id)
        assert service.get_user(user.id).email == "nia@example.com"
        with pytest.raises(InvalidChangeError):
            await service.create_user("Nia", "nia@example.com", "U-admin", role="overlord")
        await service.stop()

    @pytest.mark.asyncio
    async def test_delete_user(self, service, store):
        await service.start()
        await go_online(service)

        with pytest.raises(OwnAccountError):
            await service.delete_user("U-admin", "U-admin")
        with pytest.raises(EntityNotFoundError):
            await service.delete_user("U-404", "U-admin")

        await service.delete_user("U-req", "U-admin")
        await service.settle()

        assert "U-req" not in store.collections[EntityType.USERS]
        assert [u.id for u in service.list_users()] == ["U-admin"]
        await service.stop()


class TestTechnicians:
    """Technician create, update and delete."""

    @pytest.mark.asyncio
    async def test_create_update_delete(self, service, store):
        await service.start()
        await service.settle()

        tech = await service.create_technician("Tina Tech", "tina@example.com", "U-admin")
        assert is_temp_id(tech.id)
        assert service.get_technician(tech.id).name == "Tina Tech"

        await go_online(service)
        remote_id = service.reconciler.resolve_id(tech.id)
        assert store.collections[EntityType.TECHNICIANS][remote_id]["email"] == "tina@example.com"

        assert await service.update_technician(remote_id, {"name": "Tina T."}, "U-admin")
        assert await service.update_technician(remote_id, {"name": "Tina T."}, "U-admin") is None
        await service.settle()
        assert store.collections[EntityType.TECHNICIANS][remote_id]["name"] == "Tina T."

        await service.delete_technician(remote_id, "U-admin")
        await service.settle()
        assert remote_id not in store.collections[EntityType.TECHNICIANS]
        with pytest.raises(EntityNotFoundError):
            service.get_technician(remote_id)
        await service.stop()

    @pytest.mark.asyncio
    async def test_update_technician_rejects_unknown_fields(self, service):
        await service.start()
        await service.settle()

        with pytest.raises(InvalidChangeError) as exc_info:
            await service.update_technician("TECH-1", {"phone_number": "555"}, "U-admin")
        assert exc_info.value.field == "phone_number"
        with pytest.raises(EntityNotFoundError):
            await service.update_technician("TECH-404", {"name": "x"}, "U-admin")
        await service.stop()


class MergePatchServer:
    """REST store whose PATCH replaces every field it is given."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict]] = {
            entity_type.value: {} for entity_type in EntityType
        }

    def seed(self, entity_type: EntityType, *entities: dict) -> None:
        for entity in entities:
            self.collections[entity_type.value][entity["id"]] = copy.deepcopy(entity)

    def handler(self, request: httpx.Request) -> httpx.Response:
        _, collection, *rest = request.url.path.split("/")
        if collection == "health":
            return httpx.Response(200)
        items = self.collections[collection]
        if request.method == "GET":
            return httpx.Response(200, json=list(items.values()))
        if request.method == "PATCH":
            items[rest[0]].update(json.loads(request.content))
            return httpx.Response(200, json=items[rest[0]])
        return httpx.Response(405)


class TestRestStore:
    """Against a REST store with merge-patch semantics."""

    @pytest.mark.asyncio
    async def test_history_survives_field_replacing_patch(self, settings, transport, db_path):
        server = MergePatchServer()
        server.seed(EntityType.USERS, ADMIN, REQUESTER)
        server.seed(EntityType.TECHNICIANS, TECH)
        server.seed(EntityType.TICKETS, {
            **TICKET,
            "history": [{
                "id": "HIST-1",
                "ticket_id": "T-1",
                "user_id": "U-req",
                "change": "Ticket created.",
                "timestamp": "2024-01-01T00:00:00+00:00",
            }],
        })
        http = httpx.AsyncClient(
            base_url="http://store.test", transport=httpx.MockTransport(server.handler)
        )
        service = build_service(
            settings, HttpRemoteStore(http=http, poll_interval=0.01), transport, db_path=db_path
        )
        service.orchestrator.retry_delay = 0
        await service.start()
        for _ in range(100):
            if service.reconciler.get_entity(EntityType.TICKETS, "T-1"):
                break
            await asyncio.sleep(0.01)
        await go_online(service)

        await service.update_ticket(
            "T-1", {"status": "In Progress"}, "U-admin", wait=True, timeout=1.0
        )
        # Let the poller deliver the stored ticket back as a push
        await asyncio.sleep(0.1)
        await service.settle()

        stored = server.collections["tickets"]["T-1"]
        assert [h["id"] for h in stored["history"]][0] == "HIST-1"
        assert len(stored["history"]) == 2
        assert len(service.get_ticket("T-1").history) == 2
        await service.stop()
        await http.aclose()


class TestQueueRemediation:
    """Fatal mutations can be discarded or retried."""

    @pytest.mark.asyncio
    async def test_discard_and_retry(self, service, store):
        store.seed(EntityType.TICKETS, TICKET)
        store.reject["T-1"] = "locked"
        await service.start()
        await go_online(service)

        first = await service.update_ticket("T-1", {"notes": "a"}, "U-admin")
        await service.settle()
        [fatal] = await service.list_fatal()
        assert fatal.id == first.mutation_id
        assert service.get_ticket("T-1").notes == ""

        del store.reject["T-1"]
        await service.retry_mutation(fatal.id)
        await service.settle()
        assert store.collections[EntityType.TICKETS]["T-1"]["notes"] == "a"

        store.reject["T-1"] = "locked"
        second = await service.update_ticket("T-1", {"notes": "b"}, "U-admin")
        await service.settle()
        await service.discard_mutation(second.mutation_id, "U-admin")
        assert await service.list_fatal() == []

        events = await service.get_audit_events("T-1")
        assert events[0].event_type == "discarded"
        await service.stop()


class TestMisc:
    """Views, summaries and wiring."""

    @pytest.mark.asyncio
    async def test_materialized_view_subscription(self, service, store):
        store.seed(EntityType.TICKETS, TICKET)
        await service.start()
        await service.settle()

        snapshot, subscribe = service.get_materialized_view(EntityType.TICKETS)
        seen = []
        unsubscribe = subscribe(seen.append)

        await service.update_ticket("T-1", {"notes": "x"}, "U-admin")
        unsubscribe()
        await service.update_ticket("T-1", {"notes": "y"}, "U-admin")

        assert list(snapshot) == ["T-1"]
        assert [s["T-1"]["notes"] for s in seen] == ["", "x"]
        await service.stop()

    @pytest.mark.asyncio
    async def test_summarize_ticket(self, settings, store, transport, db_path):
        store.seed(EntityType.TICKETS, TICKET)
        summarizer = AsyncMock()
        summarizer.summarize.return_value = "VPN outage, waiting on ISP"
        service = build_service(settings, store, transport, db_path=db_path, summarizer=summarizer)
        await service.start()
        await service.settle()

        assert await service.summarize_ticket("T-1") == "VPN outage, waiting on ISP"
        assert summarizer.summarize.await_args.args[0].id == "T-1"
        await service.stop()

    @pytest.mark.asyncio
    async def test_summarize_without_summarizer(self, service, store):
        store.seed(EntityType.TICKETS, TICKET)
        await service.start()
        await service.settle()

        with pytest.raises(HelpdeskError):
            await service.summarize_ticket("T-1")
        await service.stop()

    @pytest.mark.asyncio
    async def test_stop_drops_notifications_for_unconfirmed_tickets(
        self, service, store, transport
    ):
        store.reachable = False
        await service.start()
        await service.settle()

        await service.create_ticket("U-req", "U-req", description="x")
        await asyncio.sleep(0)
        await service.stop()

        assert transport.sent == []
        assert len(await service.list_pending()) == 1
