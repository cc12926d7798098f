"""Tests for NotificationOrchestrator dispatch and failure handling."""

import pytest

from conftest import FakeTransport
from helpdesk_sync.audit import SyncAuditor
from helpdesk_sync.lifecycle.engine import NotificationKind
from helpdesk_sync.notify.orchestrator import NotificationOrchestrator
from helpdesk_sync.notify.types import DeliveryErrorClass, DeliveryResult
from helpdesk_sync.types import Role, Technician, Ticket, TicketStatus, User, UserStatus

TICKET = Ticket(
    id="T-1",
    requester_id="U-1",
    description="VPN down",
    department="IT",
    status=TicketStatus.RESOLVED,
    cc="boss@example.com",
)
REQUESTER = User(id="U-1", name="Rita", email="rita@example.com")
ADMINS = [
    User(id="U-2", name="Ada", email="ada@example.com", role=Role.ADMIN),
    User(
        id="U-3",
        name="Old Admin",
        email="old@example.com",
        role=Role.ADMIN,
        status=UserStatus.INACTIVE,
    ),
    User(id="U-4", name="Bob", email="bob@example.com"),
]
TECH = Technician(id="TECH-1", name="Tom", email="tom@example.com")


def make_orchestrator(transport, **kwargs) -> NotificationOrchestrator:
    kwargs.setdefault("retry_delay_seconds", 0)
    return NotificationOrchestrator(transport, **kwargs)


class TestBuildIntents:
    """Recipient resolution."""

    def test_admin_intents_go_to_active_admins_only(self):
        orchestrator = make_orchestrator(FakeTransport())

        intents = orchestrator.build_intents(
            [NotificationKind.RESOLVED_ADMIN], TICKET, REQUESTER, ADMINS[0], admins=ADMINS
        )

        assert [i.recipient for i in intents] == ["ada@example.com"]
        assert intents[0].fallback.cc == "rita@example.com"

    def test_assignment_needs_a_technician(self):
        orchestrator = make_orchestrator(FakeTransport())

        assert orchestrator.build_intents([NotificationKind.ASSIGNMENT], TICKET, REQUESTER) == []
        intents = orchestrator.build_intents(
            [NotificationKind.ASSIGNMENT], TICKET, REQUESTER, ADMINS[0], technician=TECH
        )
        assert intents[0].recipient == "tom@example.com"
        assert "Tom" in intents[0].body

    def test_disabled_kinds_are_skipped(self):
        orchestrator = make_orchestrator(
            FakeTransport(), enabled=[NotificationKind.RESOLVED]
        )

        intents = orchestrator.build_intents(
            [NotificationKind.RESOLVED, NotificationKind.RESOLVED_ADMIN],
            TICKET,
            REQUESTER,
            admins=ADMINS,
        )

        assert [i.kind for i in intents] == [NotificationKind.RESOLVED]


class TestNotify:
    """Delivery, retries and recorded failures."""

    @pytest.mark.asyncio
    async def test_all_delivered(self):
        transport = FakeTransport()
        orchestrator = make_orchestrator(transport)

        failures = await orchestrator.notify(
            [NotificationKind.RESOLVED, NotificationKind.RESOLVED_ADMIN],
            TICKET,
            REQUESTER,
            ADMINS[0],
            admins=ADMINS,
        )

        assert failures == []
        assert sorted(transport.recipients) == ["ada@example.com", "rita@example.com"]
        assert orchestrator.get_notification_failures() == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        transport = FakeTransport([DeliveryResult.failed("socket hang up")])
        orchestrator = make_orchestrator(transport, attempts=3)

        failures = await orchestrator.notify([NotificationKind.RESOLVED], TICKET, REQUESTER)

        assert failures == []
        assert len(transport.sent) == 2

    @pytest.mark.asyncio
    async def test_transient_failure_gives_up_after_attempts(self):
        transport = FakeTransport()
        transport.default = DeliveryResult.failed("socket hang up", error_code="timeout")
        orchestrator = make_orchestrator(transport, attempts=3)

        failures = await orchestrator.notify([NotificationKind.RESOLVED], TICKET, REQUESTER)

        assert len(transport.sent) == 3
        assert failures[0].attempts == 3
        assert failures[0].error_class == DeliveryErrorClass.TRANSIENT

    @pytest.mark.asyncio
    async def test_config_error_is_not_retried(self):
        transport = FakeTransport()
        transport.default = DeliveryResult.failed("The Public Key is invalid")
        orchestrator = make_orchestrator(transport, attempts=3)

        failures = await orchestrator.notify([NotificationKind.RESOLVED], TICKET, REQUESTER)

        assert len(transport.sent) == 1
        failure = failures[0]
        assert failure.error_class == DeliveryErrorClass.CONFIG_ERROR
        assert failure.reason == "The EmailJS public key appears to be incorrect."
        assert failure.fallback.to == "rita@example.com"
        assert failure.fallback.mailto.startswith("mailto:rita%40example.com")

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self):
        transport = FakeTransport()
        orchestrator = make_orchestrator(transport, attempts=1)

        async def send(recipient, subject, body):
            transport.sent.append((recipient, subject, body))
            if recipient == "ada@example.com":
                return DeliveryResult.failed("Service has been blocked")
            return DeliveryResult.ok()

        transport.send = send

        failures = await orchestrator.notify(
            [NotificationKind.RESOLVED, NotificationKind.RESOLVED_ADMIN],
            TICKET,
            REQUESTER,
            admins=ADMINS,
        )

        assert len(transport.sent) == 2
        assert [f.recipient for f in failures] == ["ada@example.com"]
        assert failures[0].error_class == DeliveryErrorClass.REJECTED

    @pytest.mark.asyncio
    async def test_transport_exception_becomes_failure(self):
        transport = FakeTransport()

        async def send(recipient, subject, body):
            raise ConnectionError("boom")

        transport.send = send
        orchestrator = make_orchestrator(transport, attempts=1)

        failures = await orchestrator.notify([NotificationKind.RESOLVED], TICKET, REQUESTER)

        assert len(failures) == 1
        assert "ConnectionError: boom" in failures[0].reason

    @pytest.mark.asyncio
    async def test_failures_are_kept_until_dismissed(self, tmp_path):
        transport = FakeTransport()
        transport.default = DeliveryResult.failed("not configured", error_code="not_configured")
        auditor = SyncAuditor(tmp_path / "audit.db")
        orchestrator = make_orchestrator(transport, auditor=auditor)

        await orchestrator.notify([NotificationKind.RESOLVED], TICKET, REQUESTER)

        [failure] = orchestrator.get_notification_failures()
        events = await auditor.get_events(event_type="notification_failed")
        assert events[0].entity_id == "T-1"
        assert events[0].event_data["intent"] == "resolved"

        assert orchestrator.dismiss_failure(failure.id) is True
        assert orchestrator.dismiss_failure(failure.id) is False
        assert orchestrator.get_notification_failures() == []
