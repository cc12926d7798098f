"""Tests for SLA math."""

from datetime import datetime, timedelta, timezone

from helpdesk_sync.lifecycle.sla import (
    SLA_HOURS,
    derive_ticket_fields,
    is_sla_breached,
    sla_due_at,
)
from helpdesk_sync.types import Priority, Ticket, TicketStatus

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ticket(**fields) -> Ticket:
    return Ticket(id="T-1", requester_id="U-1", date_created=CREATED, **fields)


class TestSlaDueAt:
    """Due date per priority."""

    def test_windows(self):
        assert SLA_HOURS == {
            Priority.URGENT: 4,
            Priority.HIGH: 8,
            Priority.MEDIUM: 24,
            Priority.LOW: 72,
        }

    def test_urgent_due_after_four_hours(self):
        assert sla_due_at(CREATED, Priority.URGENT) == datetime(
            2024, 1, 1, 4, tzinfo=timezone.utc
        )

    def test_accepts_priority_value(self):
        assert sla_due_at(CREATED, "High") == CREATED + timedelta(hours=8)

    def test_unknown_priority_uses_low_window(self):
        assert sla_due_at(CREATED, "Whenever") == CREATED + timedelta(hours=72)

    def test_naive_datetime_treated_as_utc(self):
        naive = datetime(2024, 1, 1)
        assert sla_due_at(naive, Priority.URGENT) == CREATED + timedelta(hours=4)


class TestIsSlaBreached:
    """Breach rules for open and resolved tickets."""

    def test_open_ticket_breached_after_due(self):
        t = ticket(priority=Priority.URGENT)
        assert not is_sla_breached(t, CREATED + timedelta(hours=4))
        assert is_sla_breached(t, CREATED + timedelta(hours=4, seconds=1))

    def test_resolved_late_is_breached(self):
        t = ticket(
            priority=Priority.URGENT,
            status=TicketStatus.RESOLVED,
            date_resolved=datetime(2024, 1, 1, 5, tzinfo=timezone.utc),
        )
        assert is_sla_breached(t, CREATED)

    def test_resolved_in_time_stays_unbreached(self):
        t = ticket(
            priority=Priority.URGENT,
            status=TicketStatus.RESOLVED,
            date_resolved=CREATED + timedelta(hours=1),
        )
        assert not is_sla_breached(t, CREATED + timedelta(days=30))

    def test_frozen_flag_wins_over_dates(self):
        t = ticket(
            priority=Priority.URGENT,
            status=TicketStatus.RESOLVED,
            date_resolved=CREATED + timedelta(hours=1),
            resolution_breached=True,
        )
        assert is_sla_breached(t, CREATED)


class TestDeriveTicketFields:
    """Derive hook used by the tickets view."""

    def test_sets_due_date_and_breach(self):
        value = ticket(priority=Priority.URGENT).model_dump(mode="json")
        derived = derive_ticket_fields(value, now=CREATED + timedelta(hours=5))

        assert derived["sla_due_at"] == "2024-01-01T04:00:00+00:00"
        assert derived["sla_breached"] is True
        assert "sla_due_at" not in value or value["sla_due_at"] is None

    def test_malformed_value_returned_unchanged(self):
        value = {"id": "T-1", "priority": "Urgent"}
        assert derive_ticket_fields(value) == value
