"""Tests for email template rendering and manual fallbacks."""

from urllib.parse import unquote

from helpdesk_sync.lifecycle.engine import NotificationKind
from helpdesk_sync.notify.templates import (
    EmailTemplate,
    build_fallback,
    process_template,
    render,
)
from helpdesk_sync.types import Technician, Ticket, TicketStatus, User


def make_ticket(**fields) -> Ticket:
    return Ticket(
        id="T-7",
        requester_id="U-1",
        description="Laptop won't boot",
        department="IT",
        cc="boss@example.com",
        **fields,
    )


REQUESTER = User(id="U-1", name="Rita", email="rita@example.com")
ADMIN = User(id="U-2", name="Ada", email="ada@example.com", role="admin")
TECH = Technician(id="TECH-1", name="Tom", email="tom@example.com")


class TestProcessTemplate:
    """Placeholder substitution."""

    def test_nested_paths(self):
        context = {"ticket": {"id": "T-7"}, "user": {"name": "Rita"}}
        assert process_template("#{ticket.id} for {user.name}", context) == "#T-7 for Rita"

    def test_missing_notes_and_description_have_defaults(self):
        context = {"ticket": {"notes": "", "description": None}}
        assert process_template("{ticket.notes}", context) == "No notes were provided."
        assert process_template("{ticket.description}", context) == "(No description)"

    def test_other_missing_values_render_empty(self):
        assert process_template("[{ticket.cc}]", {"ticket": {}}) == "[]"

    def test_path_through_missing_object_is_kept(self):
        assert process_template("{tech.name}", {"tech": None}) == "{tech.name}"
        assert process_template("{ticket.id.x}", {"ticket": {"id": "T-7"}}) == "{ticket.id.x}"


class TestRender:
    """Subject and body rendering per intent."""

    def test_resolved_message(self):
        ticket = make_ticket(status=TicketStatus.RESOLVED)
        context = {
            "ticket": ticket.model_dump(mode="json"),
            "user": REQUESTER.model_dump(mode="json"),
            "resolver": ADMIN.model_dump(mode="json"),
        }

        subject, body = render(NotificationKind.RESOLVED, context)

        assert subject == "Your ticket #T-7 has been resolved"
        assert "Ada resolved your ticket" in body
        assert "No notes were provided." in body
        assert body.startswith("<!DOCTYPE html>")

    def test_template_override(self):
        templates = {NotificationKind.CREATED: EmailTemplate("Got {ticket.id}", "ok")}
        subject, _ = render(
            NotificationKind.CREATED, {"ticket": {"id": "T-7"}}, templates=templates
        )
        assert subject == "Got T-7"

    def test_override_falls_back_for_other_kinds(self):
        templates = {NotificationKind.CREATED: EmailTemplate("x", "y")}
        subject, _ = render(
            NotificationKind.ASSIGNMENT, {"ticket": {"id": "T-7"}}, templates=templates
        )
        assert subject == "Ticket #T-7 has been assigned to you"


class TestBuildFallback:
    """Manual fallback messages."""

    def test_resolved_fallback_copies_cc(self):
        fallback = build_fallback(NotificationKind.RESOLVED, make_ticket(), REQUESTER, REQUESTER)

        assert fallback.to == "rita@example.com"
        assert fallback.cc == "boss@example.com"
        assert fallback.subject == "[Manual] Ticket Resolved: #T-7"
        assert "The issue has been addressed by our team." in fallback.body

    def test_admin_creation_fallback_copies_requester(self):
        fallback = build_fallback(
            NotificationKind.CREATED_ADMIN, make_ticket(), ADMIN, REQUESTER
        )
        assert fallback.to == "ada@example.com"
        assert fallback.cc == "rita@example.com"
        assert fallback.subject == "[Manual] New Ticket Created: #T-7"

    def test_assignment_fallback_has_no_cc(self):
        fallback = build_fallback(NotificationKind.ASSIGNMENT, make_ticket(), TECH, REQUESTER)
        assert fallback.cc is None
        assert fallback.subject == "[Manual] Ticket Assigned: #T-7"

    def test_mailto_is_encoded(self):
        fallback = build_fallback(NotificationKind.STATUS_CHANGED, make_ticket(), REQUESTER)

        mailto = fallback.mailto

        assert mailto.startswith("mailto:rita%40example.com?cc=boss%40example.com&subject=")
        assert " " not in mailto
        subject = mailto.split("subject=")[1].split("&")[0]
        assert unquote(subject) == "[Manual] Ticket Updated: #T-7"
