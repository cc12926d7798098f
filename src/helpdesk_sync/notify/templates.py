"""
Email templates and manual fallbacks.

Templates use {path.to.value} placeholders resolved against a context of
JSON-form entities, e.g. {ticket.id}, {user.name}, {resolver.name}.
Missing values render as an empty string, except ticket.notes and
ticket.description which have readable defaults. A path that walks
through a missing object is left untouched.

Manual fallbacks are plain-text messages addressed to the same recipient,
offered to an operator when automated delivery fails.
"""

import re
from dataclasses import dataclass
from typing import Any

from helpdesk_sync.lifecycle.engine import NotificationKind
from helpdesk_sync.notify.types import ManualFallback
from helpdesk_sync.types import Technician, Ticket, User

PLACEHOLDER = re.compile(r"\{([^{}]+)\}")

MISSING_DEFAULTS = {
    "ticket.notes": "No notes were provided.",
    "ticket.description": "(No description)",
}


@dataclass
class EmailTemplate:
    subject: str
    body: str


DETAILS = (
    "<div class='ticket-details'>"
    "<p><strong>Ticket:</strong> #{ticket.id}</p>"
    "<p><strong>Department:</strong> {ticket.department}</p>"
    "<p><strong>Priority:</strong> {ticket.priority}</p>"
    "<p><strong>Status:</strong> {ticket.status}</p>"
    "<p><strong>Description:</strong> {ticket.description}</p>"
    "</div>"
)

DEFAULT_TEMPLATES: dict[NotificationKind, EmailTemplate] = {
    NotificationKind.CREATED: EmailTemplate(
        subject="We received your ticket #{ticket.id}",
        body="<h2>Hi {user.name},</h2><p>Your ticket has been created.</p>" + DETAILS,
    ),
    NotificationKind.CREATED_ADMIN: EmailTemplate(
        subject="New ticket #{ticket.id} from {user.name}",
        body="<h2>Hi {admin.name},</h2><p>{user.name} opened a new ticket.</p>" + DETAILS,
    ),
    NotificationKind.ASSIGNMENT: EmailTemplate(
        subject="Ticket #{ticket.id} has been assigned to you",
        body=(
            "<h2>Hi {tech.name},</h2>"
            "<p>{assigner.name} assigned you a ticket from {user.name}.</p>" + DETAILS
        ),
    ),
    NotificationKind.RESOLVED: EmailTemplate(
        subject="Your ticket #{ticket.id} has been resolved",
        body=(
            "<h2>Hi {user.name},</h2><p>{resolver.name} resolved your ticket.</p>"
            + DETAILS
            + "<p><strong>Resolution notes:</strong> {ticket.notes}</p>"
        ),
    ),
    NotificationKind.RESOLVED_ADMIN: EmailTemplate(
        subject="Ticket #{ticket.id} resolved by {resolver.name}",
        body=(
            "<h2>Hi {admin.name},</h2>"
            "<p>{resolver.name} resolved the ticket raised by {user.name}.</p>"
            + DETAILS
            + "<p><strong>Resolution notes:</strong> {ticket.notes}</p>"
        ),
    ),
    NotificationKind.STATUS_CHANGED: EmailTemplate(
        subject="Ticket #{ticket.id} is now {ticket.status}",
        body=(
            "<h2>Hi {user.name},</h2><p>{updater.name} updated your ticket.</p>"
            + DETAILS
            + "<p><strong>Notes:</strong> {ticket.notes}</p>"
        ),
    ),
}

HTML_WRAPPER = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>{title}</title></head>
<body>
<div class="container">
<div class="header"><h1>{title}</h1></div>
<div class="content">{content}</div>
</div>
</body>
</html>
"""


def process_template(template: str, context: dict[str, Any]) -> str:
    """Replace {a.b} placeholders with values from `context`."""

    def substitute(match: re.Match) -> str:
        key = match.group(1).strip()
        value: Any = context
        for part in key.split("."):
            if not isinstance(value, dict):
                return match.group(0)
            value = value.get(part)
        if value is None or value == "":
            return MISSING_DEFAULTS.get(key, "")
        return str(value)

    return PLACEHOLDER.sub(substitute, template)


def wrap_html(title: str, content: str) -> str:
    return HTML_WRAPPER.format(title=title, content=content)


def render(
    kind: NotificationKind,
    context: dict[str, Any],
    templates: dict[NotificationKind, EmailTemplate] | None = None,
) -> tuple[str, str]:
    """
    Render the subject and HTML body of an intent.

    Returns:
        (subject, body)
    """
    template = (templates or DEFAULT_TEMPLATES).get(kind, DEFAULT_TEMPLATES[kind])
    title = "Help Desk | Admin Alert" if kind in (
        NotificationKind.CREATED_ADMIN, NotificationKind.RESOLVED_ADMIN
    ) else "Help Desk"
    subject = process_template(template.subject, context)
    body = wrap_html(title, process_template(template.body, context))
    return subject, body


def build_fallback(
    kind: NotificationKind,
    ticket: Ticket,
    recipient: User | Technician,
    requester: User | None = None,
) -> ManualFallback:
    """
    Pre-address a plain-text message for manual resend.

    Requester-facing messages copy the ticket's cc address; admin alerts
    for new tickets copy the requester.
    """
    requester_line = (
        f"User: {requester.name} ({requester.email})\n" if requester is not None else ""
    )
    details = (
        "--- Ticket Details ---\n"
        f"ID: {ticket.id}\n"
        f"{requester_line}"
        f"Priority: {ticket.priority.value}\n"
        f"Description: {ticket.description or '(No description)'}\n"
        "---------------------\n"
    )
    footer = "\nThis email was generated because the automated notification system failed."

    if kind == NotificationKind.CREATED:
        return ManualFallback(
            to=recipient.email,
            cc=ticket.cc,
            subject=f"[Manual] Ticket Received: #{ticket.id}",
            body=(
                f"Hi {recipient.name},\n\nThis is a manual notification that your "
                f"support ticket has been received.\n\n{details}{footer}\n\n"
                "Regards,\nHelp Desk Team"
            ),
        )
    if kind == NotificationKind.CREATED_ADMIN:
        return ManualFallback(
            to=recipient.email,
            cc=requester.email if requester is not None else None,
            subject=f"[Manual] New Ticket Created: #{ticket.id}",
            body=(
                "Hello,\n\nThis is a manual notification for a new support ticket.\n\n"
                f"Department: {ticket.department}\n{details}{footer} "
                "Please review the ticket in the help desk system."
            ),
        )
    if kind == NotificationKind.ASSIGNMENT:
        return ManualFallback(
            to=recipient.email,
            subject=f"[Manual] Ticket Assigned: #{ticket.id}",
            body=(
                f"Hi {recipient.name},\n\nThis is a manual notification that a ticket "
                f"has been assigned to you.\n\n{details}{footer} "
                "Please review the ticket in the help desk system."
            ),
        )
    if kind in (NotificationKind.RESOLVED, NotificationKind.RESOLVED_ADMIN):
        return ManualFallback(
            to=recipient.email,
            cc=ticket.cc if kind == NotificationKind.RESOLVED else None,
            subject=f"[Manual] Ticket Resolved: #{ticket.id}",
            body=(
                f"Hi {recipient.name},\n\nThis is a manual notification that support "
                f"ticket #{ticket.id} has been resolved.\n\n{details}\n"
                f"Resolution Notes:\n"
                f"{ticket.notes or 'The issue has been addressed by our team.'}\n"
                f"{footer}\n\nRegards,\nHelp Desk Team"
            ),
        )
    return ManualFallback(
        to=recipient.email,
        cc=ticket.cc,
        subject=f"[Manual] Ticket Updated: #{ticket.id}",
        body=(
            f"Hi {recipient.name},\n\nThis is a manual notification that support "
            f"ticket #{ticket.id} has been updated.\n\nThe new status is: "
            f"{ticket.status.value}\n\n{details}\nUpdated Notes:\n"
            f"{ticket.notes or 'No new notes were added.'}\n{footer}\n\n"
            "Regards,\nHelp Desk Team"
        ),
    )
