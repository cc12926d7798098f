"""
Notification data structures.

- DeliveryResult: outcome of one send() call on a delivery transport
- DeliveryErrorClass: config_error / rejected / transient
- ManualFallback: pre-addressed message an operator can send by hand
- NotificationIntent: one message the orchestrator intends to deliver
- NotificationFailure: structured descriptor of an intent that failed
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from urllib.parse import quote

from helpdesk_sync.lifecycle.engine import NotificationKind
from helpdesk_sync.types import utcnow

# Characters encodeURIComponent leaves alone besides alphanumerics and -_.
_MAILTO_SAFE = "!~*'()"


class DeliveryErrorClass(str, Enum):
    """Classification of a failed delivery."""

    CONFIG_ERROR = "config_error"
    """Credentials or template are wrong; retrying cannot help."""

    REJECTED = "rejected"
    """Provider refused this message (blocked, bad recipient)."""

    TRANSIENT = "transient"
    """Network or provider hiccup; worth retrying."""


@dataclass
class DeliveryResult:
    """
    Result of a send() call.

    Attributes:
        success: Whether the provider accepted the message
        error: Opaque provider error text
        error_code: Structured error code when the transport can supply one
    """

    success: bool
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str, error_code: str | None = None) -> "DeliveryResult":
        return cls(success=False, error=error, error_code=error_code)


@dataclass
class ManualFallback:
    """A pre-built message for manual resend, with a ready mailto: link."""

    to: str
    subject: str
    body: str
    cc: str | None = None

    @property
    def mailto(self) -> str:
        parts = []
        if self.cc:
            parts.append(f"cc={quote(self.cc, safe=_MAILTO_SAFE)}")
        if self.subject:
            parts.append(f"subject={quote(self.subject, safe=_MAILTO_SAFE)}")
        if self.body:
            parts.append(f"body={quote(self.body, safe=_MAILTO_SAFE)}")
        return f"mailto:{quote(self.to, safe=_MAILTO_SAFE)}?{'&'.join(parts)}"


@dataclass
class NotificationIntent:
    """One message to deliver for a ticket transition."""

    kind: NotificationKind
    ticket_id: str
    recipient: str
    recipient_name: str
    subject: str
    body: str
    fallback: ManualFallback


@dataclass
class NotificationFailure:
    """
    Descriptor of a notification that could not be delivered.

    Attributes:
        id: Failure id (used to dismiss it)
        kind: Intent that failed
        ticket_id: Ticket the notification was about
        recipient: Intended recipient address
        reason: Human-readable explanation
        error_class: Classification of the delivery error
        fallback: Message to send by hand
        attempts: Delivery attempts made
        occurred_at: When the last attempt failed
    """

    kind: NotificationKind
    ticket_id: str
    recipient: str
    reason: str
    error_class: DeliveryErrorClass
    fallback: ManualFallback
    attempts: int = 1
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    occurred_at: datetime = field(default_factory=utcnow)
