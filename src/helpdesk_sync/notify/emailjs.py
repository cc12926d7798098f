"""
EmailJS delivery transport.

EmailJsTransport implements DeliveryProtocol against the EmailJS REST API
(POST /api/v1.0/email/send) with an injected httpx.AsyncClient. It never
raises for delivery problems; failures come back as DeliveryResult with
the provider's error text and, where the HTTP layer allows, a structured
error code.
"""

import logging
from dataclasses import dataclass

import httpx

from helpdesk_sync.notify.types import DeliveryResult

logger = logging.getLogger(__name__)

EMAILJS_SEND_URL = "https://api.emailjs.com/api/v1.0/email/send"


@dataclass
class EmailJsTransport:
    """
    EmailJS client with injected httpx client.

    Attributes:
        http: httpx.AsyncClient used for requests
        service_id: EmailJS service id
        public_key: EmailJS public key (sent as user_id)
        template_id: Generic template rendering {subject} and {message}
        url: Send endpoint

    Example:
        async with httpx.AsyncClient(timeout=10.0) as http:
            transport = EmailJsTransport(http, "service_x", "key_y", "template_z")
            result = await transport.send("user@example.com", "Hi", "<p>Body</p>")
    """

    http: httpx.AsyncClient
    service_id: str
    public_key: str
    template_id: str
    url: str = EMAILJS_SEND_URL

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        """
        Send one message through the generic template.

        Returns:
            DeliveryResult.ok() on HTTP 200, otherwise a failure carrying the
            response text
        """
        if not self.service_id or not self.public_key:
            return DeliveryResult.failed(
                "EmailJS Service ID or Public Key is not configured.",
                error_code="not_configured",
            )

        payload = {
            "service_id": self.service_id,
            "template_id": self.template_id,
            "user_id": self.public_key,
            "template_params": {
                "to_email": recipient,
                "subject": subject,
                "message": body,
            },
        }
        try:
            response = await self.http.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            return DeliveryResult.failed(f"Request timed out: {e}", error_code="timeout")
        except httpx.TransportError as e:
            return DeliveryResult.failed(
                f"{type(e).__name__}: {e}", error_code="unavailable"
            )

        if response.status_code == 200:
            logger.debug(f"Email sent to {recipient}: {subject}")
            return DeliveryResult.ok()

        error_code = None
        if response.status_code == 429:
            error_code = "rate_limited"
        elif response.status_code >= 500:
            error_code = "unavailable"
        return DeliveryResult.failed(
            response.text or f"HTTP {response.status_code}", error_code=error_code
        )
