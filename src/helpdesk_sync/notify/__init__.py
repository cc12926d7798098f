"""
Notification side effects of ticket transitions.

Exports:
    NotificationOrchestrator: Dispatches intents with manual fallbacks
    EmailJsTransport: DeliveryProtocol implementation over EmailJS
    DeliveryResult, DeliveryErrorClass, ManualFallback,
    NotificationIntent, NotificationFailure: data structures
"""

from helpdesk_sync.notify.emailjs import EmailJsTransport
from helpdesk_sync.notify.orchestrator import NotificationOrchestrator
from helpdesk_sync.notify.types import (
    DeliveryErrorClass,
    DeliveryResult,
    ManualFallback,
    NotificationFailure,
    NotificationIntent,
)

__all__ = [
    "DeliveryErrorClass",
    "DeliveryResult",
    "EmailJsTransport",
    "ManualFallback",
    "NotificationFailure",
    "NotificationIntent",
    "NotificationOrchestrator",
]
