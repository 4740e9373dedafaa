"""Notification service package."""

from .backend import (
    EmailBackend,
    EmailTransportError,
    InMemoryEmailBackend,
    SendGridEmailBackend,
    SMTPEmailBackend,
)
from .service import (
    DeliveryReceipt,
    NotificationEvent,
    RewardNotificationService,
    build_default_backend,
)
from .templates import NotificationTemplate, RenderedTemplate, render_template

__all__ = [
    "DeliveryReceipt",
    "EmailBackend",
    "EmailTransportError",
    "InMemoryEmailBackend",
    "NotificationEvent",
    "NotificationTemplate",
    "RenderedTemplate",
    "RewardNotificationService",
    "SendGridEmailBackend",
    "SMTPEmailBackend",
    "build_default_backend",
    "render_template",
]
