"""Reward notification delivery via pluggable email backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from loguru import logger

from referral_api.core.settings import Settings, get_settings

from .backend import EmailBackend, EmailTransportError, SendGridEmailBackend, SMTPEmailBackend
from .templates import NotificationTemplate, render_template


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    recipient: str
    subject: str
    body_text: str
    body_html: str | None
    template: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class DeliveryReceipt:
    accepted: bool
    reason: str | None = None


def build_default_backend(settings: Settings | None = None) -> Optional[EmailBackend]:
    """SendGrid when configured, SMTP otherwise, ``None`` when neither is set."""

    settings = settings or get_settings()
    if settings.sendgrid_api_key and settings.sendgrid_sender_email:
        return SendGridEmailBackend(
            api_key=settings.sendgrid_api_key,
            sender_email=settings.sendgrid_sender_email,
        )
    if settings.smtp_host and settings.smtp_sender_email:
        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )
    return None


class RewardNotificationService:
    """Renders reward templates and hands them to the email backend."""

    def __init__(self, backend: Optional[EmailBackend] = None, *, settings: Settings | None = None) -> None:
        self._backend = backend if backend is not None else build_default_backend(settings)
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        return self._events

    async def send(
        self,
        template: NotificationTemplate | str,
        recipient: str,
        variables: Mapping[str, Any],
    ) -> DeliveryReceipt:
        """Deliver one templated message.

        Returns ``accepted=False`` when no backend is configured. Transport
        failures raise :class:`EmailTransportError` for the caller to retry.
        """

        template = NotificationTemplate(template)
        if self._backend is None:
            logger.warning(
                "No email backend configured; reward notification not sent",
                template=template.value,
            )
            return DeliveryReceipt(accepted=False, reason="backend_not_configured")

        rendered = render_template(template, variables)
        try:
            await self._backend.send_email(
                recipient,
                rendered.subject,
                rendered.text_body,
                body_html=rendered.html_body,
            )
        except EmailTransportError:
            logger.warning("Reward notification delivery failed", template=template.value)
            raise

        self._events.append(
            NotificationEvent(
                recipient=recipient,
                subject=rendered.subject,
                body_text=rendered.text_body,
                body_html=rendered.html_body,
                template=template.value,
                metadata=dict(variables),
            )
        )
        logger.info("Reward notification sent", template=template.value)
        return DeliveryReceipt(accepted=True)
