from __future__ import annotations

import json

import httpx
import pytest

from referral_api.core.settings import Settings
from referral_api.services.notifications import (
    EmailTransportError,
    InMemoryEmailBackend,
    NotificationTemplate,
    RewardNotificationService,
    SendGridEmailBackend,
    SMTPEmailBackend,
    build_default_backend,
    render_template,
)


def test_signup_bonus_template_includes_card_details():
    rendered = render_template(
        NotificationTemplate.SIGNUP_BONUS_ISSUED,
        {
            "display_name": "Bob",
            "amount_cents": 1000,
            "currency": "USD",
            "gift_card_gan": "7783000000000002",
            "pass_url": "https://rewards.test/pass/7783000000000002",
        },
    )

    assert rendered.subject == "Your $10.00 referral gift card is ready"
    assert "Hi Bob," in rendered.text_body
    assert "Gift card number: 7783000000000002" in rendered.text_body
    assert "Add to your wallet: https://rewards.test/pass/7783000000000002" in rendered.text_body
    assert "<p>Hi Bob,</p>" in rendered.html_body


def test_referrer_template_reports_running_totals():
    rendered = render_template(
        NotificationTemplate.REFERRER_REWARD_CREDITED,
        {
            "display_name": "Alice",
            "amount_cents": 1000,
            "currency": "EUR",
            "total_rewards_cents": 3000,
            "total_referrals": 3,
        },
    )

    assert rendered.subject == "You earned €10.00 for referring a friend"
    assert "Total referral rewards so far: €30.00 from 3 referral(s)." in rendered.text_body


def test_activation_template_escapes_html():
    rendered = render_template(
        NotificationTemplate.REFERRAL_CODE_ACTIVATED,
        {
            "display_name": "<Carol>",
            "referral_code": "CAROL0003",
            "referral_url": "https://rewards.test/ref/CAROL0003",
            "reward_cents": 1000,
            "currency": "CAD",
        },
    )

    assert "Your personal referral code is CAROL0003." in rendered.text_body
    assert "10.00 CAD" in rendered.text_body
    assert "&lt;Carol&gt;" in rendered.html_body


@pytest.mark.asyncio
async def test_service_records_sent_events():
    backend = InMemoryEmailBackend()
    service = RewardNotificationService(backend)

    receipt = await service.send(
        "referral_code_activated",
        "carol@example.com",
        {"display_name": "Carol", "referral_code": "CAROL0003", "currency": "USD"},
    )

    assert receipt.accepted is True
    assert backend.sent_messages[0]["To"] == "carol@example.com"
    [event] = service.sent_events
    assert event.template == "referral_code_activated"
    assert event.metadata["referral_code"] == "CAROL0003"


@pytest.mark.asyncio
async def test_service_without_backend_declines_delivery(monkeypatch):
    monkeypatch.setattr(
        "referral_api.services.notifications.service.build_default_backend",
        lambda settings=None: None,
    )

    receipt = await RewardNotificationService().send(
        NotificationTemplate.SIGNUP_BONUS_ISSUED,
        "bob@example.com",
        {"amount_cents": 1000, "currency": "USD"},
    )

    assert receipt.accepted is False
    assert receipt.reason == "backend_not_configured"


def test_default_backend_prefers_sendgrid():
    sendgrid = build_default_backend(
        Settings(sendgrid_api_key="sg-key", sendgrid_sender_email="rewards@example.com", smtp_host="smtp.test")
    )
    smtp = build_default_backend(Settings(smtp_host="smtp.test", smtp_sender_email="rewards@example.com"))
    none = build_default_backend(Settings(sendgrid_api_key=None, smtp_host=None))

    assert isinstance(sendgrid, SendGridEmailBackend)
    assert isinstance(smtp, SMTPEmailBackend)
    assert none is None


@pytest.mark.asyncio
async def test_sendgrid_backend_posts_message():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202)

    backend = SendGridEmailBackend(
        api_key="sg-key",
        sender_email="rewards@example.com",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    await backend.send_email("alice@example.com", "Hello", "Plain body", body_html="<p>Hello</p>")

    [request] = captured
    body = json.loads(request.content)
    assert request.headers["Authorization"] == "Bearer sg-key"
    assert body["personalizations"] == [{"to": [{"email": "alice@example.com"}]}]
    assert body["from"] == {"email": "rewards@example.com"}
    assert [part["type"] for part in body["content"]] == ["text/plain", "text/html"]


@pytest.mark.asyncio
async def test_sendgrid_rejection_raises_transport_error():
    backend = SendGridEmailBackend(
        api_key="sg-key",
        sender_email="rewards@example.com",
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(401, text="unauthorized"))
        ),
    )

    with pytest.raises(EmailTransportError):
        await backend.send_email("alice@example.com", "Hello", "Plain body")
