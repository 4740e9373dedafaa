"""Notification templates for referral reward events."""

from __future__ import annotations

import html
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class NotificationTemplate(str, Enum):
    SIGNUP_BONUS_ISSUED = "signup_bonus_issued"
    REFERRER_REWARD_CREDITED = "referrer_reward_credited"
    REFERRAL_CODE_ACTIVATED = "referral_code_activated"


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def _format_cents(amount_cents: Any, currency: str) -> str:
    symbols = {"USD": "$", "EUR": "€", "GBP": "£"}
    try:
        value = int(amount_cents or 0) / 100
    except (TypeError, ValueError):
        value = 0.0
    symbol = symbols.get(currency.upper(), "")
    numeric = f"{value:.2f}"
    return f"{symbol}{numeric}" if symbol else f"{numeric} {currency.upper()}"


def _card_lines(variables: Mapping[str, Any]) -> list[str]:
    lines: list[str] = []
    if variables.get("gift_card_gan"):
        lines.append(f"Gift card number: {variables['gift_card_gan']}")
    if variables.get("activation_url"):
        lines.append(f"View your gift card: {variables['activation_url']}")
    if variables.get("pass_url"):
        lines.append(f"Add to your wallet: {variables['pass_url']}")
    return lines


def _html(paragraphs: list[str]) -> str:
    return "".join(f"<p>{html.escape(line)}</p>" for line in paragraphs if line)


def render_signup_bonus_issued(variables: Mapping[str, Any]) -> RenderedTemplate:
    amount = _format_cents(variables.get("amount_cents"), variables.get("currency", "USD"))
    name = variables.get("display_name") or "there"
    lines = [
        f"Hi {name},",
        "",
        f"Thanks for booking with a friend's referral code. We've added {amount} to a gift card for you.",
        *_card_lines(variables),
        "",
        "See you soon!",
    ]
    return RenderedTemplate(
        subject=f"Your {amount} referral gift card is ready",
        text_body="\n".join(lines),
        html_body=_html(lines),
    )


def render_referrer_reward_credited(variables: Mapping[str, Any]) -> RenderedTemplate:
    amount = _format_cents(variables.get("amount_cents"), variables.get("currency", "USD"))
    total = _format_cents(variables.get("total_rewards_cents"), variables.get("currency", "USD"))
    name = variables.get("display_name") or "there"
    lines = [
        f"Hi {name},",
        "",
        f"A friend you referred just completed their first visit. We've credited {amount} to your gift card.",
        f"Total referral rewards so far: {total} from {variables.get('total_referrals', 0)} referral(s).",
        *_card_lines(variables),
    ]
    return RenderedTemplate(
        subject=f"You earned {amount} for referring a friend",
        text_body="\n".join(lines),
        html_body=_html(lines),
    )


def render_referral_code_activated(variables: Mapping[str, Any]) -> RenderedTemplate:
    name = variables.get("display_name") or "there"
    code = variables.get("referral_code") or ""
    reward = _format_cents(variables.get("reward_cents"), variables.get("currency", "USD"))
    lines = [
        f"Hi {name},",
        "",
        f"Your personal referral code is {code}.",
        f"Share it with friends: {variables.get('referral_url', '')}",
        f"Each friend who books with your code earns you {reward} after their first visit.",
        *_card_lines(variables),
    ]
    return RenderedTemplate(
        subject="Your referral code is ready to share",
        text_body="\n".join(lines),
        html_body=_html(lines),
    )


_RENDERERS = {
    NotificationTemplate.SIGNUP_BONUS_ISSUED: render_signup_bonus_issued,
    NotificationTemplate.REFERRER_REWARD_CREDITED: render_referrer_reward_credited,
    NotificationTemplate.REFERRAL_CODE_ACTIVATED: render_referral_code_activated,
}


def render_template(template: NotificationTemplate, variables: Mapping[str, Any]) -> RenderedTemplate:
    return _RENDERERS[template](variables)
