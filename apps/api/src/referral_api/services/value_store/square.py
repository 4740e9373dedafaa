"""Square gift card API client used as the reward value store."""

from __future__ import annotations

from typing import Any, Mapping

import httpx
from loguru import logger

from referral_api.core.settings import Settings, get_settings
from referral_api.services.idempotency import build_idempotency_key

from .base import GiftCardSnapshot, ValueStoreActivity
from .errors import PermanentValueStoreError, TransientValueStoreError, ValueStoreError

_RETRYABLE_STATUS = {408, 409, 429}


def _money_cents(money: Mapping[str, Any] | None) -> int:
    if not isinstance(money, Mapping):
        return 0
    try:
        return int(money.get("amount") or 0)
    except (TypeError, ValueError):
        return 0


class SquareGiftCardClient:
    """Thin async wrapper around the Square Gift Cards and Gift Card Activities APIs.

    Every write carries an idempotency key derived from the caller's seed, so a
    retried stage replays the same provider operation instead of issuing a new one.
    The create step uses the same key on both activation paths, which lets the
    owner-funded fallback pick up the card created by a failed order activation.
    """

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str,
        location_id: str,
        currency: str = "USD",
        api_version: str = "2024-10-17",
        timeout_seconds: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._location_id = location_id
        self._currency = currency
        self._api_version = api_version
        self._timeout = timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "SquareGiftCardClient":
        config = settings or get_settings()
        return cls(
            access_token=config.square_access_token,
            base_url=config.square_base_url,
            location_id=config.square_location_id,
            currency=config.referral_currency,
            api_version=config.square_api_version,
            timeout_seconds=config.square_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def create_instance(
        self,
        amount_cents: int,
        *,
        idempotency_seed: str,
        reference: str,
    ) -> ValueStoreActivity:
        card = await self._create_card(idempotency_seed)
        if amount_cents <= 0:
            return ValueStoreActivity(
                handle=card["id"],
                gan=card.get("gan"),
                balance_cents=_money_cents(card.get("balance_money")),
                activity_type=None,
            )

        activity = await self._create_activity(
            {
                "gift_card_id": card["id"],
                "type": "ACTIVATE",
                "location_id": self._location_id,
                "activate_activity_details": {
                    "amount_money": self._money(amount_cents),
                    "reference_id": reference,
                    "buyer_payment_instrument_ids": ["OWNER_FUNDED"],
                },
            },
            idempotency_key=build_idempotency_key(idempotency_seed, "activate-owner"),
            operation="create_instance",
        )
        return self._activity_result(card, activity)

    async def top_up(
        self,
        handle: str,
        amount_cents: int,
        *,
        idempotency_seed: str,
        reference: str,
    ) -> ValueStoreActivity:
        snapshot = await self.retrieve(handle)
        card = {"id": snapshot.handle, "gan": snapshot.gan}

        if snapshot.state == "PENDING":
            details: dict[str, Any] = {
                "gift_card_id": handle,
                "type": "ACTIVATE",
                "location_id": self._location_id,
                "activate_activity_details": {
                    "amount_money": self._money(amount_cents),
                    "reference_id": reference,
                    "buyer_payment_instrument_ids": ["OWNER_FUNDED"],
                },
            }
            key = build_idempotency_key(idempotency_seed, "activate")
        else:
            details = {
                "gift_card_id": handle,
                "type": "ADJUST_INCREMENT",
                "location_id": self._location_id,
                "adjust_increment_activity_details": {
                    "amount_money": self._money(amount_cents),
                    "reason": "COMPLIMENTARY",
                },
            }
            key = build_idempotency_key(idempotency_seed, "adjust")

        activity = await self._create_activity(details, idempotency_key=key, operation="top_up")
        return self._activity_result(card, activity)

    async def activate_via_order(
        self,
        order_id: str,
        line_item_uid: str,
        *,
        idempotency_seed: str,
        reference: str,
    ) -> ValueStoreActivity:
        card = await self._create_card(idempotency_seed)
        activity = await self._create_activity(
            {
                "gift_card_id": card["id"],
                "type": "ACTIVATE",
                "location_id": self._location_id,
                "activate_activity_details": {
                    "order_id": order_id,
                    "line_item_uid": line_item_uid,
                    "reference_id": reference,
                },
            },
            idempotency_key=build_idempotency_key(idempotency_seed, "activate-order"),
            operation="activate_via_order",
        )
        result = self._activity_result(card, activity)
        snapshot = await self.retrieve(card["id"])
        result.gan = snapshot.gan or result.gan
        result.activation_url = snapshot.activation_url
        return result

    async def retrieve(self, handle: str) -> GiftCardSnapshot:
        payload = await self._request("GET", f"/v2/gift-cards/{handle}", operation="retrieve")
        card = payload.get("gift_card")
        if not isinstance(card, dict) or not card.get("id"):
            raise PermanentValueStoreError("Gift card missing from response", operation="retrieve")
        digital = card.get("digital_details") or {}
        return GiftCardSnapshot(
            handle=card["id"],
            gan=card.get("gan"),
            state=str(card.get("state") or "PENDING"),
            balance_cents=_money_cents(card.get("balance_money")),
            activation_url=digital.get("activation_url") if isinstance(digital, dict) else None,
        )

    async def _create_card(self, idempotency_seed: str) -> dict[str, Any]:
        payload = await self._request(
            "POST",
            "/v2/gift-cards",
            operation="create_gift_card",
            json={
                "idempotency_key": build_idempotency_key(idempotency_seed, "create"),
                "location_id": self._location_id,
                "gift_card": {"type": "DIGITAL"},
            },
        )
        card = payload.get("gift_card")
        if not isinstance(card, dict) or not card.get("id"):
            raise PermanentValueStoreError("Gift card missing from create response", operation="create_gift_card")
        logger.info("Created gift card", gift_card_id=card["id"], state=card.get("state"))
        return card

    async def _create_activity(
        self,
        activity: dict[str, Any],
        *,
        idempotency_key: str,
        operation: str,
    ) -> dict[str, Any]:
        payload = await self._request(
            "POST",
            "/v2/gift-cards/activities",
            operation=operation,
            json={"idempotency_key": idempotency_key, "gift_card_activity": activity},
        )
        result = payload.get("gift_card_activity")
        if not isinstance(result, dict):
            raise PermanentValueStoreError("Gift card activity missing from response", operation=operation)
        logger.info(
            "Recorded gift card activity",
            gift_card_id=activity.get("gift_card_id"),
            activity_type=activity.get("type"),
            operation=operation,
        )
        return result

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self._access_token:
            raise PermanentValueStoreError("Square access token is not configured", operation=operation)

        client = self._ensure_client()
        try:
            response = await client.request(
                method,
                f"{self._base_url}{path}",
                json=json,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Square-Version": self._api_version,
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException as exc:
            raise TransientValueStoreError(f"Square request timed out: {exc}", operation=operation) from exc
        except httpx.TransportError as exc:
            raise TransientValueStoreError(f"Square transport error: {exc}", operation=operation) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_success:
            if not isinstance(body, dict):
                raise PermanentValueStoreError("Unexpected Square response body", operation=operation)
            return body

        errors = body.get("errors") if isinstance(body, dict) else None
        detail = self._error_detail(errors) or response.text[:200]
        error_cls: type[ValueStoreError]
        if response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
            error_cls = TransientValueStoreError
        else:
            error_cls = PermanentValueStoreError
        logger.warning(
            "Square gift card request failed",
            operation=operation,
            status_code=response.status_code,
            detail=detail,
        )
        raise error_cls(
            f"Square {operation} failed with status {response.status_code}: {detail}",
            operation=operation,
            status_code=response.status_code,
            errors=errors if isinstance(errors, list) else None,
        )

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    def _money(self, amount_cents: int) -> dict[str, Any]:
        return {"amount": int(amount_cents), "currency": self._currency}

    @staticmethod
    def _activity_result(card: Mapping[str, Any], activity: Mapping[str, Any]) -> ValueStoreActivity:
        return ValueStoreActivity(
            handle=str(card["id"]),
            gan=card.get("gan") or activity.get("gift_card_gan"),
            balance_cents=_money_cents(activity.get("gift_card_balance_money")),
            activity_type=activity.get("type"),
        )

    @staticmethod
    def _error_detail(errors: Any) -> str | None:
        if not isinstance(errors, list):
            return None
        details = [
            str(item.get("detail") or item.get("code"))
            for item in errors
            if isinstance(item, dict) and (item.get("detail") or item.get("code"))
        ]
        return "; ".join(details) or None


__all__ = ["SquareGiftCardClient"]
