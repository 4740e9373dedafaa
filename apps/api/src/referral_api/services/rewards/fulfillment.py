"""Create-or-load strategy for monetary rewards."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from referral_api.models.reward_ledger import DeliveryChannelEnum
from referral_api.services.value_store import (
    PermanentValueStoreError,
    ValueStoreActivity,
    ValueStoreClient,
)


@dataclass(slots=True)
class OrderLink:
    """Purchased order line item that can fund a value store."""

    order_id: str
    line_item_uid: str


@dataclass(slots=True)
class FulfillmentResult:
    """Normalized outcome regardless of which funding path ran."""

    handle: str
    gan: str | None
    delivery_channel: DeliveryChannelEnum
    balance_cents: int
    activation_url: str | None = None
    pass_url: str | None = None
    created: bool = False


class FulfillmentStrategy:
    """Decide how to fund a reward against the value-store provider.

    Decision order:

    1. an existing handle is always topped up, a second store is never created;
    2. otherwise an order-linked activation is attempted when order linkage exists;
    3. a permanent failure of step 2 (or no linkage) falls back to owner-funded creation.

    Transient provider errors propagate so the job is rescheduled.
    """

    def __init__(self, client: ValueStoreClient, *, pass_base_url: str | None = None) -> None:
        self._client = client
        self._pass_base_url = pass_base_url.rstrip("/") if pass_base_url else None

    async def fulfill(
        self,
        customer_id: str,
        amount_cents: int,
        existing_handle: str | None = None,
        *,
        idempotency_seed: str,
        reference: str,
        order_link: OrderLink | None = None,
    ) -> FulfillmentResult:
        if existing_handle:
            activity = await self._client.top_up(
                existing_handle,
                amount_cents,
                idempotency_seed=idempotency_seed,
                reference=reference,
            )
            channel = (
                DeliveryChannelEnum.OWNER_FUNDED_ACTIVATE
                if activity.activity_type == "ACTIVATE"
                else DeliveryChannelEnum.OWNER_FUNDED_ADJUST
            )
            logger.info(
                "Topped up existing value store",
                customer_id=customer_id,
                handle=existing_handle,
                amount_cents=amount_cents,
                channel=channel.value,
            )
            return self._result(activity, channel, created=False)

        if order_link is not None and amount_cents > 0:
            try:
                activity = await self._client.activate_via_order(
                    order_link.order_id,
                    order_link.line_item_uid,
                    idempotency_seed=idempotency_seed,
                    reference=reference,
                )
            except PermanentValueStoreError as exc:
                logger.warning(
                    "Order-linked activation rejected, falling back to owner-funded",
                    customer_id=customer_id,
                    order_id=order_link.order_id,
                    error=str(exc),
                )
            else:
                logger.info(
                    "Activated value store via order",
                    customer_id=customer_id,
                    handle=activity.handle,
                    order_id=order_link.order_id,
                )
                return self._result(activity, DeliveryChannelEnum.ORDER_ACTIVATION, created=True)

        activity = await self._client.create_instance(
            amount_cents,
            idempotency_seed=idempotency_seed,
            reference=reference,
        )
        channel = (
            DeliveryChannelEnum.OWNER_FUNDED_ACTIVATE
            if amount_cents > 0
            else DeliveryChannelEnum.PENDING_ACTIVATION
        )
        logger.info(
            "Created owner-funded value store",
            customer_id=customer_id,
            handle=activity.handle,
            amount_cents=amount_cents,
        )
        return self._result(activity, channel, created=True)

    def _result(
        self,
        activity: ValueStoreActivity,
        channel: DeliveryChannelEnum,
        *,
        created: bool,
    ) -> FulfillmentResult:
        pass_url = None
        if self._pass_base_url and activity.gan:
            pass_url = f"{self._pass_base_url}/{activity.gan}"
        return FulfillmentResult(
            handle=activity.handle,
            gan=activity.gan,
            delivery_channel=channel,
            balance_cents=activity.balance_cents,
            activation_url=activity.activation_url,
            pass_url=pass_url,
            created=created,
        )


__all__ = ["FulfillmentResult", "FulfillmentStrategy", "OrderLink"]
