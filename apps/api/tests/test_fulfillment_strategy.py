from __future__ import annotations

import pytest

from referral_api.models.reward_ledger import DeliveryChannelEnum
from referral_api.services.rewards import FulfillmentStrategy, OrderLink
from referral_api.services.value_store import PermanentValueStoreError, TransientValueStoreError


@pytest.mark.asyncio
async def test_existing_pending_store_is_activated_not_recreated(fake_value_store):
    pending = await fake_value_store.create_instance(0, idempotency_seed="seed-a", reference="a")
    fake_value_store.calls.clear()

    result = await FulfillmentStrategy(fake_value_store).fulfill(
        "CUST-1",
        1000,
        pending.handle,
        idempotency_seed="reward-1",
        reference="reward-1",
    )

    assert fake_value_store.call_names() == ["top_up"]
    assert result.handle == pending.handle
    assert result.created is False
    assert result.delivery_channel == DeliveryChannelEnum.OWNER_FUNDED_ACTIVATE
    assert fake_value_store.cards[pending.handle]["state"] == "ACTIVE"


@pytest.mark.asyncio
async def test_existing_active_store_is_adjusted(fake_value_store):
    active = await fake_value_store.create_instance(500, idempotency_seed="seed-b", reference="b")
    fake_value_store.calls.clear()

    result = await FulfillmentStrategy(fake_value_store).fulfill(
        "CUST-1",
        1000,
        active.handle,
        idempotency_seed="reward-2",
        reference="reward-2",
        order_link=OrderLink("ORD-1", "LI-1"),
    )

    assert fake_value_store.call_names() == ["top_up"]
    assert result.delivery_channel == DeliveryChannelEnum.OWNER_FUNDED_ADJUST
    assert result.balance_cents == 1500


@pytest.mark.asyncio
async def test_rejected_order_activation_falls_back_to_owner_funded(fake_value_store):
    fake_value_store.order_error = PermanentValueStoreError(
        "Line item already redeemed",
        operation="activate_via_order",
        status_code=400,
    )

    result = await FulfillmentStrategy(fake_value_store, pass_base_url="https://pass.test/").fulfill(
        "CUST-2",
        1000,
        idempotency_seed="signup-bonus:cust-2",
        reference="signup-bonus:cust-2",
        order_link=OrderLink("ORD-1", "LI-1"),
    )

    assert fake_value_store.call_names() == ["activate_via_order", "create_instance"]
    assert len(fake_value_store.cards) == 1
    assert result.delivery_channel == DeliveryChannelEnum.OWNER_FUNDED_ACTIVATE
    assert result.created is True
    assert result.balance_cents == 1000
    assert result.pass_url == f"https://pass.test/{result.gan}"


@pytest.mark.asyncio
async def test_transient_order_failure_propagates(fake_value_store):
    fake_value_store.errors.append(TransientValueStoreError("rate limited", operation="activate_via_order"))

    with pytest.raises(TransientValueStoreError):
        await FulfillmentStrategy(fake_value_store).fulfill(
            "CUST-2",
            1000,
            idempotency_seed="signup-bonus:cust-2",
            reference="signup-bonus:cust-2",
            order_link=OrderLink("ORD-1", "LI-1"),
        )

    assert fake_value_store.call_names() == ["activate_via_order"]


@pytest.mark.asyncio
async def test_zero_amount_creates_pending_store_without_order_path(fake_value_store):
    result = await FulfillmentStrategy(fake_value_store).fulfill(
        "CUST-3",
        0,
        idempotency_seed="referrer-store:cust-3",
        reference="referrer-store:cust-3",
        order_link=OrderLink("ORD-1", "LI-1"),
    )

    assert fake_value_store.call_names() == ["create_instance"]
    assert result.delivery_channel == DeliveryChannelEnum.PENDING_ACTIVATION
    assert fake_value_store.cards[result.handle]["state"] == "PENDING"


@pytest.mark.asyncio
async def test_missing_existing_store_is_not_replaced(fake_value_store):
    with pytest.raises(PermanentValueStoreError):
        await FulfillmentStrategy(fake_value_store).fulfill(
            "CUST-1",
            1000,
            "gftc:gone",
            idempotency_seed="reward-3",
            reference="reward-3",
        )

    assert fake_value_store.call_names() == ["top_up"]
    assert fake_value_store.cards == {}
