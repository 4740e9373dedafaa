"""Reward ledger repository with conditional-update preconditions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy import and_, exists, false, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from referral_api.models.reward_ledger import ReferralReward, ReferralRewardTypeEnum, RewardProfile

from .codes import normalize_code
from .fulfillment import FulfillmentResult, OrderLink


@dataclass(slots=True)
class CustomerContact:
    """Contact fields captured from platform events on first contact."""

    given_name: str | None = None
    family_name: str | None = None
    email_address: str | None = None


def _store_values(result: FulfillmentResult | None) -> dict[str, Any]:
    """Columns written from a fulfillment result; unset URLs keep existing values."""

    if result is None:
        return {}
    values: dict[str, Any] = {
        "value_store_handle": func.coalesce(RewardProfile.value_store_handle, result.handle),
        "delivery_channel": result.delivery_channel.value,
    }
    if result.gan:
        values["value_store_gan"] = func.coalesce(RewardProfile.value_store_gan, result.gan)
    if result.activation_url:
        values["activation_url"] = result.activation_url
    if result.pass_url:
        values["pass_url"] = result.pass_url
    return values


class RewardLedger:
    """Read-check-then-write access to reward profiles.

    Every mutating method re-verifies its precondition inside the ``UPDATE``
    statement and reports whether it won. Callers own the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_profile(self, customer_id: str) -> RewardProfile | None:
        stmt = (
            select(RewardProfile)
            .where(RewardProfile.customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def resolve_code(self, code: str | None) -> RewardProfile | None:
        normalized = normalize_code(code)
        if normalized is None:
            return None
        stmt = select(RewardProfile).where(RewardProfile.personal_code == normalized)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def code_taken(self, code: str) -> bool:
        stmt = select(RewardProfile.id).where(RewardProfile.personal_code == code).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def ensure_profile(
        self,
        customer_id: str,
        *,
        contact: CustomerContact | None = None,
        order_link: OrderLink | None = None,
    ) -> RewardProfile:
        """Return the customer's profile, creating it on first contact.

        Missing contact fields and order linkage are filled in from later
        events but never overwritten.
        """

        profile = await self.get_profile(customer_id)
        contact = contact or CustomerContact()
        if profile is None:
            profile = RewardProfile(
                customer_id=customer_id,
                given_name=contact.given_name,
                family_name=contact.family_name,
                email_address=contact.email_address,
                order_link_order_id=order_link.order_id if order_link else None,
                order_link_line_item_uid=order_link.line_item_uid if order_link else None,
            )
            self._session.add(profile)
            try:
                await self._session.flush()
            except IntegrityError:
                await self._session.rollback()
                profile = await self.get_profile(customer_id)
                if profile is None:
                    raise
            else:
                logger.info("Created reward profile", customer_id=customer_id)
                return profile

        changed = False
        for attr in ("given_name", "family_name", "email_address"):
            incoming = getattr(contact, attr)
            if incoming and not getattr(profile, attr):
                setattr(profile, attr, incoming)
                changed = True
        if order_link is not None and not profile.order_link_order_id:
            profile.order_link_order_id = order_link.order_id
            profile.order_link_line_item_uid = order_link.line_item_uid
            changed = True
        if changed:
            await self._session.flush()
        return profile

    async def claim_signup_bonus(
        self,
        customer_id: str,
        *,
        referral_code: str,
        fulfillment: FulfillmentResult,
    ) -> bool:
        stmt = (
            update(RewardProfile)
            .where(
                RewardProfile.customer_id == customer_id,
                RewardProfile.got_signup_bonus == false(),
            )
            .values(
                got_signup_bonus=True,
                used_referral_code=referral_code,
                **_store_values(fulfillment),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_first_payment(self, customer_id: str) -> bool:
        stmt = (
            update(RewardProfile)
            .where(
                RewardProfile.customer_id == customer_id,
                RewardProfile.first_payment_completed == false(),
            )
            .values(first_payment_completed=True)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def credit_referrer(
        self,
        customer_id: str,
        amount_cents: int,
        fulfillment: FulfillmentResult,
    ) -> bool:
        """Add one referral and ``amount_cents`` to the referrer's totals."""

        if amount_cents <= 0:
            raise ValueError("Referral reward amount must be positive")
        stmt = (
            update(RewardProfile)
            .where(RewardProfile.customer_id == customer_id)
            .values(
                total_referrals=RewardProfile.total_referrals + 1,
                total_rewards_cents=RewardProfile.total_rewards_cents + amount_cents,
                **_store_values(fulfillment),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def activate_referrer(
        self,
        customer_id: str,
        *,
        personal_code: str,
        fulfillment: FulfillmentResult | None,
    ) -> bool:
        """Assign ``personal_code`` unless the customer is already active or the code is in use."""

        holder = aliased(RewardProfile)
        stmt = (
            update(RewardProfile)
            .where(
                RewardProfile.customer_id == customer_id,
                RewardProfile.activated_as_referrer == false(),
                ~exists().where(and_(holder.personal_code == personal_code, holder.customer_id != customer_id)),
            )
            .values(
                activated_as_referrer=True,
                personal_code=personal_code,
                **_store_values(fulfillment),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def grant_exists(
        self,
        *,
        referrer_customer_id: str | None,
        referred_customer_id: str,
        reward_type: ReferralRewardTypeEnum,
    ) -> bool:
        stmt = select(ReferralReward.id).where(
            ReferralReward.referred_customer_id == referred_customer_id,
            ReferralReward.reward_type == reward_type.value,
        )
        if referrer_customer_id is None:
            stmt = stmt.where(ReferralReward.referrer_customer_id.is_(None))
        else:
            stmt = stmt.where(ReferralReward.referrer_customer_id == referrer_customer_id)
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    async def record_grant(
        self,
        *,
        referrer_customer_id: str | None,
        referred_customer_id: str,
        reward_type: ReferralRewardTypeEnum,
        amount_cents: int,
        fulfillment: FulfillmentResult,
        correlation_id: str | None = None,
        payment_id: str | None = None,
    ) -> ReferralReward:
        grant = ReferralReward(
            referrer_customer_id=referrer_customer_id,
            referred_customer_id=referred_customer_id,
            reward_type=reward_type.value,
            amount_cents=amount_cents,
            value_store_handle=fulfillment.handle,
            delivery_channel=fulfillment.delivery_channel.value,
            payment_id=payment_id,
            correlation_id=correlation_id,
        )
        self._session.add(grant)
        await self._session.flush()
        return grant


__all__ = ["CustomerContact", "RewardLedger"]
