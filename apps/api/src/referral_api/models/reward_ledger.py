"""Reward ledger: per-customer referral profile and payout grants."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint, false, func
from sqlalchemy.dialects.postgresql import UUID

from referral_api.db.base import Base


class DeliveryChannelEnum(str, Enum):
    """How a value store was funded, persisted so notifications stay path-agnostic."""

    ORDER_ACTIVATION = "order_activation"
    OWNER_FUNDED_ACTIVATE = "owner_funded_activate"
    OWNER_FUNDED_ADJUST = "owner_funded_adjust"
    PENDING_ACTIVATION = "pending_activation"


class ReferralRewardTypeEnum(str, Enum):
    SIGNUP_BONUS = "signup_bonus"
    REFERRER_REWARD = "referrer_reward"


class RewardProfile(Base):
    """Durable referral state for one point-of-sale customer.

    The boolean progress flags only ever flip from false to true and are the
    source of truth for whether a stage has already taken effect.
    """

    __tablename__ = "reward_profiles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(String(128), nullable=False, unique=True)
    given_name = Column(String(120), nullable=True)
    family_name = Column(String(120), nullable=True)
    email_address = Column(String(255), nullable=True)

    personal_code = Column(String(32), nullable=True, unique=True)
    used_referral_code = Column(String(32), nullable=True, index=True)

    got_signup_bonus = Column(Boolean, nullable=False, default=False, server_default=false())
    activated_as_referrer = Column(Boolean, nullable=False, default=False, server_default=false())
    first_payment_completed = Column(Boolean, nullable=False, default=False, server_default=false())

    total_referrals = Column(Integer, nullable=False, default=0, server_default="0")
    total_rewards_cents = Column(Integer, nullable=False, default=0, server_default="0")

    value_store_handle = Column(String(128), nullable=True)
    value_store_gan = Column(String(64), nullable=True)
    delivery_channel = Column(String(32), nullable=True)
    activation_url = Column(Text, nullable=True)
    pass_url = Column(Text, nullable=True)

    order_link_order_id = Column(String(128), nullable=True)
    order_link_line_item_uid = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.given_name, self.family_name) if part]
        return " ".join(parts) if parts else "there"

    @property
    def value_store_metadata(self) -> dict[str, str | None]:
        return {
            "delivery_channel": self.delivery_channel,
            "activation_url": self.activation_url,
            "pass_url": self.pass_url,
        }


class ReferralReward(Base):
    """Payout grant; at most one per referrer, referred customer and reward type."""

    __tablename__ = "referral_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_customer_id = Column(String(128), nullable=True)
    referred_customer_id = Column(String(128), nullable=False)
    reward_type = Column(String(32), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    value_store_handle = Column(String(128), nullable=True)
    delivery_channel = Column(String(32), nullable=True)
    payment_id = Column(String(128), nullable=True)
    correlation_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "referrer_customer_id",
            "referred_customer_id",
            "reward_type",
            name="uq_referral_rewards_pair_type",
        ),
    )


__all__ = ["DeliveryChannelEnum", "ReferralReward", "ReferralRewardTypeEnum", "RewardProfile"]
