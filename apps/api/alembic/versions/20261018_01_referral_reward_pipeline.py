"""Create referral reward pipeline tables."""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


reward_trigger_enum = sa.Enum(
    "customer.created",
    "booking.created",
    "payment.updated",
    "operator",
    name="reward_trigger_enum",
)
reward_stage_enum = sa.Enum(
    "signup_bonus",
    "first_payment_reward",
    "referral_code_activation",
    "notification_dispatch",
    name="reward_stage_enum",
)
reward_job_status_enum = sa.Enum(
    "queued",
    "running",
    "completed",
    "error",
    name="reward_job_status_enum",
)


def upgrade() -> None:
    op.create_table(
        "referral_events",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("resource_id", sa.String(length=128), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("event_id", name="uq_referral_events_event_id"),
    )
    op.create_index("ix_referral_events_correlation_id", "referral_events", ["correlation_id"])

    op.create_table(
        "reward_jobs",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("trigger_type", reward_trigger_enum, nullable=False),
        sa.Column("stage", reward_stage_enum, nullable=False),
        sa.Column("status", reward_job_status_enum, server_default="queued", nullable=False),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("5"), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_owner", sa.String(length=128), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("dedupe_key", name="uq_reward_jobs_dedupe_key"),
    )
    op.create_index("ix_reward_jobs_correlation_id", "reward_jobs", ["correlation_id"])
    op.create_index("ix_reward_jobs_status_scheduled", "reward_jobs", ["status", "scheduled_at"])

    op.create_table(
        "reward_profiles",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("given_name", sa.String(length=120), nullable=True),
        sa.Column("family_name", sa.String(length=120), nullable=True),
        sa.Column("email_address", sa.String(length=255), nullable=True),
        sa.Column("personal_code", sa.String(length=32), nullable=True),
        sa.Column("used_referral_code", sa.String(length=32), nullable=True),
        sa.Column("got_signup_bonus", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("activated_as_referrer", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("first_payment_completed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("total_referrals", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_rewards_cents", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("value_store_handle", sa.String(length=128), nullable=True),
        sa.Column("value_store_gan", sa.String(length=64), nullable=True),
        sa.Column("delivery_channel", sa.String(length=32), nullable=True),
        sa.Column("activation_url", sa.Text(), nullable=True),
        sa.Column("pass_url", sa.Text(), nullable=True),
        sa.Column("order_link_order_id", sa.String(length=128), nullable=True),
        sa.Column("order_link_line_item_uid", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("customer_id", name="uq_reward_profiles_customer_id"),
        sa.UniqueConstraint("personal_code", name="uq_reward_profiles_personal_code"),
    )
    op.create_index("ix_reward_profiles_used_referral_code", "reward_profiles", ["used_referral_code"])

    op.create_table(
        "referral_rewards",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_customer_id", sa.String(length=128), nullable=True),
        sa.Column("referred_customer_id", sa.String(length=128), nullable=False),
        sa.Column("reward_type", sa.String(length=32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("value_store_handle", sa.String(length=128), nullable=True),
        sa.Column("delivery_channel", sa.String(length=32), nullable=True),
        sa.Column("payment_id", sa.String(length=128), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "referrer_customer_id",
            "referred_customer_id",
            "reward_type",
            name="uq_referral_rewards_pair_type",
        ),
    )

    op.create_table(
        "reward_runs",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=False),
        sa.Column("trigger_type", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=True),
        sa.Column("resource_id", sa.String(length=128), nullable=True),
        sa.Column("stage", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("outcome", sa.String(length=64), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("correlation_id", name="uq_reward_runs_correlation_id"),
    )


def downgrade() -> None:
    op.drop_table("reward_runs")
    op.drop_table("referral_rewards")
    op.drop_index("ix_reward_profiles_used_referral_code", table_name="reward_profiles")
    op.drop_table("reward_profiles")
    op.drop_index("ix_reward_jobs_status_scheduled", table_name="reward_jobs")
    op.drop_index("ix_reward_jobs_correlation_id", table_name="reward_jobs")
    op.drop_table("reward_jobs")
    op.drop_index("ix_referral_events_correlation_id", table_name="referral_events")
    op.drop_table("referral_events")
    bind = op.get_bind()
    reward_job_status_enum.drop(bind, checkfirst=True)
    reward_stage_enum.drop(bind, checkfirst=True)
    reward_trigger_enum.drop(bind, checkfirst=True)
