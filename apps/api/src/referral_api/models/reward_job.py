"""Persisted reward pipeline job queue."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Index, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from referral_api.db.base import Base


class RewardJobStatusEnum(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class RewardStageEnum(str, Enum):
    """Pipeline stages in execution order."""

    SIGNUP_BONUS = "signup_bonus"
    FIRST_PAYMENT_REWARD = "first_payment_reward"
    REFERRAL_CODE_ACTIVATION = "referral_code_activation"
    NOTIFICATION_DISPATCH = "notification_dispatch"


class RewardTriggerEnum(str, Enum):
    CUSTOMER_CREATED = "customer.created"
    BOOKING_CREATED = "booking.created"
    PAYMENT_UPDATED = "payment.updated"
    OPERATOR = "operator"


class RewardJob(Base):
    """One unit of pipeline work for a correlation id and stage.

    ``locked_at`` is only meaningful while ``status`` is ``running``. The
    ``dedupe_key`` keeps chained follow-ups from being enqueued twice.
    """

    __tablename__ = "reward_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    correlation_id = Column(String(128), nullable=False, index=True)
    dedupe_key = Column(String(255), nullable=False, unique=True)
    trigger_type = Column(
        SqlEnum(
            RewardTriggerEnum,
            name="reward_trigger_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    stage = Column(
        SqlEnum(
            RewardStageEnum,
            name="reward_stage_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    status = Column(
        SqlEnum(
            RewardJobStatusEnum,
            name="reward_job_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=RewardJobStatusEnum.QUEUED,
        server_default=RewardJobStatusEnum.QUEUED.value,
    )
    context = Column(JSON, nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=5, server_default="5")
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    lock_owner = Column(String(128), nullable=True)
    last_error = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (Index("ix_reward_jobs_status_scheduled", "status", "scheduled_at"),)

    @property
    def customer_id(self) -> str | None:
        return (self.context or {}).get("customer_id")


__all__ = ["RewardJob", "RewardJobStatusEnum", "RewardStageEnum", "RewardTriggerEnum"]
