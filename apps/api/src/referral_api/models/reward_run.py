"""Run audit projection keyed by correlation id."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from referral_api.db.base import Base


class RewardRun(Base):
    """Denormalized view of the latest job outcome for one logical event."""

    __tablename__ = "reward_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    correlation_id = Column(String(128), nullable=False, unique=True)
    trigger_type = Column(String(64), nullable=False)
    event_id = Column(String(128), nullable=True)
    resource_id = Column(String(128), nullable=True)
    stage = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False)
    outcome = Column(String(64), nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["RewardRun"]
