"""Inbound platform event ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, String, func, select
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_api.db.base import Base


class ReferralEvent(Base):
    """Append-only record of every platform webhook event received.

    ``event_id`` is the platform-assigned identifier; its unique constraint is the
    deduplication primitive for concurrent deliveries of the same event.
    """

    __tablename__ = "referral_events"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    event_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(64), nullable=False)
    resource_id = Column(String(128), nullable=True)
    correlation_id = Column(String(128), nullable=False, index=True)
    payload_json = Column("payload", JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


@dataclass(slots=True)
class RecordedReferralEvent:
    """Result of attempting to record an inbound event."""

    event: ReferralEvent
    created: bool


async def fetch_referral_event(session: AsyncSession, event_id: str) -> ReferralEvent | None:
    stmt = select(ReferralEvent).where(ReferralEvent.event_id == event_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def record_referral_event(
    session: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    resource_id: str | None,
    correlation_id: str,
    payload: dict[str, Any] | None,
) -> RecordedReferralEvent:
    """Persist the event unless it has already been recorded.

    A concurrent insert of the same ``event_id`` surfaces as an ``IntegrityError``
    which is resolved by returning the winning row with ``created=False``.
    """

    existing = await fetch_referral_event(session, event_id)
    if existing is not None:
        return RecordedReferralEvent(event=existing, created=False)

    event = ReferralEvent(
        event_id=event_id,
        event_type=event_type,
        resource_id=resource_id,
        correlation_id=correlation_id,
        payload_json=payload,
    )
    session.add(event)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        found = await fetch_referral_event(session, event_id)
        if found is None:
            raise
        return RecordedReferralEvent(event=found, created=False)

    return RecordedReferralEvent(event=event, created=True)


__all__ = ["ReferralEvent", "RecordedReferralEvent", "fetch_referral_event", "record_referral_event"]
