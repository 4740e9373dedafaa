"""Session factory and scheduler dependencies for the reward endpoints."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from referral_api.db.session import async_session
from referral_api.services.rewards.scheduler import RewardJobScheduler


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session


def get_reward_scheduler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> RewardJobScheduler:
    """Scheduler bound to the request's session factory; tests override this."""

    return RewardJobScheduler(session_factory)
