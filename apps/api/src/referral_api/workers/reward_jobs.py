"""In-process poller for the reward job scheduler."""

from __future__ import annotations

from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from referral_api.core.settings import Settings, get_settings
from referral_api.services.rewards.scheduler import RewardJobScheduler

_JOB_ID = "reward-job-tick"


class RewardJobWorker:
    """Ticks :class:`RewardJobScheduler` on an interval trigger.

    ``max_instances=1`` keeps one tick in flight per process; other processes
    may tick concurrently, which the job store's conditional claims tolerate.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        scheduler: RewardJobScheduler | None = None,
        interval_seconds: int | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._scheduler = scheduler or RewardJobScheduler(session_factory, settings=self._settings)
        self.interval_seconds = interval_seconds or self._settings.reward_poll_interval_seconds
        self._apscheduler: AsyncIOScheduler | None = None
        self.last_summary: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self._apscheduler is not None

    def start(self) -> None:
        if self._apscheduler is not None:
            return
        apscheduler = AsyncIOScheduler(timezone="UTC")
        apscheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        apscheduler.start()
        self._apscheduler = apscheduler
        logger.info(
            "Reward job worker started",
            interval_seconds=self.interval_seconds,
            worker_id=self._scheduler.worker_id,
        )

    async def stop(self) -> None:
        if self._apscheduler is None:
            return
        self._apscheduler.shutdown(wait=False)
        self._apscheduler = None
        logger.info("Reward job worker stopped")

    async def run_once(self) -> dict[str, Any]:
        try:
            summary = await self._scheduler.run_once()
        except Exception:
            logger.exception("Reward job worker iteration failed")
            raise
        self.last_summary = summary.as_dict()
        return self.last_summary


__all__ = ["RewardJobWorker"]
