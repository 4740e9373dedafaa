"""Run audit projection, one row per correlation id."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_api.models.reward_job import RewardJob
from referral_api.models.reward_run import RewardRun

from .job_store import truncate_error


class RewardRunRecorder:
    """Upserts :class:`RewardRun` rows; the pipeline never reads them back for decisions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, correlation_id: str) -> RewardRun | None:
        stmt = (
            select(RewardRun)
            .where(RewardRun.correlation_id == correlation_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def start(
        self,
        *,
        correlation_id: str,
        trigger_type: str,
        event_id: str | None,
        resource_id: str | None,
        stage: str | None,
        status: str,
        context: dict[str, Any] | None = None,
    ) -> RewardRun:
        run = await self.get(correlation_id)
        if run is None:
            run = RewardRun(
                correlation_id=correlation_id,
                trigger_type=trigger_type,
                event_id=event_id,
                resource_id=resource_id,
                stage=stage,
                status=status,
                attempts=0,
                context=dict(context or {}),
            )
            self._session.add(run)
            await self._session.flush()
        return run

    async def record_job_outcome(
        self,
        job: RewardJob,
        *,
        status: str,
        outcome: str | None = None,
        error: str | None = None,
        extra_context: dict[str, Any] | None = None,
    ) -> RewardRun:
        run = await self.get(job.correlation_id)
        if run is None:
            run = await self.start(
                correlation_id=job.correlation_id,
                trigger_type=job.trigger_type.value,
                event_id=None,
                resource_id=None,
                stage=job.stage.value,
                status=status,
                context=job.context,
            )

        run.stage = job.stage.value
        run.status = status
        run.outcome = outcome
        run.attempts = job.attempts
        run.last_error = truncate_error(error)
        if extra_context:
            merged = dict(run.context or {})
            merged.update(extra_context)
            run.context = merged
        await self._session.flush()
        return run


__all__ = ["RewardRunRecorder"]
