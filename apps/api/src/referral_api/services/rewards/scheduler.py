"""Poll-driven scheduler: claim due reward jobs and run their stages."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from referral_api.core.settings import Settings, get_settings
from referral_api.models.reward_job import RewardJob, RewardJobStatusEnum
from referral_api.observability.rewards import RewardPipelineObservabilityStore, get_reward_pipeline_store
from referral_api.observability.tracing import get_tracer
from referral_api.services.notifications import EmailBackend, RewardNotificationService
from referral_api.services.value_store import (
    PermanentValueStoreError,
    SquareGiftCardClient,
    TransientValueStoreError,
    ValueStoreClient,
)

from .errors import PermanentStageError, RetryableStageError
from .fulfillment import FulfillmentStrategy
from .job_store import RewardJobStore
from .runs import RewardRunRecorder
from .stages import RewardStageExecutor

_EXPECTED_RETRYABLE = (
    TransientValueStoreError,
    PermanentValueStoreError,
    RetryableStageError,
    SQLAlchemyError,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class SchedulerTickSummary:
    """Counters for one scheduler tick."""

    claimed: int = 0
    completed: int = 0
    skipped: int = 0
    retried: int = 0
    errored: int = 0
    released: int = 0
    lost_locks: int = 0
    unexpected_errors: int = 0
    aborted: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "skipped": self.skipped,
            "retried": self.retried,
            "errored": self.errored,
            "released": self.released,
            "lost_locks": self.lost_locks,
            "unexpected_errors": self.unexpected_errors,
            "aborted": self.aborted,
        }


class RewardJobScheduler:
    """Stateless tick over the job store.

    Each claimed job runs in its own session so a failing job never rolls back
    another job's committed ledger changes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        value_store: ValueStoreClient | None = None,
        email_backend: EmailBackend | None = None,
        worker_id: str | None = None,
        observability: RewardPipelineObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._value_store = value_store
        self._email_backend = email_backend
        self._worker_id = worker_id or default_worker_id()
        self._observability = observability or get_reward_pipeline_store()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run_once(self, now: datetime | None = None, *, limit: int | None = None) -> SchedulerTickSummary:
        now = now or _utcnow()
        limit = limit or self._settings.reward_batch_size
        summary = SchedulerTickSummary()

        async with self._session_factory() as session:
            store = self._store(session)
            jobs = await store.claim_due_jobs(now, limit, worker_id=self._worker_id)
            await session.commit()

        summary.claimed = len(jobs)
        if not jobs:
            return summary

        client = self._value_store
        owns_client = client is None
        if client is None:
            client = SquareGiftCardClient.from_settings(self._settings)
        try:
            strategy = FulfillmentStrategy(client, pass_base_url=self._settings.wallet_pass_base_url)
            notifications = RewardNotificationService(self._email_backend, settings=self._settings)
            for index, job in enumerate(jobs):
                if summary.unexpected_errors >= self._settings.reward_tick_error_budget:
                    summary.aborted = True
                    await self._release(jobs[index:], now, summary)
                    logger.error(
                        "Reward scheduler tick aborted after repeated errors",
                        worker_id=self._worker_id,
                        unexpected_errors=summary.unexpected_errors,
                        released=summary.released,
                    )
                    break
                await self._process(job, strategy, notifications, now, summary)
        finally:
            if owns_client and isinstance(client, SquareGiftCardClient):
                await client.aclose()

        logger.info("Reward scheduler tick finished", worker_id=self._worker_id, **summary.as_dict())
        return summary

    async def _process(
        self,
        job: RewardJob,
        strategy: FulfillmentStrategy,
        notifications: RewardNotificationService,
        now: datetime,
        summary: SchedulerTickSummary,
    ) -> None:
        bound = logger.bind(correlation_id=job.correlation_id, job_id=str(job.id), stage=job.stage.value)
        stage = job.stage.value
        async with self._session_factory() as session:
            try:
                with get_tracer().start_as_current_span(f"reward.stage.{stage}") as span:
                    span.set_attribute("reward.correlation_id", job.correlation_id)
                    span.set_attribute("reward.attempt", job.attempts)
                    executor = RewardStageExecutor(
                        session,
                        fulfillment=strategy,
                        notifications=notifications,
                        settings=self._settings,
                    )
                    result = await executor.execute(job)
                    span.set_attribute("reward.outcome", result.label)

                store = self._store(session)
                for follow_up in result.follow_ups:
                    await store.enqueue(
                        correlation_id=job.correlation_id,
                        trigger_type=job.trigger_type,
                        stage=follow_up.stage,
                        context=follow_up.context,
                        qualifier=follow_up.qualifier,
                        scheduled_at=now,
                    )
                if not await store.complete(job, now=now):
                    await session.rollback()
                    summary.lost_locks += 1
                    bound.warning("Reward job lock lost before completion; result discarded")
                    return
                await RewardRunRecorder(session).record_job_outcome(
                    job,
                    status=RewardJobStatusEnum.COMPLETED.value,
                    outcome=result.label,
                    extra_context=result.detail,
                )
                await session.commit()
            except Exception as exc:
                await session.rollback()
                await self._handle_failure(session, job, exc, now, summary, bound)
                return

        self._observability.record_completed(stage, skipped=result.skipped)
        if result.skipped:
            summary.skipped += 1
        else:
            summary.completed += 1

    async def _handle_failure(
        self,
        session: AsyncSession,
        job: RewardJob,
        exc: Exception,
        now: datetime,
        summary: SchedulerTickSummary,
        bound: Any,
    ) -> None:
        message = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, PermanentStageError):
            retryable = False
        elif isinstance(exc, _EXPECTED_RETRYABLE):
            retryable = True
        else:
            retryable = True
            summary.unexpected_errors += 1
            bound.exception("Unexpected error while running reward stage")

        store = self._store(session)
        decision = await store.record_failure(job, message, retryable=retryable, now=now)
        if decision.lock_lost:
            await session.rollback()
            summary.lost_locks += 1
            bound.warning("Reward job lock lost before recording failure", error=message)
            return
        await RewardRunRecorder(session).record_job_outcome(
            job,
            status=decision.status.value,
            outcome="retry_scheduled" if decision.retrying else "failed",
            error=message,
        )
        await session.commit()

        if decision.retrying:
            summary.retried += 1
            bound.warning(
                "Reward stage failed; retry scheduled",
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                delay_seconds=decision.delay_seconds,
                error=message,
            )
        else:
            summary.errored += 1
            bound.error(
                "Reward stage failed permanently",
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                error=message,
            )

    async def _release(self, jobs: list[RewardJob], now: datetime, summary: SchedulerTickSummary) -> None:
        async with self._session_factory() as session:
            store = self._store(session)
            for job in jobs:
                if await store.release(job, now=now):
                    summary.released += 1
            await session.commit()

    def _store(self, session: AsyncSession) -> RewardJobStore:
        return RewardJobStore(session, settings=self._settings, observability=self._observability)


__all__ = ["RewardJobScheduler", "SchedulerTickSummary", "default_worker_id"]
