"""Persisted reward job queue with compare-and-swap claiming."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from referral_api.core.settings import Settings, get_settings
from referral_api.models.reward_job import (
    RewardJob,
    RewardJobStatusEnum,
    RewardStageEnum,
    RewardTriggerEnum,
)
from referral_api.observability.rewards import RewardPipelineObservabilityStore, get_reward_pipeline_store

LAST_ERROR_MAX_LENGTH = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_dedupe_key(correlation_id: str, stage: RewardStageEnum, qualifier: str | None = None) -> str:
    key = f"{correlation_id}:{stage.value}"
    return f"{key}:{qualifier}" if qualifier else key


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:LAST_ERROR_MAX_LENGTH]


@dataclass(slots=True)
class FailureDecision:
    """What happened to a job after a failed attempt."""

    status: RewardJobStatusEnum
    delay_seconds: float | None = None
    next_run_at: datetime | None = None
    lock_lost: bool = False

    @property
    def retrying(self) -> bool:
        return self.status == RewardJobStatusEnum.QUEUED and not self.lock_lost


class JobStateConflictError(RuntimeError):
    """Raised when an operator action targets a job another worker currently holds."""


class RewardJobStore:
    """Queue operations over ``reward_jobs``.

    Claims and state transitions are single conditional updates fenced on the
    job's current ``status`` and ``attempts``; a row only changes hands when the
    caller still holds the version it read. Callers own the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings | None = None,
        observability: RewardPipelineObservabilityStore | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._observability = observability or get_reward_pipeline_store()

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self._settings.reward_job_stale_lock_seconds)

    def compute_backoff(self, attempts: int) -> float:
        """Exponential backoff in seconds, capped at the configured maximum."""

        exponent = max(attempts, 1) - 1
        delay = self._settings.reward_backoff_base_seconds * (2**exponent)
        return min(delay, self._settings.reward_backoff_max_seconds)

    async def get(self, job_id: UUID) -> RewardJob | None:
        stmt = select(RewardJob).where(RewardJob.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_dedupe_key(self, dedupe_key: str) -> RewardJob | None:
        stmt = select(RewardJob).where(RewardJob.dedupe_key == dedupe_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        *,
        correlation_id: str,
        trigger_type: RewardTriggerEnum,
        stage: RewardStageEnum,
        context: dict[str, Any] | None = None,
        qualifier: str | None = None,
        scheduled_at: datetime | None = None,
    ) -> tuple[RewardJob, bool]:
        """Insert a queued job unless one with the same dedupe key exists."""

        dedupe_key = build_dedupe_key(correlation_id, stage, qualifier)
        existing = await self.get_by_dedupe_key(dedupe_key)
        if existing is not None:
            return existing, False

        job = RewardJob(
            correlation_id=correlation_id,
            dedupe_key=dedupe_key,
            trigger_type=trigger_type,
            stage=stage,
            status=RewardJobStatusEnum.QUEUED,
            context=context or {},
            attempts=0,
            max_attempts=self._settings.reward_job_max_attempts,
            scheduled_at=scheduled_at or _utcnow(),
        )
        self._session.add(job)
        await self._session.flush()
        logger.info(
            "Reward job enqueued",
            job_id=str(job.id),
            correlation_id=correlation_id,
            stage=stage.value,
        )
        return job, True

    async def claim_due_jobs(
        self,
        now: datetime,
        limit: int,
        *,
        worker_id: str,
    ) -> list[RewardJob]:
        """Atomically move up to ``limit`` due jobs to ``running``.

        Due means queued with ``scheduled_at <= now``, or running with a lock
        older than the staleness threshold. Notification jobs sort after
        monetary ones. A stale job already at its attempt ceiling is moved to
        ``error`` instead of being claimed again.
        """

        stale_cutoff = now - self.stale_after
        notification_last = case(
            (RewardJob.stage == RewardStageEnum.NOTIFICATION_DISPATCH, 1),
            else_=0,
        )
        stmt = (
            select(
                RewardJob.id,
                RewardJob.status,
                RewardJob.attempts,
                RewardJob.max_attempts,
                RewardJob.stage,
            )
            .where(
                or_(
                    and_(
                        RewardJob.status == RewardJobStatusEnum.QUEUED,
                        RewardJob.scheduled_at <= now,
                    ),
                    and_(
                        RewardJob.status == RewardJobStatusEnum.RUNNING,
                        RewardJob.locked_at < stale_cutoff,
                    ),
                )
            )
            .order_by(notification_last, RewardJob.scheduled_at, RewardJob.created_at)
            .limit(limit)
        )
        candidates = (await self._session.execute(stmt)).all()

        claimed: list[UUID] = []
        for candidate in candidates:
            reclaiming = candidate.status == RewardJobStatusEnum.RUNNING
            if reclaiming and candidate.attempts >= candidate.max_attempts:
                if await self._transition(
                    candidate.id,
                    expected_status=candidate.status,
                    expected_attempts=candidate.attempts,
                    values={
                        "status": RewardJobStatusEnum.ERROR,
                        "locked_at": None,
                        "lock_owner": None,
                        "last_error": "Lock went stale at the attempt ceiling",
                    },
                ):
                    self._observability.record_error(candidate.stage.value, "stale lock at attempt ceiling")
                    logger.error(
                        "Stale reward job moved to error",
                        job_id=str(candidate.id),
                        stage=candidate.stage.value,
                        attempts=candidate.attempts,
                    )
                continue

            won = await self._transition(
                candidate.id,
                expected_status=candidate.status,
                expected_attempts=candidate.attempts,
                values={
                    "status": RewardJobStatusEnum.RUNNING,
                    "locked_at": now,
                    "lock_owner": worker_id,
                    "attempts": RewardJob.attempts + 1,
                },
            )
            if not won:
                continue
            claimed.append(candidate.id)
            if reclaiming:
                self._observability.record_reclaimed(candidate.stage.value)
                logger.warning(
                    "Reclaimed stale reward job",
                    job_id=str(candidate.id),
                    stage=candidate.stage.value,
                    worker_id=worker_id,
                )

        if not claimed:
            return []

        loaded = await self._session.execute(
            select(RewardJob).where(RewardJob.id.in_(claimed)).execution_options(populate_existing=True)
        )
        by_id = {job.id: job for job in loaded.scalars()}
        return [by_id[job_id] for job_id in claimed if job_id in by_id]

    async def complete(self, job: RewardJob, *, now: datetime | None = None) -> bool:
        return await self._transition(
            job.id,
            expected_status=RewardJobStatusEnum.RUNNING,
            expected_attempts=job.attempts,
            values={
                "status": RewardJobStatusEnum.COMPLETED,
                "completed_at": now or _utcnow(),
                "locked_at": None,
                "lock_owner": None,
                "last_error": None,
            },
        )

    async def reschedule(
        self,
        job: RewardJob,
        delay_seconds: float,
        *,
        error: str | None = None,
        now: datetime | None = None,
    ) -> datetime | None:
        next_run_at = (now or _utcnow()) + timedelta(seconds=delay_seconds)
        won = await self._transition(
            job.id,
            expected_status=RewardJobStatusEnum.RUNNING,
            expected_attempts=job.attempts,
            values={
                "status": RewardJobStatusEnum.QUEUED,
                "scheduled_at": next_run_at,
                "locked_at": None,
                "lock_owner": None,
                "last_error": truncate_error(error),
            },
        )
        return next_run_at if won else None

    async def fail(self, job: RewardJob, error: str) -> bool:
        return await self._transition(
            job.id,
            expected_status=RewardJobStatusEnum.RUNNING,
            expected_attempts=job.attempts,
            values={
                "status": RewardJobStatusEnum.ERROR,
                "locked_at": None,
                "lock_owner": None,
                "last_error": truncate_error(error),
            },
        )

    async def release(self, job: RewardJob, *, now: datetime | None = None) -> bool:
        """Hand back a claimed job that was never executed, refunding its attempt."""

        return await self._transition(
            job.id,
            expected_status=RewardJobStatusEnum.RUNNING,
            expected_attempts=job.attempts,
            values={
                "status": RewardJobStatusEnum.QUEUED,
                "scheduled_at": now or _utcnow(),
                "attempts": RewardJob.attempts - 1,
                "locked_at": None,
                "lock_owner": None,
            },
        )

    async def record_failure(
        self,
        job: RewardJob,
        error: str,
        *,
        retryable: bool,
        now: datetime | None = None,
    ) -> FailureDecision:
        """Requeue with backoff, or move to ``error`` at the ceiling or on permanent failures.

        ``lock_lost`` is set when another worker reclaimed the job first; the
        job row is left untouched in that case.
        """

        now = now or _utcnow()
        stage = job.stage.value
        if not retryable or job.attempts >= job.max_attempts:
            if not await self.fail(job, error):
                return FailureDecision(status=RewardJobStatusEnum.ERROR, lock_lost=True)
            self._observability.record_error(stage, error)
            return FailureDecision(status=RewardJobStatusEnum.ERROR)

        delay = self.compute_backoff(job.attempts)
        next_run_at = await self.reschedule(job, delay, error=error, now=now)
        if next_run_at is None:
            return FailureDecision(status=RewardJobStatusEnum.QUEUED, delay_seconds=delay, lock_lost=True)
        self._observability.record_retry(stage, next_run_at, delay)
        return FailureDecision(
            status=RewardJobStatusEnum.QUEUED,
            delay_seconds=delay,
            next_run_at=next_run_at,
        )

    async def release_stale_jobs(self, now: datetime | None = None) -> list[RewardJob]:
        """Return stale running jobs to ``queued`` without consuming an attempt."""

        now = now or _utcnow()
        stmt = select(RewardJob).where(
            RewardJob.status == RewardJobStatusEnum.RUNNING,
            RewardJob.locked_at < now - self.stale_after,
        )
        stale = list((await self._session.execute(stmt)).scalars())

        released: list[RewardJob] = []
        for job in stale:
            at_ceiling = job.attempts >= job.max_attempts
            values: dict[str, Any] = {"locked_at": None, "lock_owner": None}
            if at_ceiling:
                values.update(status=RewardJobStatusEnum.ERROR, last_error="Lock went stale at the attempt ceiling")
            else:
                values.update(status=RewardJobStatusEnum.QUEUED, scheduled_at=now)
            won = await self._transition(
                job.id,
                expected_status=RewardJobStatusEnum.RUNNING,
                expected_attempts=job.attempts,
                values=values,
            )
            if not won:
                continue
            if at_ceiling:
                self._observability.record_error(job.stage.value, "stale lock at attempt ceiling")
            else:
                self._observability.record_reclaimed(job.stage.value)
                released.append(job)

        if released:
            await self._refresh(released)
        return released

    async def requeue(
        self,
        correlation_id: str,
        stage: RewardStageEnum,
        *,
        fallback_trigger: RewardTriggerEnum = RewardTriggerEnum.OPERATOR,
        fallback_context: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RewardJob | None:
        """Operator re-trigger of one stage for one correlation id.

        An existing job goes back to ``queued`` with a fresh attempt budget.
        ``attempts`` is never lowered because it fences the previous holder.
        A missing job is created from ``fallback_context``. Returns ``None``
        when there is nothing to requeue from.
        """

        now = now or _utcnow()
        stmt = (
            select(RewardJob)
            .where(RewardJob.correlation_id == correlation_id, RewardJob.stage == stage)
            .order_by(RewardJob.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        job = (await self._session.execute(stmt)).scalar_one_or_none()

        if job is None:
            if fallback_context is None:
                return None
            job, _ = await self.enqueue(
                correlation_id=correlation_id,
                trigger_type=fallback_trigger,
                stage=stage,
                context=fallback_context,
                scheduled_at=now,
            )
            return job

        if job.status == RewardJobStatusEnum.RUNNING and job.locked_at is not None:
            stale_cutoff = now - self.stale_after
            if _ensure_aware(job.locked_at) >= stale_cutoff:
                raise JobStateConflictError(f"Job {job.id} is currently running")

        won = await self._transition(
            job.id,
            expected_status=job.status,
            expected_attempts=job.attempts,
            values={
                "status": RewardJobStatusEnum.QUEUED,
                "max_attempts": job.attempts + self._settings.reward_job_max_attempts,
                "scheduled_at": now,
                "locked_at": None,
                "lock_owner": None,
                "last_error": None,
                "completed_at": None,
            },
        )
        if not won:
            raise JobStateConflictError(f"Job {job.id} changed while being requeued")
        await self._refresh([job])
        logger.info("Reward job requeued by operator", job_id=str(job.id), stage=stage.value)
        return job

    async def list_jobs(
        self,
        *,
        status: RewardJobStatusEnum | None = None,
        stage: RewardStageEnum | None = None,
        correlation_id: str | None = None,
        limit: int = 50,
    ) -> Sequence[RewardJob]:
        stmt = select(RewardJob).order_by(RewardJob.updated_at.desc(), RewardJob.created_at.desc())
        if status is not None:
            stmt = stmt.where(RewardJob.status == status)
        if stage is not None:
            stmt = stmt.where(RewardJob.stage == stage)
        if correlation_id is not None:
            stmt = stmt.where(RewardJob.correlation_id == correlation_id)
        result = await self._session.execute(stmt.limit(limit))
        return list(result.scalars())

    async def status_counts(self) -> dict[str, int]:
        stmt = select(RewardJob.status, func.count(RewardJob.id)).group_by(RewardJob.status)
        rows = (await self._session.execute(stmt)).all()
        counts = {status.value: 0 for status in RewardJobStatusEnum}
        for status, count in rows:
            counts[RewardJobStatusEnum(status).value] = int(count)
        return counts

    async def count_stale(self, now: datetime | None = None) -> int:
        now = now or _utcnow()
        stmt = select(func.count(RewardJob.id)).where(
            RewardJob.status == RewardJobStatusEnum.RUNNING,
            RewardJob.locked_at < now - self.stale_after,
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def _transition(
        self,
        job_id: UUID,
        *,
        expected_status: RewardJobStatusEnum,
        expected_attempts: int,
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(RewardJob)
            .where(
                RewardJob.id == job_id,
                RewardJob.status == expected_status,
                RewardJob.attempts == expected_attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def _refresh(self, jobs: Sequence[RewardJob]) -> None:
        for job in jobs:
            await self._session.refresh(job)


def _ensure_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "FailureDecision",
    "JobStateConflictError",
    "LAST_ERROR_MAX_LENGTH",
    "RewardJobStore",
    "build_dedupe_key",
    "truncate_error",
]
