from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from referral_api.models.reward_job import RewardJobStatusEnum, RewardStageEnum, RewardTriggerEnum
from referral_api.observability.rewards import get_reward_pipeline_store
from referral_api.services.rewards import JobStateConflictError, RewardJobStore
from referral_api.services.rewards.job_store import LAST_ERROR_MAX_LENGTH, build_dedupe_key

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


async def _seed_job(session_factory, settings, *, stage=RewardStageEnum.SIGNUP_BONUS, correlation_id="corr-1"):
    async with session_factory() as session:
        store = RewardJobStore(session, settings=settings)
        job, created = await store.enqueue(
            correlation_id=correlation_id,
            trigger_type=RewardTriggerEnum.CUSTOMER_CREATED,
            stage=stage,
            context={"customer_id": "CUST-1"},
            scheduled_at=NOW - timedelta(seconds=1),
        )
        await session.commit()
    assert created is True
    return job.id


async def _claim(session_factory, settings, *, now=NOW, worker_id="worker-a", limit=10):
    async with session_factory() as session:
        jobs = await RewardJobStore(session, settings=settings).claim_due_jobs(now, limit, worker_id=worker_id)
        await session.commit()
    return jobs


def test_compute_backoff_doubles_and_caps(reward_settings):
    store = RewardJobStore(session=None, settings=reward_settings)  # type: ignore[arg-type]

    assert store.compute_backoff(1) == 5.0
    assert store.compute_backoff(2) == 10.0
    assert store.compute_backoff(4) == 40.0
    assert store.compute_backoff(12) == reward_settings.reward_backoff_max_seconds


def test_dedupe_key_includes_optional_qualifier():
    assert build_dedupe_key("corr", RewardStageEnum.SIGNUP_BONUS) == "corr:signup_bonus"
    assert (
        build_dedupe_key("corr", RewardStageEnum.NOTIFICATION_DISPATCH, "signup_bonus_issued:CUST-1")
        == "corr:notification_dispatch:signup_bonus_issued:CUST-1"
    )


@pytest.mark.asyncio
async def test_enqueue_is_deduplicated(session_factory, reward_settings):
    job_id = await _seed_job(session_factory, reward_settings)

    async with session_factory() as session:
        job, created = await RewardJobStore(session, settings=reward_settings).enqueue(
            correlation_id="corr-1",
            trigger_type=RewardTriggerEnum.CUSTOMER_CREATED,
            stage=RewardStageEnum.SIGNUP_BONUS,
        )

    assert created is False
    assert job.id == job_id


@pytest.mark.asyncio
async def test_job_is_claimed_by_one_worker_only(session_factory, reward_settings):
    job_id = await _seed_job(session_factory, reward_settings)

    first = await _claim(session_factory, reward_settings, worker_id="worker-a")
    second = await _claim(session_factory, reward_settings, worker_id="worker-b")

    assert [job.id for job in first] == [job_id]
    assert first[0].status == RewardJobStatusEnum.RUNNING
    assert first[0].attempts == 1
    assert first[0].lock_owner == "worker-a"
    assert second == []


@pytest.mark.asyncio
async def test_future_jobs_are_not_due(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)

    claimed = await _claim(session_factory, reward_settings, now=NOW - timedelta(minutes=5))

    assert claimed == []


@pytest.mark.asyncio
async def test_notification_jobs_are_claimed_after_monetary_jobs(session_factory, reward_settings):
    await _seed_job(
        session_factory,
        reward_settings,
        stage=RewardStageEnum.NOTIFICATION_DISPATCH,
        correlation_id="corr-notify",
    )
    await _seed_job(session_factory, reward_settings, correlation_id="corr-bonus")

    claimed = await _claim(session_factory, reward_settings, limit=1)

    assert [job.correlation_id for job in claimed] == ["corr-bonus"]


@pytest.mark.asyncio
async def test_stale_lock_is_reclaimed_and_fences_previous_holder(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    [original] = await _claim(session_factory, reward_settings, worker_id="worker-a")

    later = NOW + timedelta(seconds=reward_settings.reward_job_stale_lock_seconds + 1)
    [reclaimed] = await _claim(session_factory, reward_settings, now=later, worker_id="worker-b")

    assert reclaimed.id == original.id
    assert reclaimed.attempts == 2
    assert reclaimed.lock_owner == "worker-b"
    assert get_reward_pipeline_store().snapshot().totals["reclaimed"] == 1

    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        assert await store.complete(original, now=later) is False
        assert await store.complete(reclaimed, now=later) is True
        await session.commit()
        job = await store.get(original.id)

    assert job.status == RewardJobStatusEnum.COMPLETED
    assert job.lock_owner is None


@pytest.mark.asyncio
async def test_stale_lock_at_ceiling_moves_job_to_error(session_factory, reward_settings):
    settings = reward_settings.model_copy(update={"reward_job_max_attempts": 1})
    job_id = await _seed_job(session_factory, settings)
    await _claim(session_factory, settings)

    later = NOW + timedelta(seconds=settings.reward_job_stale_lock_seconds + 1)
    claimed = await _claim(session_factory, settings, now=later, worker_id="worker-b")

    assert claimed == []
    async with session_factory() as session:
        job = await RewardJobStore(session, settings=settings).get(job_id)
    assert job.status == RewardJobStatusEnum.ERROR
    assert "stale" in job.last_error


@pytest.mark.asyncio
async def test_retryable_failure_requeues_with_backoff(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    [job] = await _claim(session_factory, reward_settings)

    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        decision = await store.record_failure(job, "x" * 900, retryable=True, now=NOW)
        await session.commit()
        refreshed = await store.get(job.id)

    assert decision.retrying is True
    assert decision.delay_seconds == 5.0
    assert refreshed.status == RewardJobStatusEnum.QUEUED
    assert refreshed.attempts == 1
    assert refreshed.locked_at is None
    assert _naive(refreshed.scheduled_at) == _naive(NOW + timedelta(seconds=5))
    assert len(refreshed.last_error) == LAST_ERROR_MAX_LENGTH
    assert get_reward_pipeline_store().snapshot().totals["retried"] == 1


@pytest.mark.asyncio
async def test_failure_at_attempt_ceiling_moves_job_to_error(session_factory, reward_settings):
    settings = reward_settings.model_copy(update={"reward_job_max_attempts": 2})
    await _seed_job(session_factory, settings)

    [job] = await _claim(session_factory, settings)
    async with session_factory() as session:
        await RewardJobStore(session, settings=settings).record_failure(job, "boom", retryable=True, now=NOW)
        await session.commit()

    [job] = await _claim(session_factory, settings, now=NOW + timedelta(seconds=10))
    assert job.attempts == 2
    async with session_factory() as session:
        store = RewardJobStore(session, settings=settings)
        decision = await store.record_failure(job, "boom again", retryable=True, now=NOW)
        await session.commit()
        refreshed = await store.get(job.id)

    assert decision.status == RewardJobStatusEnum.ERROR
    assert refreshed.status == RewardJobStatusEnum.ERROR
    assert refreshed.last_error == "boom again"
    assert get_reward_pipeline_store().snapshot().totals["errored"] == 1


@pytest.mark.asyncio
async def test_permanent_failure_skips_remaining_attempts(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    [job] = await _claim(session_factory, reward_settings)

    async with session_factory() as session:
        decision = await RewardJobStore(session, settings=reward_settings).record_failure(
            job, "bad data", retryable=False, now=NOW
        )
        await session.commit()

    assert decision.status == RewardJobStatusEnum.ERROR
    assert job.attempts < job.max_attempts


@pytest.mark.asyncio
async def test_failure_after_reclaim_reports_lost_lock(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    [held_by_a] = await _claim(session_factory, reward_settings, worker_id="worker-a")
    after_stale = NOW + timedelta(seconds=reward_settings.reward_job_stale_lock_seconds + 1)
    [held_by_b] = await _claim(session_factory, reward_settings, now=after_stale, worker_id="worker-b")

    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        retry = await store.record_failure(held_by_a, "late timeout", retryable=True, now=after_stale)
        permanent = await store.record_failure(held_by_a, "late rejection", retryable=False, now=after_stale)
        await session.commit()
        job = await store.get(held_by_b.id)

    assert retry.lock_lost is True
    assert retry.retrying is False
    assert permanent.lock_lost is True
    assert job.status == RewardJobStatusEnum.RUNNING
    assert job.lock_owner == "worker-b"
    assert job.last_error is None
    totals = get_reward_pipeline_store().snapshot().totals
    assert "retried" not in totals
    assert "errored" not in totals


@pytest.mark.asyncio
async def test_release_refunds_the_attempt(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    [job] = await _claim(session_factory, reward_settings)

    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        assert await store.release(job, now=NOW) is True
        await session.commit()
        refreshed = await store.get(job.id)

    assert refreshed.status == RewardJobStatusEnum.QUEUED
    assert refreshed.attempts == 0
    assert refreshed.lock_owner is None


@pytest.mark.asyncio
async def test_release_stale_jobs_requeues_without_consuming_attempts(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    await _claim(session_factory, reward_settings)

    later = NOW + timedelta(seconds=reward_settings.reward_job_stale_lock_seconds + 5)
    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        assert await store.count_stale(later) == 1
        released = await store.release_stale_jobs(later)
        await session.commit()

    assert len(released) == 1
    assert released[0].status == RewardJobStatusEnum.QUEUED
    assert released[0].attempts == 1


@pytest.mark.asyncio
async def test_requeue_resets_completed_job(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    [job] = await _claim(session_factory, reward_settings)
    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        await store.complete(job, now=NOW)
        await session.commit()

    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        requeued = await store.requeue("corr-1", RewardStageEnum.SIGNUP_BONUS, now=NOW)
        await session.commit()

    assert requeued.id == job.id
    assert requeued.status == RewardJobStatusEnum.QUEUED
    assert requeued.attempts == 1
    assert requeued.max_attempts == 1 + reward_settings.reward_job_max_attempts
    assert requeued.completed_at is None


@pytest.mark.asyncio
async def test_requeue_refuses_job_held_by_live_worker(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    await _claim(session_factory, reward_settings)

    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        with pytest.raises(JobStateConflictError):
            await store.requeue("corr-1", RewardStageEnum.SIGNUP_BONUS, now=NOW + timedelta(seconds=30))


@pytest.mark.asyncio
async def test_requeue_of_stale_job_keeps_old_holder_fenced(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings)
    [held_by_a] = await _claim(session_factory, reward_settings, worker_id="worker-a")
    after_stale = NOW + timedelta(seconds=reward_settings.reward_job_stale_lock_seconds + 1)

    async with session_factory() as session:
        await RewardJobStore(session, settings=reward_settings).requeue(
            "corr-1", RewardStageEnum.SIGNUP_BONUS, now=after_stale
        )
        await session.commit()
    [held_by_b] = await _claim(session_factory, reward_settings, now=after_stale, worker_id="worker-b")

    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        completed_by_a = await store.complete(held_by_a, now=after_stale)
        failed_by_a = await store.fail(held_by_a, "late failure")
        completed_by_b = await store.complete(held_by_b, now=after_stale)
        await session.commit()
        job = await store.get(held_by_b.id)

    assert held_by_b.attempts == 2
    assert completed_by_a is False
    assert failed_by_a is False
    assert completed_by_b is True
    assert job.status == RewardJobStatusEnum.COMPLETED
    assert job.last_error is None


@pytest.mark.asyncio
async def test_requeue_creates_missing_stage_from_fallback_context(session_factory, reward_settings):
    async with session_factory() as session:
        store = RewardJobStore(session, settings=reward_settings)
        missing = await store.requeue("corr-9", RewardStageEnum.REFERRAL_CODE_ACTIVATION, now=NOW)
        created = await store.requeue(
            "corr-9",
            RewardStageEnum.REFERRAL_CODE_ACTIVATION,
            fallback_context={"customer_id": "CUST-9"},
            now=NOW,
        )
        await session.commit()

    assert missing is None
    assert created.trigger_type == RewardTriggerEnum.OPERATOR
    assert created.context == {"customer_id": "CUST-9"}
    assert created.status == RewardJobStatusEnum.QUEUED


@pytest.mark.asyncio
async def test_status_counts_cover_every_status(session_factory, reward_settings):
    await _seed_job(session_factory, reward_settings, correlation_id="corr-a")
    await _seed_job(session_factory, reward_settings, correlation_id="corr-b")
    await _claim(session_factory, reward_settings, limit=1)

    async with session_factory() as session:
        counts = await RewardJobStore(session, settings=reward_settings).status_counts()

    assert counts == {"queued": 1, "running": 1, "completed": 0, "error": 0}
