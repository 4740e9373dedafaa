"""Operator surface for the referral reward pipeline."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from referral_api.api.dependencies.security import require_cron_secret, require_operator_api_key
from referral_api.api.dependencies.session import get_reward_scheduler
from referral_api.db.session import get_session
from referral_api.models.reward_job import RewardJobStatusEnum, RewardStageEnum
from referral_api.observability.rewards import get_reward_pipeline_store
from referral_api.schemas.rewards import (
    RewardJobReapResponse,
    RewardJobRequeueRequest,
    RewardJobResponse,
    RewardJobSummaryResponse,
    RewardRunDetailResponse,
    RewardRunResponse,
    RewardTickResponse,
)
from referral_api.services.rewards import JobStateConflictError, RewardJobScheduler, RewardJobStore, RewardRunRecorder

router = APIRouter(
    prefix="/rewards",
    tags=["Rewards"],
    dependencies=[Depends(require_operator_api_key)],
)
cron_router = APIRouter(prefix="/cron", tags=["Rewards"])


@router.get("/jobs", response_model=list[RewardJobResponse], summary="List reward jobs")
async def list_reward_jobs(
    status_filter: RewardJobStatusEnum | None = Query(None, alias="status"),
    stage: RewardStageEnum | None = Query(None),
    correlation_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
) -> list[RewardJobResponse]:
    jobs = await RewardJobStore(db).list_jobs(
        status=status_filter,
        stage=stage,
        correlation_id=correlation_id,
        limit=limit,
    )
    return [RewardJobResponse.model_validate(job) for job in jobs]


@router.get("/jobs/summary", response_model=RewardJobSummaryResponse, summary="Job counts by status")
async def reward_job_summary(db: AsyncSession = Depends(get_session)) -> RewardJobSummaryResponse:
    store = RewardJobStore(db)
    return RewardJobSummaryResponse(
        counts=await store.status_counts(),
        stale_running=await store.count_stale(),
        stale_after_seconds=int(store.stale_after.total_seconds()),
    )


@router.post("/jobs/requeue", response_model=RewardJobResponse, summary="Re-enqueue a stage")
async def requeue_reward_job(
    payload: RewardJobRequeueRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardJobResponse:
    run = await RewardRunRecorder(db).get(payload.correlation_id)
    fallback_context: dict[str, Any] | None = dict(run.context or {}) if run is not None else None

    try:
        job = await RewardJobStore(db).requeue(
            payload.correlation_id,
            payload.stage,
            fallback_context=fallback_context,
        )
    except JobStateConflictError as exc:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    if job is None:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No job or run for correlation id")

    await db.commit()
    return RewardJobResponse.model_validate(job)


@router.post("/jobs/reap", response_model=RewardJobReapResponse, summary="Release stale running jobs")
async def reap_stale_reward_jobs(db: AsyncSession = Depends(get_session)) -> RewardJobReapResponse:
    released = await RewardJobStore(db).release_stale_jobs()
    await db.commit()
    return RewardJobReapResponse(released=len(released), job_ids=[job.id for job in released])


@router.get("/runs/{correlation_id}", response_model=RewardRunDetailResponse, summary="Run audit record")
async def get_reward_run(correlation_id: str, db: AsyncSession = Depends(get_session)) -> RewardRunDetailResponse:
    run = await RewardRunRecorder(db).get(correlation_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    jobs = await RewardJobStore(db).list_jobs(correlation_id=correlation_id, limit=100)
    return RewardRunDetailResponse(
        run=RewardRunResponse.model_validate(run),
        jobs=[RewardJobResponse.model_validate(job) for job in jobs],
    )


@router.get("/observability", summary="Reward pipeline counters")
async def reward_pipeline_observability() -> dict[str, object]:
    return get_reward_pipeline_store().snapshot().as_dict()


@cron_router.post(
    "/reward-jobs",
    response_model=RewardTickResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Process due reward jobs",
)
async def run_reward_job_tick(
    limit: int | None = Query(None, ge=1, le=100),
    scheduler: RewardJobScheduler = Depends(get_reward_scheduler),
) -> RewardTickResponse:
    summary = await scheduler.run_once(limit=limit)
    return RewardTickResponse(**summary.as_dict())
