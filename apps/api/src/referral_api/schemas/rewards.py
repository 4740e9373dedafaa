from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from referral_api.models.reward_job import RewardJobStatusEnum, RewardStageEnum, RewardTriggerEnum

# meta: schema: reward-pipeline


class RewardJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    correlation_id: str
    trigger_type: RewardTriggerEnum
    stage: RewardStageEnum
    status: RewardJobStatusEnum
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    locked_at: datetime | None = None
    lock_owner: str | None = None
    last_error: str | None = None
    context: dict[str, Any] | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RewardJobSummaryResponse(BaseModel):
    counts: dict[str, int]
    stale_running: int
    stale_after_seconds: int


class RewardJobRequeueRequest(BaseModel):
    correlation_id: str = Field(..., min_length=1)
    stage: RewardStageEnum


class RewardJobReapResponse(BaseModel):
    released: int
    job_ids: list[UUID] = Field(default_factory=list)


class RewardRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    correlation_id: str
    trigger_type: str
    event_id: str | None = None
    resource_id: str | None = None
    stage: str | None = None
    status: str
    outcome: str | None = None
    attempts: int
    last_error: str | None = None
    context: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RewardRunDetailResponse(BaseModel):
    run: RewardRunResponse
    jobs: list[RewardJobResponse] = Field(default_factory=list)


class RewardTickResponse(BaseModel):
    claimed: int
    completed: int
    skipped: int
    retried: int
    errored: int
    released: int
    lost_locks: int
    unexpected_errors: int
    aborted: bool


class WebhookIngestResponse(BaseModel):
    status: Literal["accepted", "duplicate", "ignored"]
    correlation_id: str | None = None
    job_id: UUID | None = None
