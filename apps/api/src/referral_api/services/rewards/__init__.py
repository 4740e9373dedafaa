"""Referral reward fulfillment pipeline."""

from .codes import candidate_codes, generate_personal_code, normalize_code
from .errors import (
    NotificationDeliveryError,
    PermanentStageError,
    RetryableStageError,
    RewardPipelineError,
)
from .event_ledger import IngestResult, InvalidEventError, ReferralEventLedger, parse_event
from .fulfillment import FulfillmentResult, FulfillmentStrategy, OrderLink
from .job_store import FailureDecision, JobStateConflictError, RewardJobStore
from .ledger import CustomerContact, RewardLedger
from .runs import RewardRunRecorder
from .scheduler import RewardJobScheduler, SchedulerTickSummary
from .stages import FollowUp, RewardStageExecutor, StageResult

__all__ = [
    "CustomerContact",
    "FailureDecision",
    "FollowUp",
    "FulfillmentResult",
    "FulfillmentStrategy",
    "IngestResult",
    "InvalidEventError",
    "JobStateConflictError",
    "NotificationDeliveryError",
    "OrderLink",
    "PermanentStageError",
    "ReferralEventLedger",
    "RetryableStageError",
    "RewardJobScheduler",
    "RewardJobStore",
    "RewardLedger",
    "RewardPipelineError",
    "RewardRunRecorder",
    "RewardStageExecutor",
    "SchedulerTickSummary",
    "StageResult",
    "candidate_codes",
    "generate_personal_code",
    "normalize_code",
    "parse_event",
]
