"""Pipeline-level error types."""

from __future__ import annotations


class RewardPipelineError(RuntimeError):
    """Base error raised by stage executors."""


class RetryableStageError(RewardPipelineError):
    """The stage could not finish now but may succeed on a later attempt."""


class PermanentStageError(RewardPipelineError):
    """The job can never succeed as enqueued; it goes straight to ``error``."""


class NotificationDeliveryError(RetryableStageError):
    """Email transport rejected or failed to accept a message."""


__all__ = [
    "NotificationDeliveryError",
    "PermanentStageError",
    "RetryableStageError",
    "RewardPipelineError",
]
