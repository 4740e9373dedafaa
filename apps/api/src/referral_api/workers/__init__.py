"""Background workers supporting async processing."""

from .reward_jobs import RewardJobWorker

__all__ = ["RewardJobWorker"]
