"""In-memory reward pipeline observability store for runtime metrics."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class RewardPipelineEventLog:
    """Stores details about noteworthy pipeline events."""

    last_error_at: datetime | None = None
    last_error_message: str | None = None
    last_error_stage: str | None = None
    last_retry_scheduled_at: datetime | None = None
    last_retry_delay_seconds: float | None = None
    last_reclaim_at: datetime | None = None


@dataclass
class RewardPipelineMetricsSnapshot:
    """Serializable snapshot returned to operators."""

    totals: Dict[str, int]
    per_stage: Dict[str, Dict[str, int]]
    events: RewardPipelineEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "per_stage": self.per_stage,
            "events": {
                "last_error_at": _iso(self.events.last_error_at),
                "last_error_message": self.events.last_error_message,
                "last_error_stage": self.events.last_error_stage,
                "last_retry_scheduled_at": _iso(self.events.last_retry_scheduled_at),
                "last_retry_delay_seconds": self.events.last_retry_delay_seconds,
                "last_reclaim_at": _iso(self.events.last_reclaim_at),
            },
        }


_OUTCOMES = ("completed", "skipped", "retried", "errored", "reclaimed")


@dataclass
class RewardPipelineObservabilityStore:
    """Tracks stage outcome counters and recent events."""

    _lock: Lock = field(default_factory=Lock)
    _totals: Counter = field(default_factory=Counter)
    _per_stage: Dict[str, Counter] = field(
        default_factory=lambda: {outcome: Counter() for outcome in _OUTCOMES}
    )
    _events: RewardPipelineEventLog = field(default_factory=RewardPipelineEventLog)

    def record_completed(self, stage: str, *, skipped: bool = False) -> None:
        outcome = "skipped" if skipped else "completed"
        with self._lock:
            self._totals[outcome] += 1
            self._per_stage[outcome][stage] += 1

    def record_retry(self, stage: str, next_run_at: datetime | None, delay_seconds: float) -> None:
        with self._lock:
            self._totals["retried"] += 1
            self._per_stage["retried"][stage] += 1
            self._events.last_retry_scheduled_at = next_run_at
            self._events.last_retry_delay_seconds = delay_seconds

    def record_error(self, stage: str, error_message: str) -> None:
        with self._lock:
            self._totals["errored"] += 1
            self._per_stage["errored"][stage] += 1
            self._events.last_error_at = _utcnow()
            self._events.last_error_message = error_message
            self._events.last_error_stage = stage

    def record_reclaimed(self, stage: str) -> None:
        with self._lock:
            self._totals["reclaimed"] += 1
            self._per_stage["reclaimed"][stage] += 1
            self._events.last_reclaim_at = _utcnow()

    def snapshot(self) -> RewardPipelineMetricsSnapshot:
        with self._lock:
            totals = dict(self._totals)
            per_stage = {key: dict(counter) for key, counter in self._per_stage.items()}
            events_copy = RewardPipelineEventLog(
                last_error_at=self._events.last_error_at,
                last_error_message=self._events.last_error_message,
                last_error_stage=self._events.last_error_stage,
                last_retry_scheduled_at=self._events.last_retry_scheduled_at,
                last_retry_delay_seconds=self._events.last_retry_delay_seconds,
                last_reclaim_at=self._events.last_reclaim_at,
            )
        return RewardPipelineMetricsSnapshot(totals=totals, per_stage=per_stage, events=events_copy)

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()
            for counter in self._per_stage.values():
                counter.clear()
            self._events = RewardPipelineEventLog()


_REWARD_PIPELINE_STORE = RewardPipelineObservabilityStore()


def get_reward_pipeline_store() -> RewardPipelineObservabilityStore:
    return _REWARD_PIPELINE_STORE


__all__ = [
    "RewardPipelineMetricsSnapshot",
    "RewardPipelineObservabilityStore",
    "get_reward_pipeline_store",
]
