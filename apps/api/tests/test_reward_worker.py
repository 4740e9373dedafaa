from types import SimpleNamespace

import pytest

from referral_api.services.rewards import SchedulerTickSummary
from referral_api.workers import RewardJobWorker


def _stub_scheduler(run_once):
    return SimpleNamespace(worker_id="worker-stub", run_once=run_once)


@pytest.mark.asyncio
async def test_run_once_keeps_last_summary(reward_settings) -> None:
    async def run_once():
        return SchedulerTickSummary(claimed=2, completed=1, skipped=1)

    worker = RewardJobWorker(
        session_factory=lambda: None,
        settings=reward_settings,
        scheduler=_stub_scheduler(run_once),
    )

    summary = await worker.run_once()

    assert summary["claimed"] == 2
    assert worker.last_summary == summary


@pytest.mark.asyncio
async def test_run_once_propagates_failures(reward_settings) -> None:
    async def run_once():
        raise RuntimeError("database unavailable")

    worker = RewardJobWorker(
        session_factory=lambda: None,
        settings=reward_settings,
        scheduler=_stub_scheduler(run_once),
    )

    with pytest.raises(RuntimeError):
        await worker.run_once()
    assert worker.last_summary is None


@pytest.mark.asyncio
async def test_start_and_stop_toggle_running_state(reward_settings) -> None:
    async def run_once():
        return SchedulerTickSummary()

    worker = RewardJobWorker(
        session_factory=lambda: None,
        settings=reward_settings,
        scheduler=_stub_scheduler(run_once),
        interval_seconds=3600,
    )

    worker.start()
    worker.start()
    assert worker.is_running is True
    assert worker.interval_seconds == 3600

    await worker.stop()
    await worker.stop()
    assert worker.is_running is False
