# tests/test_scheduler.py
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from sandbox_relay.sandbox.models import BatchResult
from sandbox_relay.sandbox.scheduler import CleanupScheduler


@pytest.fixture
def orch():
    """Orchestrator double exposing only what the scheduler calls."""
    o = Mock()
    o.cleanup_old_sessions = AsyncMock(return_value=BatchResult(total=1, stopped=1))
    o.reap_workspaces = AsyncMock(return_value=[])
    return o


def test_interval_must_be_positive(orch):
    with pytest.raises(ValueError):
        CleanupScheduler(orch, interval_secs=0)


@pytest.mark.asyncio
async def test_run_once_sweeps_with_max_age(orch):
    sched = CleanupScheduler(orch, max_age_hours=12)

    result = await sched.run_once()

    assert result.stopped == 1
    orch.cleanup_old_sessions.assert_awaited_once_with(12)
    orch.reap_workspaces.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_once_reaps_workspaces_when_retention_set(orch):
    sched = CleanupScheduler(orch, workspace_retention_hours=72)

    await sched.run_once()

    orch.reap_workspaces.assert_awaited_once_with(72)


@pytest.mark.asyncio
async def test_loop_survives_failing_tick(orch):
    calls = []

    async def flaky(max_age_hours):
        calls.append(max_age_hours)
        if len(calls) == 1:
            raise RuntimeError("engine hiccup")
        return BatchResult()

    orch.cleanup_old_sessions = flaky
    sched = CleanupScheduler(orch, interval_secs=0.01)

    sched.start()
    assert sched.running
    for _ in range(200):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    await sched.stop()

    assert len(calls) >= 2
    assert not sched.running


@pytest.mark.asyncio
async def test_start_twice_keeps_one_task(orch):
    sched = CleanupScheduler(orch, interval_secs=3600)

    sched.start()
    first = sched._task
    sched.start()

    assert sched._task is first
    await sched.stop()
    assert first.cancelled()


@pytest.mark.asyncio
async def test_stop_without_start(orch):
    sched = CleanupScheduler(orch)
    await sched.stop()
    assert not sched.running
