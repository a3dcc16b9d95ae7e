"""Tests for the TaskSupervisor.

Run:
    uv run pytest tests/test_background_worker.py -v
"""

import asyncio

import pytest

from tutor_engine.background_worker import TaskSupervisor


@pytest.mark.asyncio
async def test_submit_runs_coroutine():
    """submit() → coroutine runs → job leaves the active set."""
    supervisor = TaskSupervisor()
    ran = asyncio.Event()

    async def job():
        ran.set()

    job_id = supervisor.submit("flashcards-conn_1", job())
    assert job_id.startswith("flashcards-conn_1-")
    await asyncio.wait_for(ran.wait(), timeout=1)
    await asyncio.sleep(0)
    assert supervisor.active_count() == 0


@pytest.mark.asyncio
async def test_failures_are_counted_not_raised():
    supervisor = TaskSupervisor()

    async def failing():
        raise ValueError("boom")

    supervisor.submit("feedback", failing())
    await asyncio.sleep(0.05)
    assert supervisor.failure_count == 1
    assert supervisor.active_count() == 0


@pytest.mark.asyncio
async def test_cancel_all_cancels_running_jobs():
    supervisor = TaskSupervisor()

    async def slow():
        await asyncio.sleep(999)

    supervisor.submit("memory", slow())
    supervisor.submit("memory", slow())
    await asyncio.sleep(0.01)
    assert supervisor.active_count() == 2

    supervisor.cancel_all()
    await asyncio.sleep(0.05)
    assert supervisor.active_count() == 0
    assert supervisor.failure_count == 0
