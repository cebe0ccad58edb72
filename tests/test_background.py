"""Detached task runner tests."""

import asyncio
from unittest.mock import MagicMock

import pytest

from app.background import BackgroundTaskRunner


@pytest.mark.asyncio
async def test_spawned_tasks_run_after_caller_returns():
    runner = BackgroundTaskRunner(MagicMock())
    done = asyncio.Event()

    async def work():
        await asyncio.sleep(0)
        done.set()

    runner.spawn(work(), name="work")
    assert not done.is_set()

    assert await runner.drain(timeout=1.0) == 0
    assert done.is_set()
    assert runner.pending == 0


@pytest.mark.asyncio
async def test_failed_task_is_logged():
    logger = MagicMock()
    runner = BackgroundTaskRunner(logger)

    async def boom():
        raise RuntimeError("insert failed")

    runner.spawn(boom(), name="boom")
    await runner.drain(timeout=1.0)
    await asyncio.sleep(0)

    logger.error.assert_called_once()
    assert runner.pending == 0


@pytest.mark.asyncio
async def test_drain_cancels_slow_tasks_after_grace_period():
    logger = MagicMock()
    runner = BackgroundTaskRunner(logger)
    cancelled = asyncio.Event()

    async def slow():
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    runner.spawn(slow(), name="slow")
    await asyncio.sleep(0)

    assert await runner.drain(timeout=0.05) == 1
    assert cancelled.is_set()
    logger.warning.assert_called_once()
