"""Tests for background task tracking"""

import asyncio
import logging

import pytest

from craftstudio.core.tasks import BackgroundTasks


@pytest.mark.asyncio
async def test_drain_waits_for_spawned_tasks():
    tasks = BackgroundTasks("test")
    done = []

    async def work(i):
        await asyncio.sleep(0.01)
        done.append(i)

    for i in range(3):
        tasks.spawn(work(i))
    assert tasks.pending == 3

    await tasks.drain()

    assert sorted(done) == [0, 1, 2]
    assert tasks.pending == 0


@pytest.mark.asyncio
async def test_drain_includes_tasks_spawned_while_draining():
    tasks = BackgroundTasks("test")
    done = []

    async def child():
        done.append("child")

    async def parent():
        await asyncio.sleep(0)
        tasks.spawn(child())
        done.append("parent")

    tasks.spawn(parent())
    await tasks.drain()

    assert done == ["parent", "child"]


@pytest.mark.asyncio
async def test_failures_are_logged_not_raised(caplog):
    tasks = BackgroundTasks("test")

    async def boom():
        raise RuntimeError("kaput")

    with caplog.at_level(logging.ERROR, logger="craftstudio.core.tasks"):
        tasks.spawn(boom(), name="boom-task")
        await tasks.drain()

    assert "Background task boom-task failed: kaput" in caplog.text


@pytest.mark.asyncio
async def test_cancel_all():
    tasks = BackgroundTasks("test")
    task = tasks.spawn(asyncio.sleep(60))

    await tasks.cancel_all()

    assert task.cancelled()
    assert tasks.pending == 0


@pytest.mark.asyncio
async def test_drain_timeout():
    tasks = BackgroundTasks("test")
    tasks.spawn(asyncio.sleep(60))

    with pytest.raises(asyncio.TimeoutError):
        await tasks.drain(timeout=0.01)

    await tasks.cancel_all()
