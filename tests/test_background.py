from __future__ import annotations

import asyncio

from relay.orchestration.background import BackgroundTasks


async def test_drain_waits_for_spawned_work() -> None:
    tasks = BackgroundTasks()
    done = []

    async def work(n):
        await asyncio.sleep(0.01)
        done.append(n)

    tasks.spawn(work(1), name="w1")
    tasks.spawn(work(2), name="w2")
    assert tasks.outstanding == 2
    assert await tasks.drain(timeout=1) is True
    assert sorted(done) == [1, 2]
    assert tasks.outstanding == 0


async def test_drain_times_out_on_stuck_work() -> None:
    tasks = BackgroundTasks()
    task = tasks.spawn(asyncio.Event().wait(), name="stuck")
    assert await tasks.drain(timeout=0.05) is False
    task.cancel()
    await asyncio.sleep(0)


async def test_failed_task_is_forgotten() -> None:
    tasks = BackgroundTasks()

    async def boom():
        raise RuntimeError("x")

    tasks.spawn(boom(), name="boom")
    assert await tasks.drain(timeout=1) is True
    assert tasks.outstanding == 0
