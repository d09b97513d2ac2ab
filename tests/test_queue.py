import asyncio
import random

import pytest

from conftest import make_email
from mail_dispatch.queue import TaskPriorityQueue
from mail_dispatch.task import EmailTask


def _task(priority, task_id=None):
    task = EmailTask(email=make_email(), provider_name="smtp", priority=priority)
    task.task_id = task_id or f"task-{priority}-{random.random()}"
    return task


@pytest.mark.asyncio
async def test_pop_empty_returns_none():
    queue = TaskPriorityQueue()
    assert await queue.pop() is None
    assert queue.peek() is None


@pytest.mark.asyncio
async def test_pop_order_is_non_decreasing():
    rng = random.Random(42)
    queue = TaskPriorityQueue()
    for _ in range(100):
        await queue.push(_task(rng.randint(0, 5)))

    popped = []
    while (task := await queue.pop()) is not None:
        popped.append(task.priority)

    assert len(popped) == 100
    assert popped == sorted(popped)


@pytest.mark.asyncio
async def test_peek_and_snapshot_do_not_consume():
    queue = TaskPriorityQueue()
    await queue.push(_task(3))
    await queue.push(_task(0))
    await queue.push(_task(1))

    assert queue.peek().priority == 0
    assert [task.priority for task in queue.snapshot()] == [0, 1, 3]
    assert len(queue) == 3


@pytest.mark.asyncio
async def test_concurrent_push_and_pop_lose_nothing():
    queue = TaskPriorityQueue()
    tasks = [_task(i % 4, task_id=f"t{i}") for i in range(200)]
    await asyncio.gather(*(queue.push(task) for task in tasks))

    results = await asyncio.gather(*(queue.pop() for _ in range(200)))
    assert {task.task_id for task in results} == {f"t{i}" for i in range(200)}
    assert await queue.pop() is None


@pytest.mark.asyncio
async def test_wait_for_task_times_out_on_empty_queue():
    queue = TaskPriorityQueue()
    assert await queue.wait_for_task(timeout=0.01) is False


@pytest.mark.asyncio
async def test_push_wakes_waiter():
    queue = TaskPriorityQueue()
    waiter = asyncio.create_task(queue.wait_for_task(timeout=1.0))
    await asyncio.sleep(0)
    await queue.push(_task(2))
    assert await waiter is True


@pytest.mark.asyncio
async def test_clear_returns_removed_count():
    queue = TaskPriorityQueue()
    await queue.push(_task(1))
    await queue.push(_task(2))
    assert await queue.clear() == 2
    assert len(queue) == 0
    assert await queue.wait_for_task(timeout=0.01) is False


def test_queue_is_bound_to_one_event_loop():
    queue = TaskPriorityQueue()
    asyncio.run(queue.push(_task(1)))

    with pytest.raises(RuntimeError, match="different event loop"):
        asyncio.run(queue.pop())
    assert len(queue) == 1
