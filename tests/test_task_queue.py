"""Tests for the lease-based task queue on every backend."""

import asyncio

import pytest

from conftest import open_backend
from rssflow.executor import TaskQueue
from rssflow.models import EntryStatus, TaskKind


@pytest.fixture(params=["memory", "sqlite", "redis"])
async def storage(request):
    async with open_backend(request.param) as backend:
        yield backend


@pytest.mark.asyncio
async def test_enqueue_poll_complete(storage):
    queue = TaskQueue(storage, "q")
    entry_id = await queue.enqueue(TaskKind.WORKFLOW, "run-1")

    entry = await queue.poll("worker-1", lease_duration=30.0)

    assert entry is not None
    assert entry.entry_id == entry_id
    assert entry.ref_id == "run-1"
    assert entry.status == EntryStatus.CLAIMED
    assert entry.locked_by == "worker-1"
    assert entry.delivery_count == 1

    # Held entries are not handed out twice
    assert await queue.poll("worker-2", lease_duration=30.0) is None

    assert await queue.complete(entry)
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_expired_lease_is_redelivered(storage):
    """At-least-once: a worker that never completes its entry loses it."""
    queue = TaskQueue(storage, "q")
    await queue.enqueue(TaskKind.ACTIVITY, "task-1")

    first = await queue.poll("crashed-worker", lease_duration=0.05)
    await asyncio.sleep(0.1)
    second = await queue.poll("worker-2", lease_duration=30.0)

    assert second is not None
    assert second.entry_id == first.entry_id
    assert second.locked_by == "worker-2"
    assert second.delivery_count == 2

    # The crashed worker's late ack is rejected
    assert not await queue.complete(first)
    assert await queue.complete(second)


@pytest.mark.asyncio
async def test_extend_lease_keeps_entry(storage):
    queue = TaskQueue(storage, "q")
    await queue.enqueue(TaskKind.ACTIVITY, "task-1")

    entry = await queue.poll("worker-1", lease_duration=0.1)
    await asyncio.sleep(0.05)
    assert await queue.extend_lease(entry, 30.0)
    await asyncio.sleep(0.1)

    assert await queue.poll("worker-2", lease_duration=30.0) is None


@pytest.mark.asyncio
async def test_fail_releases_entry_after_delay(storage):
    queue = TaskQueue(storage, "q")
    await queue.enqueue(TaskKind.WORKFLOW, "run-1")
    entry = await queue.poll("worker-1", lease_duration=30.0)

    assert await queue.fail(entry, "boom", retry_delay=0.1)
    assert await queue.poll("worker-1", lease_duration=30.0) is None

    await asyncio.sleep(0.15)
    again = await queue.poll("worker-1", lease_duration=30.0)
    assert again is not None
    assert again.last_error == "boom"
    assert again.delivery_count == 2


@pytest.mark.asyncio
async def test_delayed_entry_is_invisible_until_due(storage):
    queue = TaskQueue(storage, "q")
    await queue.enqueue(TaskKind.ACTIVITY, "task-1", attempt=2, delay=0.1)

    assert await queue.poll("worker-1", lease_duration=30.0) is None

    entry = await queue.poll("worker-1", lease_duration=30.0, timeout=1.0)
    assert entry is not None
    assert entry.attempt == 2


@pytest.mark.asyncio
async def test_queues_are_isolated(storage):
    await TaskQueue(storage, "a").enqueue(TaskKind.WORKFLOW, "run-a")

    assert await TaskQueue(storage, "b").poll("worker-1", lease_duration=30.0) is None
    assert await TaskQueue(storage, "b").depth() == 0
    assert await TaskQueue(storage, "a").depth() == 1


@pytest.mark.asyncio
async def test_entries_served_oldest_first(storage):
    queue = TaskQueue(storage, "q")
    for i in range(3):
        await queue.enqueue(TaskKind.WORKFLOW, f"run-{i}")
        await asyncio.sleep(0.002)

    refs = []
    for _ in range(3):
        entry = await queue.poll("worker-1", lease_duration=30.0)
        refs.append(entry.ref_id)

    assert refs == ["run-0", "run-1", "run-2"]


@pytest.mark.asyncio
async def test_poll_waits_for_new_work(storage):
    queue = TaskQueue(storage, "q")

    async def produce():
        await asyncio.sleep(0.05)
        await queue.enqueue(TaskKind.WORKFLOW, "late-run")

    producer = asyncio.create_task(produce())
    entry = await queue.poll("worker-1", lease_duration=30.0, timeout=2.0)
    await producer

    assert entry is not None
    assert entry.ref_id == "late-run"


def test_queue_name_required(in_memory_storage):
    with pytest.raises(ValueError):
        TaskQueue(in_memory_storage, "")
