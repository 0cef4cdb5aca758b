"""End-to-end tests: workflows executed by a polling worker."""

import asyncio
import threading
import time
from datetime import datetime

import pytest

from conftest import running_worker
from rssflow.core.activity_context import current_activity
from rssflow.core.errors import ActivityError, WorkflowCancelledError, WorkflowFailureError
from rssflow.decorators import activity, workflow, workflow_definition
from rssflow.executor import Orchestrator, TaskQueue, WorkflowExecutor
from rssflow.models import ActivityOptions, EventType, RetryPolicy, TaskKind, WorkflowStatus

QUEUE = "test-queue"

FAST_RETRY = RetryPolicy(maximum_attempts=3, initial_interval_ms=10, maximum_interval_ms=100)
# Delays large enough that poll latency cannot reorder the gaps
SPACED_RETRY = RetryPolicy(
    maximum_attempts=3, initial_interval_ms=100, backoff_coefficient=3.0, maximum_interval_ms=1000
)

attempts: list[int] = []
attempt_times: list[float] = []


@pytest.fixture(autouse=True)
def reset_attempts():
    attempts.clear()
    attempt_times.clear()
    yield
    attempts.clear()
    attempt_times.clear()


@activity(retry_policy=SPACED_RETRY)
async def always_fails(x: int) -> int:
    attempts.append(current_activity().attempt)
    attempt_times.append(time.monotonic())
    raise ConnectionError(f"upstream down for {x}")


@activity(retry_policy=FAST_RETRY)
async def times_ten(x: int) -> int:
    attempts.append(current_activity().attempt)
    return x * 10


@activity(start_to_close_timeout=0.3, retry_policy=FAST_RETRY)
async def times_ten_quickly(x: int) -> int:
    attempts.append(current_activity().attempt)
    return x * 10


@activity(retry_policy=FAST_RETRY)
async def flaky(x: int) -> int:
    attempt = current_activity().attempt
    attempts.append(attempt)
    if attempt < 3:
        raise ConnectionError("try again")
    return x + 1


@activity(start_to_close_timeout=0.1, retry_policy=RetryPolicy.NONE)
async def hangs() -> None:
    await asyncio.sleep(5)


@activity
def thread_name(prefix: str) -> str:
    return f"{prefix}:{threading.current_thread() is threading.main_thread()}"


@activity
async def add_one(x: int) -> int:
    return x + 1


@workflow(activities=[always_fails])
async def fails_three_times(ctx, x: int) -> int:
    try:
        return await ctx.call_activity(always_fails, x)
    except ActivityError as e:
        ctx.set_stage(f"gave up after attempt {e.failure.attempt}")
        raise


@workflow(activities=[flaky])
async def recovers(ctx, x: int) -> int:
    return await ctx.call_activity(flaky, x)


@workflow(activities=[hangs])
async def times_out(ctx) -> None:
    await ctx.call_activity(hangs)


@workflow(activities=[thread_name])
async def runs_in_thread(ctx) -> str:
    return await ctx.call_activity(thread_name, "sync")


@workflow(activities=[add_one])
async def naps(ctx, x: int) -> int:
    x = await ctx.call_activity(add_one, x)
    await ctx.sleep(0.1)
    return await ctx.call_activity(add_one, x)


@workflow(activities=[add_one])
async def counts(ctx, n: int) -> int:
    total = 0
    for _ in range(n):
        total = await ctx.call_activity(add_one, total)
    return total


@workflow(activities=[add_one])
async def sleeps_forever(ctx) -> None:
    await ctx.call_activity(add_one, 0)
    await ctx.sleep(3600)


@workflow(activities=[times_ten])
async def scales(ctx, x: int) -> int:
    return await ctx.call_activity(times_ten, x)


@workflow(activities=[times_ten_quickly])
async def scales_quickly(ctx, x: int) -> int:
    return await ctx.call_activity(times_ten_quickly, x)


async def crash_during_activity(orchestrator, fn, workflow_id, lease):
    """
    Start `fn` and play a worker that dies inside its first activity.

    The workflow task is processed normally; the activity entry is then
    claimed for `lease` seconds and its attempt started, but never finished.
    """
    storage = orchestrator.storage
    queue = TaskQueue(storage, QUEUE)
    handle = await orchestrator.start_workflow(fn, 1, workflow_id=workflow_id, task_queue=QUEUE)

    entry = await queue.poll("crashed-worker", lease_duration=30.0)
    assert entry.kind == TaskKind.WORKFLOW
    run = await storage.get_run(handle.run_id)
    result = await WorkflowExecutor(workflow_definition(fn)).replay(
        run, await storage.get_history(run.run_id)
    )
    assert await orchestrator.commit_workflow_task(
        run, result.expected_next_event_id, result.commands
    )
    assert await queue.complete(entry)

    entry = await queue.poll("crashed-worker", lease_duration=lease)
    assert entry.kind == TaskKind.ACTIVITY
    assert await storage.start_activity_attempt(entry.ref_id, entry.attempt, datetime.now())
    return handle


@workflow
async def calls_by_name(ctx) -> int:
    return await ctx.call_activity("not_registered_anywhere", 1)


@workflow(activities=[add_one])
async def overrides_options(ctx) -> int:
    return await ctx.call_activity(
        add_one, 41, options=ActivityOptions(retry_policy=RetryPolicy.NONE)
    )


@pytest.mark.asyncio
async def test_activity_result_flows_back(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [overrides_options], [add_one]):
        handle = await orchestrator.start_workflow(
            overrides_options, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        assert await handle.result(timeout=5) == 42


@pytest.mark.asyncio
async def test_retries_exhausted_after_maximum_attempts(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [fails_three_times], [always_fails]):
        handle = await orchestrator.start_workflow(
            fails_three_times, 7, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        with pytest.raises(WorkflowFailureError) as exc_info:
            await handle.result(timeout=5)

    assert attempts == [1, 2, 3]
    assert exc_info.value.status == WorkflowStatus.FAILED
    assert await orchestrator.current_stage(random_workflow_id) == "gave up after attempt 3"

    history = await orchestrator.get_history(random_workflow_id)
    failed = [e for e in history if e.event_type == EventType.ACTIVITY_FAILED]
    # Intermediate attempts leave no trace in history
    assert len(failed) == 1
    assert failed[0].attempt == 3


@pytest.mark.asyncio
async def test_retry_attempts_are_spaced_by_backoff(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [fails_three_times], [always_fails]):
        handle = await orchestrator.start_workflow(
            fails_three_times, 7, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        with pytest.raises(WorkflowFailureError):
            await handle.result(timeout=5)

    assert len(attempt_times) == 3
    gaps = [later - earlier for earlier, later in zip(attempt_times, attempt_times[1:])]
    delays = [SPACED_RETRY.delay_for_attempt(n) / 1000 for n in (1, 2)]
    assert delays == [0.1, 0.3]
    for gap, delay in zip(gaps, delays):
        assert gap >= delay
    assert gaps == sorted(gaps)


@pytest.mark.asyncio
async def test_activity_redelivered_after_worker_crash(orchestrator, random_workflow_id):
    handle = await crash_during_activity(orchestrator, scales, random_workflow_id, lease=0.1)

    async with running_worker(orchestrator, [scales], [times_ten]):
        assert await handle.result(timeout=5) == 10

    # Same attempt, delivered a second time once the lease lapsed
    assert attempts == [1]
    history = await orchestrator.get_history(random_workflow_id)
    completed = [e for e in history if e.event_type == EventType.ACTIVITY_COMPLETED]
    assert [e.attempt for e in completed] == [1]
    assert EventType.ACTIVITY_FAILED not in [e.event_type for e in history]
    assert await TaskQueue(orchestrator.storage, QUEUE).depth() == 0


@pytest.mark.asyncio
async def test_crashed_attempt_times_out_and_retries(orchestrator, random_workflow_id):
    # The crashed claim outlives the attempt deadline, so only the timeout frees it
    handle = await crash_during_activity(
        orchestrator, scales_quickly, random_workflow_id, lease=30.0
    )

    async with running_worker(orchestrator, [scales_quickly], [times_ten_quickly]):
        assert await handle.result(timeout=5) == 10

    assert attempts == [2]
    history = await orchestrator.get_history(random_workflow_id)
    completed = [e for e in history if e.event_type == EventType.ACTIVITY_COMPLETED]
    assert [e.attempt for e in completed] == [2]
    assert EventType.ACTIVITY_FAILED not in [e.event_type for e in history]


@pytest.mark.asyncio
async def test_retry_then_success(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [recovers], [flaky]):
        handle = await orchestrator.start_workflow(
            recovers, 1, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        assert await handle.result(timeout=5) == 2

    assert attempts == [1, 2, 3]


@pytest.mark.asyncio
async def test_activity_timeout_is_reported_as_timed_out(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [times_out], [hangs]):
        handle = await orchestrator.start_workflow(
            times_out, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        with pytest.raises(WorkflowFailureError) as exc_info:
            await handle.result(timeout=5)

    failure = exc_info.value.failure
    assert failure.timed_out
    assert failure.activity_type == "hangs"


@pytest.mark.asyncio
async def test_sync_activity_runs_off_the_event_loop(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [runs_in_thread], [thread_name]):
        handle = await orchestrator.start_workflow(
            runs_in_thread, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        assert await handle.result(timeout=5) == "sync:False"


@pytest.mark.asyncio
async def test_durable_sleep(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [naps], [add_one]):
        handle = await orchestrator.start_workflow(
            naps, 1, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        assert await handle.result(timeout=5) == 3

    types = [e.event_type for e in await orchestrator.get_history(random_workflow_id)]
    assert EventType.TIMER_STARTED in types
    assert EventType.TIMER_FIRED in types


@pytest.mark.asyncio
async def test_run_timeout_closes_timed_out(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [sleeps_forever], [add_one]):
        handle = await orchestrator.start_workflow(
            sleeps_forever, workflow_id=random_workflow_id, task_queue=QUEUE, run_timeout=0.3
        )
        with pytest.raises(WorkflowFailureError) as exc_info:
            await handle.result(timeout=5)

    assert exc_info.value.status == WorkflowStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_cancel_sleeping_run(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [sleeps_forever], [add_one]):
        handle = await orchestrator.start_workflow(
            sleeps_forever, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        while EventType.TIMER_STARTED not in [
            e.event_type for e in await orchestrator.get_history(random_workflow_id)
        ]:
            await asyncio.sleep(0.02)

        assert await handle.cancel()
        with pytest.raises(WorkflowFailureError) as exc_info:
            await handle.result(timeout=5)

    assert exc_info.value.status == WorkflowStatus.CANCELLED
    assert exc_info.value.failure.error_type == WorkflowCancelledError.__name__


@pytest.mark.asyncio
async def test_unknown_workflow_type_fails_run(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [counts], [add_one]):
        handle = await orchestrator.start_workflow(
            "never_registered", workflow_id=random_workflow_id, task_queue=QUEUE
        )
        with pytest.raises(WorkflowFailureError) as exc_info:
            await handle.result(timeout=5)

    assert exc_info.value.failure.error_type == "ConfigurationError"


@pytest.mark.asyncio
async def test_unregistered_activity_fails_without_retry(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [calls_by_name], [add_one]):
        handle = await orchestrator.start_workflow(
            calls_by_name, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        with pytest.raises(WorkflowFailureError) as exc_info:
            await handle.result(timeout=5)

    failure = exc_info.value.failure
    assert failure.error_type == "ApplicationError"
    assert failure.non_retryable
    history = await orchestrator.get_history(random_workflow_id)
    failed = [e for e in history if e.event_type == EventType.ACTIVITY_FAILED]
    assert len(failed) == 1
    assert failed[0].attempt == 1


@pytest.mark.asyncio
async def test_concurrent_runs_keep_separate_histories(orchestrator):
    async with running_worker(orchestrator, [counts], [add_one], max_concurrent=4):
        handles = [
            await orchestrator.start_workflow(counts, 5, workflow_id=f"count-{i}", task_queue=QUEUE)
            for i in range(8)
        ]
        results = await asyncio.gather(*(h.result(timeout=10) for h in handles))

    assert results == [5] * 8
    for handle in handles:
        history = await orchestrator.storage.get_history(handle.run_id)
        assert all(e.run_id == handle.run_id for e in history)
        assert [e.event_id for e in history] == list(range(1, len(history) + 1))
        scheduled = [e for e in history if e.event_type == EventType.ACTIVITY_SCHEDULED]
        assert [e.seq for e in scheduled] == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_shutdown_leaves_queue_consistent(orchestrator, random_workflow_id):
    async with running_worker(orchestrator, [counts], [add_one]):
        handle = await orchestrator.start_workflow(
            counts, 3, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        assert await handle.result(timeout=5) == 3

    assert await TaskQueue(orchestrator.storage, QUEUE).depth() == 0


@pytest.mark.asyncio
async def test_durable_sleep_on_redis(redis_storage, random_workflow_id):
    orchestrator = Orchestrator(redis_storage, result_poll_interval=0.05)

    async with running_worker(orchestrator, [naps], [add_one]):
        handle = await orchestrator.start_workflow(
            naps, 1, workflow_id=random_workflow_id, task_queue=QUEUE
        )
        assert await handle.result(timeout=10) == 3

    history = await orchestrator.get_history(random_workflow_id)
    assert [e.event_id for e in history] == list(range(1, len(history) + 1))
    assert EventType.TIMER_FIRED in [e.event_type for e in history]
    assert await redis_storage.get_next_timer_fire_time() is None
    assert await redis_storage.queue_depth(QUEUE) == 0
