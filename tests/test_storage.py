"""Tests for the execution log: runs, history and conditional commits."""

from datetime import datetime, timedelta

import pytest

from conftest import open_backend
from rssflow.core.commands import RecordStage
from rssflow.core.errors import WorkflowAlreadyExistsError, WorkflowFailureError
from rssflow.decorators import activity, workflow
from rssflow.executor import ClientError, Orchestrator
from rssflow.models import EventType, Failure, WorkflowStatus
from rssflow.storage import SqliteExecutionLog

QUEUE = "storage-queue"


@pytest.fixture(params=["memory", "sqlite", "redis"])
async def storage(request):
    """Every backend, redis included."""
    async with open_backend(request.param) as backend:
        yield backend


@activity
async def noop() -> None:
    return None


@workflow(activities=[noop])
async def idle(ctx) -> str:
    await ctx.call_activity(noop)
    return "done"


@pytest.mark.asyncio
async def test_start_persists_run_history_and_task(orchestrator, random_workflow_id):
    handle = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )

    run = await handle.describe()
    assert run.status == WorkflowStatus.RUNNING
    assert run.workflow_type == "idle"
    assert run.run_id == handle.run_id

    history = await orchestrator.get_history(random_workflow_id)
    assert [(e.event_id, e.event_type) for e in history] == [(1, EventType.WORKFLOW_STARTED)]
    assert await orchestrator.storage.queue_depth(QUEUE) == 1


@pytest.mark.asyncio
async def test_duplicate_running_workflow_id_fails_fast(orchestrator, random_workflow_id):
    first = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )

    with pytest.raises(WorkflowAlreadyExistsError) as exc_info:
        await orchestrator.start_workflow(idle, workflow_id=random_workflow_id, task_queue=QUEUE)

    assert exc_info.value.run_id == first.run_id
    # No second run and no second task
    assert len(await orchestrator.storage.list_runs()) == 1
    assert await orchestrator.storage.queue_depth(QUEUE) == 1


@pytest.mark.asyncio
async def test_workflow_id_reusable_after_close(orchestrator, random_workflow_id):
    first = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )
    run = await first.describe()
    assert await orchestrator.fail_run(run, Failure("Abandoned", "test"))

    second = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )

    assert second.run_id != first.run_id
    assert (await orchestrator.describe(random_workflow_id)).run_id == second.run_id
    assert (await orchestrator.describe_run(first.run_id)).status == WorkflowStatus.FAILED


@pytest.mark.asyncio
async def test_closed_run_cannot_close_again(orchestrator, random_workflow_id):
    handle = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )
    run = await handle.describe()

    assert await orchestrator.fail_run(run, Failure("First", "one"))
    assert not await orchestrator.fail_run(run, Failure("Second", "two"))

    with pytest.raises(WorkflowFailureError) as exc_info:
        await handle.result(timeout=1)
    assert exc_info.value.failure.error_type == "First"


@pytest.mark.asyncio
async def test_commit_requires_expected_event_id(orchestrator, random_workflow_id):
    handle = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )
    run = await handle.describe()

    commands = [RecordStage(seq=1, stage="started")]

    # History holds one event, so the next id is 2, not 5
    assert not await orchestrator.commit_workflow_task(run, 5, commands)
    assert len(await orchestrator.get_history(random_workflow_id)) == 1

    assert await orchestrator.commit_workflow_task(run, 2, commands)
    assert await orchestrator.current_stage(random_workflow_id) == "started"


@pytest.mark.asyncio
async def test_commit_rejected_once_run_is_closed(orchestrator, random_workflow_id):
    handle = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )
    run = await handle.describe()
    await orchestrator.fail_run(run, Failure("Abandoned", "test"))

    assert not await orchestrator.commit_workflow_task(
        run, 3, [RecordStage(seq=1, stage="late")]
    )


@pytest.mark.asyncio
async def test_expired_run_closes_timed_out(orchestrator, random_workflow_id):
    handle = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE, run_timeout=60
    )

    assert await orchestrator.process_timeouts(datetime.now()) == 0
    assert await orchestrator.process_timeouts(datetime.now() + timedelta(minutes=2)) == 1

    with pytest.raises(WorkflowFailureError) as exc_info:
        await handle.result(timeout=1)
    assert exc_info.value.status == WorkflowStatus.TIMED_OUT
    assert exc_info.value.failure.timed_out

    history = await orchestrator.get_history(random_workflow_id)
    assert history[-1].event_type == EventType.WORKFLOW_TIMED_OUT


@pytest.mark.asyncio
async def test_list_runs_filters_by_status(orchestrator):
    await orchestrator.start_workflow(idle, workflow_id="a", task_queue=QUEUE)
    b = await orchestrator.start_workflow(idle, workflow_id="b", task_queue=QUEUE)
    await orchestrator.fail_run(await b.describe(), Failure("Abandoned", "test"))

    running = await orchestrator.storage.list_runs(WorkflowStatus.RUNNING)
    failed = await orchestrator.storage.list_runs(WorkflowStatus.FAILED)

    assert [r.workflow_id for r in running] == ["a"]
    assert [r.workflow_id for r in failed] == ["b"]


@pytest.mark.asyncio
async def test_unknown_ids_raise_client_error(orchestrator):
    with pytest.raises(ClientError):
        await orchestrator.describe("nope")
    with pytest.raises(ClientError):
        await orchestrator.describe_run("nope")
    with pytest.raises(ClientError):
        await orchestrator.get_result("nope", timeout=0.1)


@pytest.mark.asyncio
async def test_result_times_out_while_running(orchestrator, random_workflow_id):
    handle = await orchestrator.start_workflow(
        idle, workflow_id=random_workflow_id, task_queue=QUEUE
    )

    with pytest.raises(TimeoutError):
        await handle.result(timeout=0.1)


@pytest.mark.asyncio
async def test_sqlite_history_survives_reconnect(temp_db_path):
    storage = SqliteExecutionLog(str(temp_db_path))
    await storage.connect()
    handle = await Orchestrator(storage).start_workflow(
        idle, workflow_id="durable", task_queue=QUEUE
    )
    await storage.close()

    reopened = SqliteExecutionLog(str(temp_db_path))
    await reopened.connect()
    try:
        orchestrator = Orchestrator(reopened)
        run = await orchestrator.describe("durable")
        assert run.run_id == handle.run_id
        assert run.status == WorkflowStatus.RUNNING
        assert len(await orchestrator.get_history("durable")) == 1
        assert await reopened.queue_depth(QUEUE) == 1
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_reset_clears_everything(orchestrator, random_workflow_id):
    await orchestrator.start_workflow(idle, workflow_id=random_workflow_id, task_queue=QUEUE)

    await orchestrator.storage.reset()

    assert await orchestrator.storage.list_runs() == []
    assert await orchestrator.storage.queue_depth(QUEUE) == 0
