"""
Orchestrator - owns run state, history and the activity lifecycle.

Design Principle: Single Writer per Transition
Workers never write history directly. They hand the orchestrator the
commands of a replay, an activity's result, or an activity's error, and
the orchestrator turns each into exactly one atomic storage transition:

    start_workflow        WORKFLOW_STARTED + first workflow task
    commit_workflow_task  command events + activity tasks + timers
                          (+ closing event), conditioned on next_event_id
    complete_activity     ACTIVITY_COMPLETED + workflow task
    fail_activity         retry with backoff, or ACTIVITY_FAILED + workflow task
    cancel_workflow       CANCEL_REQUESTED + workflow task
    process_timeouts      timed-out attempts, expired runs, due timers

Design Pattern: Façade
Clients start runs, wait for results and inspect history through the
same object, without touching storage, serialization or queue entries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from uuid_extensions import uuid7

from rssflow.core.commands import (
    CancelWorkflow,
    Command,
    CompleteWorkflow,
    FailWorkflow,
    RecordStage,
    ScheduleActivity,
    StartTimer,
)
from rssflow.core.errors import ActivityTimeoutError, WorkflowFailureError
from rssflow.core.serialization import decode, encode, payload_hash
from rssflow.decorators import workflow_definition
from rssflow.executor.queue import new_entry
from rssflow.models import (
    DEFAULT_START_TO_CLOSE_TIMEOUT,
    ActivityStatus,
    ActivityTask,
    EventType,
    Failure,
    HistoryEvent,
    RetryPolicy,
    RunClosure,
    TaskKind,
    TaskQueueEntry,
    TimerInfo,
    WorkflowRun,
    WorkflowStatus,
)
from rssflow.storage.base import ExecutionLog, StatusNotificationSource

logger = logging.getLogger(__name__)


class ClientError(Exception):
    """
    A client request could not be served.

    Raised for unknown workflow ids and for arguments or results that
    cannot be serialized.
    """

    pass


class RunHandle:
    """
    Reference to a started run.

    Usage:
        handle = await orchestrator.start_workflow(summarize_rss_feed, request,
                                                   workflow_id="rss", task_queue="rss")
        result = await handle.result(timeout=60)
    """

    def __init__(self, orchestrator: Orchestrator, workflow_id: str, run_id: str):
        self._orchestrator = orchestrator
        self.workflow_id = workflow_id
        self.run_id = run_id

    async def result(self, timeout: float | None = None) -> Any:
        """Wait for this run's result (see Orchestrator.get_result)."""
        return await self._orchestrator.get_result(self, timeout=timeout)

    async def describe(self) -> WorkflowRun:
        """Current state of this run."""
        return await self._orchestrator.describe_run(self.run_id)

    async def cancel(self) -> bool:
        """Request cancellation of this run."""
        return await self._orchestrator.cancel_workflow(self.workflow_id)

    def __repr__(self) -> str:
        return f"RunHandle(workflow_id={self.workflow_id!r}, run_id={self.run_id!r})"


class Orchestrator:
    """
    Workflow engine over a durable execution log.

    Usage:
        storage = SqliteExecutionLog("rssflow.db")
        await storage.connect()
        orchestrator = Orchestrator(storage)

        handle = await orchestrator.start_workflow(
            summarize_rss_feed, request, workflow_id="rss-summary-workflow",
            task_queue="rss-summary",
        )
        print(await orchestrator.get_result(handle))
    """

    def __init__(
        self,
        storage: ExecutionLog,
        version: str | None = None,
        result_poll_interval: float = 0.5,
    ):
        """
        Args:
            storage: Durable store shared with workers
            version: Deployment version stamped on started runs
            result_poll_interval: Seconds between re-reads while waiting for a
                result when no in-process status notification arrives
        """
        self._storage = storage
        self._version = version
        self._result_poll_interval = result_poll_interval

        if isinstance(storage, StatusNotificationSource):
            self._status_notify: asyncio.Event | None = storage.status_notify()
        else:
            self._status_notify = None

    @property
    def storage(self) -> ExecutionLog:
        return self._storage

    @property
    def version(self) -> str | None:
        return self._version

    def __repr__(self) -> str:
        return f"Orchestrator({self._storage!r})"

    # =========================================================================
    # Client operations
    # =========================================================================

    async def start_workflow(
        self,
        workflow: Callable[..., Any] | str,
        *args: Any,
        workflow_id: str,
        task_queue: str,
        run_timeout: float | None = None,
    ) -> RunHandle:
        """
        Start a new run.

        Persists the run, its WORKFLOW_STARTED event and its first workflow
        task in one write.

        Args:
            workflow: @workflow function or its registered name
            *args: Workflow arguments (must be picklable)
            workflow_id: Caller-chosen id, unique among RUNNING runs
            task_queue: Queue whose workers execute the run
            run_timeout: Seconds after which the run is closed TIMED_OUT

        Returns:
            RunHandle for waiting on and inspecting the run

        Raises:
            WorkflowAlreadyExistsError: A RUNNING run already uses workflow_id
            ClientError: The arguments cannot be serialized
        """
        workflow_type = workflow if isinstance(workflow, str) else workflow_definition(workflow).name

        try:
            payload = encode(tuple(args))
        except Exception as e:
            raise ClientError(f"Failed to serialize arguments of {workflow_type}: {e}") from e

        now = datetime.now()
        run = WorkflowRun(
            workflow_id=workflow_id,
            run_id=str(uuid7()),
            workflow_type=workflow_type,
            task_queue=task_queue,
            input=payload,
            status=WorkflowStatus.RUNNING,
            created_at=now,
            deadline=now + timedelta(seconds=run_timeout) if run_timeout else None,
            version=self._version,
        )
        started = HistoryEvent(
            run_id=run.run_id,
            event_type=EventType.WORKFLOW_STARTED,
            timestamp=now,
            payload=payload,
        )
        entry = new_entry(task_queue, TaskKind.WORKFLOW, run.run_id)

        stored = await self._storage.start_run(run, started, entry)
        logger.info(
            f"Started {workflow_type} workflow_id={workflow_id} run_id={stored.run_id} "
            f"on queue {task_queue!r}"
        )
        return RunHandle(self, stored.workflow_id, stored.run_id)

    async def get_result(self, handle: RunHandle | str, timeout: float | None = None) -> Any:
        """
        Wait until a run is terminal and return its result.

        Args:
            handle: RunHandle, or a workflow id (its most recent run)
            timeout: Seconds to wait (None = wait indefinitely)

        Returns:
            The workflow's decoded return value

        Raises:
            WorkflowFailureError: The run ended FAILED, TIMED_OUT or CANCELLED
            TimeoutError: The run did not finish within `timeout`
            ClientError: Unknown workflow id
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while True:
            if self._status_notify is not None:
                self._status_notify.clear()

            run = await self._resolve(handle)
            if run.status.is_terminal:
                return self._unwrap(run)

            wait = self._result_poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TimeoutError(
                        f"workflow {run.workflow_id!r} still running after {timeout}s"
                    )
                wait = min(wait, remaining)

            if self._status_notify is not None:
                try:
                    await asyncio.wait_for(self._status_notify.wait(), timeout=wait)
                except TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait)

    async def cancel_workflow(self, workflow_id: str) -> bool:
        """
        Request cancellation of the running run with this workflow id.

        Idempotent: returns False if the run is already terminal or a
        cancellation is already recorded.

        Raises:
            ClientError: Unknown workflow id
        """
        run = await self.describe(workflow_id)
        if not run.is_running:
            return False

        event = HistoryEvent(
            run_id=run.run_id,
            event_type=EventType.CANCEL_REQUESTED,
            timestamp=datetime.now(),
        )
        entry = new_entry(run.task_queue, TaskKind.WORKFLOW, run.run_id)
        requested = await self._storage.request_cancellation(run.run_id, event, entry)
        if requested:
            logger.info(f"Cancellation requested for {workflow_id} (run_id={run.run_id})")
        return requested

    async def describe(self, workflow_id: str) -> WorkflowRun:
        """
        Get the most recent run started with this workflow id.

        Raises:
            ClientError: Unknown workflow id
        """
        run = await self._storage.find_run(workflow_id)
        if run is None:
            raise ClientError(f"Unknown workflow id: {workflow_id}")
        return run

    async def describe_run(self, run_id: str) -> WorkflowRun:
        """
        Get a run by run id.

        Raises:
            ClientError: Unknown run id
        """
        run = await self._storage.get_run(run_id)
        if run is None:
            raise ClientError(f"Unknown run id: {run_id}")
        return run

    async def get_history(self, workflow_id: str) -> list[HistoryEvent]:
        """History of the most recent run with this workflow id."""
        run = await self.describe(workflow_id)
        return await self._storage.get_history(run.run_id)

    async def current_stage(self, workflow_id: str) -> str | None:
        """Latest stage recorded by the workflow through ctx.set_stage()."""
        stage = None
        for event in await self.get_history(workflow_id):
            if event.event_type == EventType.STAGE_CHANGED:
                stage = decode(event.payload)
        return stage

    # =========================================================================
    # Workflow tasks
    # =========================================================================

    async def commit_workflow_task(
        self,
        run: WorkflowRun,
        expected_next_event_id: int,
        commands: list[Command],
    ) -> bool:
        """
        Apply the commands of one replay atomically.

        Args:
            run: The replayed run
            expected_next_event_id: next_event_id of the history the replay saw
            commands: Commands in emission order

        Returns:
            True if committed, False if the history moved on (stale task)
        """
        if not commands:
            return True

        now = datetime.now()
        events: list[HistoryEvent] = []
        activities: list[ActivityTask] = []
        timers: list[TimerInfo] = []
        entries: list[TaskQueueEntry] = []
        closure: RunClosure | None = None

        for command in commands:
            match command:
                case ScheduleActivity():
                    task = self._new_activity(run, command, now)
                    activities.append(task)
                    entries.append(
                        new_entry(task.task_queue, TaskKind.ACTIVITY, task.task_id, task.attempt)
                    )
                    events.append(
                        HistoryEvent(
                            run_id=run.run_id,
                            event_type=EventType.ACTIVITY_SCHEDULED,
                            timestamp=now,
                            seq=command.seq,
                            activity_type=command.activity_type,
                            payload=command.input,
                            attempt=1,
                            input_hash=command.input_hash,
                        )
                    )

                case StartTimer(seq=seq, fire_at=fire_at):
                    timers.append(TimerInfo(run.run_id, seq, fire_at, run.task_queue))
                    events.append(
                        HistoryEvent(
                            run_id=run.run_id,
                            event_type=EventType.TIMER_STARTED,
                            timestamp=now,
                            seq=seq,
                            payload=encode(fire_at),
                        )
                    )

                case RecordStage(seq=seq, stage=stage):
                    payload = encode(stage)
                    events.append(
                        HistoryEvent(
                            run_id=run.run_id,
                            event_type=EventType.STAGE_CHANGED,
                            timestamp=now,
                            seq=seq,
                            payload=payload,
                            input_hash=payload_hash(stage),
                        )
                    )

                case CompleteWorkflow(result=result):
                    closure = RunClosure(WorkflowStatus.COMPLETED, result=result)
                    events.append(self._closing_event(run, EventType.WORKFLOW_COMPLETED, now, result))

                case FailWorkflow(failure=failure):
                    closure = RunClosure(WorkflowStatus.FAILED, failure=failure)
                    events.append(
                        self._closing_event(run, EventType.WORKFLOW_FAILED, now, encode(failure))
                    )

                case CancelWorkflow(failure=failure):
                    closure = RunClosure(WorkflowStatus.CANCELLED, failure=failure)
                    events.append(
                        self._closing_event(run, EventType.WORKFLOW_CANCELLED, now, encode(failure))
                    )

        committed = await self._storage.commit_workflow_task(
            run.run_id, expected_next_event_id, events, activities, timers, entries, closure
        )
        if not committed:
            logger.debug(
                f"Run {run.run_id}: discarded stale workflow task "
                f"(expected next_event_id={expected_next_event_id})"
            )
        elif closure is not None:
            logger.info(f"Run {run.run_id} ({run.workflow_id}) closed {closure.status.value}")
        return committed

    async def fail_run(self, run: WorkflowRun, failure: Failure) -> bool:
        """Close a run FAILED outside of a replay (e.g. unknown workflow type)."""
        event = self._closing_event(run, EventType.WORKFLOW_FAILED, datetime.now(), encode(failure))
        closed = await self._storage.close_run(
            run.run_id, event, RunClosure(WorkflowStatus.FAILED, failure=failure)
        )
        if closed:
            logger.error(f"Run {run.run_id} ({run.workflow_id}) failed: {failure}")
        return closed

    # =========================================================================
    # Activity results
    # =========================================================================

    async def complete_activity(self, task: ActivityTask, result: Any) -> bool:
        """
        Record an activity's result and wake its workflow.

        Returns:
            False if the attempt is stale or the run is no longer running
        """
        run = await self._storage.get_run(task.run_id)
        if run is None or not run.is_running:
            return False

        try:
            payload = encode(result)
        except Exception as e:
            return await self.fail_activity(task, e)

        event = HistoryEvent(
            run_id=task.run_id,
            event_type=EventType.ACTIVITY_COMPLETED,
            timestamp=datetime.now(),
            seq=task.seq,
            activity_type=task.activity_type,
            payload=payload,
            attempt=task.attempt,
        )
        recorded = await self._storage.record_activity_outcome(
            task.task_id,
            task.attempt,
            ActivityStatus.COMPLETED,
            event,
            new_entry(run.task_queue, TaskKind.WORKFLOW, run.run_id),
        )
        if recorded:
            logger.debug(
                f"Activity {task.activity_type} (seq={task.seq}) of run {task.run_id} "
                f"completed on attempt {task.attempt}"
            )
        return recorded

    async def fail_activity(self, task: ActivityTask, error: BaseException | Failure) -> bool:
        """
        Handle a failed attempt according to the task's RetryPolicy.

        Retryable and not exhausted: the task moves to its next attempt,
        dispatched after the policy's backoff delay. Otherwise
        ACTIVITY_FAILED is recorded and the workflow is woken.

        Returns:
            False if the attempt is stale or the run is no longer running
        """
        if isinstance(error, Failure):
            failure = error.with_context(task.activity_type, task.attempt)
        else:
            failure = Failure.from_exception(
                error, activity_type=task.activity_type, attempt=task.attempt
            )

        policy = task.retry_policy
        delay_ms = None
        if not failure.non_retryable and policy.allows_retry_of(failure.error_type):
            delay_ms = policy.delay_for_attempt(task.attempt)

        if delay_ms is not None:
            next_attempt_at = datetime.now() + timedelta(milliseconds=delay_ms)
            entry = new_entry(
                task.task_queue,
                TaskKind.ACTIVITY,
                task.task_id,
                task.attempt + 1,
                visible_at=next_attempt_at,
            )
            rescheduled = await self._storage.reschedule_activity(
                task.task_id, task.attempt, failure, next_attempt_at, entry
            )
            if rescheduled:
                logger.warning(
                    f"Activity {task.activity_type} attempt {task.attempt} failed "
                    f"({failure.error_type}: {failure.message}); retrying in {delay_ms}ms"
                )
            return rescheduled

        run = await self._storage.get_run(task.run_id)
        if run is None or not run.is_running:
            return False

        event = HistoryEvent(
            run_id=task.run_id,
            event_type=EventType.ACTIVITY_FAILED,
            timestamp=datetime.now(),
            seq=task.seq,
            activity_type=task.activity_type,
            payload=encode(failure),
            attempt=task.attempt,
        )
        recorded = await self._storage.record_activity_outcome(
            task.task_id,
            task.attempt,
            ActivityStatus.FAILED,
            event,
            new_entry(run.task_queue, TaskKind.WORKFLOW, run.run_id),
            failure=failure,
        )
        if recorded:
            logger.error(f"Activity of run {task.run_id} failed terminally: {failure}")
        return recorded

    # =========================================================================
    # Timeouts and timers
    # =========================================================================

    async def process_timeouts(self, now: datetime | None = None) -> int:
        """
        Apply every deadline that has passed at `now`.

        - Attempts past their start-to-close deadline fail with
          ActivityTimeoutError (retried per policy).
        - Runs past their run-level deadline close TIMED_OUT.
        - Due durable timers fire.

        Safe to call from every worker concurrently.

        Returns:
            Number of transitions applied
        """
        now = now or datetime.now()
        count = await self.expire_activities(now)
        count += await self.expire_runs(now)
        count += await self.fire_timers(now)
        return count

    async def expire_activities(self, now: datetime) -> int:
        count = 0
        for task in await self._storage.get_expired_activities(now):
            error = ActivityTimeoutError(task.activity_type, task.attempt, task.start_to_close_timeout)
            if await self.fail_activity(task, error):
                count += 1
        return count

    async def expire_runs(self, now: datetime) -> int:
        count = 0
        for run in await self._storage.get_expired_runs(now):
            failure = Failure(
                error_type="WorkflowTimedOut",
                message=f"run exceeded its deadline of {run.deadline.isoformat()}",
                timed_out=True,
            )
            event = self._closing_event(run, EventType.WORKFLOW_TIMED_OUT, now, encode(failure))
            closure = RunClosure(WorkflowStatus.TIMED_OUT, failure=failure)
            if await self._storage.close_run(run.run_id, event, closure):
                logger.warning(f"Run {run.run_id} ({run.workflow_id}) timed out")
                count += 1
        return count

    async def fire_timers(self, now: datetime) -> int:
        count = 0
        for timer in await self._storage.get_expired_timers(now):
            event = HistoryEvent(
                run_id=timer.run_id,
                event_type=EventType.TIMER_FIRED,
                timestamp=now,
                seq=timer.seq,
            )
            entry = new_entry(timer.task_queue, TaskKind.WORKFLOW, timer.run_id)
            if await self._storage.fire_timer(timer.run_id, timer.seq, event, entry):
                logger.debug(f"Timer fired: run={timer.run_id} seq={timer.seq}")
                count += 1
            else:
                logger.debug(f"Timer already fired by another worker: run={timer.run_id}")
        return count

    async def next_timer_fire_time(self) -> datetime | None:
        return await self._storage.get_next_timer_fire_time()

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _resolve(self, handle: RunHandle | str) -> WorkflowRun:
        if isinstance(handle, RunHandle):
            return await self.describe_run(handle.run_id)
        return await self.describe(handle)

    @staticmethod
    def _unwrap(run: WorkflowRun) -> Any:
        if run.status == WorkflowStatus.COMPLETED:
            return decode(run.result)
        raise WorkflowFailureError(run.workflow_id, run.status, run.failure)

    @staticmethod
    def _new_activity(run: WorkflowRun, command: ScheduleActivity, now: datetime) -> ActivityTask:
        options = command.options
        return ActivityTask(
            task_id=str(uuid7()),
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            seq=command.seq,
            activity_type=command.activity_type,
            task_queue=options.task_queue or run.task_queue,
            input=command.input,
            start_to_close_timeout=(
                options.start_to_close_timeout
                if options.start_to_close_timeout is not None
                else DEFAULT_START_TO_CLOSE_TIMEOUT
            ),
            retry_policy=options.retry_policy or RetryPolicy.DEFAULT,
            scheduled_at=now,
        )

    @staticmethod
    def _closing_event(
        run: WorkflowRun, event_type: EventType, now: datetime, payload: bytes | None
    ) -> HistoryEvent:
        return HistoryEvent(
            run_id=run.run_id,
            event_type=event_type,
            timestamp=now,
            payload=payload,
        )
