"""Worker for polling and executing workflow and activity tasks.

Workers poll one task queue, replay workflows, execute activities in
background tasks, and run engine maintenance (timeouts, run deadlines,
durable timers). Supports graceful shutdown and configurable concurrency
limits.

Features:
- Event-driven work polling with fallback
- Non-blocking task execution, bounded by a semaphore
- Lease keeper for long-running activities
- Start-to-close timeouts via asyncio.wait_for
- Synchronous activities run in a thread (asyncio.to_thread)
- Graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from uuid_extensions import uuid7

from rssflow.core.activity_context import ACTIVITY_CONTEXT, ActivityContext
from rssflow.core.errors import ActivityTimeoutError
from rssflow.core.serialization import decode
from rssflow.executor.orchestrator import Orchestrator
from rssflow.executor.queue import TaskQueue
from rssflow.executor.registry import ActivityRegistry, WorkflowRegistry, validate_registries
from rssflow.executor.replay import WorkflowExecutor
from rssflow.models import ApplicationError, Failure, TaskKind, TaskQueueEntry
from rssflow.storage import TimerNotificationSource

logger = logging.getLogger(__name__)


class Worker:
    """Worker that polls one task queue and executes what it finds.

    Design Patterns:
    - Template Method: run() defines fixed algorithm skeleton
    - Builder: with_max_concurrent_tasks(), with_poll_interval() for configuration

    Registries are validated in the constructor, so a misconfigured
    worker fails before it ever polls.

    Usage:
        storage = SqliteExecutionLog("rssflow.db")
        await storage.connect()
        orchestrator = Orchestrator(storage)

        worker = Worker(
            orchestrator,
            TaskQueue(storage, "rss-summary"),
            workflows=[summarize_rss_feed],
            activities=[PipelineActivities(reader, mailer, "output.txt")],
        ).with_max_concurrent_tasks(8)

        handle = await worker.start()
        # ... let it run ...
        await handle.shutdown()
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        task_queue: TaskQueue,
        workflows: WorkflowRegistry | Iterable[Callable[..., Any]] | Mapping[str, Callable[..., Any]] = (),
        activities: ActivityRegistry | Iterable[Any] | Mapping[str, Callable[..., Any]] = (),
        worker_id: str | None = None,
    ):
        """Initialize worker with its orchestrator, queue and registries.

        Args:
            orchestrator: Engine shared with clients
            task_queue: Queue to poll
            workflows: Workflow functions (or a WorkflowRegistry)
            activities: Activity functions, objects with @activity methods,
                or an ActivityRegistry
            worker_id: Unique worker identifier (generated if not provided)

        Raises:
            ConfigurationError: Registries are inconsistent
        """
        self._orchestrator = orchestrator
        self._queue = task_queue
        self._worker_id = worker_id or f"worker-{uuid7()}"

        self._workflows = (
            workflows if isinstance(workflows, WorkflowRegistry) else WorkflowRegistry(workflows)
        )
        self._activities = (
            activities if isinstance(activities, ActivityRegistry) else ActivityRegistry(activities)
        )
        validate_registries(self._workflows, self._activities)

        self._poll_interval = 1.0
        self._lease_duration = 30.0
        self._maintenance_interval = 1.0
        self._max_concurrent_tasks = 10
        self._semaphore: asyncio.Semaphore | None = None

        self._shutdown_event = asyncio.Event()
        self._running = False

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        # Dequeue channel (bounded to 1) to prevent work hogging
        self._dequeue_queue: asyncio.Queue[TaskQueueEntry] = asyncio.Queue(maxsize=1)
        self._dequeue_task: asyncio.Task | None = None

        storage = orchestrator.storage
        if isinstance(storage, TimerNotificationSource):
            self._timer_notify: asyncio.Event | None = storage.timer_notify()
        else:
            self._timer_notify = None

        logger.debug(
            f"Worker {self._worker_id}: {len(self._workflows)} workflows, "
            f"{len(self._activities)} activities on queue {task_queue.name!r}"
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def with_max_concurrent_tasks(self, max_concurrent: int) -> Worker:
        """Limit how many tasks execute at once (builder pattern).

        The permit is acquired BEFORE polling, so a worker at capacity
        does not claim entries it cannot start.

        Args:
            max_concurrent: Maximum number of concurrently executing tasks

        Returns:
            self for method chaining
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent_tasks = max_concurrent
        return self

    def with_poll_interval(self, interval: float) -> Worker:
        """Configure the long-poll wait per dequeue attempt (builder pattern).

        Args:
            interval: Seconds to wait for work before polling again

        Returns:
            self for method chaining
        """
        self._poll_interval = interval
        return self

    def with_lease_duration(self, seconds: float) -> Worker:
        """Configure how long a claimed entry stays leased without extension.

        A worker that crashes mid-task loses its lease after this long,
        and the entry is redelivered to another worker.

        Returns:
            self for method chaining
        """
        self._lease_duration = seconds
        return self

    def with_maintenance_interval(self, seconds: float) -> Worker:
        """Configure how often timeouts and run deadlines are checked.

        Returns:
            self for method chaining
        """
        self._maintenance_interval = seconds
        return self

    async def start(self) -> WorkerHandle:
        """Start the worker main loop.

        Returns WorkerHandle immediately, letting caller decide
        whether to await or run concurrently.

        Returns:
            WorkerHandle for shutdown control
        """
        task = asyncio.create_task(self.run())
        return WorkerHandle(self, task)

    async def run(self) -> None:
        """Main worker loop using asyncio.wait with FIRST_COMPLETED.

        Concurrently waits on:
        1. Shutdown signal
        2. Dequeued entry (from background task via bounded queue)
        3. Maintenance tick (activity timeouts, run deadlines)
        4. Timer sleep (until the next durable timer is due)
        5. Timer notification (wakes when a timer is scheduled)

        Whichever completes first is handled, then the loop repeats.

        Runs until shutdown() or cancellation.
        """
        if self._running:
            raise WorkerError(f"Worker {self._worker_id} is already running")

        self._running = True
        self._shutdown_event.clear()
        self._semaphore = asyncio.Semaphore(self._max_concurrent_tasks)
        logger.info(f"Worker {self._worker_id} started on queue {self._queue.name!r}")

        self._dequeue_task = asyncio.create_task(self._background_dequeue_loop())
        next_timer_wake = await self._calculate_next_timer_wake()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    pending_tasks = {
                        "shutdown": asyncio.create_task(self._shutdown_event.wait()),
                        "dequeue": asyncio.create_task(self._dequeue_queue.get()),
                        "maintenance": asyncio.create_task(
                            asyncio.sleep(self._maintenance_interval)
                        ),
                        "timer_sleep": asyncio.create_task(
                            self._create_timer_sleep(next_timer_wake)
                        ),
                    }
                    if self._timer_notify is not None:
                        pending_tasks["timer_notify"] = asyncio.create_task(
                            self._timer_notify.wait()
                        )

                    done, pending = await asyncio.wait(
                        pending_tasks.values(),
                        return_when=asyncio.FIRST_COMPLETED,
                    )

                    for task in pending:
                        task.cancel()
                        try:
                            await task
                        except asyncio.CancelledError:
                            pass

                    for name, task in pending_tasks.items():
                        if task not in done:
                            continue

                        try:
                            result = task.result()
                        except Exception as task_error:
                            logger.error(
                                f"Worker {self._worker_id}: Task '{name}' failed: {task_error}"
                            )
                            continue

                        if name == "shutdown":
                            logger.debug(f"Worker {self._worker_id}: Shutdown signal received")

                        elif name == "dequeue":
                            self._dequeue_queue.task_done()
                            self._spawn(result)

                        elif name == "maintenance":
                            await self._run_maintenance()

                        elif name == "timer_sleep":
                            await self._process_timers()
                            next_timer_wake = await self._calculate_next_timer_wake()

                        elif name == "timer_notify":
                            self._timer_notify.clear()
                            next_timer_wake = await self._calculate_next_timer_wake()

                except Exception as e:
                    logger.error(f"Worker {self._worker_id} error: {e}")

        finally:
            await self._stop_dequeue_loop()
            self._running = False
            logger.info(f"Worker {self._worker_id} stopped")

    async def shutdown(self) -> None:
        """Gracefully shutdown the worker.

        Stops polling, then waits for all in-flight tasks to complete.
        """
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()

        await self._stop_dequeue_loop()

        if self._background_tasks:
            logger.info(
                f"Worker {self._worker_id}: Waiting for {len(self._background_tasks)} "
                "in-flight tasks to complete..."
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
            logger.info(f"Worker {self._worker_id}: All in-flight tasks completed")

    # =========================================================================
    # Dequeue
    # =========================================================================

    async def _background_dequeue_loop(self) -> None:
        """Continuously claim entries and hand them to the main loop.

        Backpressure strategy:
        1. Acquire semaphore permit BEFORE polling
        2. Poll the queue (long-polls up to poll_interval)
        3. Send the entry to the main loop; the permit is released when
           the task finishes
        """
        while self._running and not self._shutdown_event.is_set():
            acquired = False
            try:
                await self._semaphore.acquire()
                acquired = True

                entry = await self._queue.poll(
                    self._worker_id, self._lease_duration, timeout=self._poll_interval
                )
                if entry is None:
                    self._semaphore.release()
                    acquired = False
                    continue

                await self._dequeue_queue.put(entry)
                acquired = False  # Ownership moves to the spawned task

            except asyncio.CancelledError:
                if acquired:
                    self._semaphore.release()
                raise
            except Exception as e:
                if acquired:
                    self._semaphore.release()
                logger.error(f"Worker {self._worker_id}: Background dequeue error: {e}")
                await asyncio.sleep(self._poll_interval)

    async def _stop_dequeue_loop(self) -> None:
        if self._dequeue_task is not None and not self._dequeue_task.done():
            self._dequeue_task.cancel()
            try:
                await self._dequeue_task
            except asyncio.CancelledError:
                pass
        self._dequeue_task = None

    def _spawn(self, entry: TaskQueueEntry) -> None:
        task = asyncio.create_task(self._execute_entry(entry))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        logger.debug(
            f"Worker {self._worker_id} claimed {entry.kind.value} entry {entry.entry_id} "
            f"(ref={entry.ref_id})"
        )

    # =========================================================================
    # Task execution
    # =========================================================================

    async def _execute_entry(self, entry: TaskQueueEntry) -> None:
        """Execute one entry, then release its permit.

        Unexpected errors release the entry for redelivery; they never
        reach the main loop.
        """
        try:
            if entry.kind == TaskKind.WORKFLOW:
                await self._run_workflow_task(entry)
            elif entry.kind == TaskKind.ACTIVITY:
                await self._run_activity_task(entry)
            else:
                raise WorkerError(f"Unknown entry kind: {entry.kind}")
        except Exception as e:
            logger.error(
                f"Worker {self._worker_id} unexpected error: "
                f"entry={entry.entry_id} ref={entry.ref_id} error={e}"
            )
            try:
                await self._queue.fail(entry, str(e), retry_delay=self._poll_interval)
            except Exception as release_error:
                logger.warning(
                    f"Worker {self._worker_id}: could not release entry {entry.entry_id} "
                    f"({release_error}); it will be redelivered after its lease expires"
                )
        finally:
            self._semaphore.release()

    async def _run_workflow_task(self, entry: TaskQueueEntry) -> None:
        storage = self._orchestrator.storage
        run = await storage.get_run(entry.ref_id)
        if run is None or not run.is_running:
            logger.debug(f"Skipping workflow task for closed or unknown run {entry.ref_id}")
            await self._queue.complete(entry)
            return

        definition = self._workflows.get(run.workflow_type)
        if definition is None:
            failure = Failure(
                error_type="ConfigurationError",
                message=f"workflow type {run.workflow_type!r} is not registered on this queue",
            )
            await self._orchestrator.fail_run(run, failure)
            await self._queue.complete(entry)
            return

        history = await storage.get_history(run.run_id)
        result = await WorkflowExecutor(definition).replay(run, history)
        await self._orchestrator.commit_workflow_task(
            run, result.expected_next_event_id, result.commands
        )
        await self._queue.complete(entry)

    async def _run_activity_task(self, entry: TaskQueueEntry) -> None:
        storage = self._orchestrator.storage
        task = await storage.get_activity(entry.ref_id)
        if task is None or not task.is_open or task.attempt != entry.attempt:
            logger.debug(f"Skipping stale activity entry {entry.entry_id}")
            await self._queue.complete(entry)
            return

        definition = self._activities.get(task.activity_type)
        if definition is None:
            await self._orchestrator.fail_activity(
                task,
                ApplicationError(
                    f"activity {task.activity_type!r} is not registered on this queue",
                    non_retryable=True,
                ),
            )
            await self._queue.complete(entry)
            return

        now = datetime.now()
        started = await storage.start_activity_attempt(task.task_id, task.attempt, now)
        if started is None:
            await self._queue.complete(entry)
            return

        args = decode(started.input)
        ctx = ActivityContext(
            task_id=started.task_id,
            activity_type=started.activity_type,
            workflow_id=started.workflow_id,
            run_id=started.run_id,
            attempt=started.attempt,
            deadline=started.deadline,
            _heartbeat=lambda: self._queue.extend_lease(entry, self._lease_duration),
        )

        logger.debug(
            f"Executing activity {started.activity_type} attempt {started.attempt} "
            f"(run={started.run_id}, seq={started.seq})"
        )

        keeper = asyncio.create_task(self._keep_lease(entry))
        token = ACTIVITY_CONTEXT.set(ctx)
        try:
            if definition.is_async:
                call = definition.fn(*args)
            else:
                call = asyncio.to_thread(definition.fn, *args)
            result = await asyncio.wait_for(call, timeout=started.remaining(now))
        except TimeoutError:
            await self._orchestrator.fail_activity(
                started,
                ActivityTimeoutError(
                    started.activity_type, started.attempt, started.start_to_close_timeout
                ),
            )
        except Exception as e:
            await self._orchestrator.fail_activity(started, e)
        else:
            await self._orchestrator.complete_activity(started, result)
        finally:
            ACTIVITY_CONTEXT.reset(token)
            keeper.cancel()
            try:
                await keeper
            except asyncio.CancelledError:
                pass

        await self._queue.complete(entry)

    async def _keep_lease(self, entry: TaskQueueEntry) -> None:
        """Extend the entry's lease while its activity runs."""
        interval = self._lease_duration / 3
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self._queue.extend_lease(entry, self._lease_duration):
                    logger.warning(
                        f"Worker {self._worker_id} lost lease on entry {entry.entry_id}"
                    )
                    return
            except Exception as e:
                logger.warning(f"Worker {self._worker_id}: lease extension failed: {e}")

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def _run_maintenance(self) -> None:
        # Also fires due timers started by other processes, whose
        # timer notifications never reach this one
        try:
            count = await self._orchestrator.process_timeouts(datetime.now())
            if count > 0:
                logger.info(f"Worker {self._worker_id} applied {count} timeouts")
        except Exception as e:
            logger.warning(f"Worker {self._worker_id} maintenance failed: {e}")

    async def _process_timers(self) -> None:
        try:
            fired = await self._orchestrator.fire_timers(datetime.now())
            if fired:
                logger.debug(f"Worker {self._worker_id} fired {fired} timers")
        except Exception as e:
            logger.error(f"Timer processing error: {e}")

    async def _create_timer_sleep(self, next_timer_wake: datetime | None) -> None:
        """Sleep until the next timer is due, or forever if none is scheduled."""
        if next_timer_wake is None:
            # Cancelled when a timer notification or another event arrives
            await asyncio.Event().wait()
            return

        delay = (next_timer_wake - datetime.now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

    async def _calculate_next_timer_wake(self) -> datetime | None:
        try:
            return await self._orchestrator.next_timer_fire_time()
        except Exception as e:
            logger.warning(f"Worker {self._worker_id}: Failed to get next timer: {e}")
            return None


class WorkerHandle:
    """Handle for controlling a running worker.

    Composition - handle HAS-A worker, not IS-A worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    @property
    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        """Return True if the worker task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for completion."""
        await self._worker.shutdown()
        await self._task

    def abort(self) -> None:
        """Abort the worker immediately without waiting for in-flight tasks.

        Claimed entries are redelivered once their leases expire.
        """
        self._task.cancel()


class WorkerError(Exception):
    """Worker operation failed."""

    pass
