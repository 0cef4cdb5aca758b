"""
ExecutionLog - Abstract interface for storage backends.

Design Pattern: Adapter Pattern
ExecutionLog defines the target interface that all storage adapters implement.
Different storage backends (SQLite, Redis, Memory) adapt to this common interface.

Design Principle: Dependency Inversion
High-level modules (Orchestrator, Worker, Client) depend on this abstraction,
not on concrete storage implementations.

Every state transition of the orchestrator is a single method here, and
each backend applies it atomically: a run's history, its activity tasks,
its timers and the queue entries that wake it are always written together.
That is what keeps history append-only and free of concurrent-writer races
even when several workers and clients share one store.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from rssflow.models import (
    ActivityStatus,
    ActivityTask,
    Failure,
    HistoryEvent,
    RunClosure,
    TaskQueueEntry,
    TimerInfo,
    WorkflowRun,
    WorkflowStatus,
)


class StorageError(Exception):
    """
    Storage operation failed.

    Backends wrap driver errors (sqlite3, redis) in this type so callers
    only need to handle one exception class.
    """

    pass


class ExecutionLog(ABC):
    """
    Abstract interface for durable run, history and queue storage.

    Implementations must ensure every method is atomic with respect to
    every other method, across all processes sharing the store.
    """

    # =========================================================================
    # Runs and history
    # =========================================================================

    @abstractmethod
    async def start_run(
        self, run: WorkflowRun, started: HistoryEvent, entry: TaskQueueEntry
    ) -> WorkflowRun:
        """
        Persist a new run with its WORKFLOW_STARTED event and first workflow task.

        Args:
            run: The run to create (status RUNNING, next_event_id 1)
            started: WORKFLOW_STARTED event (numbered by storage)
            entry: Workflow task that will execute the run

        Returns:
            The stored run

        Raises:
            WorkflowAlreadyExistsError: A RUNNING run already uses run.workflow_id
        """
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by run id."""
        ...

    @abstractmethod
    async def find_run(self, workflow_id: str) -> WorkflowRun | None:
        """Retrieve the most recent run started with this workflow id."""
        ...

    @abstractmethod
    async def list_runs(self, status: WorkflowStatus | None = None) -> list[WorkflowRun]:
        """List runs, optionally filtered by status, oldest first."""
        ...

    @abstractmethod
    async def get_history(self, run_id: str) -> list[HistoryEvent]:
        """
        Get a run's history in event_id order.

        Args:
            run_id: Run identifier

        Returns:
            Every event appended for this run (empty if the run is unknown)
        """
        ...

    @abstractmethod
    async def commit_workflow_task(
        self,
        run_id: str,
        expected_next_event_id: int,
        events: list[HistoryEvent],
        activities: list[ActivityTask],
        timers: list[TimerInfo],
        entries: list[TaskQueueEntry],
        closure: RunClosure | None = None,
    ) -> bool:
        """
        Apply the commands produced by one workflow task.

        Optimistic concurrency: the write only happens if the run is still
        RUNNING and its next_event_id still equals expected_next_event_id,
        i.e. nothing was appended since the replay that produced these
        commands read the history.

        Args:
            run_id: Run identifier
            expected_next_event_id: next_event_id observed by the replay
            events: Events to append, in order
            activities: Activity tasks to create
            timers: Timers to create
            entries: Queue entries to enqueue (activity tasks to dispatch)
            closure: Terminal outcome, if the workflow finished

        Returns:
            True if applied, False if the run moved on (stale task)
        """
        ...

    @abstractmethod
    async def close_run(self, run_id: str, event: HistoryEvent, closure: RunClosure) -> bool:
        """
        Close a RUNNING run outside of a workflow task (run timeout, fatal error).

        Appends the closing event, sets the terminal fields, and cancels the
        run's open activities and pending timers.

        Returns:
            True if the run was closed, False if it was already terminal
        """
        ...

    @abstractmethod
    async def request_cancellation(
        self, run_id: str, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        """
        Record a CANCEL_REQUESTED event and wake the workflow.

        Returns:
            True if recorded, False if the run is terminal or already cancelling
        """
        ...

    @abstractmethod
    async def get_expired_runs(self, now: datetime) -> list[WorkflowRun]:
        """Get RUNNING runs whose run-level deadline is at or before `now`."""
        ...

    # =========================================================================
    # Activity tasks
    # =========================================================================

    @abstractmethod
    async def get_activity(self, task_id: str) -> ActivityTask | None:
        """Retrieve an activity task by id."""
        ...

    @abstractmethod
    async def get_activities_for_run(self, run_id: str) -> list[ActivityTask]:
        """Get a run's activity tasks ordered by seq."""
        ...

    @abstractmethod
    async def start_activity_attempt(
        self, task_id: str, attempt: int, now: datetime
    ) -> ActivityTask | None:
        """
        Mark the given attempt as started and fix its start-to-close deadline.

        A redelivered entry for an attempt that already started keeps the
        original deadline.

        Returns:
            The activity task, or None if it is closed or `attempt` is stale
        """
        ...

    @abstractmethod
    async def record_activity_outcome(
        self,
        task_id: str,
        attempt: int,
        status: ActivityStatus,
        event: HistoryEvent,
        entry: TaskQueueEntry,
        failure: Failure | None = None,
    ) -> bool:
        """
        Close an activity with a terminal result and wake its workflow.

        Atomically: checks the activity is open at `attempt` and its run is
        RUNNING, sets the activity status, appends `event` to the run's
        history and enqueues the workflow task `entry`.

        Args:
            task_id: Activity task identifier
            attempt: Attempt that produced the outcome
            status: COMPLETED or FAILED
            event: ACTIVITY_COMPLETED or ACTIVITY_FAILED event
            entry: Workflow task for the owning run
            failure: Terminal failure stored on the task (FAILED only)

        Returns:
            True if recorded, False if the outcome is stale or a duplicate
        """
        ...

    @abstractmethod
    async def reschedule_activity(
        self,
        task_id: str,
        attempt: int,
        failure: Failure,
        next_attempt_at: datetime,
        entry: TaskQueueEntry,
    ) -> bool:
        """
        Move an activity to its next attempt after a retryable failure.

        Atomically: checks the activity is open at `attempt`, increments the
        attempt, clears the deadline, stores `failure`, and enqueues `entry`
        (visible at next_attempt_at).

        Returns:
            True if rescheduled, False if the failure is stale or a duplicate
        """
        ...

    @abstractmethod
    async def get_expired_activities(self, now: datetime) -> list[ActivityTask]:
        """Get STARTED activities whose start-to-close deadline has passed."""
        ...

    # =========================================================================
    # Timers
    # =========================================================================

    @abstractmethod
    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        """Get unfired timers with fire_at at or before `now`."""
        ...

    @abstractmethod
    async def fire_timer(
        self, run_id: str, seq: int, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        """
        Claim a due timer, append TIMER_FIRED and wake the workflow.

        Multiple workers can safely call this; only one succeeds.

        Returns:
            True if this call fired the timer
        """
        ...

    @abstractmethod
    async def get_next_timer_fire_time(self) -> datetime | None:
        """Get the earliest fire_at among unfired timers."""
        ...

    # =========================================================================
    # Task queue
    # =========================================================================

    @abstractmethod
    async def enqueue(self, entry: TaskQueueEntry) -> str:
        """
        Add an entry to its queue.

        Returns:
            The entry id
        """
        ...

    @abstractmethod
    async def poll(
        self, queue_name: str, worker_id: str, lease_duration: timedelta
    ) -> TaskQueueEntry | None:
        """
        Claim the oldest claimable entry on a queue.

        Claimable means PENDING and visible, or CLAIMED with an expired
        lease (redelivery). The claim sets locked_by, lease_expires_at and
        increments delivery_count.

        Returns:
            The claimed entry, or None if nothing is claimable
        """
        ...

    @abstractmethod
    async def ack(self, entry_id: str, worker_id: str) -> bool:
        """
        Delete an entry after successful processing.

        Returns:
            True if the entry was held by worker_id and is now gone
        """
        ...

    @abstractmethod
    async def nack(
        self, entry_id: str, worker_id: str, error: str, delay: timedelta
    ) -> bool:
        """
        Release an entry for redelivery after `delay`.

        Returns:
            True if the entry was held by worker_id and has been released
        """
        ...

    @abstractmethod
    async def extend_lease(
        self, entry_id: str, worker_id: str, lease_duration: timedelta
    ) -> bool:
        """
        Push the lease of a held entry to now + lease_duration.

        Returns:
            False if the entry is gone or now held by another worker
        """
        ...

    @abstractmethod
    async def queue_depth(self, queue_name: str) -> int:
        """Count entries (pending or claimed) on a queue."""
        ...

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def reset(self) -> None:
        """
        Clear all data (for testing/demos).

        After reset, storage is empty but functional.
        """
        raise NotImplementedError("reset() not supported by this backend")

    async def close(self) -> None:
        """
        Close storage connections.

        Default no-op for backends without connections.
        """
        pass


# =============================================================================
# Notification protocols
# =============================================================================


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Protocol for storage backends that support event-driven work notifications.

    This protocol lets workers wait for work instead of polling, improving
    latency and reducing load on the store. Backends that can't provide
    notifications (or clients in another process) fall back to polling.

    Contract:
    Implementations must:
    1. Maintain an asyncio.Event for work notifications
    2. Call `event.set()` whenever an entry is enqueued or released
    3. Workers will `await event.wait()` and then `event.clear()`

    Worker Usage:
    ```python
    if isinstance(storage, WorkNotificationSource):
        await asyncio.wait_for(storage.work_notify().wait(), timeout=poll_interval)
    else:
        await asyncio.sleep(poll_interval)
    ```
    """

    def work_notify(self) -> asyncio.Event:
        """
        Return event that signals when work becomes available.

        Returns:
            asyncio.Event that workers wait on
        """
        ...


@runtime_checkable
class TimerNotificationSource(Protocol):
    """
    Protocol for storage backends that support event-driven timer notifications.

    Implementations call `event.set()` when a timer is scheduled or fired,
    so the worker can recalculate its next wake-up time.
    """

    def timer_notify(self) -> asyncio.Event:
        """
        Return event that signals when timer state changes.

        Returns:
            asyncio.Event that timer processors wait on
        """
        ...


@runtime_checkable
class StatusNotificationSource(Protocol):
    """
    Protocol for storage backends that announce run status changes.

    The event is set whenever a run reaches a terminal status. Callers
    waiting for a result re-read the run after each wake-up.
    """

    def status_notify(self) -> asyncio.Event:
        """
        Return event that is set when any run closes.

        Returns:
            asyncio.Event that result waiters wait on
        """
        ...
