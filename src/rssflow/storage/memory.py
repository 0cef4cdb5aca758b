"""In-memory storage implementation for rssflow.

Design Pattern: Adapter Pattern
InMemoryExecutionLog adapts in-memory dictionaries to ExecutionLog interface.

Every method runs under one asyncio.Lock, which makes each orchestrator
transition atomic within the process. Instance is immediately usable
after __init__.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta

from rssflow.core.errors import WorkflowAlreadyExistsError
from rssflow.models import (
    ActivityStatus,
    ActivityTask,
    EntryStatus,
    Failure,
    HistoryEvent,
    RunClosure,
    TaskQueueEntry,
    TimerInfo,
    WorkflowRun,
    WorkflowStatus,
)
from rssflow.storage.base import ExecutionLog, StorageError


class InMemoryExecutionLog(ExecutionLog):
    """In-memory storage for testing and single-process use.

    Can be substituted for SqliteExecutionLog without changing client code.
    Returned objects are copies; mutating them never changes stored state.

    Usage:
        storage = InMemoryExecutionLog()
        orchestrator = Orchestrator(storage)
    """

    def __init__(self):
        """Initialize in-memory storage with notification support.

        Creates notification events for:
        - work_notify: Wake workers when work becomes available
        - timer_notify: Wake timer processing when timer state changes
        - status_notify: Wake result waiters when a run closes
        """
        # {run_id: WorkflowRun}
        self._runs: dict[str, WorkflowRun] = {}

        # Index: {workflow_id: run_id} of the most recent run
        self._latest_run: dict[str, str] = {}

        # {run_id: [HistoryEvent, ...]}
        self._history: dict[str, list[HistoryEvent]] = {}

        # {task_id: ActivityTask}
        self._activities: dict[str, ActivityTask] = {}

        # {(run_id, seq): TimerInfo} for unfired timers
        self._timers: dict[tuple[str, int], TimerInfo] = {}

        # {entry_id: TaskQueueEntry}
        self._entries: dict[str, TaskQueueEntry] = {}

        self._lock = asyncio.Lock()

        self._work_notify = asyncio.Event()
        self._timer_notify = asyncio.Event()
        self._status_notify = asyncio.Event()

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        return "InMemoryExecutionLog"

    # =========================================================================
    # Runs and history
    # =========================================================================

    async def start_run(
        self, run: WorkflowRun, started: HistoryEvent, entry: TaskQueueEntry
    ) -> WorkflowRun:
        async with self._lock:
            existing_id = self._latest_run.get(run.workflow_id)
            if existing_id is not None:
                existing = self._runs[existing_id]
                if existing.is_running:
                    raise WorkflowAlreadyExistsError(run.workflow_id, existing.run_id)

            if run.run_id in self._runs:
                raise StorageError(f"Run already stored: run_id={run.run_id}")

            stored = replace(run)
            self._runs[run.run_id] = stored
            self._latest_run[run.workflow_id] = run.run_id
            self._history[run.run_id] = []
            self._append(stored, [started])
            self._enqueue([entry])

            return replace(stored)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return replace(run) if run is not None else None

    async def find_run(self, workflow_id: str) -> WorkflowRun | None:
        async with self._lock:
            run_id = self._latest_run.get(workflow_id)
            if run_id is None:
                return None
            return replace(self._runs[run_id])

    async def list_runs(self, status: WorkflowStatus | None = None) -> list[WorkflowRun]:
        async with self._lock:
            runs = [
                replace(run)
                for run in self._runs.values()
                if status is None or run.status == status
            ]
            runs.sort(key=lambda r: r.created_at)
            return runs

    async def get_history(self, run_id: str) -> list[HistoryEvent]:
        async with self._lock:
            return list(self._history.get(run_id, []))

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
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise StorageError(f"Run not found: run_id={run_id}")

            if not run.is_running or run.next_event_id != expected_next_event_id:
                return False

            self._append(run, events)
            for task in activities:
                self._activities[task.task_id] = replace(task)
            for timer in timers:
                self._timers[(timer.run_id, timer.seq)] = timer
            if timers:
                self._timer_notify.set()
            self._enqueue(entries)

            if closure is not None:
                self._close(run, closure)

            return True

    async def close_run(self, run_id: str, event: HistoryEvent, closure: RunClosure) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise StorageError(f"Run not found: run_id={run_id}")
            if not run.is_running:
                return False

            self._append(run, [event])
            self._close(run, closure)
            return True

    async def request_cancellation(
        self, run_id: str, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise StorageError(f"Run not found: run_id={run_id}")
            if not run.is_running or run.cancel_requested:
                return False

            run.cancel_requested = True
            self._append(run, [event])
            self._enqueue([entry])
            return True

    async def get_expired_runs(self, now: datetime) -> list[WorkflowRun]:
        async with self._lock:
            return [
                replace(run)
                for run in self._runs.values()
                if run.is_running and run.deadline is not None and run.deadline <= now
            ]

    # =========================================================================
    # Activity tasks
    # =========================================================================

    async def get_activity(self, task_id: str) -> ActivityTask | None:
        async with self._lock:
            task = self._activities.get(task_id)
            return replace(task) if task is not None else None

    async def get_activities_for_run(self, run_id: str) -> list[ActivityTask]:
        async with self._lock:
            tasks = [replace(t) for t in self._activities.values() if t.run_id == run_id]
            tasks.sort(key=lambda t: t.seq)
            return tasks

    async def start_activity_attempt(
        self, task_id: str, attempt: int, now: datetime
    ) -> ActivityTask | None:
        async with self._lock:
            task = self._activities.get(task_id)
            if task is None or not task.is_open or task.attempt != attempt:
                return None

            started = task.start(now)
            self._activities[task_id] = started
            return replace(started)

    async def record_activity_outcome(
        self,
        task_id: str,
        attempt: int,
        status: ActivityStatus,
        event: HistoryEvent,
        entry: TaskQueueEntry,
        failure: Failure | None = None,
    ) -> bool:
        async with self._lock:
            task = self._activities.get(task_id)
            if task is None or not task.is_open or task.attempt != attempt:
                return False

            run = self._runs.get(task.run_id)
            if run is None or not run.is_running:
                return False

            self._activities[task_id] = replace(
                task, status=status, last_failure=failure or task.last_failure
            )
            self._append(run, [event])
            self._enqueue([entry])
            return True

    async def reschedule_activity(
        self,
        task_id: str,
        attempt: int,
        failure: Failure,
        next_attempt_at: datetime,
        entry: TaskQueueEntry,
    ) -> bool:
        async with self._lock:
            task = self._activities.get(task_id)
            if task is None or not task.is_open or task.attempt != attempt:
                return False

            self._activities[task_id] = replace(
                task,
                attempt=attempt + 1,
                status=ActivityStatus.SCHEDULED,
                started_at=None,
                deadline=None,
                next_attempt_at=next_attempt_at,
                last_failure=failure,
            )
            self._enqueue([entry])
            return True

    async def get_expired_activities(self, now: datetime) -> list[ActivityTask]:
        async with self._lock:
            return [
                replace(task)
                for task in self._activities.values()
                if task.status == ActivityStatus.STARTED
                and task.deadline is not None
                and task.deadline <= now
            ]

    # =========================================================================
    # Timers
    # =========================================================================

    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        async with self._lock:
            expired = [t for t in self._timers.values() if t.fire_at <= now]
            expired.sort(key=lambda t: t.fire_at)
            return expired

    async def fire_timer(
        self, run_id: str, seq: int, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        async with self._lock:
            timer = self._timers.pop((run_id, seq), None)
            if timer is None:
                return False

            run = self._runs.get(run_id)
            if run is None or not run.is_running:
                return False

            self._append(run, [event])
            self._enqueue([entry])
            self._timer_notify.set()
            return True

    async def get_next_timer_fire_time(self) -> datetime | None:
        async with self._lock:
            if not self._timers:
                return None
            return min(t.fire_at for t in self._timers.values())

    # =========================================================================
    # Task queue
    # =========================================================================

    async def enqueue(self, entry: TaskQueueEntry) -> str:
        async with self._lock:
            self._enqueue([entry])
            return entry.entry_id

    async def poll(
        self, queue_name: str, worker_id: str, lease_duration: timedelta
    ) -> TaskQueueEntry | None:
        async with self._lock:
            now = datetime.now()
            candidates = [
                e
                for e in self._entries.values()
                if e.queue_name == queue_name and e.is_claimable(now)
            ]
            if not candidates:
                return None

            candidates.sort(key=lambda e: (e.visible_at, e.created_at))
            entry = candidates[0]

            claimed = replace(
                entry,
                status=EntryStatus.CLAIMED,
                locked_by=worker_id,
                lease_expires_at=now + lease_duration,
                delivery_count=entry.delivery_count + 1,
            )
            self._entries[entry.entry_id] = claimed

            # Daisy-chain: if more work is ready, make sure other workers wake up
            if len(candidates) > 1:
                self._work_notify.set()

            return replace(claimed)

    async def ack(self, entry_id: str, worker_id: str) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.locked_by != worker_id:
                return False
            del self._entries[entry_id]
            return True

    async def nack(
        self, entry_id: str, worker_id: str, error: str, delay: timedelta
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.locked_by != worker_id:
                return False

            self._entries[entry_id] = replace(
                entry,
                status=EntryStatus.PENDING,
                locked_by=None,
                lease_expires_at=None,
                visible_at=datetime.now() + delay,
                last_error=error,
            )
            self._work_notify.set()
            return True

    async def extend_lease(
        self, entry_id: str, worker_id: str, lease_duration: timedelta
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if (
                entry is None
                or entry.status != EntryStatus.CLAIMED
                or entry.locked_by != worker_id
            ):
                return False

            entry.lease_expires_at = datetime.now() + lease_duration
            return True

    async def queue_depth(self, queue_name: str) -> int:
        async with self._lock:
            return sum(1 for e in self._entries.values() if e.queue_name == queue_name)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def reset(self) -> None:
        async with self._lock:
            self._runs.clear()
            self._latest_run.clear()
            self._history.clear()
            self._activities.clear()
            self._timers.clear()
            self._entries.clear()

    async def close(self) -> None:
        """No connections to close."""
        pass

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify

    def timer_notify(self) -> asyncio.Event:
        """Return event for timer notifications (TimerNotificationSource protocol)."""
        return self._timer_notify

    def status_notify(self) -> asyncio.Event:
        """Return event for run closure notifications (StatusNotificationSource protocol)."""
        return self._status_notify

    # =========================================================================
    # Helpers (caller holds the lock)
    # =========================================================================

    def _append(self, run: WorkflowRun, events: list[HistoryEvent]) -> None:
        history = self._history[run.run_id]
        for event in events:
            if event.run_id != run.run_id:
                raise StorageError(
                    f"Event for run {event.run_id} appended to run {run.run_id}"
                )
            history.append(event.numbered(run.next_event_id))
            run.next_event_id += 1

    def _enqueue(self, entries: list[TaskQueueEntry]) -> None:
        for entry in entries:
            self._entries[entry.entry_id] = replace(entry)
        if entries:
            self._work_notify.set()

    def _close(self, run: WorkflowRun, closure: RunClosure) -> None:
        run.status = closure.status
        run.result = closure.result
        run.failure = closure.failure
        run.closed_at = datetime.now()

        for task_id, task in self._activities.items():
            if task.run_id == run.run_id and task.is_open:
                self._activities[task_id] = replace(task, status=ActivityStatus.CANCELLED)

        for key in [k for k in self._timers if k[0] == run.run_id]:
            del self._timers[key]

        self._status_notify.set()
