"""Redis-based execution log implementation.

Provides a Redis backend for distributed execution with true
multi-machine support. Unlike SQLite which requires shared filesystem access,
Redis enables workers and clients to run on completely separate machines.

Data Structures:
- rssflow:run:{run_id} (STRING): Pickled WorkflowRun
- rssflow:runs (ZSET): All runs (score = created_at timestamp)
- rssflow:workflow:{workflow_id} (STRING): run_id of the most recent run
- rssflow:history:{run_id} (LIST): Pickled HistoryEvents in event_id order
- rssflow:activity:{task_id} (STRING): Pickled ActivityTask
- rssflow:activities:{run_id} (ZSET): Activity task ids (score = seq)
- rssflow:timers (ZSET): Unfired timers "{run_id}:{seq}" (score = fire_at timestamp)
- rssflow:timer:{run_id}:{seq} (STRING): Pickled TimerInfo
- rssflow:entry:{entry_id} (STRING): Pickled TaskQueueEntry
- rssflow:queue:{queue_name} (ZSET): Entry ids on a queue (score = created_at)

Key Features:
- Store-wide Redis lock: each orchestrator transition reads, checks and
  writes under one distributed lock, so transitions are atomic across
  machines
- Atomic writes: MULTI/EXEC pipelines apply every key of a transition at once
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements ExecutionLog for Redis, adapting the Redis key-value
store to the ExecutionLog interface.
"""

from __future__ import annotations

import asyncio
import pickle
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta

try:
    import redis.asyncio as redis
    from redis.exceptions import LockError, RedisError
except ImportError:
    raise ImportError("redis-py is required for RedisExecutionLog. Install with: pip install redis")

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

_PREFIX = "rssflow"
_LOCK_KEY = f"{_PREFIX}:lock"
_RUNS_KEY = f"{_PREFIX}:runs"
_TIMERS_KEY = f"{_PREFIX}:timers"


class RedisExecutionLog(ExecutionLog):
    """Redis execution log using connection pooling.

    Design: Adapter Pattern
    Adapts Redis key-value store to ExecutionLog interface.

    All dependencies (Redis connection) passed explicitly.

    Usage:
        storage = RedisExecutionLog("redis://localhost:6379")
        await storage.connect()
        orchestrator = Orchestrator(storage)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        lock_timeout: float = 30.0,
        client: redis.Redis | None = None,
    ):
        """Initialize Redis execution log.

        Default redis_url works for local development.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            lock_timeout: Seconds the store lock may be held before Redis expires it
            client: Already configured client to use instead of redis_url
                (must not decode responses)
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._lock_timeout = lock_timeout
        self._client = client
        self._redis: redis.Redis | None = None

        self._work_notify = asyncio.Event()
        self._timer_notify = asyncio.Event()
        self._status_notify = asyncio.Event()

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        return f"RedisExecutionLog({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._client is not None:
            self._redis = self._client
        else:
            self._redis = redis.from_url(
                self._redis_url,
                decode_responses=False,  # We handle binary data
                max_connections=self._max_connections,
            )
        try:
            await self._redis.ping()
        except RedisError as e:
            raise StorageError(f"Failed to connect to {self._redis_url}: {e}") from e

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[redis.Redis]:
        """Hold the store-wide lock for one transition.

        Redis errors are wrapped in StorageError; other exceptions propagate.
        """
        self._check_connected()
        lock = self._redis.lock(
            _LOCK_KEY, timeout=self._lock_timeout, blocking_timeout=self._lock_timeout
        )
        try:
            async with lock:
                yield self._redis
        except LockError as e:
            raise StorageError(f"Could not acquire store lock: {e}") from e
        except RedisError as e:
            raise StorageError(f"Redis operation failed: {e}") from e

    # =========================================================================
    # Key builders
    # =========================================================================

    @staticmethod
    def _run_key(run_id: str) -> str:
        return f"{_PREFIX}:run:{run_id}"

    @staticmethod
    def _workflow_key(workflow_id: str) -> str:
        return f"{_PREFIX}:workflow:{workflow_id}"

    @staticmethod
    def _history_key(run_id: str) -> str:
        return f"{_PREFIX}:history:{run_id}"

    @staticmethod
    def _activity_key(task_id: str) -> str:
        return f"{_PREFIX}:activity:{task_id}"

    @staticmethod
    def _activities_key(run_id: str) -> str:
        return f"{_PREFIX}:activities:{run_id}"

    @staticmethod
    def _timer_member(run_id: str, seq: int) -> str:
        return f"{run_id}:{seq}"

    @staticmethod
    def _timer_key(member: str) -> str:
        return f"{_PREFIX}:timer:{member}"

    @staticmethod
    def _entry_key(entry_id: str) -> str:
        return f"{_PREFIX}:entry:{entry_id}"

    @staticmethod
    def _queue_key(queue_name: str) -> str:
        return f"{_PREFIX}:queue:{queue_name}"

    # =========================================================================
    # Runs and history
    # =========================================================================

    async def start_run(
        self, run: WorkflowRun, started: HistoryEvent, entry: TaskQueueEntry
    ) -> WorkflowRun:
        async with self._locked() as r:
            existing_id = await r.get(self._workflow_key(run.workflow_id))
            if existing_id is not None:
                existing = await self._load_run(r, existing_id.decode())
                if existing is not None and existing.is_running:
                    raise WorkflowAlreadyExistsError(run.workflow_id, existing.run_id)

            stored = replace(run)
            async with r.pipeline(transaction=True) as pipe:
                self._append(pipe, stored, [started])
                pipe.set(self._run_key(run.run_id), pickle.dumps(stored))
                pipe.zadd(_RUNS_KEY, {run.run_id: run.created_at.timestamp()})
                pipe.set(self._workflow_key(run.workflow_id), run.run_id)
                self._enqueue(pipe, [entry])
                await pipe.execute()

        self._work_notify.set()
        return stored

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        self._check_connected()
        try:
            return await self._load_run(self._redis, run_id)
        except RedisError as e:
            raise StorageError(f"Failed to read run {run_id}: {e}") from e

    async def find_run(self, workflow_id: str) -> WorkflowRun | None:
        self._check_connected()
        try:
            run_id = await self._redis.get(self._workflow_key(workflow_id))
            if run_id is None:
                return None
            return await self._load_run(self._redis, run_id.decode())
        except RedisError as e:
            raise StorageError(f"Failed to find run for {workflow_id}: {e}") from e

    async def list_runs(self, status: WorkflowStatus | None = None) -> list[WorkflowRun]:
        self._check_connected()
        try:
            run_ids = await self._redis.zrange(_RUNS_KEY, 0, -1)
            runs = []
            for run_id in run_ids:
                run = await self._load_run(self._redis, run_id.decode())
                if run is not None and (status is None or run.status == status):
                    runs.append(run)
            return runs
        except RedisError as e:
            raise StorageError(f"Failed to list runs: {e}") from e

    async def get_history(self, run_id: str) -> list[HistoryEvent]:
        self._check_connected()
        try:
            raw = await self._redis.lrange(self._history_key(run_id), 0, -1)
        except RedisError as e:
            raise StorageError(f"Failed to read history of {run_id}: {e}") from e
        return [pickle.loads(item) for item in raw]

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
        async with self._locked() as r:
            run = await self._require_run(r, run_id)
            if not run.is_running or run.next_event_id != expected_next_event_id:
                return False

            open_tasks = await self._open_activities(r, run_id) if closure else []

            async with r.pipeline(transaction=True) as pipe:
                self._append(pipe, run, events)
                for task in activities:
                    self._save_activity(pipe, task)
                for timer in timers:
                    member = self._timer_member(timer.run_id, timer.seq)
                    pipe.set(self._timer_key(member), pickle.dumps(timer))
                    pipe.zadd(_TIMERS_KEY, {member: timer.fire_at.timestamp()})
                self._enqueue(pipe, entries)
                if closure is not None:
                    # Activities created by this same task are also still open
                    await self._close(pipe, r, run, closure, open_tasks + activities)
                pipe.set(self._run_key(run_id), pickle.dumps(run))
                await pipe.execute()

        if entries:
            self._work_notify.set()
        if timers:
            self._timer_notify.set()
        if closure is not None:
            self._status_notify.set()
        return True

    async def close_run(self, run_id: str, event: HistoryEvent, closure: RunClosure) -> bool:
        async with self._locked() as r:
            run = await self._require_run(r, run_id)
            if not run.is_running:
                return False

            open_tasks = await self._open_activities(r, run_id)
            async with r.pipeline(transaction=True) as pipe:
                self._append(pipe, run, [event])
                await self._close(pipe, r, run, closure, open_tasks)
                pipe.set(self._run_key(run_id), pickle.dumps(run))
                await pipe.execute()

        self._status_notify.set()
        return True

    async def request_cancellation(
        self, run_id: str, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        async with self._locked() as r:
            run = await self._require_run(r, run_id)
            if not run.is_running or run.cancel_requested:
                return False

            run.cancel_requested = True
            async with r.pipeline(transaction=True) as pipe:
                self._append(pipe, run, [event])
                pipe.set(self._run_key(run_id), pickle.dumps(run))
                self._enqueue(pipe, [entry])
                await pipe.execute()

        self._work_notify.set()
        return True

    async def get_expired_runs(self, now: datetime) -> list[WorkflowRun]:
        runs = await self.list_runs(WorkflowStatus.RUNNING)
        return [run for run in runs if run.deadline is not None and run.deadline <= now]

    # =========================================================================
    # Activity tasks
    # =========================================================================

    async def get_activity(self, task_id: str) -> ActivityTask | None:
        self._check_connected()
        try:
            return await self._load_activity(self._redis, task_id)
        except RedisError as e:
            raise StorageError(f"Failed to read activity {task_id}: {e}") from e

    async def get_activities_for_run(self, run_id: str) -> list[ActivityTask]:
        self._check_connected()
        try:
            return await self._activities_of(self._redis, run_id)
        except RedisError as e:
            raise StorageError(f"Failed to read activities of {run_id}: {e}") from e

    async def start_activity_attempt(
        self, task_id: str, attempt: int, now: datetime
    ) -> ActivityTask | None:
        async with self._locked() as r:
            task = await self._load_activity(r, task_id)
            if task is None or not task.is_open or task.attempt != attempt:
                return None

            started = task.start(now)
            if started is not task:
                await r.set(self._activity_key(task_id), pickle.dumps(started))
            return started

    async def record_activity_outcome(
        self,
        task_id: str,
        attempt: int,
        status: ActivityStatus,
        event: HistoryEvent,
        entry: TaskQueueEntry,
        failure: Failure | None = None,
    ) -> bool:
        async with self._locked() as r:
            task = await self._load_activity(r, task_id)
            if task is None or not task.is_open or task.attempt != attempt:
                return False

            run = await self._load_run(r, task.run_id)
            if run is None or not run.is_running:
                return False

            closed = replace(task, status=status, last_failure=failure or task.last_failure)
            async with r.pipeline(transaction=True) as pipe:
                self._save_activity(pipe, closed)
                self._append(pipe, run, [event])
                pipe.set(self._run_key(run.run_id), pickle.dumps(run))
                self._enqueue(pipe, [entry])
                await pipe.execute()

        self._work_notify.set()
        return True

    async def reschedule_activity(
        self,
        task_id: str,
        attempt: int,
        failure: Failure,
        next_attempt_at: datetime,
        entry: TaskQueueEntry,
    ) -> bool:
        async with self._locked() as r:
            task = await self._load_activity(r, task_id)
            if task is None or not task.is_open or task.attempt != attempt:
                return False

            retried = replace(
                task,
                attempt=attempt + 1,
                status=ActivityStatus.SCHEDULED,
                started_at=None,
                deadline=None,
                next_attempt_at=next_attempt_at,
                last_failure=failure,
            )
            async with r.pipeline(transaction=True) as pipe:
                self._save_activity(pipe, retried)
                self._enqueue(pipe, [entry])
                await pipe.execute()

        self._work_notify.set()
        return True

    async def get_expired_activities(self, now: datetime) -> list[ActivityTask]:
        self._check_connected()
        expired = []
        try:
            async for key in self._redis.scan_iter(match=f"{_PREFIX}:activity:*"):
                raw = await self._redis.get(key)
                if raw is None:
                    continue
                task = pickle.loads(raw)
                if (
                    task.status == ActivityStatus.STARTED
                    and task.deadline is not None
                    and task.deadline <= now
                ):
                    expired.append(task)
        except RedisError as e:
            raise StorageError(f"Failed to scan activities: {e}") from e
        return expired

    # =========================================================================
    # Timers
    # =========================================================================

    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        self._check_connected()
        try:
            members = await self._redis.zrangebyscore(_TIMERS_KEY, 0, now.timestamp())
            timers = []
            for member in members:
                raw = await self._redis.get(self._timer_key(member.decode()))
                if raw is not None:
                    timers.append(pickle.loads(raw))
            return timers
        except RedisError as e:
            raise StorageError(f"Failed to read timers: {e}") from e

    async def fire_timer(
        self, run_id: str, seq: int, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        member = self._timer_member(run_id, seq)
        async with self._locked() as r:
            # Only one caller removes the member
            removed = await r.zrem(_TIMERS_KEY, member)
            await r.delete(self._timer_key(member))
            if not removed:
                return False

            run = await self._load_run(r, run_id)
            if run is None or not run.is_running:
                return False

            async with r.pipeline(transaction=True) as pipe:
                self._append(pipe, run, [event])
                pipe.set(self._run_key(run_id), pickle.dumps(run))
                self._enqueue(pipe, [entry])
                await pipe.execute()

        self._work_notify.set()
        self._timer_notify.set()
        return True

    async def get_next_timer_fire_time(self) -> datetime | None:
        self._check_connected()
        try:
            result = await self._redis.zrange(_TIMERS_KEY, 0, 0, withscores=True)
        except RedisError as e:
            raise StorageError(f"Failed to read timers: {e}") from e
        if not result:
            return None
        _, score = result[0]
        return datetime.fromtimestamp(score)

    # =========================================================================
    # Task queue
    # =========================================================================

    async def enqueue(self, entry: TaskQueueEntry) -> str:
        async with self._locked() as r:
            async with r.pipeline(transaction=True) as pipe:
                self._enqueue(pipe, [entry])
                await pipe.execute()
        self._work_notify.set()
        return entry.entry_id

    async def poll(
        self, queue_name: str, worker_id: str, lease_duration: timedelta
    ) -> TaskQueueEntry | None:
        async with self._locked() as r:
            now = datetime.now()
            entry_ids = await r.zrange(self._queue_key(queue_name), 0, -1)
            candidates = []
            for entry_id in entry_ids:
                raw = await r.get(self._entry_key(entry_id.decode()))
                if raw is None:
                    continue
                entry = pickle.loads(raw)
                if entry.is_claimable(now):
                    candidates.append(entry)

            if not candidates:
                return None

            candidates.sort(key=lambda e: (e.visible_at, e.created_at))
            claimed = replace(
                candidates[0],
                status=EntryStatus.CLAIMED,
                locked_by=worker_id,
                lease_expires_at=now + lease_duration,
                delivery_count=candidates[0].delivery_count + 1,
            )
            await r.set(self._entry_key(claimed.entry_id), pickle.dumps(claimed))

        # Daisy-chain: if more work is ready, make sure other workers wake up
        if len(candidates) > 1:
            self._work_notify.set()
        return claimed

    async def ack(self, entry_id: str, worker_id: str) -> bool:
        async with self._locked() as r:
            entry = await self._load_entry(r, entry_id)
            if entry is None or entry.locked_by != worker_id:
                return False

            async with r.pipeline(transaction=True) as pipe:
                pipe.delete(self._entry_key(entry_id))
                pipe.zrem(self._queue_key(entry.queue_name), entry_id)
                await pipe.execute()
            return True

    async def nack(
        self, entry_id: str, worker_id: str, error: str, delay: timedelta
    ) -> bool:
        async with self._locked() as r:
            entry = await self._load_entry(r, entry_id)
            if entry is None or entry.locked_by != worker_id:
                return False

            released = replace(
                entry,
                status=EntryStatus.PENDING,
                locked_by=None,
                lease_expires_at=None,
                visible_at=datetime.now() + delay,
                last_error=error,
            )
            await r.set(self._entry_key(entry_id), pickle.dumps(released))

        self._work_notify.set()
        return True

    async def extend_lease(
        self, entry_id: str, worker_id: str, lease_duration: timedelta
    ) -> bool:
        async with self._locked() as r:
            entry = await self._load_entry(r, entry_id)
            if (
                entry is None
                or entry.status != EntryStatus.CLAIMED
                or entry.locked_by != worker_id
            ):
                return False

            extended = replace(entry, lease_expires_at=datetime.now() + lease_duration)
            await r.set(self._entry_key(entry_id), pickle.dumps(extended))
            return True

    async def queue_depth(self, queue_name: str) -> int:
        self._check_connected()
        try:
            return await self._redis.zcard(self._queue_key(queue_name))
        except RedisError as e:
            raise StorageError(f"Failed to count queue {queue_name}: {e}") from e

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def reset(self) -> None:
        """Delete every rssflow key (for testing/demos)."""
        self._check_connected()
        try:
            keys = [key async for key in self._redis.scan_iter(match=f"{_PREFIX}:*")]
            if keys:
                await self._redis.delete(*keys)
        except RedisError as e:
            raise StorageError(f"Failed to reset: {e}") from e

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
    # Helpers
    # =========================================================================

    async def _load_run(self, r: redis.Redis, run_id: str) -> WorkflowRun | None:
        raw = await r.get(self._run_key(run_id))
        return pickle.loads(raw) if raw is not None else None

    async def _require_run(self, r: redis.Redis, run_id: str) -> WorkflowRun:
        run = await self._load_run(r, run_id)
        if run is None:
            raise StorageError(f"Run not found: run_id={run_id}")
        return run

    async def _load_activity(self, r: redis.Redis, task_id: str) -> ActivityTask | None:
        raw = await r.get(self._activity_key(task_id))
        return pickle.loads(raw) if raw is not None else None

    async def _load_entry(self, r: redis.Redis, entry_id: str) -> TaskQueueEntry | None:
        raw = await r.get(self._entry_key(entry_id))
        return pickle.loads(raw) if raw is not None else None

    async def _activities_of(self, r: redis.Redis, run_id: str) -> list[ActivityTask]:
        task_ids = await r.zrange(self._activities_key(run_id), 0, -1)
        tasks = []
        for task_id in task_ids:
            task = await self._load_activity(r, task_id.decode())
            if task is not None:
                tasks.append(task)
        return tasks

    async def _open_activities(self, r: redis.Redis, run_id: str) -> list[ActivityTask]:
        return [task for task in await self._activities_of(r, run_id) if task.is_open]

    def _save_activity(self, pipe, task: ActivityTask) -> None:
        pipe.set(self._activity_key(task.task_id), pickle.dumps(task))
        pipe.zadd(self._activities_key(task.run_id), {task.task_id: task.seq})

    def _append(self, pipe, run: WorkflowRun, events: list[HistoryEvent]) -> None:
        """Queue history appends on `pipe` and advance run.next_event_id.

        The caller writes the updated run in the same pipeline.
        """
        for event in events:
            if event.run_id != run.run_id:
                raise StorageError(
                    f"Event for run {event.run_id} appended to run {run.run_id}"
                )
            pipe.rpush(self._history_key(run.run_id), pickle.dumps(event.numbered(run.next_event_id)))
            run.next_event_id += 1

    def _enqueue(self, pipe, entries: list[TaskQueueEntry]) -> None:
        for entry in entries:
            pipe.set(self._entry_key(entry.entry_id), pickle.dumps(entry))
            pipe.zadd(self._queue_key(entry.queue_name), {entry.entry_id: entry.created_at.timestamp()})

    async def _close(
        self,
        pipe,
        r: redis.Redis,
        run: WorkflowRun,
        closure: RunClosure,
        open_tasks: list[ActivityTask],
    ) -> None:
        run.status = closure.status
        run.result = closure.result
        run.failure = closure.failure
        run.closed_at = datetime.now()

        for task in open_tasks:
            self._save_activity(pipe, replace(task, status=ActivityStatus.CANCELLED))

        members = await r.zrange(_TIMERS_KEY, 0, -1)
        prefix = f"{run.run_id}:"
        for member in members:
            name = member.decode()
            if name.startswith(prefix):
                pipe.zrem(_TIMERS_KEY, name)
                pipe.delete(self._timer_key(name))
