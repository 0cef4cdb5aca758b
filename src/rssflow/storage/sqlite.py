"""SQLite-backed storage implementation for rssflow.

Design Pattern: Adapter Pattern
SqliteExecutionLog adapts SQLite database to the ExecutionLog interface.

Complex database logic is isolated here, not scattered across the application.

Implementation details:
- aiosqlite for async operations
- WAL mode so clients can read while a worker writes
- BEGIN IMMEDIATE transactions make each orchestrator transition atomic,
  also across processes sharing the database file
- A partial unique index guarantees one RUNNING run per workflow id
- INTEGER timestamps (milliseconds)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path

import aiosqlite

from rssflow.core.errors import WorkflowAlreadyExistsError
from rssflow.models import (
    ActivityStatus,
    ActivityTask,
    EntryStatus,
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
from rssflow.storage.base import ExecutionLog, StorageError

_RUN_COLUMNS = (
    "run_id, workflow_id, workflow_type, task_queue, input, status, created_at, "
    "next_event_id, cancel_requested, deadline, version, result, failure, closed_at"
)

_EVENT_COLUMNS = (
    "run_id, event_id, event_type, timestamp, seq, activity_type, payload, attempt, input_hash"
)

_ACTIVITY_COLUMNS = (
    "task_id, run_id, workflow_id, seq, activity_type, task_queue, input, "
    "start_to_close_timeout, retry_policy, scheduled_at, attempt, status, "
    "started_at, deadline, next_attempt_at, last_failure"
)

_ENTRY_COLUMNS = (
    "entry_id, queue_name, kind, ref_id, attempt, status, visible_at, locked_by, "
    "lease_expires_at, delivery_count, created_at, last_error"
)


class SqliteExecutionLog(ExecutionLog):
    """SQLite-backed durable storage.

    Design Principles Applied:
    - Single Responsibility: Only handles persistence (doesn't execute logic)
    - Dependency Inversion: Implements ExecutionLog interface

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        storage = SqliteExecutionLog("rssflow.db")
        await storage.connect()
        try:
            orchestrator = Orchestrator(storage)
            ...
        finally:
            await storage.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage with notification support (connection not opened yet).

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

        # Notification events (in-process only; other processes poll)
        self._work_notify = asyncio.Event()
        self._timer_notify = asyncio.Event()
        self._status_notify = asyncio.Event()

    @classmethod
    async def in_memory(cls) -> SqliteExecutionLog:
        """
        Create an in-memory SQLite storage for testing.

        Returns:
            Connected in-memory storage instance

        Example:
            storage = await SqliteExecutionLog.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        if self.db_path == ":memory:":
            return "SqliteExecutionLog(in-memory)"
        return f"SqliteExecutionLog({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,  # Autocommit; transactions are explicit
            )

            # In-memory databases report "memory" and don't support WAL
            cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
            result = await cursor.fetchone()
            await cursor.close()

            if result:
                mode = result[0].upper()
                if mode not in ("WAL", "MEMORY"):
                    raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")

            await self._create_schema()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}") from e

    async def _create_schema(self) -> None:
        """Create database tables and indexes."""
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                task_queue TEXT NOT NULL,
                input BLOB NOT NULL,
                status TEXT CHECK( status IN (
                    'RUNNING','COMPLETED','FAILED','TIMED_OUT','CANCELLED'
                ) ) NOT NULL,
                created_at INTEGER NOT NULL,
                next_event_id INTEGER NOT NULL DEFAULT 1,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                deadline INTEGER,
                version TEXT,
                result BLOB,
                failure TEXT,
                closed_at INTEGER
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_one_running
            ON workflow_runs(workflow_id) WHERE status = 'RUNNING';

            CREATE INDEX IF NOT EXISTS idx_runs_workflow_id
            ON workflow_runs(workflow_id, created_at);

            CREATE TABLE IF NOT EXISTS history_events (
                run_id TEXT NOT NULL,
                event_id INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                seq INTEGER,
                activity_type TEXT,
                payload BLOB,
                attempt INTEGER,
                input_hash TEXT,
                PRIMARY KEY (run_id, event_id)
            );

            CREATE TABLE IF NOT EXISTS activity_tasks (
                task_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                activity_type TEXT NOT NULL,
                task_queue TEXT NOT NULL,
                input BLOB NOT NULL,
                start_to_close_timeout REAL NOT NULL,
                retry_policy TEXT NOT NULL,
                scheduled_at INTEGER NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 1,
                status TEXT CHECK( status IN (
                    'SCHEDULED','STARTED','COMPLETED','FAILED','CANCELLED'
                ) ) NOT NULL,
                started_at INTEGER,
                deadline INTEGER,
                next_attempt_at INTEGER,
                last_failure TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_activity_tasks_run
            ON activity_tasks(run_id, seq);

            CREATE INDEX IF NOT EXISTS idx_activity_tasks_deadline
            ON activity_tasks(status, deadline);

            CREATE TABLE IF NOT EXISTS timers (
                run_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                fire_at INTEGER NOT NULL,
                task_queue TEXT NOT NULL,
                PRIMARY KEY (run_id, seq)
            );

            CREATE INDEX IF NOT EXISTS idx_timers_fire_at ON timers(fire_at);

            CREATE TABLE IF NOT EXISTS task_queue (
                entry_id TEXT PRIMARY KEY,
                queue_name TEXT NOT NULL,
                kind TEXT CHECK( kind IN ('WORKFLOW','ACTIVITY') ) NOT NULL,
                ref_id TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 1,
                status TEXT CHECK( status IN ('PENDING','CLAIMED') ) NOT NULL,
                visible_at INTEGER NOT NULL,
                locked_by TEXT,
                lease_expires_at INTEGER,
                delivery_count INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                last_error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_task_queue_poll
            ON task_queue(queue_name, status, visible_at);
        """)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block inside one IMMEDIATE transaction.

        IMMEDIATE takes the write lock up front, so read-check-write
        sequences inside the block cannot interleave with another writer.
        Driver errors are wrapped in StorageError; other exceptions roll
        back and propagate unchanged.
        """
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to begin transaction: {e}") from e
            try:
                yield self._connection
            except aiosqlite.Error as e:
                await self._connection.execute("ROLLBACK")
                raise StorageError(f"Transaction failed: {e}") from e
            except BaseException:
                await self._connection.execute("ROLLBACK")
                raise
            else:
                await self._connection.execute("COMMIT")

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(sql, params)
                rows = await cursor.fetchall()
                await cursor.close()
                return list(rows)
            except aiosqlite.Error as e:
                raise StorageError(f"Query failed: {e}") from e

    async def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    # =========================================================================
    # Runs and history
    # =========================================================================

    async def start_run(
        self, run: WorkflowRun, started: HistoryEvent, entry: TaskQueueEntry
    ) -> WorkflowRun:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT run_id FROM workflow_runs WHERE workflow_id = ? AND status = 'RUNNING'",
                (run.workflow_id,),
            )
            existing = await cursor.fetchone()
            if existing is not None:
                raise WorkflowAlreadyExistsError(run.workflow_id, existing[0])

            await conn.execute(
                f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._run_to_row(run),
            )
            await self._append(conn, run.run_id, run.next_event_id, [started])
            await self._insert_entries(conn, [entry])

        self._work_notify.set()
        stored = await self.get_run(run.run_id)
        if stored is None:
            raise StorageError(f"Run vanished after insert: run_id={run.run_id}")
        return stored

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = ?", (run_id,)
        )
        return self._row_to_run(row) if row else None

    async def find_run(self, workflow_id: str) -> WorkflowRun | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE workflow_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (workflow_id,),
        )
        return self._row_to_run(row) if row else None

    async def list_runs(self, status: WorkflowStatus | None = None) -> list[WorkflowRun]:
        if status is None:
            rows = await self._fetchall(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY created_at, rowid"
            )
        else:
            rows = await self._fetchall(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE status = ? "
                "ORDER BY created_at, rowid",
                (status.value,),
            )
        return [self._row_to_run(row) for row in rows]

    async def get_history(self, run_id: str) -> list[HistoryEvent]:
        rows = await self._fetchall(
            f"SELECT {_EVENT_COLUMNS} FROM history_events WHERE run_id = ? ORDER BY event_id",
            (run_id,),
        )
        return [self._row_to_event(row) for row in rows]

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
        async with self._transaction() as conn:
            state = await self._run_state(conn, run_id)
            status, next_event_id = state
            if status != WorkflowStatus.RUNNING.value or next_event_id != expected_next_event_id:
                return False

            await self._append(conn, run_id, next_event_id, events)

            for task in activities:
                await conn.execute(
                    f"INSERT INTO activity_tasks ({_ACTIVITY_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._activity_to_row(task),
                )

            for timer in timers:
                await conn.execute(
                    "INSERT INTO timers (run_id, seq, fire_at, task_queue) VALUES (?, ?, ?, ?)",
                    (timer.run_id, timer.seq, _to_ms(timer.fire_at), timer.task_queue),
                )

            await self._insert_entries(conn, entries)

            if closure is not None:
                await self._close(conn, run_id, closure)

        if entries:
            self._work_notify.set()
        if timers:
            self._timer_notify.set()
        if closure is not None:
            self._status_notify.set()
        return True

    async def close_run(self, run_id: str, event: HistoryEvent, closure: RunClosure) -> bool:
        async with self._transaction() as conn:
            status, next_event_id = await self._run_state(conn, run_id)
            if status != WorkflowStatus.RUNNING.value:
                return False

            await self._append(conn, run_id, next_event_id, [event])
            await self._close(conn, run_id, closure)

        self._status_notify.set()
        return True

    async def request_cancellation(
        self, run_id: str, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT status, next_event_id, cancel_requested FROM workflow_runs "
                "WHERE run_id = ?",
                (run_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise StorageError(f"Run not found: run_id={run_id}")
            if row[0] != WorkflowStatus.RUNNING.value or row[2]:
                return False

            await conn.execute(
                "UPDATE workflow_runs SET cancel_requested = 1 WHERE run_id = ?", (run_id,)
            )
            await self._append(conn, run_id, row[1], [event])
            await self._insert_entries(conn, [entry])

        self._work_notify.set()
        return True

    async def get_expired_runs(self, now: datetime) -> list[WorkflowRun]:
        rows = await self._fetchall(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
            "WHERE status = 'RUNNING' AND deadline IS NOT NULL AND deadline <= ?",
            (_to_ms(now),),
        )
        return [self._row_to_run(row) for row in rows]

    # =========================================================================
    # Activity tasks
    # =========================================================================

    async def get_activity(self, task_id: str) -> ActivityTask | None:
        row = await self._fetchone(
            f"SELECT {_ACTIVITY_COLUMNS} FROM activity_tasks WHERE task_id = ?", (task_id,)
        )
        return self._row_to_activity(row) if row else None

    async def get_activities_for_run(self, run_id: str) -> list[ActivityTask]:
        rows = await self._fetchall(
            f"SELECT {_ACTIVITY_COLUMNS} FROM activity_tasks WHERE run_id = ? ORDER BY seq",
            (run_id,),
        )
        return [self._row_to_activity(row) for row in rows]

    async def start_activity_attempt(
        self, task_id: str, attempt: int, now: datetime
    ) -> ActivityTask | None:
        async with self._transaction() as conn:
            task = await self._open_activity(conn, task_id, attempt)
            if task is None:
                return None

            started = task.start(now)
            if started is not task:
                await conn.execute(
                    "UPDATE activity_tasks SET status = ?, started_at = ?, deadline = ? "
                    "WHERE task_id = ?",
                    (
                        started.status.value,
                        _to_ms(started.started_at),
                        _to_ms(started.deadline),
                        task_id,
                    ),
                )
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
        async with self._transaction() as conn:
            task = await self._open_activity(conn, task_id, attempt)
            if task is None:
                return False

            run_status, next_event_id = await self._run_state(conn, task.run_id)
            if run_status != WorkflowStatus.RUNNING.value:
                return False

            await conn.execute(
                "UPDATE activity_tasks SET status = ?, last_failure = ? WHERE task_id = ?",
                (
                    status.value,
                    _failure_to_json(failure or task.last_failure),
                    task_id,
                ),
            )
            await self._append(conn, task.run_id, next_event_id, [event])
            await self._insert_entries(conn, [entry])

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
        async with self._transaction() as conn:
            task = await self._open_activity(conn, task_id, attempt)
            if task is None:
                return False

            await conn.execute(
                """
                UPDATE activity_tasks
                SET attempt = ?,
                    status = 'SCHEDULED',
                    started_at = NULL,
                    deadline = NULL,
                    next_attempt_at = ?,
                    last_failure = ?
                WHERE task_id = ?
                """,
                (attempt + 1, _to_ms(next_attempt_at), _failure_to_json(failure), task_id),
            )
            await self._insert_entries(conn, [entry])

        self._work_notify.set()
        return True

    async def get_expired_activities(self, now: datetime) -> list[ActivityTask]:
        rows = await self._fetchall(
            f"SELECT {_ACTIVITY_COLUMNS} FROM activity_tasks "
            "WHERE status = 'STARTED' AND deadline IS NOT NULL AND deadline <= ?",
            (_to_ms(now),),
        )
        return [self._row_to_activity(row) for row in rows]

    # =========================================================================
    # Timers
    # =========================================================================

    async def get_expired_timers(self, now: datetime) -> list[TimerInfo]:
        rows = await self._fetchall(
            "SELECT run_id, seq, fire_at, task_queue FROM timers WHERE fire_at <= ? "
            "ORDER BY fire_at",
            (_to_ms(now),),
        )
        return [
            TimerInfo(run_id=row[0], seq=row[1], fire_at=_from_ms(row[2]), task_queue=row[3])
            for row in rows
        ]

    async def fire_timer(
        self, run_id: str, seq: int, event: HistoryEvent, entry: TaskQueueEntry
    ) -> bool:
        async with self._transaction() as conn:
            # Optimistic concurrency: only one caller deletes the row
            cursor = await conn.execute(
                "DELETE FROM timers WHERE run_id = ? AND seq = ?", (run_id, seq)
            )
            if cursor.rowcount == 0:
                return False

            status, next_event_id = await self._run_state(conn, run_id)
            if status != WorkflowStatus.RUNNING.value:
                return False

            await self._append(conn, run_id, next_event_id, [event])
            await self._insert_entries(conn, [entry])

        self._work_notify.set()
        self._timer_notify.set()
        return True

    async def get_next_timer_fire_time(self) -> datetime | None:
        row = await self._fetchone("SELECT MIN(fire_at) FROM timers")
        if row is None or row[0] is None:
            return None
        return _from_ms(row[0])

    # =========================================================================
    # Task queue
    # =========================================================================

    async def enqueue(self, entry: TaskQueueEntry) -> str:
        async with self._transaction() as conn:
            await self._insert_entries(conn, [entry])
        self._work_notify.set()
        return entry.entry_id

    async def poll(
        self, queue_name: str, worker_id: str, lease_duration: timedelta
    ) -> TaskQueueEntry | None:
        """Claim the oldest claimable entry.

        Uses an atomic UPDATE ... RETURNING so that two workers can never
        claim the same entry, including when they live in different
        processes.
        """
        now = datetime.now()
        now_ms = _to_ms(now)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE task_queue
                SET status = 'CLAIMED',
                    locked_by = ?,
                    lease_expires_at = ?,
                    delivery_count = delivery_count + 1
                WHERE entry_id = (
                    SELECT entry_id
                    FROM task_queue
                    WHERE queue_name = ?
                      AND (
                        (status = 'PENDING' AND visible_at <= ?)
                        OR (status = 'CLAIMED' AND lease_expires_at <= ?)
                      )
                    ORDER BY visible_at ASC, created_at ASC
                    LIMIT 1
                )
                RETURNING {_ENTRY_COLUMNS}
                """,
                (worker_id, _to_ms(now + lease_duration), queue_name, now_ms, now_ms),
            )
            row = await cursor.fetchone()
            await cursor.close()

        return self._row_to_entry(row) if row else None

    async def ack(self, entry_id: str, worker_id: str) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM task_queue WHERE entry_id = ? AND locked_by = ?",
                (entry_id, worker_id),
            )
            return cursor.rowcount > 0

    async def nack(
        self, entry_id: str, worker_id: str, error: str, delay: timedelta
    ) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE task_queue
                SET status = 'PENDING',
                    locked_by = NULL,
                    lease_expires_at = NULL,
                    visible_at = ?,
                    last_error = ?
                WHERE entry_id = ? AND locked_by = ?
                """,
                (_to_ms(datetime.now() + delay), error, entry_id, worker_id),
            )
            released = cursor.rowcount > 0

        if released:
            self._work_notify.set()
        return released

    async def extend_lease(
        self, entry_id: str, worker_id: str, lease_duration: timedelta
    ) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE task_queue
                SET lease_expires_at = ?
                WHERE entry_id = ? AND locked_by = ? AND status = 'CLAIMED'
                """,
                (_to_ms(datetime.now() + lease_duration), entry_id, worker_id),
            )
            return cursor.rowcount > 0

    async def queue_depth(self, queue_name: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM task_queue WHERE queue_name = ?", (queue_name,)
        )
        return row[0] if row else 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def reset(self) -> None:
        async with self._transaction() as conn:
            for table in ("workflow_runs", "history_events", "activity_tasks", "timers", "task_queue"):
                await conn.execute(f"DELETE FROM {table}")

    async def close(self) -> None:
        """Close storage connections.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify

    def timer_notify(self) -> asyncio.Event:
        """Return event for timer notifications (TimerNotificationSource protocol)."""
        return self._timer_notify

    def status_notify(self) -> asyncio.Event:
        """Return event for run closure notifications (StatusNotificationSource protocol)."""
        return self._status_notify

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    # =========================================================================
    # Helpers (run inside a transaction)
    # =========================================================================

    async def _run_state(self, conn: aiosqlite.Connection, run_id: str) -> tuple[str, int]:
        cursor = await conn.execute(
            "SELECT status, next_event_id FROM workflow_runs WHERE run_id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise StorageError(f"Run not found: run_id={run_id}")
        return row[0], row[1]

    async def _open_activity(
        self, conn: aiosqlite.Connection, task_id: str, attempt: int
    ) -> ActivityTask | None:
        cursor = await conn.execute(
            f"SELECT {_ACTIVITY_COLUMNS} FROM activity_tasks WHERE task_id = ?", (task_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        task = self._row_to_activity(row)
        if not task.is_open or task.attempt != attempt:
            return None
        return task

    async def _append(
        self,
        conn: aiosqlite.Connection,
        run_id: str,
        next_event_id: int,
        events: list[HistoryEvent],
    ) -> None:
        for offset, event in enumerate(events):
            if event.run_id != run_id:
                raise StorageError(f"Event for run {event.run_id} appended to run {run_id}")
            await conn.execute(
                f"INSERT INTO history_events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run_id,
                    next_event_id + offset,
                    event.event_type.value,
                    _to_ms(event.timestamp),
                    event.seq,
                    event.activity_type,
                    event.payload,
                    event.attempt,
                    event.input_hash,
                ),
            )
        await conn.execute(
            "UPDATE workflow_runs SET next_event_id = ? WHERE run_id = ?",
            (next_event_id + len(events), run_id),
        )

    async def _insert_entries(
        self, conn: aiosqlite.Connection, entries: list[TaskQueueEntry]
    ) -> None:
        for entry in entries:
            await conn.execute(
                f"INSERT INTO task_queue ({_ENTRY_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.entry_id,
                    entry.queue_name,
                    entry.kind.value,
                    entry.ref_id,
                    entry.attempt,
                    entry.status.value,
                    _to_ms(entry.visible_at),
                    entry.locked_by,
                    _to_ms(entry.lease_expires_at),
                    entry.delivery_count,
                    _to_ms(entry.created_at),
                    entry.last_error,
                ),
            )

    async def _close(self, conn: aiosqlite.Connection, run_id: str, closure: RunClosure) -> None:
        await conn.execute(
            """
            UPDATE workflow_runs
            SET status = ?, result = ?, failure = ?, closed_at = ?
            WHERE run_id = ?
            """,
            (
                closure.status.value,
                closure.result,
                _failure_to_json(closure.failure),
                _to_ms(datetime.now()),
                run_id,
            ),
        )
        await conn.execute(
            "UPDATE activity_tasks SET status = 'CANCELLED' "
            "WHERE run_id = ? AND status IN ('SCHEDULED', 'STARTED')",
            (run_id,),
        )
        await conn.execute("DELETE FROM timers WHERE run_id = ?", (run_id,))

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _run_to_row(run: WorkflowRun) -> tuple:
        return (
            run.run_id,
            run.workflow_id,
            run.workflow_type,
            run.task_queue,
            run.input,
            run.status.value,
            _to_ms(run.created_at),
            run.next_event_id,
            int(run.cancel_requested),
            _to_ms(run.deadline),
            run.version,
            run.result,
            _failure_to_json(run.failure),
            _to_ms(run.closed_at),
        )

    @staticmethod
    def _row_to_run(row: tuple) -> WorkflowRun:
        return WorkflowRun(
            run_id=row[0],
            workflow_id=row[1],
            workflow_type=row[2],
            task_queue=row[3],
            input=row[4],
            status=WorkflowStatus(row[5]),
            created_at=_from_ms(row[6]),
            next_event_id=row[7],
            cancel_requested=bool(row[8]),
            deadline=_from_ms(row[9]),
            version=row[10],
            result=row[11],
            failure=_failure_from_json(row[12]),
            closed_at=_from_ms(row[13]),
        )

    @staticmethod
    def _row_to_event(row: tuple) -> HistoryEvent:
        return HistoryEvent(
            run_id=row[0],
            event_id=row[1],
            event_type=EventType(row[2]),
            timestamp=_from_ms(row[3]),
            seq=row[4],
            activity_type=row[5],
            payload=row[6],
            attempt=row[7],
            input_hash=row[8],
        )

    @staticmethod
    def _activity_to_row(task: ActivityTask) -> tuple:
        return (
            task.task_id,
            task.run_id,
            task.workflow_id,
            task.seq,
            task.activity_type,
            task.task_queue,
            task.input,
            task.start_to_close_timeout,
            _policy_to_json(task.retry_policy),
            _to_ms(task.scheduled_at),
            task.attempt,
            task.status.value,
            _to_ms(task.started_at),
            _to_ms(task.deadline),
            _to_ms(task.next_attempt_at),
            _failure_to_json(task.last_failure),
        )

    @staticmethod
    def _row_to_activity(row: tuple) -> ActivityTask:
        return ActivityTask(
            task_id=row[0],
            run_id=row[1],
            workflow_id=row[2],
            seq=row[3],
            activity_type=row[4],
            task_queue=row[5],
            input=row[6],
            start_to_close_timeout=row[7],
            retry_policy=_policy_from_json(row[8]),
            scheduled_at=_from_ms(row[9]),
            attempt=row[10],
            status=ActivityStatus(row[11]),
            started_at=_from_ms(row[12]),
            deadline=_from_ms(row[13]),
            next_attempt_at=_from_ms(row[14]),
            last_failure=_failure_from_json(row[15]),
        )

    @staticmethod
    def _row_to_entry(row: tuple) -> TaskQueueEntry:
        return TaskQueueEntry(
            entry_id=row[0],
            queue_name=row[1],
            kind=TaskKind(row[2]),
            ref_id=row[3],
            attempt=row[4],
            status=EntryStatus(row[5]),
            visible_at=_from_ms(row[6]),
            locked_by=row[7],
            lease_expires_at=_from_ms(row[8]),
            delivery_count=row[9],
            created_at=_from_ms(row[10]),
            last_error=row[11],
        )


def _to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0)


def _policy_to_json(policy: RetryPolicy) -> str:
    data = asdict(policy)
    data["non_retryable_error_types"] = list(policy.non_retryable_error_types)
    return json.dumps(data)


def _policy_from_json(text: str) -> RetryPolicy:
    data = json.loads(text)
    data["non_retryable_error_types"] = tuple(data.get("non_retryable_error_types", ()))
    return RetryPolicy(**data)


def _failure_to_json(failure: Failure | None) -> str | None:
    if failure is None:
        return None
    return json.dumps(asdict(failure))


def _failure_from_json(text: str | None) -> Failure | None:
    if text is None:
        return None
    return Failure(**json.loads(text))
