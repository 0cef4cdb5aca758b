"""
TaskQueue - named, lease-based work channel on top of the execution log.

Entries carry workflow tasks and activity tasks. Delivery is
at-least-once: a claimed entry that is not completed before its lease
expires is handed out again, with delivery_count incremented. Each entry
is held by one worker at a time; entries are served oldest-visible first
but there is no ordering guarantee across tasks.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from uuid_extensions import uuid7

from rssflow.models import TaskKind, TaskQueueEntry
from rssflow.storage.base import ExecutionLog, WorkNotificationSource

logger = logging.getLogger(__name__)

_FALLBACK_POLL_INTERVAL = 0.1
# Delayed entries become visible without a notification
_MAX_NOTIFY_WAIT = 0.25


def new_entry(
    queue_name: str,
    kind: TaskKind,
    ref_id: str,
    attempt: int = 1,
    visible_at: datetime | None = None,
) -> TaskQueueEntry:
    """Build a PENDING entry with a fresh uuid7 id."""
    now = datetime.now()
    return TaskQueueEntry(
        entry_id=str(uuid7()),
        queue_name=queue_name,
        kind=kind,
        ref_id=ref_id,
        attempt=attempt,
        visible_at=visible_at or now,
        created_at=now,
    )


class TaskQueue:
    """
    Handle on one named queue.

    Usage:
        queue = TaskQueue(storage, "rss-summary")
        entry = await queue.poll("worker-1", lease_duration=30.0, timeout=1.0)
        if entry is not None:
            ...
            await queue.complete(entry)
    """

    def __init__(self, storage: ExecutionLog, name: str):
        if not name:
            raise ValueError("queue name must not be empty")
        self._storage = storage
        self._name = name

        if isinstance(storage, WorkNotificationSource):
            self._work_notify: asyncio.Event | None = storage.work_notify()
        else:
            self._work_notify = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def storage(self) -> ExecutionLog:
        return self._storage

    def __repr__(self) -> str:
        return f"TaskQueue({self._name!r})"

    async def enqueue(
        self, kind: TaskKind, ref_id: str, *, attempt: int = 1, delay: float = 0.0
    ) -> str:
        """
        Add an entry for a workflow or activity task.

        Args:
            kind: WORKFLOW (ref_id is a run id) or ACTIVITY (ref_id is a task id)
            ref_id: Referenced run or activity task
            attempt: Activity attempt the entry is for
            delay: Seconds before the entry becomes visible

        Returns:
            The new entry id
        """
        visible_at = datetime.now() + timedelta(seconds=delay) if delay > 0 else None
        entry = new_entry(self._name, kind, ref_id, attempt, visible_at)
        return await self._storage.enqueue(entry)

    async def poll(
        self, worker_id: str, lease_duration: float, timeout: float | None = None
    ) -> TaskQueueEntry | None:
        """
        Claim the next available entry, waiting up to `timeout` seconds.

        Long-polls on the storage work notification when the backend
        provides one; otherwise re-polls at a short fixed interval.

        Args:
            worker_id: Claiming worker
            lease_duration: Seconds the claim stays valid without extension
            timeout: Seconds to wait for work (None or 0 = single attempt)

        Returns:
            The claimed entry, or None if nothing became available in time
        """
        lease = timedelta(seconds=lease_duration)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout or 0.0)

        while True:
            entry = await self._storage.poll(self._name, worker_id, lease)
            if entry is not None:
                if entry.delivery_count > 1:
                    logger.debug(
                        f"Redelivering {entry.kind.value} entry {entry.entry_id} "
                        f"(delivery {entry.delivery_count})"
                    )
                return entry

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None

            if self._work_notify is not None:
                try:
                    await asyncio.wait_for(
                        self._work_notify.wait(), timeout=min(remaining, _MAX_NOTIFY_WAIT)
                    )
                    self._work_notify.clear()
                except TimeoutError:
                    pass
            else:
                await asyncio.sleep(min(remaining, _FALLBACK_POLL_INTERVAL))

    async def complete(self, entry: TaskQueueEntry) -> bool:
        """Delete a processed entry. False if the lease was lost meanwhile."""
        acked = await self._storage.ack(entry.entry_id, entry.locked_by or "")
        if not acked:
            logger.debug(f"Entry {entry.entry_id} no longer held by {entry.locked_by}")
        return acked

    async def fail(self, entry: TaskQueueEntry, error: str, retry_delay: float = 0.0) -> bool:
        """Release an entry so it is redelivered after `retry_delay` seconds."""
        return await self._storage.nack(
            entry.entry_id, entry.locked_by or "", error, timedelta(seconds=retry_delay)
        )

    async def extend_lease(self, entry: TaskQueueEntry, lease_duration: float) -> bool:
        """Keep holding an entry for another `lease_duration` seconds."""
        return await self._storage.extend_lease(
            entry.entry_id, entry.locked_by or "", timedelta(seconds=lease_duration)
        )

    async def depth(self) -> int:
        """Number of entries (pending or claimed) on this queue."""
        return await self._storage.queue_depth(self._name)
