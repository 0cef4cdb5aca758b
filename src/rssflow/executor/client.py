"""
Client - simple API for starting and observing workflow runs.

Design Principle: Single Responsibility
Client has ONE job: talk to the engine on behalf of callers. It does NOT
execute workflows or activities (that's Worker's job).

Key Benefit:
Client code doesn't need to know about storage, serialization or queue
entries. Client hides these details behind start / result / cancel.

Versioning:
You must configure versioning before use:
- `.with_version("v1.0")` - Set deployment version
- `.unversioned()` - Explicitly opt out
- `.from_env()` - Read from DEPLOY_VERSION env var
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

from rssflow.executor.orchestrator import Orchestrator, RunHandle
from rssflow.models import HistoryEvent, WorkflowRun
from rssflow.storage.base import ExecutionLog


class Client:
    """
    Client for a task queue, with versioning support.

    Usage:
        storage = SqliteExecutionLog("rssflow.db")
        await storage.connect()

        client = Client(storage, task_queue="rss-summary").from_env()
        handle = await client.start(summarize_rss_feed, request,
                                    workflow_id="rss-summary-workflow")
        print(await handle.result())
    """

    def __init__(
        self,
        storage: ExecutionLog,
        task_queue: str,
        version: str | None = None,
    ):
        """
        Args:
            storage: Storage backend shared with the workers
            task_queue: Queue runs are started on
            version: Internal parameter for version configuration
        """
        self._storage = storage
        self._task_queue = task_queue
        self._version = version
        self._orchestrator = Orchestrator(storage, version=version)

    async def start(
        self,
        workflow: Callable[..., Any] | str,
        *args: Any,
        workflow_id: str,
        run_timeout: float | None = None,
    ) -> RunHandle:
        """
        Start a run on this client's task queue.

        Raises:
            WorkflowAlreadyExistsError: A RUNNING run already uses workflow_id
        """
        return await self._orchestrator.start_workflow(
            workflow,
            *args,
            workflow_id=workflow_id,
            task_queue=self._task_queue,
            run_timeout=run_timeout,
        )

    async def result(self, workflow_id: str, timeout: float | None = None) -> Any:
        """
        Wait for the most recent run of `workflow_id` and return its result.

        Raises:
            WorkflowFailureError: The run did not complete successfully
        """
        return await self._orchestrator.get_result(workflow_id, timeout=timeout)

    async def cancel(self, workflow_id: str) -> bool:
        """Request cancellation of a running workflow."""
        return await self._orchestrator.cancel_workflow(workflow_id)

    async def describe(self, workflow_id: str) -> WorkflowRun:
        return await self._orchestrator.describe(workflow_id)

    async def history(self, workflow_id: str) -> list[HistoryEvent]:
        return await self._orchestrator.get_history(workflow_id)

    async def stage(self, workflow_id: str) -> str | None:
        return await self._orchestrator.current_stage(workflow_id)

    def with_version(self, version: str) -> Client:
        """
        Set deployment version for all started runs.

        Args:
            version: Version string (e.g., "1.0.0", "v2.0", "2024-01-15")

        Returns:
            New Client configured with version
        """
        return Client(self._storage, self._task_queue, version=version)

    def unversioned(self) -> Client:
        """Explicitly opt out of versioning."""
        return Client(self._storage, self._task_queue, version=None)

    def from_env(self) -> Client:
        """
        Configure version from the DEPLOY_VERSION environment variable.

        If the variable is not set, creates an unversioned client.
        """
        return Client(self._storage, self._task_queue, version=os.getenv("DEPLOY_VERSION"))

    @property
    def version(self) -> str | None:
        """Configured deployment version, None if unversioned."""
        return self._version

    @property
    def task_queue(self) -> str:
        return self._task_queue

    @property
    def orchestrator(self) -> Orchestrator:
        return self._orchestrator
