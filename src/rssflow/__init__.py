"""
rssflow: durable workflow execution for an RSS keyword pipeline.

Workflows are deterministic async functions whose every side effect goes
through an activity. Activities are dispatched through a durable task
queue to workers, retried with backoff, and their results recorded in
an append-only history; after a crash, replaying that history brings
the workflow back to where it stopped without re-running finished steps.

Example:
    ```python
    import asyncio
    from rssflow import (
        Client, HttpFeedReader, Orchestrator, PipelineActivities,
        PipelineRequest, SqliteExecutionLog, TaskQueue, Worker,
        summarize_rss_feed,
    )

    async def main():
        storage = SqliteExecutionLog("rssflow.db")
        await storage.connect()

        worker = Worker(
            Orchestrator(storage),
            TaskQueue(storage, "rss-summary"),
            workflows=[summarize_rss_feed],
            activities=[PipelineActivities(HttpFeedReader())],
        )
        handle = await worker.start()

        client = Client(storage, task_queue="rss-summary").from_env()
        run = await client.start(summarize_rss_feed, PipelineRequest(),
                                 workflow_id="rss-summary-workflow")
        print(await run.result())  # "Report generated"

        await handle.shutdown()
        await storage.close()

    asyncio.run(main())
    ```
"""

# Core types
from rssflow.core import (
    ActivityContext,
    ActivityError,
    ActivityTimeoutError,
    ConfigurationError,
    NonDeterminismError,
    WorkflowAlreadyExistsError,
    WorkflowCancelledError,
    WorkflowContext,
    WorkflowFailureError,
    current_activity,
)

# Decorators
from rssflow.decorators import activity, workflow

# Execution
from rssflow.executor import (
    ActivityRegistry,
    Client,
    ClientError,
    Orchestrator,
    RunHandle,
    TaskQueue,
    Worker,
    WorkerError,
    WorkerHandle,
    WorkflowRegistry,
)
from rssflow.models import (
    ActivityOptions,
    ApplicationError,
    EventType,
    Failure,
    HistoryEvent,
    RetryableError,
    RetryPolicy,
    WorkflowRun,
    WorkflowStatus,
)

# Pipeline
from rssflow.pipeline import (
    HttpFeedReader,
    PipelineActivities,
    PipelineRequest,
    PipelineStage,
    extract_keywords,
    summarize_rss_feed,
)

# Storage (Adapter pattern)
from rssflow.storage import ExecutionLog, StorageError
from rssflow.storage.memory import InMemoryExecutionLog
from rssflow.storage.sqlite import SqliteExecutionLog

__version__ = "0.1.0"

__all__ = [
    # Core types
    "ActivityContext",
    "ActivityError",
    "ActivityOptions",
    "ActivityTimeoutError",
    "ApplicationError",
    "ConfigurationError",
    "EventType",
    "Failure",
    "HistoryEvent",
    "NonDeterminismError",
    "RetryPolicy",
    "RetryableError",
    "WorkflowAlreadyExistsError",
    "WorkflowCancelledError",
    "WorkflowContext",
    "WorkflowFailureError",
    "WorkflowRun",
    "WorkflowStatus",
    "current_activity",
    # Decorators
    "activity",
    "workflow",
    # Execution
    "ActivityRegistry",
    "Client",
    "ClientError",
    "Orchestrator",
    "RunHandle",
    "TaskQueue",
    "Worker",
    "WorkerError",
    "WorkerHandle",
    "WorkflowRegistry",
    # Pipeline
    "HttpFeedReader",
    "PipelineActivities",
    "PipelineRequest",
    "PipelineStage",
    "extract_keywords",
    "summarize_rss_feed",
    # Storage
    "ExecutionLog",
    "InMemoryExecutionLog",
    "SqliteExecutionLog",
    "StorageError",
    # Metadata
    "__version__",
]
