"""
Executor module - runtime engine for durable workflows.

This module contains the execution components:
- orchestrator: run lifecycle, history commits, activity retries, timeouts
- replay: deterministic re-execution of workflow code (WorkflowExecutor)
- queue: lease-based task queue (TaskQueue)
- registry: explicit workflow and activity registries
- worker: polling worker (Worker, WorkerHandle)
- client: versioned client facade (Client)
"""

from rssflow.executor.client import Client
from rssflow.executor.orchestrator import ClientError, Orchestrator, RunHandle
from rssflow.executor.queue import TaskQueue, new_entry
from rssflow.executor.registry import ActivityRegistry, WorkflowRegistry, validate_registries
from rssflow.executor.replay import WorkflowExecutor, WorkflowTaskResult
from rssflow.executor.worker import Worker, WorkerError, WorkerHandle

__all__ = [
    "ActivityRegistry",
    "Client",
    "ClientError",
    "Orchestrator",
    "RunHandle",
    "TaskQueue",
    "Worker",
    "WorkerError",
    "WorkerHandle",
    "WorkflowExecutor",
    "WorkflowRegistry",
    "WorkflowTaskResult",
    "new_entry",
    "validate_registries",
]
