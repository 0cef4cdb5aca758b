"""Storage backends for durable run, history and queue state.

Provides multiple storage implementations behind a common interface:
    - ExecutionLog: Abstract interface
    - SqliteExecutionLog: SQLite-backed storage
    - RedisExecutionLog: Redis-backed distributed storage
    - InMemoryExecutionLog: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to ExecutionLog interface.
    Clients depend on abstraction, not concrete implementations,
    enabling easy swapping between storage backends.
"""

from rssflow.storage.base import (
    ExecutionLog,
    StatusNotificationSource,
    StorageError,
    TimerNotificationSource,
    WorkNotificationSource,
)

# Lazy imports: the backends pull in their drivers (aiosqlite, redis),
# which callers of the interface alone should not have to load.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryExecutionLog":
        from rssflow.storage.memory import InMemoryExecutionLog

        return InMemoryExecutionLog
    elif name == "RedisExecutionLog":
        from rssflow.storage.redis import RedisExecutionLog

        return RedisExecutionLog
    elif name == "SqliteExecutionLog":
        from rssflow.storage.sqlite import SqliteExecutionLog

        return SqliteExecutionLog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ExecutionLog",
    "StorageError",
    "WorkNotificationSource",
    "TimerNotificationSource",
    "StatusNotificationSource",
    "SqliteExecutionLog",
    "RedisExecutionLog",
    "InMemoryExecutionLog",
]
