"""Structured failure information recorded in history and on runs."""

from __future__ import annotations

from dataclasses import dataclass, replace

__all__ = ["Failure"]


@dataclass(frozen=True)
class Failure:
    """Serializable description of an error.

    Exceptions raised by activity code are not stored directly (they may
    not survive pickling across processes). Instead the engine captures
    their type name, message and retryability in a Failure, which is
    stored on the activity task, in ACTIVITY_FAILED history events and on
    the failed run.

    Attributes:
        error_type: Exception class name (e.g. "ConnectError")
        message: str() of the exception
        non_retryable: True if the error asked not to be retried
        activity_type: Name of the failing activity, when an activity failed
        attempt: Attempt number that produced this failure
        timed_out: True if the attempt exceeded its start-to-close timeout
    """

    error_type: str
    message: str
    non_retryable: bool = False
    activity_type: str | None = None
    attempt: int | None = None
    timed_out: bool = False

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        *,
        activity_type: str | None = None,
        attempt: int | None = None,
    ) -> Failure:
        """Capture an exception as a Failure.

        Retryability follows the RetryableError protocol: any object with
        an is_retryable() method decides for itself, everything else is
        considered transient.
        """
        is_retryable = getattr(error, "is_retryable", None)
        non_retryable = callable(is_retryable) and not is_retryable()
        return cls(
            error_type=type(error).__name__,
            message=str(error),
            non_retryable=non_retryable,
            activity_type=activity_type,
            attempt=attempt,
            timed_out=bool(getattr(error, "timed_out", False)),
        )

    def with_context(self, activity_type: str, attempt: int) -> Failure:
        """Return a copy tagged with the activity step and attempt."""
        return replace(self, activity_type=activity_type, attempt=attempt)

    def describe(self) -> str:
        """One-line description suitable for logs and CLI output."""
        if self.activity_type is None:
            return f"{self.error_type}: {self.message}"
        return (
            f"activity {self.activity_type!r} failed after {self.attempt} attempt(s): "
            f"{self.error_type}: {self.message}"
        )

    def __str__(self) -> str:
        return self.describe()
