"""
Retry policy configuration for activity execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, so the dispatch primitive can
consume it declaratively and it can be tested in isolation from the
activities it governs.

Policies are applied per activity type (from the @activity decorator) and
can be overridden per call through ActivityOptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for activity retry behavior.

    Controls how many attempts an activity gets on transient errors and the
    backoff between attempts.

    Examples:
        # Simple: just specify max attempts (uses standard delays)
        policy = RetryPolicy.with_max_attempts(3)

        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Custom policy: full control
        policy = RetryPolicy(
            maximum_attempts=5,
            initial_interval_ms=1000,
            maximum_interval_ms=30000,
            backoff_coefficient=2.0,
        )
    """

    maximum_attempts: int = 0
    """Maximum number of attempts (including the first try).

    0 means unlimited: the activity is retried until it succeeds, fails
    with a non-retryable error, or its run is closed.

    For example, maximum_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Attempt 2: after initial_interval
    - Attempt 3: after initial_interval * backoff_coefficient
    """

    initial_interval_ms: int = 1000
    """Delay before the first retry in milliseconds."""

    maximum_interval_ms: int = 100_000
    """Maximum delay between retries in milliseconds (caps exponential backoff)."""

    backoff_coefficient: float = 2.0
    """Multiplier for exponential backoff.

    Each retry delay is calculated as:
    min(initial_interval * backoff_coefficient^(attempt-1), maximum_interval)
    """

    non_retryable_error_types: tuple[str, ...] = field(default=())
    """Exception class names that are never retried, whatever their is_retryable()."""

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        DEFAULT: RetryPolicy
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        # Set after class definition
        DEFAULT = cast("RetryPolicy", None)
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        if self.maximum_attempts < 0:
            raise ValueError(f"maximum_attempts must be >= 0, got {self.maximum_attempts}")
        if self.initial_interval_ms < 0:
            raise ValueError(f"initial_interval_ms must be >= 0, got {self.initial_interval_ms}")
        if self.maximum_interval_ms < self.initial_interval_ms:
            raise ValueError(
                f"maximum_interval_ms ({self.maximum_interval_ms}) must be >= "
                f"initial_interval_ms ({self.initial_interval_ms})"
            )
        if self.backoff_coefficient < 1.0:
            raise ValueError(
                f"backoff_coefficient must be >= 1.0, got {self.backoff_coefficient}"
            )

    @classmethod
    def with_max_attempts(cls, maximum_attempts: int) -> RetryPolicy:
        """
        Create a policy with custom maximum_attempts (uses standard delays).

        Args:
            maximum_attempts: Maximum number of attempts (0 = unlimited)

        Returns:
            RetryPolicy with standard delays

        Example:
            policy = RetryPolicy.with_max_attempts(5)
        """
        return cls(
            maximum_attempts=maximum_attempts,
            initial_interval_ms=1000,
            maximum_interval_ms=30000,
            backoff_coefficient=2.0,
        )

    @property
    def is_unlimited(self) -> bool:
        """True if the policy never runs out of attempts."""
        return self.maximum_attempts == 0

    def is_exhausted(self, attempt: int) -> bool:
        """
        Check whether no attempt may follow the given one.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            True if the policy allows no further attempts
        """
        return not self.is_unlimited and attempt >= self.maximum_attempts

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Calculate the delay before the attempt that follows `attempt`.

        Uses exponential backoff: initial_interval * backoff_coefficient^(attempt-1)
        capped at maximum_interval. Because the coefficient is at least 1.0 and
        the cap is at least the initial interval, successive delays never
        decrease.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Delay in milliseconds before the next attempt, or None if exhausted.

        Example:
            policy = RetryPolicy.STANDARD
            delay1 = policy.delay_for_attempt(1)  # Returns 1000 (1s)
            delay2 = policy.delay_for_attempt(2)  # Returns 2000 (2s)
            delay3 = policy.delay_for_attempt(3)  # Returns None (max attempts)
        """
        if self.is_exhausted(attempt):
            return None

        exponent = attempt - 1
        delay_ms = self.initial_interval_ms * (self.backoff_coefficient**exponent)
        delay_ms = min(delay_ms, self.maximum_interval_ms)

        return int(delay_ms)

    def allows_retry_of(self, error_type: str) -> bool:
        """Check the error type against non_retryable_error_types."""
        return error_type not in self.non_retryable_error_types

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"RetryPolicy(maximum_attempts={self.maximum_attempts}, "
            f"initial_interval_ms={self.initial_interval_ms}, "
            f"maximum_interval_ms={self.maximum_interval_ms}, "
            f"backoff_coefficient={self.backoff_coefficient})"
        )


RetryPolicy.DEFAULT = RetryPolicy(
    maximum_attempts=0,  # unlimited
    initial_interval_ms=1000,
    maximum_interval_ms=100_000,
    backoff_coefficient=2.0,
)

RetryPolicy.NONE = RetryPolicy(
    maximum_attempts=1, initial_interval_ms=0, maximum_interval_ms=0, backoff_coefficient=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    maximum_attempts=3,
    initial_interval_ms=1000,  # 1 second
    maximum_interval_ms=30000,  # 30 seconds
    backoff_coefficient=2.0,
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    maximum_attempts=10,
    initial_interval_ms=100,  # 100 milliseconds
    maximum_interval_ms=10000,  # 10 seconds
    backoff_coefficient=1.5,
)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for errors that can specify whether they should be retried.

    Example:
        class PaymentError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        # Transient error - should retry
        raise PaymentError("Network timeout", is_retryable=True)

        # Permanent error - should NOT retry
        raise PaymentError("Insufficient funds", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """
        Returns true if this error is transient and the activity should be retried.

        - True: Error is transient (network timeout, service unavailable).
          A new attempt is scheduled if the policy allows one.
        - False: Error is permanent (invalid input, business rule violation).
          The failure is recorded immediately and delivered to the workflow.

        Returns:
            True if retryable, False if permanent
        """
        return True


class ApplicationError(RetryableError):
    """
    General-purpose error raised by activity code.

    Example:
        raise ApplicationError("feed URL is malformed", non_retryable=True)
    """

    def __init__(self, message: str, *, non_retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.non_retryable = non_retryable

    def is_retryable(self) -> bool:
        return not self.non_retryable

    def __repr__(self) -> str:
        return f"ApplicationError({self.message!r}, non_retryable={self.non_retryable})"
