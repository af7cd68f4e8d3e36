"""Bounded retry policy shared by artifact downloads and health polling."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

SleepFn = Callable[[float], None]
RetryHook = Callable[[int, Optional[BaseException]], None]


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Result of running an operation under a ``RetryPolicy``.

    Attributes:
        ok: Whether one attempt satisfied the success predicate.
        value: Value returned by the last attempt (``None`` if it raised).
        attempts: Number of attempts actually made.
        error: Exception raised by the last attempt, if any.
    """

    ok: bool
    value: Optional[T]
    attempts: int
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt an operation up to ``max_attempts`` times with a fixed wait.

    Attributes:
        max_attempts: Upper bound on attempts (at least one is always made).
        delay_s: Wait between attempts in seconds.
        backoff: Multiplier applied to the wait after each failed attempt.
    """

    max_attempts: int
    delay_s: float = 0.0
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.delay_s < 0:
            raise ValueError("RetryPolicy.delay_s must be >= 0")
        if self.backoff < 1.0:
            raise ValueError("RetryPolicy.backoff must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Return the wait after failed attempt number ``attempt`` (1-based)."""
        return float(self.delay_s) * (self.backoff ** max(0, attempt - 1))

    def run(
        self,
        operation: Callable[[int], T],
        *,
        succeeded: Callable[[T], bool] = bool,
        retry_on: Tuple[Type[BaseException], ...] = (),
        sleep: SleepFn = time.sleep,
        on_failure: Optional[RetryHook] = None,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Args:
            operation: Callable receiving the 1-based attempt number.
            succeeded: Predicate applied to the returned value.
            retry_on: Exception types counted as a failed attempt. Any other
                exception propagates immediately.
            sleep: Wait function, injectable for tests.
            on_failure: Hook called after each failed attempt with the
                attempt number and the exception (or ``None``).

        Returns:
            RetryResult describing the last attempt. No wait follows the
            final attempt.
        """
        attempts = int(self.max_attempts)
        value: Optional[T] = None
        error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            error = None
            try:
                value = operation(attempt)
            except retry_on as exc:
                value = None
                error = exc
            else:
                if succeeded(value):
                    return RetryResult(ok=True, value=value, attempts=attempt)
            if on_failure is not None:
                on_failure(attempt, error)
            if attempt < attempts:
                wait = self.delay_for(attempt)
                if wait > 0:
                    sleep(wait)
        return RetryResult(ok=False, value=value, attempts=attempts, error=error)


__all__ = ["RetryPolicy", "RetryResult"]
