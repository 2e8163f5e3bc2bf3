"""Exponential backoff as an explicit state machine.

A `Backoff` tracks one logical operation across attempts:

    IDLE -> ATTEMPTING -> SUCCEEDED
                |
                v
           BACKING_OFF -> ATTEMPTING -> ... -> EXHAUSTED

`RetryPolicy.call` drives a `Backoff` for a callable, retrying the errors the
caller classifies as transient. Delays follow base * factor ** (n - 1), capped
at `max_delay`, and never shorter than a server provided Retry-After.
"""

import logging
import time
from enum import Enum
from typing import Callable, List, Optional, TypeVar

from groupme_download.models.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class InvalidTransition(RuntimeError):
    """A `Backoff` method was called from a state that does not allow it."""


class Backoff:
    """Retry bookkeeping for a single operation."""

    def __init__(self, config: RetryConfig):
        self.config = config
        self.state = BackoffState.IDLE
        self.attempts = 0
        self.delays: List[float] = []
        self.last_error: Optional[BaseException] = None

    def _expect(self, *states: BackoffState) -> None:
        if self.state not in states:
            raise InvalidTransition(f"cannot leave {self.state.value} here")

    def start_attempt(self) -> None:
        self._expect(BackoffState.IDLE, BackoffState.BACKING_OFF)
        self.attempts += 1
        self.state = BackoffState.ATTEMPTING

    def succeed(self) -> None:
        self._expect(BackoffState.ATTEMPTING)
        self.state = BackoffState.SUCCEEDED

    def next_delay(self) -> float:
        """Delay that follows the current attempt."""
        delay = self.config.base_delay * (self.config.factor ** max(0, self.attempts - 1))
        return min(delay, self.config.max_delay)

    def fail(self, error: BaseException, min_delay: Optional[float] = None) -> Optional[float]:
        """Record a failed attempt.

        Returns:
            Seconds to wait before the next attempt, or None when exhausted.
        """
        self._expect(BackoffState.ATTEMPTING)
        self.last_error = error
        if self.attempts >= self.config.max_attempts:
            self.state = BackoffState.EXHAUSTED
            return None
        delay = self.next_delay()
        if min_delay is not None and min_delay > delay:
            delay = float(min_delay)
        self.delays.append(delay)
        self.state = BackoffState.BACKING_OFF
        return delay


class RetryPolicy:
    """Retries transient failures with exponential backoff.

    Args:
        config: Backoff parameters.
        sleep: Sleep function; the run context passes a cancellable one.
    """

    def __init__(self, config: Optional[RetryConfig] = None, sleep: Callable[[float], object] = time.sleep):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def new_backoff(self) -> Backoff:
        return Backoff(self.config)

    def call(
        self,
        func: Callable[[], T],
        should_retry: Callable[[Exception], bool],
        description: str = "operation",
    ) -> T:
        """Run `func` until it succeeds, fails permanently, or retries are exhausted.

        Errors for which `should_retry` is False propagate immediately. When
        retries are exhausted the last transient error is re-raised; callers
        decide how to escalate it.
        """
        backoff = self.new_backoff()
        while True:
            backoff.start_attempt()
            try:
                result = func()
            except Exception as err:
                if not should_retry(err):
                    raise
                delay = backoff.fail(err, getattr(err, "retry_after", None))
                if delay is None:
                    logger.warning(f"{description}: giving up after {backoff.attempts} attempts: {err}")
                    raise
                logger.warning(
                    f"{description}: attempt {backoff.attempts}/{self.config.max_attempts} failed ({err}). "
                    f"Retrying in {delay:.2f}s..."
                )
                self._sleep(delay)
                continue
            backoff.succeed()
            return result
