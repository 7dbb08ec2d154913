"""
Classification-driven retry wrapper for vendor calls.

Classification (is this worth retrying?) lives in `is_retryable_error`;
pacing (how long to wait) lives here. A fixed backoff schedule is used,
except that a rate-limit error's Retry-After hint replaces the scheduled
delay, capped at `retry_after_cap`.
"""

import logging
import time
from typing import Any, Callable, Sequence, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from linnworks_sync.exceptions import RateLimitError, is_retryable_error

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_SCHEDULE: tuple[float, ...] = (1.0, 3.0, 10.0)


class RetryExecutor:
    """
    Runs an operation, retrying transient failures on a fixed schedule.

    A schedule of N delays allows N+1 attempts. Non-retryable errors
    (4xx other than 429, auth failures, anything that isn't an API error)
    propagate immediately; exhausting the schedule re-raises the last error.

    Example:
        executor = RetryExecutor(backoff_schedule=[1, 3, 10])
        orders = executor.execute(lambda: client.send(request, token))
    """

    def __init__(
        self,
        backoff_schedule: Sequence[float] = DEFAULT_BACKOFF_SCHEDULE,
        retry_after_cap: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backoff_schedule = tuple(backoff_schedule)
        self.retry_after_cap = retry_after_cap
        self._sleep = sleep

        self._retries = 0
        self._total_wait = 0.0

    def _wait_for(self, schedule: tuple[float, ...]) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None

            if isinstance(exc, RateLimitError) and exc.retry_after is not None:
                delay = min(float(exc.retry_after), self.retry_after_cap)
            else:
                index = min(retry_state.attempt_number - 1, len(schedule) - 1)
                delay = float(schedule[index])

            self._retries += 1
            self._total_wait += delay
            return delay

        return wait

    def execute(
        self,
        operation: Callable[[], T],
        backoff_schedule: Sequence[float] | None = None,
        operation_name: str | None = None,
    ) -> T:
        schedule = tuple(backoff_schedule) if backoff_schedule is not None else self.backoff_schedule
        log = logger.bind(operation=operation_name or getattr(operation, "__name__", "operation"))

        retrying = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(len(schedule) + 1),
            wait=self._wait_for(schedule) if schedule else (lambda _: 0),
            sleep=self._sleep,
            before_sleep=before_sleep_log(log, logging.INFO),
            reraise=True,
        )
        return retrying(operation)

    def get_stats(self) -> dict[str, Any]:
        return {
            "retries": self._retries,
            "total_wait_seconds": round(self._total_wait, 2),
            "backoff_schedule": list(self.backoff_schedule),
            "retry_after_cap": self.retry_after_cap,
        }
